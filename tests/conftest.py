"""Pytest configuration and shared fixtures."""

import asyncio
import re
from collections.abc import Generator
from datetime import datetime
from typing import Any, Optional, Union

import pytest
from prometheus_client import CollectorRegistry

from promoter.config import PromoterConfig, WarehouseConfig
from promoter.exceptions import TableNotFoundError
from promoter.job import Job
from promoter.metrics import PromoterMetrics
from promoter.policy import unregister_policy
from promoter.warehouse import (
    JobState,
    JobStatus,
    RemoteJob,
    TableMetadata,
    TableRef,
    Warehouse,
    WriteDisposition,
)

_TABLE = re.compile(r"FROM `([^`]+)`")
_DATE_LITERAL = re.compile(r'= "(\d{4})-(\d{2})-(\d{2})"')
_PARTITION_TIME = re.compile(r'PARSE_TIMESTAMP\("%Y%m%d", "(\d{8})"\)')


class FakeRemoteJob(RemoteJob):
    """Remote job that finishes with a preset status, optionally after a gate opens."""

    def __init__(
        self,
        job_id: str,
        status: JobStatus,
        gate: Optional[asyncio.Event] = None,
        cancel_error: Optional[Exception] = None,
    ) -> None:
        self._job_id = job_id
        self._status = status
        self.gate = gate
        self.cancel_error = cancel_error
        self.cancelled = False

    @property
    def job_id(self) -> str:
        return self._job_id

    async def wait(self) -> JobStatus:
        if self.gate is not None:
            await self.gate.wait()
        return self._status

    async def status(self) -> JobStatus:
        if self.gate is not None and not self.gate.is_set():
            return JobStatus(state=JobState.RUNNING)
        return self._status

    async def cancel(self) -> None:
        self.cancelled = True
        if self.cancel_error is not None:
            raise self.cancel_error


class FakeWarehouse(Warehouse):
    """In-memory warehouse understanding the promoter's own queries.

    Rows are dicts with ``key`` (logical record), ``parse_time`` and
    ``file`` (source archive). Dedup keeps, per key, every row with the
    newest parse time. Partitions are addressed as ``project.dataset.table$YYYYMMDD``.
    """

    def __init__(self) -> None:
        self.partitions: dict[str, list[dict[str, Any]]] = {}
        self.modified: dict[str, datetime] = {}
        self.queries: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.jobs: list[FakeRemoteJob] = []
        self.metadata_delay = 0.0
        self._failures: dict[str, list[Any]] = {}
        self._gates: dict[str, asyncio.Event] = {}
        self.options: dict[str, Any] = {}

    # Test helpers

    def add_partition(
        self,
        table: Union[TableRef, str],
        rows: list[dict[str, Any]],
        modified: Optional[datetime] = None,
    ) -> None:
        name = str(table)
        self.partitions[name] = [dict(r) for r in rows]
        if modified is not None:
            self.modified[name] = modified

    def rows(self, table: Union[TableRef, str]) -> Optional[list[dict[str, Any]]]:
        return self.partitions.get(str(table))

    def fail(
        self, operation: str, error: Union[Exception, str], times: Optional[int] = None
    ) -> None:
        """Fail an operation.

        An exception is raised from the call, a string becomes a failed job
        status. ``times=None`` fails forever.
        """
        self._failures[operation] = [error, times]

    def block(self, operation: str) -> asyncio.Event:
        """Hold jobs of an operation until the returned event is set."""
        gate = asyncio.Event()
        self._gates[operation] = gate
        return gate

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    # Internals

    def _failure(self, operation: str) -> Optional[Union[Exception, str]]:
        entry = self._failures.get(operation)
        if entry is None:
            return None
        error, remaining = entry
        if remaining is not None:
            if remaining <= 0:
                return None
            entry[1] = remaining - 1
        return error

    def _job(self, operation: str, status: JobStatus) -> FakeRemoteJob:
        failure = self._failure(operation)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            status = JobStatus(state=JobState.DONE, error=failure)
        job = FakeRemoteJob(f"job-{len(self.jobs) + 1}", status, gate=self._gates.get(operation))
        self.jobs.append(job)
        return job

    @staticmethod
    def _partition_of(sql: str) -> str:
        table = _TABLE.search(sql).group(1)
        year, month, day = _DATE_LITERAL.search(sql).groups()
        return f"{table}${year}{month}{day}"

    def _dedup(self, name: str) -> int:
        rows = self.partitions.get(name, [])
        newest: dict[Any, Any] = {}
        for row in rows:
            if row["key"] not in newest or row["parse_time"] > newest[row["key"]]:
                newest[row["key"]] = row["parse_time"]
        kept = [r for r in rows if r["parse_time"] == newest[r["key"]]]
        self.partitions[name] = kept
        return len(rows) - len(kept)

    # Warehouse

    async def run_query(self, sql: str, dry_run: bool = False) -> RemoteJob:
        self.queries.append(sql)
        name = self._partition_of(sql)
        if "Delete all duplicate rows" in sql:
            operation = "dedup_dry_run" if dry_run else "dedup"
        else:
            operation = "cleanup"
        self.calls.append((operation, name))

        if dry_run:
            return self._job(operation, JobStatus(JobState.DONE, total_bytes_processed=4096))
        failure = self._failures.get(operation)
        if failure is not None and (failure[1] is None or failure[1] > 0):
            return self._job(operation, JobStatus(JobState.DONE))

        if operation == "dedup":
            affected = self._dedup(name)
        else:
            affected = len(self.partitions.get(name, []))
            if name in self.partitions:
                self.partitions[name] = []
        return self._job(operation, JobStatus(JobState.DONE, num_dml_affected_rows=affected))

    async def copy_table(
        self,
        source: TableRef,
        destination: TableRef,
        disposition: WriteDisposition = WriteDisposition.WRITE_TRUNCATE,
    ) -> RemoteJob:
        self.calls.append(("copy", f"{source}->{destination}:{disposition}"))
        failure = self._failures.get("copy")
        if failure is not None and (failure[1] is None or failure[1] > 0):
            return self._job("copy", JobStatus(JobState.DONE))
        if str(source) not in self.partitions:
            return self._job("copy", JobStatus(JobState.DONE, error=f"Not found: {source}"))
        self.partitions[str(destination)] = [dict(r) for r in self.partitions[str(source)]]
        self.modified[str(destination)] = datetime(2030, 1, 1)
        return self._job("copy", JobStatus(JobState.DONE))

    async def delete_table(self, table: TableRef) -> None:
        self.calls.append(("delete", str(table)))
        failure = self._failure("delete")
        if isinstance(failure, Exception):
            raise failure
        self.partitions.pop(str(table), None)

    async def table_metadata(self, table: TableRef) -> TableMetadata:
        self.calls.append(("metadata", str(table)))
        if self.metadata_delay:
            await asyncio.sleep(self.metadata_delay)
        failure = self._failure("metadata")
        if isinstance(failure, Exception):
            raise failure
        rows = self.partitions.get(str(table))
        if rows is None:
            raise TableNotFoundError(f"Not found: {table}")
        return TableMetadata(
            num_rows=len(rows),
            num_bytes=100 * len(rows),
            last_modified_time=self.modified.get(str(table)),
            is_partitioned="$" in table.table_id,
        )

    async def fetch_rows(self, sql: str) -> list[dict[str, Any]]:
        self.queries.append(sql)
        table = _TABLE.search(sql).group(1)
        name = table
        partition_time = _PARTITION_TIME.search(sql)
        date_literal = _DATE_LITERAL.search(sql)
        if partition_time:
            name = f"{table}${partition_time.group(1)}"
        elif date_literal:
            name = f"{table}$" + "".join(date_literal.groups())
        self.calls.append(("detail", name))
        failure = self._failure("detail")
        if isinstance(failure, Exception):
            raise failure
        if not any(p == table or p.startswith(f"{table}$") for p in self.partitions):
            raise TableNotFoundError(f"Not found: {table}")
        rows = self.partitions.get(name, [])
        return [
            {
                "record_count": len({r["key"] for r in rows}),
                "source_file_count": len({r["file"] for r in rows}),
            }
        ]


def create_warehouse(project: str, **options: Any) -> FakeWarehouse:
    """Client factory usable from configuration."""
    warehouse = FakeWarehouse()
    warehouse.options = {"project": project, **options}
    return warehouse


def make_rows(keys: list[Any], parse_time: int = 1, file: str = "a.tgz") -> list[dict[str, Any]]:
    """Build one row per key."""
    return [{"key": k, "parse_time": parse_time, "file": file} for k in keys]


@pytest.fixture
def warehouse() -> FakeWarehouse:
    """In-memory warehouse."""
    return FakeWarehouse()


@pytest.fixture
def config() -> PromoterConfig:
    """Minimal promoter configuration."""
    return PromoterConfig(warehouse=WarehouseConfig(project="test-project"))


@pytest.fixture
def job() -> Job:
    """ndt7 job for 2019-03-04."""
    return Job.create("gs://archive-measurement-lab", "ndt", "ndt7", "2019-03-04")


@pytest.fixture
def metrics() -> PromoterMetrics:
    """Metrics recorder with its own registry."""
    return PromoterMetrics(registry=CollectorRegistry())


@pytest.fixture(autouse=True)
def restore_policies() -> Generator[None, None, None]:
    """Undo policy registrations made by a test."""
    yield
    for datatype in ("custom", "ndt7", "scamper"):
        unregister_policy(datatype)
