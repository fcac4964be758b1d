"""Contracts for the warehouse client that executes queries, copies and deletes.

The promoter only builds and sequences work. Executing it is delegated to a
``Warehouse`` implementation supplied by the caller.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

import structlog

from promoter.exceptions import JobFailedError, NilClientError, PromoterError, WarehouseError
from utils.logging import get_logger


@dataclass(frozen=True)
class TableRef:
    """Fully qualified table, optionally addressing one partition."""

    project: str
    dataset: str
    table_id: str

    @classmethod
    def from_string(cls, name: str) -> "TableRef":
        """Parse ``project.dataset.table``.

        Raises:
            ValueError: If the name does not have three segments
        """
        parts = name.split(".")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Expected project.dataset.table, got {name!r}")
        return cls(*parts)

    @property
    def full_name(self) -> str:
        return f"{self.project}.{self.dataset}.{self.table_id}"

    @property
    def base_table_id(self) -> str:
        """Table id without any ``$partition`` suffix."""
        return self.table_id.split("$", 1)[0]

    @property
    def base(self) -> "TableRef":
        return TableRef(self.project, self.dataset, self.base_table_id)

    def partition(self, yyyymmdd: str) -> "TableRef":
        """Reference to one partition of this table."""
        return TableRef(self.project, self.dataset, f"{self.base_table_id}${yyyymmdd}")

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class TableMetadata:
    """Descriptive metadata of a table or partition."""

    num_rows: int
    num_bytes: int
    creation_time: Optional[datetime] = None
    last_modified_time: Optional[datetime] = None
    is_partitioned: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "num_rows": self.num_rows,
            "num_bytes": self.num_bytes,
            "creation_time": self.creation_time.isoformat() if self.creation_time else None,
            "last_modified_time": (
                self.last_modified_time.isoformat() if self.last_modified_time else None
            ),
            "is_partitioned": self.is_partitioned,
        }


class JobState(StrEnum):
    """Remote job lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"


class WriteDisposition(StrEnum):
    """What a copy does with existing destination data."""

    WRITE_TRUNCATE = "WRITE_TRUNCATE"
    WRITE_APPEND = "WRITE_APPEND"
    WRITE_EMPTY = "WRITE_EMPTY"


@dataclass(frozen=True)
class JobStatus:
    """Status of a remote job.

    A job in state DONE with ``error`` set has failed.
    """

    state: JobState
    error: Optional[str] = None
    num_dml_affected_rows: Optional[int] = None
    total_bytes_processed: Optional[int] = None

    @property
    def done(self) -> bool:
        return self.state == JobState.DONE

    @property
    def failed(self) -> bool:
        return self.done and self.error is not None


class RemoteJob(ABC):
    """Handle to an asynchronous warehouse job (query or copy)."""

    @property
    @abstractmethod
    def job_id(self) -> str:
        """Warehouse-assigned job id."""

    @abstractmethod
    async def wait(self) -> JobStatus:
        """Block until the job reaches a terminal state."""

    @abstractmethod
    async def status(self) -> JobStatus:
        """Return the current job status without waiting."""

    @abstractmethod
    async def cancel(self) -> None:
        """Request cancellation of the job."""


class Warehouse(ABC):
    """Client for a columnar warehouse.

    Implementations must be safe for concurrent use from several promotions.
    They may raise their client library's own exceptions; the promoter
    translates anything that is not a ``PromoterError`` at the call site
    (see ``client_errors``).
    """

    @abstractmethod
    async def run_query(self, sql: str, dry_run: bool = False) -> RemoteJob:
        """Start a query job. A dry run validates and costs without mutating."""

    @abstractmethod
    async def copy_table(
        self,
        source: TableRef,
        destination: TableRef,
        disposition: WriteDisposition = WriteDisposition.WRITE_TRUNCATE,
    ) -> RemoteJob:
        """Start a copy job from source to destination."""

    @abstractmethod
    async def delete_table(self, table: TableRef) -> None:
        """Delete a table or partition and wait for completion."""

    @abstractmethod
    async def table_metadata(self, table: TableRef) -> TableMetadata:
        """Fetch metadata. Raises TableNotFoundError for missing tables."""

    @abstractmethod
    async def fetch_rows(self, sql: str) -> list[dict[str, Any]]:
        """Run a read-only query and return all rows."""


def require_client(warehouse: Optional[Warehouse]) -> Warehouse:
    """Return the warehouse, or raise NilClientError if it is missing."""
    if warehouse is None:
        raise NilClientError("Warehouse client is required")
    return warehouse


@contextmanager
def client_errors(operation: str, table: Optional[TableRef] = None) -> Iterator[None]:
    """Re-raise client exceptions that are not PromoterErrors as WarehouseError.

    Connection resets, timeouts and client library errors become
    ``WarehouseError``. Cancellation passes through unchanged.
    """
    try:
        yield
    except PromoterError:
        raise
    except Exception as e:
        context: dict[str, Any] = {"operation": operation, "error_type": type(e).__name__}
        if table is not None:
            context["table"] = table.full_name
        raise WarehouseError(f"{operation} failed: {e}", context=context) from e


async def wait_for_job(
    job: RemoteJob,
    description: str,
    logger: Optional[structlog.BoundLogger] = None,
) -> JobStatus:
    """Wait for a remote job to finish.

    If the waiting task is cancelled, the remote job is cancelled as well
    before the cancellation propagates.

    Args:
        job: Remote job handle
        description: Short name of the operation, used in logs and errors
        logger: Optional logger instance

    Returns:
        Terminal job status

    Raises:
        JobFailedError: If the job finished with an error
        WarehouseError: If polling the job failed
    """
    logger = logger or get_logger("warehouse")
    try:
        with client_errors(description):
            status = await job.wait()
    except asyncio.CancelledError:
        logger.warning("Cancelling remote job", job_id=job.job_id, operation=description)
        try:
            await asyncio.shield(job.cancel())
        except Exception as e:
            logger.error(
                "Failed to cancel remote job",
                job_id=job.job_id,
                operation=description,
                error=str(e),
            )
        raise

    if status.failed:
        raise JobFailedError(
            f"{description} job {job.job_id} failed: {status.error}",
            context={"job_id": job.job_id, "operation": description},
        )
    if not status.done:
        raise JobFailedError(
            f"{description} job {job.job_id} returned non-terminal state {status.state}",
            context={"job_id": job.job_id, "operation": description},
        )

    logger.debug(
        "Remote job completed",
        job_id=job.job_id,
        operation=description,
        affected_rows=status.num_dml_affected_rows,
        bytes_processed=status.total_bytes_processed,
    )
    return status
