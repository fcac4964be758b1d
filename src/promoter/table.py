"""Tables annotated with cached metadata and partition detail."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from promoter.exceptions import MetadataUnavailableError, TableNotFoundError
from promoter.partition import TableParts, get_table_parts
from promoter.policy import DatatypePolicy
from promoter.queries import detail_query
from promoter.warehouse import TableMetadata, TableRef, Warehouse, require_client
from utils.logging import get_logger

T = TypeVar("T")


@dataclass(frozen=True)
class TableDetail:
    """Distinct counts over a table or partition."""

    partition_id: str
    source_file_count: int
    record_count: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "partition_id": self.partition_id,
            "source_file_count": self.source_file_count,
            "record_count": self.record_count,
        }


async def get_table_detail(
    warehouse: Warehouse,
    table: TableRef,
    policy: DatatypePolicy,
) -> TableDetail:
    """Count distinct records and source files in a table or partition.

    An empty or missing partition yields zero counts.

    Raises:
        MetadataUnavailableError: If the aggregate query fails
    """
    parts = get_table_parts(table.table_id)
    sql = detail_query(table, policy)
    try:
        rows = await warehouse.fetch_rows(sql)
    except TableNotFoundError:
        rows = []
    except Exception as e:
        raise MetadataUnavailableError(
            f"Detail query failed for {table}: {e}",
            context={"table": table.full_name},
        ) from e

    if not rows:
        return TableDetail(partition_id=parts.partition_date, source_file_count=0, record_count=0)
    if len(rows) != 1:
        raise MetadataUnavailableError(
            f"Detail query for {table} returned {len(rows)} rows",
            context={"table": table.full_name},
        )
    row = rows[0]
    return TableDetail(
        partition_id=parts.partition_date,
        source_file_count=int(row.get("source_file_count") or 0),
        record_count=int(row.get("record_count") or 0),
    )


class _SingleFlight:
    """Caches the result of one async fetch, sharing in-flight work.

    Concurrent callers share a single task and observe the same result or
    exception. Successful results are kept; failures are not.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[Any]] = None
        self._has_value = False
        self._value: Any = None

    def reset(self) -> None:
        self._has_value = False
        self._value = None
        self._task = None

    async def get(self, fetch: Callable[[], Awaitable[T]], refresh: bool = False) -> T:
        async with self._lock:
            if refresh and self._task is None:
                self._has_value = False
            if self._has_value:
                return self._value
            task = self._task
            if task is None:
                task = asyncio.ensure_future(fetch())
                self._task = task
        # The lock is released before waiting on the remote call
        try:
            value = await asyncio.shield(task)
        finally:
            if task.done():
                async with self._lock:
                    if self._task is task:
                        self._task = None
                        if not task.cancelled() and task.exception() is None:
                            self._value = task.result()
                            self._has_value = True
        return value


class AnnotatedTable:
    """A table reference with cached metadata and detail.

    An instance is scoped to a single promotion attempt: the cache never
    expires on its own, so a retry that needs fresh metadata must use a new
    instance or pass ``refresh=True``.
    """

    def __init__(
        self,
        table: TableRef,
        warehouse: Optional[Warehouse],
        policy: Optional[DatatypePolicy] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize annotated table.

        Args:
            table: Table or partition reference
            warehouse: Warehouse client used for fetches
            policy: Datatype policy, required for detail
            logger: Optional logger instance

        Raises:
            NilClientError: If warehouse is None
        """
        self.table = table
        self.warehouse = require_client(warehouse)
        self.policy = policy
        self.logger = logger or get_logger("annotated_table")
        self._meta = _SingleFlight()
        self._detail = _SingleFlight()

    @property
    def table_id(self) -> str:
        return self.table.table_id

    def parts(self) -> TableParts:
        """Parse the table id.

        Raises:
            InvalidPartitionNameError: If the table id is malformed
        """
        return get_table_parts(self.table.table_id)

    def invalidate(self) -> None:
        """Drop cached metadata and detail."""
        self._meta.reset()
        self._detail.reset()

    async def _fetch_meta(self) -> TableMetadata:
        self.logger.debug("Fetching table metadata", table=self.table.full_name)
        try:
            return await self.warehouse.table_metadata(self.table)
        except TableNotFoundError:
            raise
        except Exception as e:
            raise MetadataUnavailableError(
                f"Metadata unavailable for {self.table}: {e}",
                context={"table": self.table.full_name},
            ) from e

    async def cached_meta(self, refresh: bool = False) -> TableMetadata:
        """Return table metadata, fetching it once per instance.

        Raises:
            TableNotFoundError: If the table or partition does not exist
            MetadataUnavailableError: If the fetch fails for another reason
        """
        return await self._meta.get(self._fetch_meta, refresh=refresh)

    async def _fetch_detail(self) -> TableDetail:
        if self.policy is None:
            raise MetadataUnavailableError(
                f"No policy to compute detail for {self.table}",
                context={"table": self.table.full_name},
            )
        self.logger.debug("Fetching table detail", table=self.table.full_name)
        return await get_table_detail(self.warehouse, self.table, self.policy)

    async def cached_detail(self, refresh: bool = False) -> TableDetail:
        """Return distinct counts, computing them once per instance.

        Raises:
            MetadataUnavailableError: If the detail query fails
        """
        return await self._detail.get(self._fetch_detail, refresh=refresh)
