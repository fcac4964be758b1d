"""Pre-copy comparison of source and destination partitions."""

from enum import StrEnum
from typing import Optional

import structlog

from promoter.config import SanityConfig
from promoter.exceptions import (
    MismatchedPartitionsError,
    SourceOlderThanDestinationError,
    TableNotFoundError,
    TooFewRecordsError,
    TooFewSourceFilesError,
)
from promoter.table import AnnotatedTable
from promoter.warehouse import TableMetadata, WriteDisposition, client_errors, wait_for_job
from utils.logging import get_logger


class CopyResult(StrEnum):
    """Result of a sanity check and copy."""

    COPIED = "copied"
    NOTHING_TO_PROMOTE = "nothing_to_promote"


class SanityChecker:
    """Decides whether a source partition may overwrite its destination."""

    def __init__(
        self,
        config: Optional[SanityConfig] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize sanity checker.

        Args:
            config: Comparison thresholds (strict defaults if None)
            logger: Optional logger instance
        """
        self.config = config or SanityConfig()
        self.logger = logger or get_logger("sanity")

    async def check_and_copy(
        self,
        source: AnnotatedTable,
        destination: AnnotatedTable,
    ) -> CopyResult:
        """Compare source and destination and copy when safe.

        The copy overwrites the destination partition. Nothing is deleted
        here, so a failed check leaves all data untouched.

        Args:
            source: Deduplicated staging partition
            destination: Archive partition

        Returns:
            COPIED, or NOTHING_TO_PROMOTE if the source is empty or missing

        Raises:
            InvalidPartitionNameError: If either table name is malformed
            SanityCheckFailedError: If the copy could lose data
            MetadataUnavailableError: If metadata or detail cannot be fetched
            JobFailedError: If the copy job fails
            WarehouseError: If the copy could not be started
        """
        if not await self.check(source, destination):
            return CopyResult.NOTHING_TO_PROMOTE
        await self.copy(source, destination)
        return CopyResult.COPIED

    async def check(self, source: AnnotatedTable, destination: AnnotatedTable) -> bool:
        """Check whether source may overwrite destination.

        Returns:
            True if the copy is safe, False if the source has nothing to promote

        Raises:
            InvalidPartitionNameError: If either table name is malformed
            SanityCheckFailedError: If the copy could lose data
            MetadataUnavailableError: If metadata or detail cannot be fetched
        """
        src_parts = source.parts()
        dest_parts = destination.parts()
        if src_parts.partition_date != dest_parts.partition_date:
            raise MismatchedPartitionsError(
                f"Mismatched partitions: {source.table_id} vs {destination.table_id}",
                context={
                    "source": source.table.full_name,
                    "destination": destination.table.full_name,
                },
            )

        try:
            src_meta = await source.cached_meta()
        except TableNotFoundError:
            self.logger.info(
                "Source partition not found, nothing to promote", source=str(source.table)
            )
            return False
        if src_meta.num_rows == 0:
            self.logger.info(
                "Source partition is empty, nothing to promote", source=str(source.table)
            )
            return False

        try:
            dest_meta: Optional[TableMetadata] = await destination.cached_meta()
        except TableNotFoundError:
            dest_meta = None

        self.logger.info(
            "Comparing partitions",
            source=source.table,
            source_meta=src_meta,
            destination=destination.table,
            destination_meta=dest_meta,
        )

        if dest_meta is not None and dest_meta.num_rows > 0:
            await self._check_not_smaller(source, src_meta, destination, dest_meta)
            if self.config.require_source_newer:
                self._check_modified_after(source, src_meta, destination, dest_meta)

        return True

    async def _check_not_smaller(
        self,
        source: AnnotatedTable,
        src_meta: TableMetadata,
        destination: AnnotatedTable,
        dest_meta: TableMetadata,
    ) -> None:
        """Check the source holds at least as much as the destination allows."""
        context = {
            "source": source.table.full_name,
            "destination": destination.table.full_name,
        }
        policy = source.policy
        if policy is None or not policy.has_detail:
            if src_meta.num_rows < self.config.min_record_ratio * dest_meta.num_rows:
                raise TooFewRecordsError(
                    f"Too few rows: {source.table_id}({src_meta.num_rows}) < "
                    f"{destination.table_id}({dest_meta.num_rows})",
                    context={
                        **context,
                        "source_rows": src_meta.num_rows,
                        "destination_rows": dest_meta.num_rows,
                    },
                )
            return

        src_detail = await source.cached_detail()
        dest_detail = await destination.cached_detail()
        detail_context = {
            **context,
            "source_detail": src_detail.to_dict(),
            "destination_detail": dest_detail.to_dict(),
        }

        if src_detail.source_file_count < dest_detail.source_file_count:
            # Some archives are entirely redundant with others and vanish in dedup
            self.logger.warning(
                "Fewer source files than destination",
                source=source.table_id,
                source_files=src_detail.source_file_count,
                destination=destination.table_id,
                destination_files=dest_detail.source_file_count,
            )
        min_files = self.config.min_source_file_ratio * dest_detail.source_file_count
        if src_detail.source_file_count < min_files:
            raise TooFewSourceFilesError(
                f"Too few source files: {source.table_id}({src_detail.source_file_count}) < "
                f"{destination.table_id}({dest_detail.source_file_count})",
                context=detail_context,
            )

        if src_detail.record_count < dest_detail.record_count:
            self.logger.warning(
                "Fewer records than destination",
                source=source.table_id,
                source_records=src_detail.record_count,
                destination=destination.table_id,
                destination_records=dest_detail.record_count,
            )
        if src_detail.record_count < self.config.min_record_ratio * dest_detail.record_count:
            raise TooFewRecordsError(
                f"Too few records: {source.table_id}({src_detail.record_count}) < "
                f"{destination.table_id}({dest_detail.record_count})",
                context=detail_context,
            )

    def _check_modified_after(
        self,
        source: AnnotatedTable,
        src_meta: TableMetadata,
        destination: AnnotatedTable,
        dest_meta: TableMetadata,
    ) -> None:
        if src_meta.last_modified_time is None or dest_meta.last_modified_time is None:
            return
        if src_meta.last_modified_time < dest_meta.last_modified_time:
            raise SourceOlderThanDestinationError(
                f"Source {source.table_id} last modified before destination {destination.table_id}",
                context={
                    "source_modified": src_meta.last_modified_time.isoformat(),
                    "destination_modified": dest_meta.last_modified_time.isoformat(),
                },
            )

    async def copy(self, source: AnnotatedTable, destination: AnnotatedTable) -> None:
        """Overwrite the destination partition with the source partition.

        Raises:
            JobFailedError: If the copy job fails
        """
        self.logger.info(
            "Copying partition",
            source=str(source.table),
            destination=str(destination.table),
            disposition=WriteDisposition.WRITE_TRUNCATE.value,
        )
        with client_errors("copy", source.table):
            job = await source.warehouse.copy_table(
                source.table,
                destination.table,
                disposition=WriteDisposition.WRITE_TRUNCATE,
            )
        await wait_for_job(job, "copy", logger=self.logger)
        # The destination changed, so its cached metadata is stale
        destination.invalidate()
