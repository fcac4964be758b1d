"""Promotion of one staging partition into the archive.

Each promotion runs dedup, sanity check, copy and cleanup strictly in order.
The first hard failure aborts the sequence without touching staging data.
A copy, once done, is never rolled back: a failing cleanup is reported as
``promoted_cleanup_failed`` so only the cleanup has to be retried.
"""

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

import structlog

from promoter.config import PromoterConfig
from promoter.exceptions import (
    ConfigurationError,
    PromotionAbortedError,
    PromotionStateError,
    SanityCheckFailedError,
)
from promoter.job import Job
from promoter.metrics import PromoterMetrics
from promoter.queries import QueryBuilder
from promoter.sanity import SanityChecker
from promoter.table import AnnotatedTable
from promoter.warehouse import (
    JobStatus,
    Warehouse,
    client_errors,
    require_client,
    wait_for_job,
)
from utils.logging import get_logger


class PromotionState(StrEnum):
    """States of a promotion attempt."""

    START = "start"
    DEDUPED = "deduped"
    SANITY_CHECKED = "sanity_checked"
    COPIED = "copied"
    CLEANED_UP = "cleaned_up"
    SKIPPED_EMPTY = "skipped_empty"
    PROMOTED_CLEANUP_FAILED = "promoted_cleanup_failed"
    ABORTED = "aborted"


class PromotionOutcome(StrEnum):
    """Final outcome of a promotion, as reported to callers."""

    CLEANED_UP = "cleaned_up"
    SKIPPED_EMPTY = "skipped_empty"
    PROMOTED_CLEANUP_FAILED = "promoted_cleanup_failed"
    ABORTED = "aborted"


_TRANSITIONS: dict[PromotionState, frozenset[PromotionState]] = {
    PromotionState.START: frozenset({PromotionState.DEDUPED, PromotionState.ABORTED}),
    PromotionState.DEDUPED: frozenset(
        {PromotionState.SANITY_CHECKED, PromotionState.SKIPPED_EMPTY, PromotionState.ABORTED}
    ),
    PromotionState.SANITY_CHECKED: frozenset({PromotionState.COPIED, PromotionState.ABORTED}),
    PromotionState.COPIED: frozenset(
        {PromotionState.CLEANED_UP, PromotionState.PROMOTED_CLEANUP_FAILED}
    ),
}

_TERMINAL_OUTCOMES = {
    PromotionState.CLEANED_UP: PromotionOutcome.CLEANED_UP,
    PromotionState.SKIPPED_EMPTY: PromotionOutcome.SKIPPED_EMPTY,
    PromotionState.PROMOTED_CLEANUP_FAILED: PromotionOutcome.PROMOTED_CLEANUP_FAILED,
    PromotionState.ABORTED: PromotionOutcome.ABORTED,
}


@dataclass
class PromotionResult:
    """Result of a promotion or cleanup-only retry."""

    job: Job
    outcome: PromotionOutcome
    states: list[PromotionState] = field(default_factory=list)
    dedup_affected_rows: Optional[int] = None
    rows_promoted: int = 0
    cleanup_error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        """Whether the archive partition is in its final state."""
        return self.outcome in (PromotionOutcome.CLEANED_UP, PromotionOutcome.SKIPPED_EMPTY)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "job": self.job.key,
            "outcome": self.outcome.value,
            "states": [s.value for s in self.states],
            "dedup_affected_rows": self.dedup_affected_rows,
            "rows_promoted": self.rows_promoted,
            "cleanup_error": self.cleanup_error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class PromotionAttempt:
    """State machine for one attempt at promoting one partition.

    An attempt owns fresh annotated tables, so metadata cached by a previous
    attempt is never reused.
    """

    def __init__(
        self,
        job: Job,
        builder: QueryBuilder,
        warehouse: Warehouse,
        checker: SanityChecker,
        cleanup_method: str = "query",
        metrics: Optional[PromoterMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.job = job
        self.builder = builder
        self.warehouse = warehouse
        self.checker = checker
        self.cleanup_method = cleanup_method
        self.metrics = metrics
        self.logger = (logger or get_logger("sequencer")).bind(job=job.key)
        self.state = PromotionState.START
        self.states: list[PromotionState] = [PromotionState.START]
        self.source = AnnotatedTable(
            builder.staging_partition, warehouse, builder.policy, logger=self.logger
        )
        self.destination = AnnotatedTable(
            builder.archive_partition, warehouse, builder.policy, logger=self.logger
        )
        self._dedup_affected_rows: Optional[int] = None
        self._rows_promoted = 0
        self._started = 0.0

    def _advance(self, new_state: PromotionState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise PromotionStateError(
                f"Invalid transition {self.state} -> {new_state}",
                context={"job": self.job.key},
            )
        self.logger.debug("Promotion state changed", old=self.state.value, new=new_state.value)
        self.state = new_state
        self.states.append(new_state)

    def _abort(self, stage: str, error: Exception) -> PromotionAbortedError:
        self._advance(PromotionState.ABORTED)
        aborted = PromotionAbortedError(stage, self.job.key, error)
        if isinstance(error, SanityCheckFailedError):
            self.logger.error(
                "Sanity check failed, promotion refused",
                stage=stage,
                error=str(error),
                alert=True,
            )
        else:
            self.logger.error(
                "Promotion stage failed",
                stage=stage,
                error=str(error),
                error_type=type(error).__name__,
                retryable=aborted.retryable,
            )
        if self.metrics:
            self.metrics.record_stage_failure(self.job.datatype, stage)
        return aborted

    def _timed(self, stage: str, started: float) -> None:
        if self.metrics:
            self.metrics.record_stage_duration(
                self.job.datatype, stage, time.monotonic() - started
            )

    def _result(self) -> PromotionResult:
        outcome = _TERMINAL_OUTCOMES[self.state]
        if self.metrics:
            self.metrics.record_rows_promoted(self.job.datatype, self._rows_promoted)
        return PromotionResult(
            job=self.job,
            outcome=outcome,
            states=list(self.states),
            dedup_affected_rows=self._dedup_affected_rows,
            rows_promoted=self._rows_promoted,
            duration_seconds=time.monotonic() - self._started,
        )

    async def run(self) -> PromotionResult:
        """Run dedup, sanity check, copy and cleanup.

        Returns:
            Result with outcome CLEANED_UP, SKIPPED_EMPTY or PROMOTED_CLEANUP_FAILED

        Raises:
            PromotionAbortedError: If dedup, sanity check or copy failed
            PromotionStateError: If the attempt was already run
        """
        if self.state != PromotionState.START:
            raise PromotionStateError(
                f"Promotion attempt already in state {self.state}",
                context={"job": self.job.key},
            )
        self._started = time.monotonic()
        self.logger.info("Starting promotion", **self.job.to_dict())

        started = time.monotonic()
        try:
            await self._dedup()
        except Exception as e:
            raise self._abort("dedup", e) from e
        self._timed("dedup", started)
        self._advance(PromotionState.DEDUPED)

        started = time.monotonic()
        try:
            safe = await self.checker.check(self.source, self.destination)
        except Exception as e:
            raise self._abort("sanity", e) from e
        self._timed("sanity", started)
        if not safe:
            self._advance(PromotionState.SKIPPED_EMPTY)
            self.logger.info("Nothing to promote, staging partition is empty")
            return self._result()
        self._advance(PromotionState.SANITY_CHECKED)

        started = time.monotonic()
        try:
            src_meta = await self.source.cached_meta()
            await self.checker.copy(self.source, self.destination)
        except Exception as e:
            raise self._abort("copy", e) from e
        self._timed("copy", started)
        self._rows_promoted = src_meta.num_rows
        self._advance(PromotionState.COPIED)

        started = time.monotonic()
        cleanup_error = await self._cleanup()
        self._timed("cleanup", started)
        if cleanup_error is not None:
            self._advance(PromotionState.PROMOTED_CLEANUP_FAILED)
            if self.metrics:
                self.metrics.record_stage_failure(self.job.datatype, "cleanup")
            result = self._result()
            result.cleanup_error = str(cleanup_error)
            return result

        self._advance(PromotionState.CLEANED_UP)
        result = self._result()
        self.logger.info(
            "Promotion completed",
            rows_promoted=result.rows_promoted,
            dedup_affected_rows=result.dedup_affected_rows,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    async def _dedup(self) -> None:
        sql = self.builder.dedup_query()
        if not sql:
            raise ConfigurationError(
                "Empty dedup query", context={"datatype": self.job.datatype}
            )
        self.logger.info("Running dedup", table=self.builder.staging_table)
        with client_errors("dedup", self.builder.staging_table):
            remote = await self.warehouse.run_query(sql)
        status = await wait_for_job(remote, "dedup", logger=self.logger)
        self._dedup_affected_rows = status.num_dml_affected_rows
        self.logger.info(
            "Dedup completed",
            job_id=remote.job_id,
            deleted_rows=status.num_dml_affected_rows,
        )

    async def _cleanup(self) -> Optional[Exception]:
        """Clear the staging partition. Returns the error instead of raising it."""
        try:
            await clear_staging(self.warehouse, self.builder, self.cleanup_method, self.logger)
        except Exception as e:
            self.logger.error(
                "Cleanup failed after successful copy, staging must be cleared by retry",
                stage="cleanup",
                error=str(e),
                error_type=type(e).__name__,
            )
            return e
        return None


async def clear_staging(
    warehouse: Warehouse,
    builder: QueryBuilder,
    method: str,
    logger: structlog.BoundLogger,
) -> None:
    """Delete the job's partition from the staging table.

    Raises:
        ConfigurationError: If the cleanup method is unknown
        WarehouseError: If the delete fails
    """
    if method == "delete_partition":
        logger.info("Deleting staging partition", table=str(builder.staging_partition))
        with client_errors("cleanup", builder.staging_partition):
            await warehouse.delete_table(builder.staging_partition)
        return
    if method != "query":
        raise ConfigurationError(f"Unknown cleanup method: {method!r}")

    sql = builder.cleanup_query()
    logger.info("Running cleanup", table=str(builder.staging_table))
    with client_errors("cleanup", builder.staging_table):
        remote = await warehouse.run_query(sql)
    status = await wait_for_job(remote, "cleanup", logger=logger)
    logger.info(
        "Cleanup completed", job_id=remote.job_id, deleted_rows=status.num_dml_affected_rows
    )


class PromotionSequencer:
    """Promotes staging partitions into the archive, one job at a time per call.

    Calls for different jobs may run concurrently; they share only the
    warehouse client.
    """

    def __init__(
        self,
        warehouse: Optional[Warehouse],
        config: PromoterConfig,
        metrics: Optional[PromoterMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize sequencer.

        Args:
            warehouse: Warehouse client executing queries, copies and deletes
            config: Promoter configuration
            metrics: Optional metrics recorder
            logger: Optional logger instance

        Raises:
            NilClientError: If warehouse is None
        """
        self.warehouse = require_client(warehouse)
        self.config = config
        self.metrics = metrics
        self.logger = logger or get_logger("sequencer")
        self.checker = SanityChecker(config.sanity, logger=self.logger)

    def builder(self, job: Job) -> QueryBuilder:
        """Query builder for a job.

        Raises:
            DatatypeNotSupportedError: If the job datatype has no policy
        """
        wh = self.config.warehouse
        return QueryBuilder(
            wh.project,
            job,
            staging_prefix=wh.staging_prefix,
            archive_prefix=wh.archive_prefix,
        )

    def dedup_query_text(self, job: Job) -> str:
        """Dedup SQL for a job, for inspection and logging."""
        return self.builder(job).dedup_query()

    def cleanup_query_text(self, job: Job) -> str:
        """Cleanup SQL for a job, for inspection and logging."""
        return self.builder(job).cleanup_query()

    async def promote(self, job: Job) -> PromotionResult:
        """Dedup, check, copy and clean up one partition.

        Raises:
            DatatypeNotSupportedError: If the job datatype has no policy
            PromotionAbortedError: If dedup, sanity check or copy failed
        """
        attempt = PromotionAttempt(
            job,
            self.builder(job),
            self.warehouse,
            self.checker,
            cleanup_method=self.config.warehouse.cleanup_method,
            metrics=self.metrics,
            logger=self.logger,
        )
        return await attempt.run()

    async def cleanup(self, job: Job) -> PromotionResult:
        """Retry only the cleanup of a partition whose copy already succeeded.

        Returns:
            Result with outcome CLEANED_UP or PROMOTED_CLEANUP_FAILED
        """
        started = time.monotonic()
        logger = self.logger.bind(job=job.key)
        builder = self.builder(job)
        outcome = PromotionOutcome.CLEANED_UP
        cleanup_error: Optional[str] = None
        try:
            await clear_staging(
                self.warehouse, builder, self.config.warehouse.cleanup_method, logger
            )
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error("Cleanup retry failed", stage="cleanup", error=str(e))
            outcome = PromotionOutcome.PROMOTED_CLEANUP_FAILED
            cleanup_error = str(e)
            if self.metrics:
                self.metrics.record_stage_failure(job.datatype, "cleanup")

        state = (
            PromotionState.CLEANED_UP
            if outcome == PromotionOutcome.CLEANED_UP
            else PromotionState.PROMOTED_CLEANUP_FAILED
        )
        return PromotionResult(
            job=job,
            outcome=outcome,
            states=[PromotionState.COPIED, state],
            cleanup_error=cleanup_error,
            duration_seconds=time.monotonic() - started,
        )

    async def dry_run_dedup(self, job: Job) -> JobStatus:
        """Validate and cost the dedup query without modifying data.

        Raises:
            JobFailedError: If the warehouse rejects the query
            WarehouseError: If the warehouse client fails
        """
        sql = self.dedup_query_text(job)
        with client_errors("dedup dry run"):
            remote = await self.warehouse.run_query(sql, dry_run=True)
        status = await wait_for_job(remote, "dedup dry run", logger=self.logger)
        self.logger.info(
            "Dedup dry run completed",
            job=job.key,
            bytes_processed=status.total_bytes_processed,
        )
        return status
