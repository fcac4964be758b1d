"""Caller-side scheduling of promotions: concurrency, retries and statistics."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import structlog

from promoter.config import RetrySettings, RunnerConfig
from promoter.exceptions import PromoterError, PromotionAbortedError
from promoter.job import Job
from promoter.sequencer import PromotionOutcome, PromotionResult, PromotionSequencer
from utils.logging import get_logger
from utils.retry import RetryConfig, retry_async


class _CleanupPending(Exception):
    """Internal signal that a cleanup retry is still needed."""

    def __init__(self, result: PromotionResult) -> None:
        super().__init__(result.cleanup_error or "cleanup failed")
        self.result = result


class PromotionRunner:
    """Runs promotions for a set of jobs.

    Transient failures restart the whole promotion, which is safe because
    dedup is idempotent. After a committed copy, only the cleanup is retried.
    Sanity check failures are never retried.
    """

    def __init__(
        self,
        sequencer: PromotionSequencer,
        retry: Optional[RetrySettings] = None,
        runner: Optional[RunnerConfig] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize runner.

        Args:
            sequencer: Sequencer performing the promotions
            retry: Retry settings (defaults if None)
            runner: Runner settings (defaults if None)
            logger: Optional logger instance
        """
        self.sequencer = sequencer
        self.retry = retry or RetrySettings()
        self.runner = runner or RunnerConfig()
        self.logger = logger or get_logger("runner")

    def _retry_config(self, max_attempts: int) -> RetryConfig:
        return RetryConfig(
            max_attempts=max_attempts,
            initial_delay=self.retry.initial_delay,
            max_delay=self.retry.max_delay,
            retryable_exceptions=(PromotionAbortedError,),
            should_retry=lambda e: isinstance(e, PromotionAbortedError) and e.retryable,
        )

    async def _cleanup_until_done(self, job: Job) -> PromotionResult:
        async def attempt() -> PromotionResult:
            result = await self.sequencer.cleanup(job)
            if result.outcome == PromotionOutcome.PROMOTED_CLEANUP_FAILED:
                raise _CleanupPending(result)
            return result

        config = RetryConfig(
            max_attempts=self.retry.cleanup_attempts,
            initial_delay=self.retry.initial_delay,
            max_delay=self.retry.max_delay,
            retryable_exceptions=(_CleanupPending,),
        )
        try:
            return await retry_async(attempt, config=config, logger=self.logger)
        except _CleanupPending as pending:
            return pending.result

    def _record_outcome(self, job: Job, outcome: PromotionOutcome) -> None:
        if self.sequencer.metrics:
            self.sequencer.metrics.record_outcome(job.datatype, outcome)

    async def run_job(self, job: Job) -> PromotionResult:
        """Promote one job with retries.

        The final outcome is recorded once per job, after all retries.

        Raises:
            PromotionAbortedError: If the promotion failed and retries are exhausted
            PromoterError: For configuration errors such as unsupported datatypes
        """
        try:
            result: PromotionResult = await retry_async(
                self.sequencer.promote,
                job,
                config=self._retry_config(self.retry.max_attempts),
                logger=self.logger.bind(job=job.key),
            )
        except PromoterError:
            self._record_outcome(job, PromotionOutcome.ABORTED)
            raise
        if result.outcome == PromotionOutcome.PROMOTED_CLEANUP_FAILED:
            self.logger.warning("Retrying cleanup only", job=job.key)
            cleanup = await self._cleanup_until_done(job)
            result.outcome = cleanup.outcome
            result.cleanup_error = cleanup.cleanup_error
            result.states.extend(cleanup.states[1:])
        self._record_outcome(job, result.outcome)
        return result

    async def run(self, jobs: Iterable[Job]) -> dict[str, Any]:
        """Promote all jobs, at most ``max_parallel_partitions`` at a time.

        Returns:
            Dictionary with run statistics and per-job results
        """
        jobs = list(jobs)
        stats: dict[str, Any] = {
            "jobs_total": len(jobs),
            PromotionOutcome.CLEANED_UP.value: 0,
            PromotionOutcome.SKIPPED_EMPTY.value: 0,
            PromotionOutcome.PROMOTED_CLEANUP_FAILED.value: 0,
            PromotionOutcome.ABORTED.value: 0,
            "rows_promoted": 0,
            "start_time": datetime.now(timezone.utc).isoformat(),
            "results": [],
        }
        semaphore = asyncio.Semaphore(self.runner.max_parallel_partitions)

        async def run_with_semaphore(job: Job) -> dict[str, Any]:
            async with semaphore:
                try:
                    result = await self.run_job(job)
                except PromotionAbortedError as e:
                    return {
                        "job": job.key,
                        "outcome": PromotionOutcome.ABORTED.value,
                        "stage": e.stage,
                        "error": str(e.cause),
                        "retryable": e.retryable,
                    }
                except PromoterError as e:
                    self.logger.error("Promotion could not start", job=job.key, error=str(e))
                    return {
                        "job": job.key,
                        "outcome": PromotionOutcome.ABORTED.value,
                        "stage": "setup",
                        "error": str(e),
                        "retryable": False,
                    }
                return result.to_dict()

        self.logger.info(
            "Starting promotion run",
            jobs=len(jobs),
            max_parallel=self.runner.max_parallel_partitions,
        )
        results = await asyncio.gather(*(run_with_semaphore(job) for job in jobs))

        for entry in results:
            stats[entry["outcome"]] += 1
            stats["rows_promoted"] += entry.get("rows_promoted", 0)
            stats["results"].append(entry)
        stats["end_time"] = datetime.now(timezone.utc).isoformat()

        self.logger.info(
            "Promotion run completed",
            **{k: v for k, v in stats.items() if k != "results"},
        )
        return stats

