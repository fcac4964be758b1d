"""Prometheus metrics for promotion runs."""

from typing import Optional

import structlog
from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    write_to_textfile,
)

from utils.logging import get_logger


class PromoterMetrics:
    """Prometheus metrics for the promoter.

    Metrics are only recorded in-process; exposing them is up to the caller.
    """

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (defaults to global REGISTRY)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or REGISTRY

        self.promotions_total = Counter(
            "promoter_promotions_total",
            "Total number of promotions by final outcome",
            ["datatype", "outcome"],  # cleaned_up, skipped_empty, promoted_cleanup_failed, aborted
            registry=self.registry,
        )

        self.stage_failures_total = Counter(
            "promoter_stage_failures_total",
            "Total number of failed promotion stages",
            ["datatype", "stage"],
            registry=self.registry,
        )

        self.rows_promoted_total = Counter(
            "promoter_rows_promoted_total",
            "Total number of rows copied into archive partitions",
            ["datatype"],
            registry=self.registry,
        )

        self.stage_duration_seconds = Histogram(
            "promoter_stage_duration_seconds",
            "Duration of promotion stages in seconds",
            ["datatype", "stage"],
            buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0],
            registry=self.registry,
        )

    def record_outcome(self, datatype: str, outcome: str) -> None:
        """Record the final outcome of a promotion, once per job."""
        self.promotions_total.labels(datatype=datatype, outcome=outcome).inc()

    def record_stage_failure(self, datatype: str, stage: str) -> None:
        """Record a failed stage."""
        self.stage_failures_total.labels(datatype=datatype, stage=stage).inc()

    def record_rows_promoted(self, datatype: str, count: int) -> None:
        """Record rows copied into the archive."""
        if count > 0:
            self.rows_promoted_total.labels(datatype=datatype).inc(count)

    def record_stage_duration(self, datatype: str, stage: str, duration: float) -> None:
        """Record how long a stage took, in seconds."""
        self.stage_duration_seconds.labels(datatype=datatype, stage=stage).observe(duration)

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self.registry)

    def write_textfile(self, path: str) -> None:
        """Write metrics for the node exporter textfile collector."""
        write_to_textfile(path, self.registry)
        self.logger.debug("Metrics written", path=path)
