"""Unit tests for Prometheus metrics."""

import pytest
from prometheus_client import CollectorRegistry

from promoter.metrics import PromoterMetrics


@pytest.fixture
def registry() -> CollectorRegistry:
    """Fresh registry per test."""
    return CollectorRegistry()


class TestPromoterMetrics:
    """Tests for PromoterMetrics class."""

    def test_record_outcome(self, registry: CollectorRegistry) -> None:
        """Test outcomes are counted per datatype."""
        metrics = PromoterMetrics(registry=registry)
        metrics.record_outcome("ndt7", "cleaned_up")
        metrics.record_outcome("ndt7", "cleaned_up")
        metrics.record_outcome("tcpinfo", "aborted")

        assert (
            registry.get_sample_value(
                "promoter_promotions_total", {"datatype": "ndt7", "outcome": "cleaned_up"}
            )
            == 2
        )
        assert (
            registry.get_sample_value(
                "promoter_promotions_total", {"datatype": "tcpinfo", "outcome": "aborted"}
            )
            == 1
        )

    def test_record_stage_failure(self, registry: CollectorRegistry) -> None:
        """Test failed stages are counted."""
        metrics = PromoterMetrics(registry=registry)
        metrics.record_stage_failure("ndt7", "copy")
        assert (
            registry.get_sample_value(
                "promoter_stage_failures_total", {"datatype": "ndt7", "stage": "copy"}
            )
            == 1
        )

    def test_record_rows_promoted_ignores_zero(self, registry: CollectorRegistry) -> None:
        """Test empty promotions do not create samples."""
        metrics = PromoterMetrics(registry=registry)
        metrics.record_rows_promoted("ndt7", 0)
        sample = registry.get_sample_value("promoter_rows_promoted_total", {"datatype": "ndt7"})
        assert sample is None

        metrics.record_rows_promoted("ndt7", 42)
        assert registry.get_sample_value("promoter_rows_promoted_total", {"datatype": "ndt7"}) == 42

    def test_record_stage_duration(self, registry: CollectorRegistry) -> None:
        """Test stage durations are observed."""
        metrics = PromoterMetrics(registry=registry)
        metrics.record_stage_duration("ndt7", "dedup", 3.5)
        assert (
            registry.get_sample_value(
                "promoter_stage_duration_seconds_count", {"datatype": "ndt7", "stage": "dedup"}
            )
            == 1
        )
        assert (
            registry.get_sample_value(
                "promoter_stage_duration_seconds_sum", {"datatype": "ndt7", "stage": "dedup"}
            )
            == 3.5
        )

    def test_get_metrics(self, registry: CollectorRegistry) -> None:
        """Test exposition output."""
        metrics = PromoterMetrics(registry=registry)
        metrics.record_outcome("ndt7", "skipped_empty")
        output = metrics.get_metrics()
        assert b"promoter_promotions_total" in output

    def test_write_textfile(self, registry: CollectorRegistry, tmp_path) -> None:
        """Test metrics can be written for the textfile collector."""
        metrics = PromoterMetrics(registry=registry)
        metrics.record_rows_promoted("ndt7", 10)
        path = tmp_path / "promoter.prom"

        metrics.write_textfile(str(path))

        assert 'promoter_rows_promoted_total{datatype="ndt7"} 10.0' in path.read_text()
