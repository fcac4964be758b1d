"""Unit tests for exception hierarchy."""

import pytest

from promoter.exceptions import (
    ConfigurationError,
    DatatypeNotSupportedError,
    JobFailedError,
    MetadataUnavailableError,
    MismatchedPartitionsError,
    PromoterError,
    PromotionAbortedError,
    SanityCheckFailedError,
    TableNotFoundError,
    TooFewRecordsError,
    TooFewSourceFilesError,
    WarehouseError,
)


def test_promoter_error_basic() -> None:
    """Test basic PromoterError."""
    error = PromoterError("Test error")
    assert str(error) == "Test error"
    assert error.message == "Test error"
    assert error.correlation_id is None
    assert error.context == {}


def test_promoter_error_with_correlation_id_and_context() -> None:
    """Test PromoterError with correlation ID and context."""
    error = PromoterError("Test error", correlation_id="abc-123", context={"table": "t"})
    assert "correlation_id=abc-123" in str(error)
    assert "context={'table': 't'}" in str(error)


@pytest.mark.parametrize(
    "error_class, parent",
    [
        (DatatypeNotSupportedError, ConfigurationError),
        (MismatchedPartitionsError, SanityCheckFailedError),
        (TooFewRecordsError, SanityCheckFailedError),
        (TooFewSourceFilesError, SanityCheckFailedError),
        (TableNotFoundError, WarehouseError),
        (JobFailedError, WarehouseError),
        (WarehouseError, PromoterError),
    ],
)
def test_hierarchy(error_class: type, parent: type) -> None:
    """Test exception inheritance."""
    assert issubclass(error_class, parent)


def test_promotion_aborted_error() -> None:
    """Test aborted promotion carries stage, job and cause."""
    cause = JobFailedError("dedup job failed")
    error = PromotionAbortedError("dedup", "bucket/ndt/ndt7/2019-03-04", cause)
    assert error.stage == "dedup"
    assert error.job_key == "bucket/ndt/ndt7/2019-03-04"
    assert error.cause is cause
    assert error.context == {"job": "bucket/ndt/ndt7/2019-03-04", "stage": "dedup"}
    assert "aborted at dedup" in str(error)


@pytest.mark.parametrize(
    "cause, retryable",
    [
        (JobFailedError("x"), True),
        (MetadataUnavailableError("x"), True),
        (TableNotFoundError("x"), True),
        (TooFewRecordsError("x"), False),
        (MismatchedPartitionsError("x"), False),
        (ConfigurationError("x"), False),
        (ValueError("x"), False),
    ],
)
def test_promotion_aborted_error_retryable(cause: Exception, retryable: bool) -> None:
    """Test which causes make a promotion worth retrying."""
    assert PromotionAbortedError("copy", "job", cause).retryable is retryable
