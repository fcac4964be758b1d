"""Custom exception hierarchy for the promoter."""

from typing import Any, Optional


class PromoterError(Exception):
    """Base exception for all promoter errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize promoter error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID for tracing
            context: Optional context dictionary with additional details
        """
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message."""
        parts = [self.message]
        if self.correlation_id:
            parts.append(f"[correlation_id={self.correlation_id}]")
        if self.context:
            parts.append(f"[context={self.context}]")
        return " ".join(parts)


class ConfigurationError(PromoterError):
    """Configuration-related errors."""

    pass


class DatatypeNotSupportedError(ConfigurationError):
    """Raised when no policy is registered for a datatype."""

    pass


class InvalidPartitionNameError(PromoterError):
    """Raised for malformed table or partition names."""

    pass


class NilClientError(PromoterError):
    """Raised when an operation needs a warehouse client and none was given."""

    pass


class MetadataUnavailableError(PromoterError):
    """Transient failure fetching table metadata or detail."""

    pass


class SanityCheckFailedError(PromoterError):
    """Source and destination comparison judged the promotion unsafe."""

    pass


class MismatchedPartitionsError(SanityCheckFailedError):
    """Source and destination refer to different partition dates."""

    pass


class TooFewRecordsError(SanityCheckFailedError):
    """Source has fewer records than the destination allows."""

    pass


class TooFewSourceFilesError(SanityCheckFailedError):
    """Source has fewer source files than the destination allows."""

    pass


class SourceOlderThanDestinationError(SanityCheckFailedError):
    """Source was last modified before the destination."""

    pass


class WarehouseError(PromoterError):
    """Warehouse-related errors."""

    pass


class TableNotFoundError(WarehouseError):
    """Table or partition does not exist."""

    pass


class JobFailedError(WarehouseError):
    """A remote query, copy or delete job finished with an error."""

    pass


class PromotionStateError(PromoterError):
    """Invalid state transition in a promotion attempt."""

    pass


class PromotionAbortedError(PromoterError):
    """A promotion stage failed and the sequence was aborted."""

    RETRYABLE_CAUSES: tuple[type[Exception], ...] = (MetadataUnavailableError, WarehouseError)

    def __init__(
        self,
        stage: str,
        job_key: str,
        cause: Exception,
        *,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Initialize aborted promotion error.

        Args:
            stage: Name of the stage that failed (dedup, sanity, copy)
            job_key: Identity of the job being promoted
            cause: Underlying exception
            correlation_id: Optional correlation ID for tracing
        """
        super().__init__(
            f"Promotion of {job_key} aborted at {stage}: {cause}",
            correlation_id=correlation_id,
            context={"job": job_key, "stage": stage},
        )
        self.stage = stage
        self.job_key = job_key
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """Whether rerunning the whole promotion may succeed."""
        if isinstance(self.cause, (SanityCheckFailedError, ConfigurationError)):
            return False
        return isinstance(self.cause, self.RETRYABLE_CAUSES)
