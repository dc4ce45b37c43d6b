"""Exception hierarchy for fleet drift scanning."""

from typing import Optional


class FleetDriftError(Exception):
    """Base exception for all fleet drift errors."""
    pass


class RateLimitExceeded(FleetDriftError):
    """Raised when the hosting API signals that the rate limit is exhausted."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ClassificationError(FleetDriftError):
    """Repository metadata lookup failed; the repository is retried next run."""
    pass


class DetectorError(FleetDriftError):
    """Repository content could not be interpreted by a detector."""
    pass


class ReconciliationError(FleetDriftError):
    """A write to the issue tracker failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def reason(self) -> str:
        """Short failure reason, named after the underlying error type."""
        if self.cause is not None:
            return type(self.cause).__name__
        return type(self).__name__


class FatalConfigurationError(FleetDriftError):
    """The run cannot start at all (bad configuration, organizations not listable)."""
    pass
