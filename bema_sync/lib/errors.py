"""
Error taxonomy for the sync engine.

Every error carries a ``retryable`` flag and a free-form ``context`` dict so
callers can decide between retrying, aborting, and skipping without
inspecting messages:

- transient (API timeouts, rate limits, 5xx, deadlocks): retryable
- resource exhaustion (memory, failure rate): abort the run, no retry
- validation (campaign codes, groups, batch input): fail fast
"""
from typing import Any, Dict, Iterable, Optional


RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class SyncError(Exception):
    """Base class for all sync engine errors."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.retryable = retryable
        self.context = context or {}
        super().__init__(message)


class ApiError(SyncError):
    """A call to an external provider failed."""

    def __init__(
        self,
        message: str,
        endpoint: str = "",
        method: str = "GET",
        status_code: int = 0,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.endpoint = endpoint
        self.method = method
        self.status_code = status_code
        # status_code 0 means the request never got a response (timeout, connection reset)
        retryable = status_code == 0 or status_code in RETRYABLE_STATUS_CODES or status_code >= 500
        super().__init__(
            message,
            retryable=retryable,
            context={"endpoint": endpoint, "method": method, "status_code": status_code, **(context or {})},
        )


class DatabaseError(SyncError):
    """A local persistence operation failed."""

    def __init__(self, message: str, is_deadlock: bool = False, context: Optional[Dict[str, Any]] = None):
        self.is_deadlock = is_deadlock
        super().__init__(message, retryable=is_deadlock, context=context)


class ValidationError(SyncError):
    """Input rejected before any work was done."""


class InvalidCampaignFormat(ValidationError):
    """Campaign code is not YEAR_ARTIST_CAMPAIGN."""

    def __init__(self, name: str):
        super().__init__(
            f"Invalid campaign format '{name}', expected YEAR_ARTIST_CAMPAIGN",
            context={"campaign": name},
        )


class MissingRequiredGroups(ValidationError):
    def __init__(self, campaign: str, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(
            f"Campaign {campaign} is missing required groups: {', '.join(self.missing)}",
            context={"campaign": campaign, "missing": self.missing},
        )


class EmptyBatch(ValidationError):
    def __init__(self):
        super().__init__("Batch processing called with no items")


class InvalidFrequency(ValidationError):
    def __init__(self, frequency: str):
        super().__init__(f"Unsupported sync frequency '{frequency}'", context={"frequency": frequency})


class CampaignNotFound(SyncError):
    def __init__(self, campaign: str):
        self.campaign = campaign
        super().__init__(f"Campaign '{campaign}' not found", context={"campaign": campaign})


class BatchError(SyncError):
    """
    A batch run aborted. ``results`` holds the counters accumulated up to the
    abort so callers can still report partial progress.
    """

    def __init__(self, message: str, results: Optional[Dict[str, Any]] = None, context: Optional[Dict[str, Any]] = None):
        self.results = results or {}
        super().__init__(message, retryable=False, context=context)


class BatchFailedAfterRetries(BatchError):
    pass


class MemoryThresholdExceeded(BatchError):
    pass


class FailureRateExceeded(BatchError):
    pass


class SyncStopped(BatchError):
    """The cooperative stop signal was observed at a chunk boundary."""
