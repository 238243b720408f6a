"""
Error Taxonomy

Every failure the sync engine can raise derives from SellerOpsError. The
categories map onto how callers react:

- Transient vendor errors (429, 5xx, network) are retried by the job queue.
- Report failures (CANCELLED/FATAL) are never retried for the same report id.
- State conflicts surface to the caller as hard errors.
- Configuration errors fail before any network or database work.
"""

from typing import Any, Optional


class SellerOpsError(Exception):
    """Base class for all application errors"""


class ConfigurationError(SellerOpsError):
    """Missing or invalid configuration (credentials, ids, warehouse)"""


class NotFoundError(SellerOpsError):
    """A referenced entity does not exist"""


# =============================================================================
# VENDOR API
# =============================================================================

class VendorApiError(SellerOpsError):
    """Non-success response from the vendor API"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientVendorError(VendorApiError):
    """Retryable vendor failure"""


class RateLimitedError(TransientVendorError):
    """HTTP 429 / QuotaExceeded"""

    def __init__(self, message: str, retry_after: Optional[float] = None, body: str = ""):
        super().__init__(message, status_code=429, body=body)
        self.retry_after = retry_after


class VendorServerError(TransientVendorError):
    """HTTP 5xx from the vendor"""


class VendorUnavailableError(TransientVendorError):
    """Timeout or connection failure before a response arrived"""


class TokenExpiredError(VendorApiError):
    """A pagination token or access token expired mid-iteration"""


class DuplicateReportError(VendorApiError):
    """HTTP 425: an identical report request is already in progress"""

    def __init__(self, message: str, existing_report_id: Optional[str], body: str = ""):
        super().__init__(message, status_code=425, body=body)
        self.existing_report_id = existing_report_id


# =============================================================================
# REPORT LIFECYCLE
# =============================================================================

class ReportFailedError(SellerOpsError):
    """Report reached CANCELLED or FATAL; request a fresh report instead"""

    def __init__(self, report_id: str, status: str, failure_reason: Optional[str] = None):
        super().__init__(f"Report {report_id} ended with status {status}")
        self.report_id = report_id
        self.status = status
        self.failure_reason = failure_reason


class ReportTimeoutError(SellerOpsError):
    """Report still processing after the poll budget; resumable later"""

    def __init__(self, report_id: str, attempts: int):
        super().__init__(f"Report {report_id} not ready after {attempts} polls")
        self.report_id = report_id
        self.attempts = attempts


# =============================================================================
# STATE
# =============================================================================

class InvalidTransitionError(SellerOpsError):
    """A state machine was asked to make an illegal move"""

    def __init__(self, entity: str, current: Any, target: Any):
        super().__init__(f"{entity} cannot move from {_value(current)} to {_value(target)}")
        self.entity = entity
        self.current = current
        self.target = target


class StateConflictError(SellerOpsError):
    """Operation rejected because the entity is already in another state"""

    def __init__(self, message: str, current_state: Any = None, details: Optional[dict] = None):
        super().__init__(message)
        self.current_state = current_state
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "current_state": _value(self.current_state),
            **self.details,
        }


class SyncCancelledError(SellerOpsError):
    """Cooperative cancellation observed"""


def _value(state: Any) -> Any:
    return getattr(state, "value", state)


def is_retryable(exc: BaseException) -> bool:
    """Whether the job queue should re-queue a job that raised ``exc``."""
    if isinstance(exc, (ConfigurationError, StateConflictError, InvalidTransitionError, SyncCancelledError, NotFoundError)):
        return False
    if isinstance(exc, (TransientVendorError, ReportTimeoutError, TokenExpiredError)):
        return True
    if isinstance(exc, VendorApiError):
        return False
    # Unknown failures (database hiccups, bugs) get the bounded retry budget
    return True
