"""
Error Taxonomy
==============
Structured errors surfaced by the approval core.
"""

from typing import Optional, Dict, Any


class ApprovalError(Exception):
    """Base class for expected, structured failures."""

    code = "error"
    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            body.update(self.details)
        return body


class Forbidden(ApprovalError):
    """Actor is not allowed to perform the mutation."""
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class InvalidTransition(ApprovalError):
    """Requested state change is not in the transition table."""
    code = "invalid_transition"
    status_code = 400
    default_message = "Invalid transition"


class VersionConflict(ApprovalError):
    """Optimistic version check failed."""
    code = "version_conflict"
    status_code = 409
    default_message = "Record changed, please refresh"


class InvalidRequest(ApprovalError):
    """Request is well-formed but not applicable to the caller."""
    code = "invalid_request"
    status_code = 400
    default_message = "Invalid request"


class InvalidCredentials(ApprovalError):
    """Primary credential check failed."""
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid email or password"


class NotFound(ApprovalError):
    """Missing, or not visible to the caller."""
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class RateLimited(ApprovalError):
    """Caller must wait before retrying."""
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: Optional[str] = None, retry_after: int = 60, **details: Any):
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, retry_after_seconds=self.retry_after, **details)


class AccountLocked(RateLimited):
    """Login identity is inside a lockout window."""
    code = "account_locked"
    status_code = 423
    default_message = "Account locked"


class UpstreamFailure(ApprovalError):
    """A collaborator (datastore, notifier) failed."""
    code = "upstream_failure"
    status_code = 502
    default_message = "Upstream service failed"
