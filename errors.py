"""
Bridge Error Taxonomy
Exceptions raised by the queue, the executor and the platform adapters
"""

from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Base class for all bridge errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({ctx})"


class NotFoundError(BridgeError):
    """Referenced queue entry, watermark or entity does not exist"""


class InvalidStateError(BridgeError):
    """State transition attempted from a status that does not permit it"""

    def __init__(self, message: str, current_status: Optional[str] = None,
                 attempted: Optional[str] = None):
        context = {}
        if current_status:
            context["current_status"] = current_status
        if attempted:
            context["attempted"] = attempted
        super().__init__(message, context)
        self.current_status = current_status
        self.attempted = attempted


class ValidationError(BridgeError):
    """A field required by a transition is missing or blank"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


# --- External system errors ---

class ExternalError(BridgeError):
    """Source or target system call failed"""

    retryable = True
    failure_kind = "transient"

    def __init__(self, message: str, status_code: Optional[int] = None,
                 context: Optional[Dict[str, Any]] = None):
        ctx = dict(context or {})
        if status_code is not None:
            ctx["status_code"] = status_code
        super().__init__(message, ctx)
        self.status_code = status_code


class TransientExternalError(ExternalError):
    """Timeout, 5xx or connection failure; retried with backoff"""


class RateLimitError(TransientExternalError):
    """Target system answered 429"""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class CounterpartyNotFoundError(TransientExternalError):
    """The customer an invoice refers to does not exist in the target system.

    Retryable, but it needs a data fix rather than patience, so it is
    recorded with its own failure kind.
    """

    failure_kind = "counterparty_missing"


class PermanentExternalError(ExternalError):
    """Malformed request or other non-recoverable rejection"""

    retryable = False
    failure_kind = "permanent"


class AuthenticationError(PermanentExternalError):
    """Credential rejected (401/403)"""
