"""
Failure taxonomy shared by the store, the downstream clients and the flows.

Transient   - network/timeout/5xx; retried by the backoff executor
Rejected    - business-rule violation; shown to the user verbatim, never retried
NotFound    - no matching record; shown as a neutral "not found"
Conflict    - optimistic write lost a race on the session row
Fatal       - store unreachable or configuration missing
"""
import enum
from typing import Optional


class CarebotError(Exception):
    """Base class. `attempts` is filled in by the retry executor."""

    def __init__(self, message: str = "", *, attempts: int = 0):
        super().__init__(message)
        self.message = message
        self.attempts = attempts


class TransientError(CarebotError):
    pass


class RetryExhaustedError(TransientError):
    def __init__(self, message: str, *, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message, attempts=attempts)
        self.last_error = last_error


class RejectedError(CarebotError):
    pass


class NotFoundError(CarebotError):
    pass


class ConflictError(CarebotError):
    pass


class FatalError(CarebotError):
    pass


class TokenExpiredError(RejectedError):
    """A token track is past its hard expiry and could not be refreshed."""


class CodeRejection(str, enum.Enum):
    INVALID_FORMAT = "invalid_format"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    SUPERSEDED = "superseded"


class CodeRejected(RejectedError):
    def __init__(self, reason: CodeRejection, message: str = ""):
        super().__init__(message or f"One-time code rejected: {reason.value}")
        self.reason = reason
