"""Exception taxonomy for payment synchronization"""
from typing import Any, Optional


class PaySyncError(RuntimeError):
    """Base class for domain errors raised by paysync services"""


class ConflictError(PaySyncError):
    """An operation's precondition does not hold.

    ``code`` is a stable reason code callers (and the API layer) branch on;
    conflicts are never retried automatically.
    """

    ATTEMPT_IN_PROGRESS = "attempt_in_progress"
    CREDENTIALS_MISSING = "credentials_missing"
    ORDER_NOT_CLOSED = "order_not_closed"
    ORDER_TOTAL_INVALID = "order_total_invalid"
    ORDER_NOT_FOUND = "order_not_found"
    ATTEMPT_NOT_FOUND = "attempt_not_found"
    REFUND_NOT_ALLOWED = "refund_not_allowed"

    def __init__(self, code: str, message: str, **details: Any):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    @property
    def http_status(self) -> int:
        if self.code == self.CREDENTIALS_MISSING:
            return 412
        if self.code.endswith("_not_found"):
            return 404
        return 409


class ProviderAPIError(PaySyncError):
    """Non-2xx response from the payment provider"""

    def __init__(self, status_code: int, message: str, payload: Optional[Any] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload


class CredentialDecryptError(PaySyncError):
    """A stored provider token could not be decrypted with the configured key"""
