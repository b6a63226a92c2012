"""
Entitlement engine error hierarchy.

Provides:
- EntitlementError: base for all engine failures
- SnapshotDecodeError: persisted snapshot is unreadable (recovered as empty store)
- RemoteAuthorityError: remote status call gave no authoritative answer
- AdminOverrideError: invalid or unauthorized admin override change

None of these escape resolve(); they are either recovered locally or raised
from the privileged admin surface.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement engine failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SnapshotDecodeError(EntitlementError):
    """Raised when a persisted snapshot cannot be parsed."""

    def __init__(self, message: str):
        self.error_code = "SNAPSHOT_DECODE_FAILED"
        super().__init__(message)


class RemoteAuthorityError(EntitlementError):
    """
    Raised inside the remote client when the status call is non-authoritative.

    Carries the HTTP status (None for transport failures) and the server's
    error code when the body supplied one.
    """

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        self.http_status = http_status
        self.error_code = error_code or "REMOTE_STATUS_UNAVAILABLE"
        super().__init__(message)


class AdminOverrideError(EntitlementError):
    """Raised when an admin override change is invalid or not allowed."""

    def __init__(self, message: str, error_code: str = "ADMIN_OVERRIDE_REJECTED"):
        self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}
