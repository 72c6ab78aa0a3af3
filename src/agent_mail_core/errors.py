"""Typed errors raised by coordination operations.

Every error carries a stable ``error_type`` plus structured ``data`` naming the
recipient, path or agent that caused the rejection, so a caller can correct
itself (for example by running the contact request handshake).
"""

from __future__ import annotations

from typing import Any, ClassVar, Optional


class CoordinationError(Exception):
    error_type: ClassVar[str] = "COORDINATION_ERROR"

    def __init__(self, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class NotFound(CoordinationError):
    """Project, agent, message or reservation does not exist."""

    error_type = "NOT_FOUND"


class NotOwner(CoordinationError):
    """A reservation was mutated by an agent that does not hold it."""

    error_type = "NOT_OWNER"


class ValidationError(CoordinationError):
    error_type = "INVALID_ARGUMENT"


class LockTimeout(CoordinationError):
    """Archive or commit lock not acquired within its deadline."""

    error_type = "ARCHIVE_LOCK_TIMEOUT"

    def __init__(self, message: str, *, lock_path: str, timeout_seconds: float):
        super().__init__(message, data={"lock_path": lock_path, "timeout_seconds": timeout_seconds})
        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds


class ReservationConflict(CoordinationError):
    error_type = "FILE_RESERVATION_CONFLICT"

    def __init__(self, message: str, *, conflicts: list[dict[str, Any]]):
        super().__init__(message, data={"conflicts": conflicts})
        self.conflicts = conflicts

    @property
    def holders(self) -> list[str]:
        return sorted({str(item["agent"]) for item in self.conflicts})


class ContactRequired(CoordinationError):
    """Recipient's policy requires an approved contact link first."""

    error_type = "CONTACT_REQUIRED"


class ContactBlocked(CoordinationError):
    error_type = "CONTACT_BLOCKED"


class ArchiveWriteDegraded(CoordinationError):
    """The index committed but the archive mirror failed after all retries."""

    error_type = "ARCHIVE_WRITE_DEGRADED"
