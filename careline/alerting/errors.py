"""
Error taxonomy for the alerting pipeline.

Every error carries a machine-readable ``kind`` and a human-readable
message.  The HTTP layer maps kinds to status codes; background loops
log them.
"""

from __future__ import annotations

from typing import Any


class CareLineError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details is not None:
            out["details"] = self.details
        return out


class ValidationError(CareLineError):
    """Malformed or out-of-domain input.  Raised before any state mutation."""

    kind = "validation_error"


class NotFoundError(CareLineError):
    """Unknown patient or case reference."""

    kind = "not_found"


class UnknownPatientError(NotFoundError, ValidationError):
    """A patient reference that the registry does not know."""

    kind = "not_found"


class StateConflictError(CareLineError):
    """Operation is invalid for the case's current lifecycle state."""

    kind = "state_conflict"


class SchedulingError(CareLineError):
    """The escalation substrate could not arm a timer."""

    kind = "scheduling_error"


class CaseConcurrencyError(CareLineError):
    """A persisted case was modified by another process since it was loaded."""

    kind = "state_conflict"


class StorageError(CareLineError):
    """The case store could not read or write a case."""

    kind = "storage_error"
