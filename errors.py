"""Error taxonomy shared by the allocator, the copy state machine, the borrow
scheduler and the persistence layer.

Every error carries enough context (offending field, conflicting value and the
bound that was violated) for the API and CLI to render a specific message.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CirculationError(Exception):
    """Base class for every error raised by the circulation core."""

    kind = "circulation_error"

    def __init__(self, message: str, *, field: Optional[str] = None, value: Any = None,
                 bound: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value
        self.bound = bound

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.field is not None:
            payload["field"] = self.field
        if self.value is not None:
            payload["value"] = str(self.value)
        if self.bound is not None:
            payload["bound"] = str(self.bound)
        return payload


class ValidationError(CirculationError, ValueError):
    kind = "validation_error"


class FormatError(ValidationError):
    """Accession number is not exactly 7 digits."""

    kind = "format_error"


class DuplicateError(CirculationError, ValueError):
    """Accession number collides with an existing or concurrently allocated one."""

    kind = "duplicate_error"


class CapacityError(CirculationError):
    """No unused 7-digit accession number remains."""

    kind = "capacity_error"


class TransitionRejectedError(CirculationError):
    """A copy status change was refused (locked status, missing member, stale version)."""

    kind = "transition_rejected"


class DateError(CirculationError, ValueError):
    kind = "date_error"


class PastDateError(DateError):
    kind = "past_date"


class ExceedsMaxDurationError(DateError):
    kind = "exceeds_max_duration"


class OutsideAllowedWindowError(CirculationError, ValueError):
    kind = "outside_allowed_window"


class NotFoundError(CirculationError, LookupError):
    kind = "not_found"
