"""Copy statuses and the rules for moving a copy between them."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Tuple

from errors import TransitionRejectedError, ValidationError

logger = logging.getLogger(__name__)


class CopyStatus(str, Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"
    RESERVED = "Reserved"
    LOST = "Lost"
    UNDER_REPAIR = "Under Repair"
    PAID = "Paid"
    PENDING = "Pending"

    @classmethod
    def parse(cls, value) -> "CopyStatus":
        """Accept a CopyStatus, its display value ("Under Repair") or its name ("UNDER_REPAIR")."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            raw = value.strip()
            for status in cls:
                if raw.lower() == status.value.lower() or raw.upper().replace(" ", "_") == status.name:
                    return status
        allowed = ", ".join(s.value for s in cls)
        raise ValidationError(
            f"Unknown copy status {value!r}. Allowed: {allowed}.",
            field="status", value=value, bound=allowed,
        )


# Copies tied to an unresolved payment record cannot change status.
LOCKED_STATUSES = frozenset({CopyStatus.PAID})


def transition(current: CopyStatus, target: CopyStatus,
               reserved_by_member_id: Optional[int] = None) -> Tuple[CopyStatus, Optional[int]]:
    """Validate a status change and return the resulting ``(status, reserved_by_member_id)``.

    Leaving ``Reserved`` (or entering anything other than ``Reserved``) always
    clears the member reference.
    """
    current = CopyStatus.parse(current)
    target = CopyStatus.parse(target)

    if current in LOCKED_STATUSES:
        logger.warning(f"Rejected transition {current.value} -> {target.value}: status locked")
        raise TransitionRejectedError(
            f"Copy status is locked at {current.value} and cannot be changed.",
            field="status", value=target.value, bound=current.value,
        )

    if target is CopyStatus.RESERVED:
        if reserved_by_member_id is None:
            raise TransitionRejectedError(
                "A reserved copy must reference the member it is reserved for.",
                field="reserved_by_member_id", value=None,
            )
        return target, reserved_by_member_id

    return target, None


def initial_state(status: Optional[CopyStatus] = None,
                  reserved_by_member_id: Optional[int] = None) -> Tuple[CopyStatus, Optional[int]]:
    """Status and member reference for a newly created copy (``Available`` by default)."""
    if status is None:
        return CopyStatus.AVAILABLE, None
    status = CopyStatus.parse(status)
    if status is CopyStatus.RESERVED and reserved_by_member_id is None:
        raise TransitionRejectedError(
            "A reserved copy must reference the member it is reserved for.",
            field="reserved_by_member_id", value=None,
        )
    return status, reserved_by_member_id if status is CopyStatus.RESERVED else None
