"""Accession number allocation.

Accession numbers are fixed-width 7-digit strings, unique across every copy
(and catalog item) in the library. The allocator searches upward from the
highest number ever issued, skipping anything already taken. The starting
counter is only a hint: every candidate is checked against the live set of
existing numbers before it is handed out.
"""
from __future__ import annotations

import logging
import re
from typing import AbstractSet, List, Optional

from errors import CapacityError, DuplicateError, FormatError, ValidationError

logger = logging.getLogger(__name__)

ACCESSION_WIDTH = 7
ACCESSION_CEILING = 9_999_999

_ACCESSION_RE = re.compile(r"[0-9]{7}")


def format_accession_number(value: int) -> str:
    """Left-pad an integer to the 7-digit accession format."""
    if value < 0 or value > ACCESSION_CEILING:
        raise CapacityError(
            f"Accession number {value} is outside the 7-digit range.",
            field="accession_no", value=value, bound=ACCESSION_CEILING,
        )
    return str(value).zfill(ACCESSION_WIDTH)


def validate_format(candidate: Optional[str]) -> bool:
    """True iff ``candidate`` is exactly 7 ASCII digits."""
    if not isinstance(candidate, str):
        return False
    return _ACCESSION_RE.fullmatch(candidate) is not None


def validate_uniqueness(candidate: str, existing: AbstractSet[str],
                        excluding_self: Optional[str] = None) -> None:
    """Raise if a manually entered accession number cannot be used.

    ``excluding_self`` is the number currently stored on the copy being edited;
    keeping it unchanged is never a collision.
    """
    if not validate_format(candidate):
        raise FormatError(
            "Accession number must be exactly 7 digits.",
            field="accession_no", value=candidate,
        )
    if excluding_self is not None and candidate == excluding_self:
        return
    if candidate in existing:
        raise DuplicateError(
            f"Accession number {candidate} is already in use.",
            field="accession_no", value=candidate,
        )


def _first_free(start: int, taken: AbstractSet[str]) -> int:
    """Scan upward from ``start``; once past the ceiling, wrap to 1 and scan the never-used gaps."""
    start = max(start, 1)
    ranges = ((start, ACCESSION_CEILING), (1, min(start - 1, ACCESSION_CEILING)))
    for index, (low, high) in enumerate(ranges):
        if index == 1 and low <= high:
            logger.warning(f"Accession numbers above {start - 1} exhausted, searching from 1")
        candidate = low
        while candidate <= high:
            if format_accession_number(candidate) not in taken:
                return candidate
            candidate += 1
    raise CapacityError(
        "No unused 7-digit accession number remains.",
        field="accession_no", value=start, bound=ACCESSION_CEILING,
    )


def next_accession_number(existing: AbstractSet[str], highest_issued: int) -> str:
    """Return the smallest unused number above ``highest_issued``.

    ``existing`` must include retired numbers so deleted copies' numbers are
    never handed out again.
    """
    number = _first_free(highest_issued + 1, existing)
    if number != max(highest_issued + 1, 1):
        logger.info(f"Accession counter hint {highest_issued} was stale, advanced to {number}")
    return format_accession_number(number)


def allocate_batch(count: int, existing: AbstractSet[str], highest_issued: int) -> List[str]:
    """Return ``count`` distinct unused numbers in ascending order.

    The batch is computed in a single pass against a private exclusion set, so
    numbers never repeat within the batch and the caller's set is left
    untouched. If the range runs out part way, nothing is returned.
    """
    if count < 1:
        raise ValidationError(
            "Number of copies must be at least 1.",
            field="number_of_copies", value=count, bound=1,
        )

    taken = set(existing)
    allocated: List[str] = []
    cursor = highest_issued + 1
    for _ in range(count):
        number = _first_free(cursor, taken)
        accession_no = format_accession_number(number)
        taken.add(accession_no)
        allocated.append(accession_no)
        cursor = number + 1

    logger.info(f"Allocated {count} accession number(s): {allocated[0]}..{allocated[-1]}")
    return allocated
