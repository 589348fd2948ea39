"""Return-window scheduling for borrow actions.

Two return-date strategies coexist and are chosen by the calling flow:

* ``CategoryBoundedPolicy``: the borrower's category decides the maximum loan
  (Faculty 5 days, Student 2 days). Used by staff checkouts.
* ``FixedWindowPolicy``: a flat 7-day ceiling. Used by the self-service
  request flow, which also restricts the return time to two daily windows.

All arithmetic is on local calendar dates; no timezone conversion happens.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, time, timedelta
from enum import Enum
from typing import Optional, Tuple, Union

from errors import ExceedsMaxDurationError, OutsideAllowedWindowError, PastDateError
from utils.validators import DateTimeValidator

logger = logging.getLogger(__name__)


class BorrowerCategory(str, Enum):
    STUDENT = "Student"
    FACULTY = "Faculty"

    @classmethod
    def parse(cls, value) -> "BorrowerCategory":
        """Unknown or missing categories borrow on Student terms."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value.strip().lower() == "faculty":
            return cls.FACULTY
        return cls.STUDENT


MAX_LOAN_DAYS = {
    BorrowerCategory.FACULTY: 5,
    BorrowerCategory.STUDENT: 2,
}

SELF_SERVICE_MAX_DAYS = 7

# Inclusive (start, end) windows in minutes since midnight.
RETURN_TIME_WINDOWS: Tuple[Tuple[int, int], ...] = (
    (7 * 60, 11 * 60),
    (13 * 60, 16 * 60),
)

DEFAULT_RETURN_TIME = time(13, 0)


def max_loan_days(category: Optional[Union[BorrowerCategory, str]]) -> int:
    return MAX_LOAN_DAYS[BorrowerCategory.parse(category)]


def default_return_date(category: Optional[Union[BorrowerCategory, str]], today: date) -> date:
    return today + timedelta(days=max_loan_days(category))


@dataclass(frozen=True)
class CategoryBoundedPolicy:
    category: BorrowerCategory = BorrowerCategory.STUDENT

    @property
    def max_days(self) -> int:
        return max_loan_days(self.category)

    @property
    def label(self) -> str:
        return f"{BorrowerCategory.parse(self.category).value} return date"


@dataclass(frozen=True)
class FixedWindowPolicy:
    days: int = SELF_SERVICE_MAX_DAYS

    @property
    def max_days(self) -> int:
        return self.days

    @property
    def label(self) -> str:
        return "Return date"


ReturnDatePolicy = Union[CategoryBoundedPolicy, FixedWindowPolicy]


def validate_return_date(candidate: Union[date, str], today: date,
                         policy: Optional[ReturnDatePolicy] = None) -> date:
    """Check ``today <= candidate <= today + policy.max_days`` and return the parsed date.

    Without a policy the fixed 7-day window applies.
    """
    policy = policy or FixedWindowPolicy()
    candidate = DateTimeValidator.parse_date(candidate, field="return_date")

    if candidate < today:
        raise PastDateError(
            f"Return date {candidate.isoformat()} is before today ({today.isoformat()}).",
            field="return_date", value=candidate.isoformat(), bound=today.isoformat(),
        )

    latest = today + timedelta(days=policy.max_days)
    if candidate > latest:
        raise ExceedsMaxDurationError(
            f"{policy.label} must be within {policy.max_days} days from today.",
            field="return_date", value=candidate.isoformat(), bound=latest.isoformat(),
        )
    return candidate


def validate_return_time(candidate: Union[time, str]) -> time:
    """Check the return time falls in 07:00-11:00 or 13:00-16:00 (both inclusive)."""
    candidate = DateTimeValidator.parse_time(candidate, field="return_time")
    minutes = candidate.hour * 60 + candidate.minute
    for start, end in RETURN_TIME_WINDOWS:
        if start <= minutes <= end:
            return candidate

    windows = ", ".join(f"{_clock(start)}-{_clock(end)}" for start, end in RETURN_TIME_WINDOWS)
    raise OutsideAllowedWindowError(
        f"Return time {candidate.strftime('%H:%M')} is outside the allowed windows ({windows}).",
        field="return_time", value=candidate.strftime("%H:%M"), bound=windows,
    )


def days_remaining(return_date: Union[date, str], today: date) -> int:
    """Whole days until ``return_date``; negative when overdue."""
    return_date = DateTimeValidator.parse_date(return_date, field="return_date")
    return (return_date - today).days


def due_message(days: int) -> str:
    if days == 0:
        return "Due today"
    if days == 1:
        return "Due tomorrow"
    if days < 0:
        return f"Overdue by {-days} day{'s' if days < -1 else ''}"
    return f"Due in {days} days"


def _clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
