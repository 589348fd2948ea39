from datetime import date, time

import pytest

from errors import ExceedsMaxDurationError, OutsideAllowedWindowError, PastDateError, ValidationError
from scheduler import (
    BorrowerCategory,
    CategoryBoundedPolicy,
    FixedWindowPolicy,
    days_remaining,
    default_return_date,
    due_message,
    max_loan_days,
    validate_return_date,
    validate_return_time,
)

TODAY = date(2024, 1, 1)


def test_category_defaults():
    assert default_return_date("Faculty", TODAY) == date(2024, 1, 6)
    assert default_return_date("Student", TODAY) == date(2024, 1, 3)
    assert max_loan_days(None) == 2
    assert max_loan_days("Visitor") == 2
    assert BorrowerCategory.parse("faculty") is BorrowerCategory.FACULTY


def test_fixed_window_boundary():
    assert validate_return_date("2024-01-08", TODAY, FixedWindowPolicy()) == date(2024, 1, 8)
    with pytest.raises(ExceedsMaxDurationError) as info:
        validate_return_date("2024-01-09", TODAY, FixedWindowPolicy())
    assert "within 7 days" in info.value.message


def test_category_policy_bounds():
    policy = CategoryBoundedPolicy(BorrowerCategory.STUDENT)
    assert validate_return_date(date(2024, 1, 3), TODAY, policy) == date(2024, 1, 3)
    with pytest.raises(ExceedsMaxDurationError):
        validate_return_date(date(2024, 1, 4), TODAY, policy)
    assert validate_return_date(date(2024, 1, 6), TODAY, CategoryBoundedPolicy(BorrowerCategory.FACULTY))


def test_past_date_rejected():
    with pytest.raises(PastDateError):
        validate_return_date("2023-12-31", TODAY)
    assert validate_return_date("2024-01-01", TODAY) == TODAY


def test_bad_date_shape():
    with pytest.raises(ValidationError):
        validate_return_date("01/08/2024", TODAY)


@pytest.mark.parametrize("value", ["07:00", "11:00", "13:00", "16:00", "09:30"])
def test_time_inside_windows(value):
    assert isinstance(validate_return_time(value), time)


@pytest.mark.parametrize("value", ["06:59", "11:01", "12:00", "12:59", "16:01"])
def test_time_outside_windows(value):
    with pytest.raises(OutsideAllowedWindowError):
        validate_return_time(value)


def test_due_messages():
    assert days_remaining("2024-01-03", TODAY) == 2
    assert days_remaining(date(2023, 12, 30), TODAY) == -2
    assert due_message(0) == "Due today"
    assert due_message(1) == "Due tomorrow"
    assert due_message(4) == "Due in 4 days"
    assert due_message(-1) == "Overdue by 1 day"
    assert due_message(-3) == "Overdue by 3 days"


@pytest.mark.parametrize("value", ["11:00:59", "09:00:00", "9am"])
def test_time_with_seconds_or_free_text_rejected(value):
    with pytest.raises(ValidationError):
        validate_return_time(value)
