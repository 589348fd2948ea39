from datetime import date

import pytest

from catalog import BorrowRequest
from copy_status import CopyStatus
from errors import (
    ExceedsMaxDurationError,
    NotFoundError,
    OutsideAllowedWindowError,
    PastDateError,
    TransitionRejectedError,
    ValidationError,
)

TODAY = date(2024, 3, 10)


def test_student_self_service_request_reserves_copy(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "14:00", today=TODAY)

    assert request.status == BorrowRequest.PENDING
    assert request.copy_id == copy.id
    assert request.return_date == date(2024, 3, 12)
    assert request.to_dict()["return_time"] == "14:00"

    reserved = lib.get_copy(copy.id)
    assert reserved.status is CopyStatus.RESERVED
    assert reserved.reserved_by_member_id == student.id
    assert lib.available_copies_count(item.id) == 0


def test_request_time_outside_window_leaves_copy_available(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    with pytest.raises(OutsideAllowedWindowError):
        desk.submit_request(student.id, item.id, "2024-03-12", "12:00", today=TODAY)
    assert lib.get_copy(copy.id).status is CopyStatus.AVAILABLE
    assert desk.list_requests() == []


def test_request_date_bounds(lib, desk, item, student):
    lib.create_copy(item.id)
    with pytest.raises(PastDateError):
        desk.submit_request(student.id, item.id, "2024-03-09", "09:00", today=TODAY)
    with pytest.raises(ExceedsMaxDurationError):
        desk.submit_request(student.id, item.id, "2024-03-18", "09:00", today=TODAY)
    request = desk.submit_request(student.id, item.id, "2024-03-17", "09:00", today=TODAY)
    assert request.return_date == date(2024, 3, 17)


def test_request_without_available_copy(lib, desk, item, student):
    lib.create_copy(item.id, status="Lost")
    with pytest.raises(TransitionRejectedError) as info:
        desk.submit_request(student.id, item.id, "2024-03-11", "09:00", today=TODAY)
    assert info.value.message == "No available copies"


def test_request_for_specific_copy_must_be_available(lib, desk, item, student):
    copy = lib.create_copy(item.id, status="Under Repair")
    with pytest.raises(TransitionRejectedError):
        desk.submit_request(student.id, item.id, "2024-03-11", "09:00", copy_id=copy.id, today=TODAY)
    other = lib.add_catalog_item("Another")
    foreign = lib.create_copy(other.id)
    with pytest.raises(ValidationError):
        desk.submit_request(student.id, item.id, "2024-03-11", "09:00", copy_id=foreign.id, today=TODAY)


def test_unknown_member(lib, desk, item):
    lib.create_copy(item.id)
    with pytest.raises(NotFoundError):
        desk.submit_request(999, item.id, "2024-03-11", "09:00", today=TODAY)


def test_checkout_uses_category_default(lib, desk, item, faculty, student):
    lib.create_copies_bulk(item.id, 2)
    lent = desk.checkout(faculty.id, item.id, today=TODAY)
    assert lent.status == BorrowRequest.APPROVED
    assert lent.return_date == date(2024, 3, 15)
    assert lent.to_dict()["return_time"] == "13:00"
    assert lib.get_copy(lent.copy_id).status is CopyStatus.BORROWED

    with pytest.raises(ExceedsMaxDurationError) as info:
        desk.checkout(student.id, item.id, return_date="2024-03-13", today=TODAY)
    assert "Student return date must be within 2 days" in info.value.message
    assert lib.available_copies_count(item.id) == 1


def test_approve_borrows_reserved_copy(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    approved = desk.approve_request(request.id)
    assert approved.status == BorrowRequest.APPROVED
    borrowed = lib.get_copy(copy.id)
    assert borrowed.status is CopyStatus.BORROWED
    assert borrowed.reserved_by_member_id is None
    with pytest.raises(TransitionRejectedError):
        desk.approve_request(request.id)


def test_disapprove_releases_copy(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    declined = desk.disapprove_request(request.id)
    assert declined.status == BorrowRequest.DISAPPROVED
    assert lib.get_copy(copy.id).status is CopyStatus.AVAILABLE
    with pytest.raises(TransitionRejectedError):
        desk.disapprove_request(request.id)


@pytest.mark.parametrize("condition, expected", [
    ("Good", CopyStatus.AVAILABLE),
    ("Damaged", CopyStatus.UNDER_REPAIR),
    ("lost", CopyStatus.LOST),
])
def test_return_condition_sets_status(lib, desk, item, student, condition, expected):
    copy = lib.create_copy(item.id)
    lent = desk.checkout(student.id, item.id, today=TODAY)
    record = desk.process_return(lent.id, condition=condition, penalty_amount=5,
                                 returned_on="2024-03-12", returned_at="10:15")
    assert record.condition_on_return == condition.capitalize()
    assert record.penalty_amount == 5.0
    assert lib.get_copy(copy.id).status is expected
    assert desk.get_request(lent.id).status == BorrowRequest.RETURNED


def test_return_requires_approved_request(lib, desk, item, student):
    lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    with pytest.raises(TransitionRejectedError):
        desk.process_return(request.id)
    lent = desk.approve_request(request.id)
    with pytest.raises(ValidationError):
        desk.process_return(lent.id, condition="Soggy")
    with pytest.raises(ValidationError):
        desk.process_return(lent.id, penalty_amount=-1)


def test_due_status_and_overdue(lib, desk, item, student):
    lib.create_copy(item.id)
    lent = desk.checkout(student.id, item.id, today=TODAY)
    assert desk.due_status(lent.id, today=TODAY)["message"] == "Due in 2 days"
    assert desk.due_status(lent.id, today=date(2024, 3, 11))["message"] == "Due tomorrow"
    assert desk.list_overdue(today=date(2024, 3, 12)) == []
    overdue = desk.list_overdue(today=date(2024, 3, 14))
    assert [r.id for r in overdue] == [lent.id]


def test_clock_is_injectable(lib, item, student):
    from circulation import CirculationDesk

    desk = CirculationDesk(lib, clock=lambda: TODAY)
    lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-17", "15:30")
    assert request.return_date == date(2024, 3, 17)


def test_approve_rejects_copy_lent_to_someone_else(lib, desk, item, student, faculty):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    lib.update_copy_status(copy.id, "Available")
    desk.checkout(faculty.id, item.id, copy_id=copy.id, today=TODAY)

    with pytest.raises(TransitionRejectedError) as info:
        desk.approve_request(request.id)
    assert info.value.field == "copy_id"
    assert info.value.bound == "Borrowed"
    assert desk.get_request(request.id).status == BorrowRequest.PENDING
    approved = desk.list_requests(status=BorrowRequest.APPROVED)
    assert [r.member_id for r in approved if r.copy_id == copy.id] == [faculty.id]


def test_approve_rejects_reservation_released_by_staff(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    lib.update_copy_status(copy.id, "Under Repair")
    with pytest.raises(TransitionRejectedError) as info:
        desk.approve_request(request.id)
    assert info.value.bound == "Under Repair"
    assert lib.get_copy(copy.id).status is CopyStatus.UNDER_REPAIR


def test_decline_pending_request_for_borrowed_copy_is_refused(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    lib.update_copy_status(copy.id, "Borrowed")
    with pytest.raises(TransitionRejectedError) as info:
        desk.disapprove_request(request.id)
    assert info.value.message == "This copy is already borrowed and cannot be declined."
    assert lib.get_copy(copy.id).status is CopyStatus.BORROWED
    assert desk.get_request(request.id).status == BorrowRequest.PENDING


def test_decline_pending_request_leaves_someone_elses_reservation(lib, desk, item, student, faculty):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    lib.update_copy_status(copy.id, "Reserved", faculty.id)
    declined = desk.disapprove_request(request.id)
    assert declined.status == BorrowRequest.DISAPPROVED
    held = lib.get_copy(copy.id)
    assert held.status is CopyStatus.RESERVED
    assert held.reserved_by_member_id == faculty.id


def test_decline_approved_request_releases_only_its_own_loan(lib, desk, item, student, faculty):
    copy = lib.create_copy(item.id)
    first = desk.checkout(student.id, item.id, today=TODAY)
    # staff put the copy back on the shelf without recording the return
    lib.update_copy_status(copy.id, "Available")
    second = desk.checkout(faculty.id, item.id, copy_id=copy.id, today=TODAY)

    declined = desk.disapprove_request(first.id)
    assert declined.status == BorrowRequest.DISAPPROVED
    assert lib.get_copy(copy.id).status is CopyStatus.BORROWED

    desk.disapprove_request(second.id)
    assert lib.get_copy(copy.id).status is CopyStatus.AVAILABLE


def test_reschedule_self_service_request(lib, desk, item, student):
    lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)

    moved = desk.reschedule_request(request.id, "2024-03-17", "15:00", today=TODAY)
    assert moved.return_date == date(2024, 3, 17)
    assert moved.to_dict()["return_time"] == "15:00"
    assert desk.reschedule_request(request.id, "2024-03-16", today=TODAY).to_dict()["return_time"] == "15:00"

    with pytest.raises(ExceedsMaxDurationError):
        desk.reschedule_request(request.id, "2024-03-18", "09:00", today=TODAY)
    with pytest.raises(OutsideAllowedWindowError):
        desk.reschedule_request(request.id, "2024-03-12", "12:00", today=TODAY)
    with pytest.raises(ValidationError):
        desk.reschedule_request(request.id, "2024-03-12", "09:00:30", today=TODAY)
    assert desk.get_request(request.id).return_date == date(2024, 3, 16)


def test_reschedule_checkout_follows_category(lib, desk, item, student):
    lib.create_copy(item.id)
    lent = desk.checkout(student.id, item.id, today=TODAY)
    assert lent.flow == BorrowRequest.CHECKOUT

    with pytest.raises(ExceedsMaxDurationError):
        desk.reschedule_request(lent.id, "2024-03-13", today=TODAY)
    moved = desk.reschedule_request(lent.id, "2024-03-11", "15:00", today=TODAY)
    assert moved.return_date == date(2024, 3, 11)
    assert moved.to_dict()["return_time"] == "13:00"

    desk.process_return(lent.id, returned_on="2024-03-11", returned_at="10:00")
    with pytest.raises(TransitionRejectedError):
        desk.reschedule_request(lent.id, "2024-03-11", today=TODAY)


def test_delete_pending_request_releases_reservation(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    request = desk.submit_request(student.id, item.id, "2024-03-12", "09:00", today=TODAY)
    assert desk.delete_request(request.id)
    assert lib.get_copy(copy.id).status is CopyStatus.AVAILABLE
    assert not desk.delete_request(request.id)
    with pytest.raises(NotFoundError):
        desk.get_request(request.id)


def test_delete_active_loan_is_refused(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    lent = desk.checkout(student.id, item.id, today=TODAY)
    with pytest.raises(TransitionRejectedError):
        desk.delete_request(lent.id)
    assert lib.get_copy(copy.id).status is CopyStatus.BORROWED

    record = desk.process_return(lent.id, returned_on="2024-03-11", returned_at="10:00")
    assert desk.delete_request(lent.id)
    with pytest.raises(NotFoundError):
        desk.get_return(record.id)
    assert lib.get_copy(copy.id).status is CopyStatus.AVAILABLE


def test_pending_return_can_be_settled(lib, desk, item, student):
    copy = lib.create_copy(item.id)
    lent = desk.checkout(student.id, item.id, today=TODAY)
    record = desk.process_return(lent.id, condition="Damaged", penalty_amount=15, status="Pending",
                                 returned_on="2024-03-12", returned_at="10:00")
    assert record.status == "Pending"
    assert desk.get_request(lent.id).status == BorrowRequest.RETURNED
    assert lib.get_copy(copy.id).status is CopyStatus.UNDER_REPAIR

    settled = desk.update_return(record.id, "2024-03-12", "10:30", condition="Good",
                                 penalty_amount=15, remarks="Paid at desk", status="Returned")
    assert settled.status == "Returned"
    assert settled.condition_on_return == "Good"
    assert settled.remarks == "Paid at desk"
    assert lib.get_copy(copy.id).status is CopyStatus.AVAILABLE

    with pytest.raises(ValidationError):
        desk.process_return(lent.id, status="Settled")
    with pytest.raises(ValidationError):
        desk.update_return(record.id, "2024-03-12", "10:30", status="Settled")
    with pytest.raises(NotFoundError):
        desk.update_return(999, "2024-03-12", "10:30")


def test_update_return_leaves_relent_copy_alone(lib, desk, item, student, faculty):
    copy = lib.create_copy(item.id)
    lent = desk.checkout(student.id, item.id, today=TODAY)
    record = desk.process_return(lent.id, returned_on="2024-03-11", returned_at="10:00")
    desk.checkout(faculty.id, item.id, today=TODAY)

    desk.update_return(record.id, "2024-03-11", "10:00", condition="Lost")
    assert lib.get_copy(copy.id).status is CopyStatus.BORROWED


def test_stored_times_with_seconds_still_load():
    request = BorrowRequest.from_dict({
        "id": 1, "member_id": 1, "catalog_item_id": 1, "copy_id": None,
        "return_date": "2024-03-12", "return_time": "13:00:00", "status": "Approved",
    })
    assert request.to_dict()["return_time"] == "13:00"
    assert request.flow == BorrowRequest.SELF_SERVICE
