"""Borrowing flows: self-service requests, staff checkouts, approvals and returns.

Each flow validates the return window through ``scheduler``, moves the copy
through the ``copy_status`` rules and writes the borrow record, all inside one
immediate transaction.
"""
import logging
import sqlite3
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Union

from catalog import BookReturn, BorrowRequest, Copy, Member
from config import settings
from copy_status import CopyStatus
from database import get_db_connection, transaction
from errors import NotFoundError, TransitionRejectedError, ValidationError
from library import Library
from scheduler import (
    CategoryBoundedPolicy,
    FixedWindowPolicy,
    days_remaining,
    default_return_date,
    due_message,
    validate_return_date,
    validate_return_time,
)
from utils.validators import DateTimeValidator, TextValidator

logger = logging.getLogger(__name__)

# Copy status after a return, keyed by the condition the copy came back in.
RETURN_CONDITION_STATUS = {
    "Good": CopyStatus.AVAILABLE,
    "Damaged": CopyStatus.UNDER_REPAIR,
    "Lost": CopyStatus.LOST,
}


class CirculationDesk:
    """Borrow and return operations on top of a :class:`Library`."""

    def __init__(self, library: Library, clock: Optional[Callable[[], date]] = None) -> None:
        self.library = library
        self._clock = clock or date.today

    def today(self) -> date:
        return self._clock()

    # ------------------------- Borrowing ------------------------- #
    def submit_request(self, member_id: int, catalog_item_id: int,
                       return_date: Union[date, str], return_time: Union[str, Any],
                       copy_id: Optional[int] = None, notes: Optional[str] = None,
                       today: Optional[date] = None) -> BorrowRequest:
        """Self-service borrow request.

        The return date must fall within the fixed self-service window and the
        return time inside the desk's opening windows. The copy is held as
        ``Reserved`` for the member until staff approve or decline the request.
        """
        today = today or self.today()
        due = validate_return_date(return_date, today, FixedWindowPolicy(settings.self_service_max_days))
        due_time = validate_return_time(return_time)

        with transaction() as conn:
            self._load_member(conn, member_id)
            copy = self._pick_copy(conn, catalog_item_id, copy_id)
            self.library.apply_status_change(conn, copy.id, CopyStatus.RESERVED, member_id)
            request_id = self._insert_request(conn, member_id, catalog_item_id, copy.id, due,
                                              due_time.strftime("%H:%M"), notes, BorrowRequest.PENDING,
                                              BorrowRequest.SELF_SERVICE)
            logger.info(f"Borrow request {request_id}: copy {copy.accession_no} reserved for member {member_id}")
            return self._load_request(conn, request_id)

    def checkout(self, member_id: int, catalog_item_id: int, copy_id: Optional[int] = None,
                 return_date: Optional[Union[date, str]] = None, notes: Optional[str] = None,
                 today: Optional[date] = None) -> BorrowRequest:
        """Staff checkout: the copy is lent immediately.

        The maximum loan follows the member's borrower category; without an
        explicit return date the category default is used. The return time is
        always the desk's default.
        """
        today = today or self.today()
        with transaction() as conn:
            member = self._load_member(conn, member_id)
            policy = CategoryBoundedPolicy(member.borrower_category)
            if return_date is None:
                due = default_return_date(member.borrower_category, today)
            else:
                due = validate_return_date(return_date, today, policy)
            due_time = DateTimeValidator.parse_time(settings.default_return_time, field="return_time")

            copy = self._pick_copy(conn, catalog_item_id, copy_id)
            self.library.apply_status_change(conn, copy.id, CopyStatus.BORROWED)
            request_id = self._insert_request(conn, member_id, catalog_item_id, copy.id, due,
                                              due_time.strftime("%H:%M"), notes, BorrowRequest.APPROVED,
                                              BorrowRequest.CHECKOUT)
            logger.info(
                f"Checkout {request_id}: copy {copy.accession_no} lent to member {member_id} until {due.isoformat()}"
            )
            return self._load_request(conn, request_id)

    def approve_request(self, request_id: int) -> BorrowRequest:
        """Approve a pending request; the held copy (or the first available one) becomes Borrowed.

        A held copy must still be ``Reserved`` for the requesting member. If staff
        released or lent it in the meantime, the approval is rejected.
        """
        with transaction() as conn:
            request = self._load_request(conn, request_id)
            self._require_status(request, BorrowRequest.PENDING, "approved")

            if request.copy_id is None:
                copy = self._pick_copy(conn, request.catalog_item_id, None)
            else:
                copy = self._load_copy(conn, request.copy_id)
                if not self._held_for(copy, request):
                    if copy.status is CopyStatus.BORROWED:
                        message = "This copy is already borrowed and cannot be approved."
                    else:
                        message = (f"Copy {copy.accession_no} is no longer reserved for member "
                                   f"{request.member_id} and cannot be approved.")
                    raise TransitionRejectedError(message, field="copy_id", value=copy.id,
                                                  bound=copy.status.value)
            self.library.apply_status_change(conn, copy.id, CopyStatus.BORROWED)
            conn.execute(
                "UPDATE borrow_requests SET status = ?, copy_id = ? WHERE id = ?",
                (BorrowRequest.APPROVED, copy.id, request_id),
            )
            logger.info(f"Borrow request {request_id} approved")
            return self._load_request(conn, request_id)

    def disapprove_request(self, request_id: int) -> BorrowRequest:
        """Decline a pending or approved request and release the copy it holds.

        A pending request only releases a copy still reserved for its member, and
        is refused once the copy has been lent. An approved request only releases
        the copy it lent itself.
        """
        with transaction() as conn:
            request = self._load_request(conn, request_id)
            if request.status not in (BorrowRequest.PENDING, BorrowRequest.APPROVED):
                raise TransitionRejectedError(
                    f"Borrow request {request_id} is {request.status} and cannot be disapproved.",
                    field="status", value=request.status,
                )
            if request.copy_id is not None:
                copy = self._load_copy(conn, request.copy_id)
                if request.status == BorrowRequest.PENDING:
                    if copy.status is CopyStatus.BORROWED:
                        raise TransitionRejectedError(
                            "This copy is already borrowed and cannot be declined.",
                            field="copy_id", value=copy.id, bound=copy.status.value,
                        )
                    if self._held_for(copy, request):
                        self.library.apply_status_change(conn, copy.id, CopyStatus.AVAILABLE)
                elif self._lent_by(conn, copy, request):
                    self.library.apply_status_change(conn, copy.id, CopyStatus.AVAILABLE)
            conn.execute(
                "UPDATE borrow_requests SET status = ? WHERE id = ?",
                (BorrowRequest.DISAPPROVED, request_id),
            )
            logger.info(f"Borrow request {request_id} disapproved")
            return self._load_request(conn, request_id)

    def reschedule_request(self, request_id: int, return_date: Union[date, str],
                           return_time: Optional[Union[str, Any]] = None,
                           today: Optional[date] = None) -> BorrowRequest:
        """Move the return date (and time) of a pending or approved request.

        The new date is checked against the policy of the flow that created the
        request: the self-service window (with its time windows) or the member's
        category limit (return time stays at the desk default).
        """
        today = today or self.today()
        with transaction() as conn:
            request = self._load_request(conn, request_id)
            if request.status not in (BorrowRequest.PENDING, BorrowRequest.APPROVED):
                raise TransitionRejectedError(
                    f"Borrow request {request_id} is {request.status} and cannot be rescheduled.",
                    field="status", value=request.status,
                )
            if request.flow == BorrowRequest.CHECKOUT:
                member = self._load_member(conn, request.member_id)
                due = validate_return_date(return_date, today, CategoryBoundedPolicy(member.borrower_category))
                due_time = DateTimeValidator.parse_time(settings.default_return_time, field="return_time")
            else:
                due = validate_return_date(return_date, today, FixedWindowPolicy(settings.self_service_max_days))
                due_time = validate_return_time(return_time if return_time is not None else request.return_time)
            conn.execute(
                "UPDATE borrow_requests SET return_date = ?, return_time = ? WHERE id = ?",
                (due.isoformat(), due_time.strftime("%H:%M"), request_id),
            )
            logger.info(f"Borrow request {request_id} rescheduled to {due.isoformat()} {due_time.strftime('%H:%M')}")
            return self._load_request(conn, request_id)

    def delete_request(self, request_id: int) -> bool:
        """Delete a borrow request and its return records.

        A pending request gives its reserved copy back. An active loan cannot be
        deleted; return or decline it first.
        """
        with transaction() as conn:
            row = conn.execute("SELECT * FROM borrow_requests WHERE id = ?", (request_id,)).fetchone()
            if row is None:
                return False
            request = BorrowRequest.from_dict(dict(row))
            if request.status == BorrowRequest.APPROVED:
                raise TransitionRejectedError(
                    f"Borrow request {request_id} is an active loan; return or decline it first.",
                    field="status", value=request.status,
                )
            if request.status == BorrowRequest.PENDING and request.copy_id is not None:
                copy = self._load_copy(conn, request.copy_id)
                if self._held_for(copy, request):
                    self.library.apply_status_change(conn, copy.id, CopyStatus.AVAILABLE)
            conn.execute("DELETE FROM borrow_requests WHERE id = ?", (request_id,))
        logger.info(f"Borrow request {request_id} deleted")
        return True

    # ------------------------- Returns ------------------------- #
    def process_return(self, request_id: int, condition: str = "Good",
                       penalty_amount: float = 0.0, remarks: Optional[str] = None,
                       returned_on: Optional[Union[date, str]] = None,
                       returned_at: Optional[str] = None,
                       status: str = "Returned") -> BookReturn:
        """Record a returned copy; its new status depends on the condition it came back in.

        ``status`` is ``Pending`` while the return is not settled (an unpaid
        penalty, say); the loan is closed either way.
        """
        condition = self._check_condition(condition)
        self._check_penalty(penalty_amount)
        status = self._check_return_status(status)
        returned_on = DateTimeValidator.parse_date(returned_on or self.today(), field="return_date")
        returned_at = DateTimeValidator.parse_time(returned_at or datetime.now().strftime("%H:%M"),
                                                   field="return_time")

        with transaction() as conn:
            request = self._load_request(conn, request_id)
            self._require_status(request, BorrowRequest.APPROVED, "returned")
            if request.copy_id is not None:
                self.library.apply_status_change(conn, request.copy_id, RETURN_CONDITION_STATUS[condition])
            conn.execute(
                "UPDATE borrow_requests SET status = ? WHERE id = ?",
                (BorrowRequest.RETURNED, request_id),
            )
            cursor = conn.execute(
                """
                INSERT INTO book_returns (borrow_request_id, return_date, return_time,
                                          condition_on_return, penalty_amount, remarks, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (request_id, returned_on.isoformat(), returned_at.strftime("%H:%M"), condition,
                 float(penalty_amount), TextValidator.blank_to_none(remarks), status),
            )
            row = conn.execute("SELECT * FROM book_returns WHERE id = ?", (cursor.lastrowid,)).fetchone()
        logger.info(f"Borrow request {request_id} returned in {condition} condition ({status})")
        return BookReturn.from_dict(dict(row))

    def update_return(self, return_id: int, returned_on: Union[date, str], returned_at: str,
                      condition: str = "Good", penalty_amount: float = 0.0,
                      remarks: Optional[str] = None, status: str = "Returned") -> BookReturn:
        """Correct a return record, e.g. settle a Pending return or fix the condition.

        When the condition changes the copy status follows it, as long as the
        copy is still in the status the original return left it in.
        """
        condition = self._check_condition(condition)
        self._check_penalty(penalty_amount)
        status = self._check_return_status(status)
        returned_on = DateTimeValidator.parse_date(returned_on, field="return_date")
        returned_at = DateTimeValidator.parse_time(returned_at, field="return_time")

        with transaction() as conn:
            record = self._load_return(conn, return_id)
            if condition != record.condition_on_return:
                request = self._load_request(conn, record.borrow_request_id)
                if request.copy_id is not None:
                    copy = self._load_copy(conn, request.copy_id)
                    if copy.status is RETURN_CONDITION_STATUS[record.condition_on_return]:
                        self.library.apply_status_change(conn, copy.id, RETURN_CONDITION_STATUS[condition])
            conn.execute(
                """
                UPDATE book_returns
                SET return_date = ?, return_time = ?, condition_on_return = ?,
                    penalty_amount = ?, remarks = ?, status = ?
                WHERE id = ?
                """,
                (returned_on.isoformat(), returned_at.strftime("%H:%M"), condition,
                 float(penalty_amount), TextValidator.blank_to_none(remarks), status, return_id),
            )
            logger.info(f"Return {return_id} updated: {condition}, {status}")
            return self._load_return(conn, return_id)

    def get_return(self, return_id: int) -> BookReturn:
        conn = get_db_connection()
        try:
            return self._load_return(conn, return_id)
        finally:
            conn.close()

    # ------------------------- Queries ------------------------- #
    def get_request(self, request_id: int) -> BorrowRequest:
        conn = get_db_connection()
        try:
            return self._load_request(conn, request_id)
        finally:
            conn.close()

    def list_requests(self, status: Optional[str] = None,
                      member_id: Optional[int] = None) -> List[BorrowRequest]:
        query = "SELECT * FROM borrow_requests WHERE 1 = 1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if member_id is not None:
            query += " AND member_id = ?"
            params.append(member_id)
        conn = get_db_connection()
        try:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
            return [BorrowRequest.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def list_overdue(self, today: Optional[date] = None) -> List[BorrowRequest]:
        """Approved (lent) requests whose return date has passed."""
        today = today or self.today()
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM borrow_requests WHERE status = ? AND return_date < ? ORDER BY return_date",
                (BorrowRequest.APPROVED, today.isoformat()),
            ).fetchall()
            return [BorrowRequest.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def due_status(self, request_id: int, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or self.today()
        request = self.get_request(request_id)
        days = days_remaining(request.return_date, today)
        return {
            "request_id": request.id,
            "return_date": request.return_date.isoformat(),
            "return_time": request.return_time.strftime("%H:%M"),
            "days_remaining": days,
            "message": due_message(days),
        }

    # ------------------------- Internals ------------------------- #
    def _pick_copy(self, conn: sqlite3.Connection, catalog_item_id: int, copy_id: Optional[int]) -> Copy:
        """The requested copy if it is lendable, otherwise the item's first available copy."""
        if copy_id is not None:
            copy = self._load_copy(conn, copy_id)
            if copy.catalog_item_id != catalog_item_id:
                raise ValidationError(
                    f"Copy {copy_id} does not belong to catalog item {catalog_item_id}.",
                    field="copy_id", value=copy_id,
                )
            if not copy.is_available:
                raise TransitionRejectedError(
                    f"Copy {copy.accession_no} is {copy.status.value}, not Available.",
                    field="copy_id", value=copy_id, bound=copy.status.value,
                )
            return copy

        item = conn.execute("SELECT 1 FROM catalog_items WHERE id = ?", (catalog_item_id,)).fetchone()
        if item is None:
            raise NotFoundError(
                f"Catalog item {catalog_item_id} not found.", field="catalog_item_id", value=catalog_item_id
            )
        row = conn.execute(
            "SELECT * FROM copies WHERE catalog_item_id = ? AND status = ? ORDER BY copy_no LIMIT 1",
            (catalog_item_id, CopyStatus.AVAILABLE.value),
        ).fetchone()
        if row is None:
            raise TransitionRejectedError(
                "No available copies", field="catalog_item_id", value=catalog_item_id
            )
        return Copy.from_dict(dict(row))

    @staticmethod
    def _insert_request(conn: sqlite3.Connection, member_id: int, catalog_item_id: int,
                        copy_id: Optional[int], return_date: date, return_time: str,
                        notes: Optional[str], status: str, flow: str) -> int:
        cursor = conn.execute(
            """
            INSERT INTO borrow_requests (member_id, catalog_item_id, copy_id, return_date,
                                         return_time, notes, status, flow)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (member_id, catalog_item_id, copy_id, return_date.isoformat(), return_time,
             TextValidator.blank_to_none(notes), status, flow),
        )
        return cursor.lastrowid

    @staticmethod
    def _held_for(copy: Copy, request: BorrowRequest) -> bool:
        return copy.status is CopyStatus.RESERVED and copy.reserved_by_member_id == request.member_id

    @staticmethod
    def _lent_by(conn: sqlite3.Connection, copy: Copy, request: BorrowRequest) -> bool:
        """True when ``copy`` is Borrowed under ``request`` and no other active loan."""
        if copy.status is not CopyStatus.BORROWED:
            return False
        other = conn.execute(
            "SELECT 1 FROM borrow_requests WHERE copy_id = ? AND status = ? AND id != ? LIMIT 1",
            (copy.id, BorrowRequest.APPROVED, request.id),
        ).fetchone()
        return other is None

    @staticmethod
    def _check_condition(condition: Optional[str]) -> str:
        condition = (condition or "Good").strip().capitalize()
        if condition not in RETURN_CONDITION_STATUS:
            raise ValidationError(
                f"Condition must be one of {', '.join(BookReturn.CONDITIONS)}.",
                field="condition_on_return", value=condition, bound=", ".join(BookReturn.CONDITIONS),
            )
        return condition

    @staticmethod
    def _check_penalty(penalty_amount: Optional[float]) -> None:
        if penalty_amount is None or penalty_amount < 0:
            raise ValidationError("Penalty amount cannot be negative.", field="penalty_amount",
                                  value=penalty_amount, bound=0)

    @staticmethod
    def _check_return_status(status: Optional[str]) -> str:
        status = (status or "Returned").strip().capitalize()
        if status not in BookReturn.STATUSES:
            raise ValidationError(
                f"Return status must be one of {', '.join(BookReturn.STATUSES)}.",
                field="status", value=status, bound=", ".join(BookReturn.STATUSES),
            )
        return status

    @staticmethod
    def _require_status(request: BorrowRequest, expected: str, action: str) -> None:
        if request.status != expected:
            raise TransitionRejectedError(
                f"Borrow request {request.id} is {request.status}; only {expected} requests can be {action}.",
                field="status", value=request.status, bound=expected,
            )

    @staticmethod
    def _load_member(conn: sqlite3.Connection, member_id: int) -> Member:
        row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Member {member_id} not found.", field="member_id", value=member_id)
        return Member.from_dict(dict(row))

    @staticmethod
    def _load_copy(conn: sqlite3.Connection, copy_id: int) -> Copy:
        row = conn.execute("SELECT * FROM copies WHERE id = ?", (copy_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Copy {copy_id} not found.", field="copy_id", value=copy_id)
        return Copy.from_dict(dict(row))

    @staticmethod
    def _load_request(conn: sqlite3.Connection, request_id: int) -> BorrowRequest:
        row = conn.execute("SELECT * FROM borrow_requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Borrow request {request_id} not found.", field="request_id", value=request_id)
        return BorrowRequest.from_dict(dict(row))

    @staticmethod
    def _load_return(conn: sqlite3.Connection, return_id: int) -> BookReturn:
        row = conn.execute("SELECT * FROM book_returns WHERE id = ?", (return_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Return {return_id} not found.", field="return_id", value=return_id)
        return BookReturn.from_dict(dict(row))
