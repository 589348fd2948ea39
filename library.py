import logging
import sqlite3
from typing import Any, Dict, List, Optional, Set, Tuple

import accession
import database
from catalog import CatalogItem, Copy, Member
from config import settings
from copy_status import CopyStatus, initial_state, transition
from database import get_db_connection, initialize_database, transaction
from errors import (
    CirculationError,
    DuplicateError,
    FormatError,
    NotFoundError,
    TransitionRejectedError,
    ValidationError,
)
from scheduler import BorrowerCategory
from utils.validators import TextValidator

logger = logging.getLogger(__name__)


class Library:
    """Manages the copy inventory and its persistence.

    SQLite is the final authority on accession-number uniqueness and on status
    updates: constraint violations and stale versions raised by the database
    are translated into the same errors the in-process checks produce.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Let tests (and callers) point the module-level helpers in database.py
        # at their own file before the schema is created. Otherwise LIBRARY_DB_FILE
        # (read by database.py) decides.
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database()

    # ------------------------- Catalog items & members ------------------------- #
    def add_catalog_item(self, title: str, author: Optional[str] = None,
                         accession_no: Optional[str] = None) -> CatalogItem:
        """Register a bibliographic record so copies can be attached to it."""
        title = TextValidator.require(title, "title")
        accession_no = TextValidator.blank_to_none(accession_no)
        with transaction() as conn:
            if accession_no is not None:
                accession.validate_uniqueness(accession_no, self._accession_numbers(conn))
            try:
                cursor = conn.execute(
                    "INSERT INTO catalog_items (title, author, accession_no) VALUES (?, ?, ?)",
                    (title, TextValidator.blank_to_none(author), accession_no),
                )
            except sqlite3.IntegrityError as e:
                raise self._remap_integrity_error(e, accession_no) from e
            if accession_no is not None:
                self._bump_sequence(conn, [accession_no])
            item_id = cursor.lastrowid
        return self.get_catalog_item(item_id)

    def get_catalog_item(self, catalog_item_id: int) -> CatalogItem:
        conn = get_db_connection()
        try:
            return self._load_catalog_item(conn, catalog_item_id)
        finally:
            conn.close()

    def add_member(self, member_no: str, name: str,
                   borrower_category: Optional[str] = None,
                   email: Optional[str] = None, phone: Optional[str] = None) -> Member:
        member_no = TextValidator.require(member_no, "member_no")
        name = TextValidator.require(name, "name")
        category = BorrowerCategory.parse(borrower_category)
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO members (member_no, name, email, phone, borrower_category) VALUES (?, ?, ?, ?, ?)",
                (member_no, name, TextValidator.blank_to_none(email),
                 TextValidator.blank_to_none(phone), category.value),
            )
            conn.commit()
            member_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise DuplicateError(
                f"Member number {member_no} already exists.", field="member_no", value=member_no
            ) from e
        finally:
            conn.close()
        return self.get_member(member_id)

    def get_member(self, member_id: int) -> Member:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Member {member_id} not found.", field="member_id", value=member_id)
        return Member.from_dict(dict(row))

    def find_member(self, member_no: str) -> Member:
        """Look a member up by their member number (the value printed on library cards)."""
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM members WHERE member_no = ?", (member_no,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Member number {member_no} does not exist.", field="member_no", value=member_no)
        return Member.from_dict(dict(row))

    # ------------------------- Accession numbers ------------------------- #
    def list_accession_numbers(self, catalog_item_id: Optional[int] = None) -> Set[str]:
        """Accession numbers in use.

        Scoped to one item this is just that item's copies; unscoped it also
        covers item-level and retired numbers, i.e. everything the allocator
        must avoid.
        """
        conn = get_db_connection()
        try:
            if catalog_item_id is not None:
                rows = conn.execute(
                    "SELECT accession_no FROM copies WHERE catalog_item_id = ?", (catalog_item_id,)
                ).fetchall()
                return {row["accession_no"] for row in rows}
            return self._accession_numbers(conn)
        finally:
            conn.close()

    def highest_issued_accession_number(self) -> int:
        conn = get_db_connection()
        try:
            return self._highest_issued(conn)
        finally:
            conn.close()

    def next_accession_number(self) -> str:
        """Preview the number the next single-copy creation would receive. Nothing is reserved."""
        conn = get_db_connection()
        try:
            return accession.next_accession_number(self._accession_numbers(conn), self._highest_issued(conn))
        finally:
            conn.close()

    def validate_accession_number(self, candidate: str, copy_id: Optional[int] = None) -> None:
        """Raise FormatError/DuplicateError if ``candidate`` cannot be stored on a copy.

        When editing, pass the copy's id so its own current number is not a collision.
        """
        conn = get_db_connection()
        try:
            current = self._load_copy(conn, copy_id).accession_no if copy_id is not None else None
            accession.validate_uniqueness(candidate, self._accession_numbers(conn), excluding_self=current)
        finally:
            conn.close()

    def check_accession_number(self, candidate: str, copy_id: Optional[int] = None) -> Tuple[bool, str]:
        """Non-raising variant used by forms: ``(valid, message)``."""
        try:
            self.validate_accession_number(candidate, copy_id)
        except CirculationError as e:
            return False, e.message
        return True, "Accession number is available"

    # ------------------------- Copies ------------------------- #
    def create_copy(self, catalog_item_id: int, accession_no: Optional[str] = None,
                    branch: Optional[str] = None, location: Optional[str] = None,
                    status: Optional[CopyStatus] = None,
                    reserved_by_member_id: Optional[int] = None) -> Copy:
        """Create one copy. Without ``accession_no`` the next free number is allocated."""
        status, member_id = initial_state(status, reserved_by_member_id)
        accession_no = TextValidator.blank_to_none(accession_no)
        if accession_no is not None:
            with transaction() as conn:
                accession.validate_uniqueness(accession_no, self._accession_numbers(conn))
                copies = self._insert_copies(conn, catalog_item_id, [accession_no], branch,
                                             location, status, member_id)
            return copies[0]
        return self._allocate_and_insert(catalog_item_id, 1, branch, location, status, member_id)[0]

    def create_copies_bulk(self, catalog_item_id: int, count: int,
                           branch: Optional[str] = None, location: Optional[str] = None,
                           status: Optional[CopyStatus] = None,
                           reserved_by_member_id: Optional[int] = None) -> List[Copy]:
        """Create ``count`` copies in one transaction: all of them or none."""
        if count < 1 or count > settings.bulk_copy_limit:
            raise ValidationError(
                f"Number of copies must be between 1 and {settings.bulk_copy_limit}.",
                field="number_of_copies", value=count, bound=settings.bulk_copy_limit,
            )
        status, member_id = initial_state(status, reserved_by_member_id)
        return self._allocate_and_insert(catalog_item_id, count, branch, location, status, member_id)

    def get_copy(self, copy_id: int) -> Copy:
        conn = get_db_connection()
        try:
            return self._load_copy(conn, copy_id)
        finally:
            conn.close()

    def list_copies(self, catalog_item_id: int, status: Optional[CopyStatus] = None) -> List[Copy]:
        conn = get_db_connection()
        try:
            self._load_catalog_item(conn, catalog_item_id)
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM copies WHERE catalog_item_id = ? ORDER BY copy_no", (catalog_item_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM copies WHERE catalog_item_id = ? AND status = ? ORDER BY copy_no",
                    (catalog_item_id, CopyStatus.parse(status).value),
                ).fetchall()
            return [Copy.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def update_copy(self, copy_id: int, *, accession_no: Optional[str] = None,
                    branch: Optional[str] = None, location: Optional[str] = None) -> Copy:
        """Edit placement metadata and/or the accession number of a copy.

        Fields left as ``None`` keep their current value; an empty string clears
        branch or location.
        """
        with transaction() as conn:
            copy = self._load_copy(conn, copy_id)
            new_accession = TextValidator.blank_to_none(accession_no) or copy.accession_no
            branch = copy.branch if branch is None else TextValidator.blank_to_none(branch)
            location = copy.location if location is None else TextValidator.blank_to_none(location)
            accession.validate_uniqueness(new_accession, self._accession_numbers(conn),
                                          excluding_self=copy.accession_no)
            try:
                conn.execute(
                    """
                    UPDATE copies
                    SET accession_no = ?, branch = ?, location = ?,
                        version = version + 1, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (new_accession, branch, location, copy_id),
                )
            except sqlite3.IntegrityError as e:
                raise self._remap_integrity_error(e, new_accession) from e
            if new_accession != copy.accession_no:
                # the replaced number stays out of circulation
                conn.execute(
                    "INSERT OR IGNORE INTO retired_accession_numbers (accession_no) VALUES (?)",
                    (copy.accession_no,),
                )
                self._bump_sequence(conn, [new_accession])
                logger.info(f"Copy {copy_id} accession number changed {copy.accession_no} -> {new_accession}")
            return self._load_copy(conn, copy_id)

    def update_copy_status(self, copy_id: int, new_status: CopyStatus,
                           reserved_by_member_id: Optional[int] = None,
                           expected_version: Optional[int] = None) -> Copy:
        """Move a copy to ``new_status`` under the copy state machine.

        ``expected_version`` enables optimistic concurrency: if the copy has
        changed since the caller read it, the update is rejected.
        """
        with transaction() as conn:
            return self.apply_status_change(conn, copy_id, new_status, reserved_by_member_id,
                                            expected_version)

    def apply_status_change(self, conn: sqlite3.Connection, copy_id: int, new_status: CopyStatus,
                            reserved_by_member_id: Optional[int] = None,
                            expected_version: Optional[int] = None) -> Copy:
        """Status change inside a caller-owned transaction (used by circulation flows)."""
        copy = self._load_copy(conn, copy_id)
        if expected_version is not None and expected_version != copy.version:
            raise self._stale(copy_id, expected_version)

        status, member_id = transition(copy.status, new_status, reserved_by_member_id)
        if member_id is not None:
            self._require_member(conn, member_id)

        if member_id is None:
            reserved_at = None
        elif copy.status is CopyStatus.RESERVED and copy.reserved_by_member_id == member_id:
            reserved_at = copy.reserved_at
        else:
            reserved_at = self._now(conn)
        try:
            cursor = conn.execute(
                """
                UPDATE copies
                SET status = ?, reserved_by_member_id = ?, reserved_at = ?,
                    version = version + 1, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND version = ?
                """,
                (status.value, member_id, reserved_at, copy_id, copy.version),
            )
        except sqlite3.IntegrityError as e:
            raise self._remap_integrity_error(e, copy.accession_no) from e
        if cursor.rowcount == 0:
            raise self._stale(copy_id, copy.version)

        logger.info(f"Copy {copy.accession_no}: {copy.status.value} -> {status.value}")
        return self._load_copy(conn, copy_id)

    def delete_copy(self, copy_id: int) -> bool:
        """Delete a copy; its accession number is retired, never re-issued."""
        with transaction() as conn:
            row = conn.execute("SELECT accession_no FROM copies WHERE id = ?", (copy_id,)).fetchone()
            if row is None:
                return False
            conn.execute(
                "INSERT OR IGNORE INTO retired_accession_numbers (accession_no) VALUES (?)",
                (row["accession_no"],),
            )
            conn.execute("DELETE FROM copies WHERE id = ?", (copy_id,))
        logger.info(f"Copy {copy_id} deleted, accession number {row['accession_no']} retired")
        return True

    def available_copies_count(self, catalog_item_id: int) -> int:
        conn = get_db_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM copies WHERE catalog_item_id = ? AND status = ?",
                (catalog_item_id, CopyStatus.AVAILABLE.value),
            ).fetchone()[0]
        finally:
            conn.close()

    def copy_history(self, copy_id: int) -> Dict[str, Any]:
        """Loans of one copy (newest first) plus the reservation currently holding it.

        A loan's displayed status is its return record's status when one exists,
        otherwise the borrow request's.
        """
        conn = get_db_connection()
        try:
            copy = self._load_copy(conn, copy_id)
            rows = conn.execute(
                """
                SELECT br.id, br.member_id, m.member_no, m.name AS member_name,
                       m.borrower_category, br.created_at AS date_borrowed,
                       br.return_date AS due_date, br.status AS request_status,
                       rt.return_date AS date_returned, rt.condition_on_return,
                       rt.penalty_amount, rt.remarks, rt.status AS return_status
                FROM borrow_requests br
                JOIN members m ON m.id = br.member_id
                LEFT JOIN book_returns rt ON rt.borrow_request_id = br.id
                WHERE br.copy_id = ? AND br.status IN ('Approved', 'Returned')
                ORDER BY br.id DESC
                """,
                (copy_id,),
            ).fetchall()
            borrows = []
            for row in rows:
                entry = dict(row)
                entry["type"] = "borrow"
                entry["status"] = entry["return_status"] or entry["request_status"]
                borrows.append(entry)

            reservation = None
            if copy.status is CopyStatus.RESERVED and copy.reserved_by_member_id is not None:
                member = conn.execute(
                    "SELECT member_no, name FROM members WHERE id = ?", (copy.reserved_by_member_id,)
                ).fetchone()
                reservation = {
                    "type": "reservation",
                    "member_id": copy.reserved_by_member_id,
                    "member_no": member["member_no"] if member else None,
                    "member_name": member["name"] if member else None,
                    "reserved_at": copy.reserved_at,
                    "status": CopyStatus.RESERVED.value,
                }
            return {"copy": copy.to_dict(), "borrows": borrows, "reservation": reservation}
        finally:
            conn.close()

    def get_statistics(self) -> Dict[str, Any]:
        """Copy counts overall and per status."""
        conn = get_db_connection()
        try:
            total_items = conn.execute("SELECT COUNT(*) FROM catalog_items").fetchone()[0]
            total_copies = conn.execute("SELECT COUNT(*) FROM copies").fetchone()[0]
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM copies GROUP BY status").fetchall()
            by_status = {status.value: 0 for status in CopyStatus}
            for row in rows:
                by_status[row["status"]] = row["n"]
            return {
                "total_items": total_items,
                "total_copies": total_copies,
                "by_status": by_status,
            }
        finally:
            conn.close()

    # ------------------------- Internals ------------------------- #
    def _allocate_and_insert(self, catalog_item_id: int, count: int, branch: Optional[str],
                             location: Optional[str], status: CopyStatus,
                             member_id: Optional[int]) -> List[Copy]:
        # The counter and the existing set are re-read on every attempt, and every
        # number the database rejected stays excluded, so a retry always moves past
        # the collision even if the read was stale.
        attempts = max(settings.allocation_retries, 1)
        attempt = 1
        collided: Set[str] = set()
        while True:
            try:
                with transaction() as conn:
                    numbers = accession.allocate_batch(count, self._accession_numbers(conn) | collided,
                                                       self._highest_issued(conn))
                    return self._insert_copies(conn, catalog_item_id, numbers, branch,
                                               location, status, member_id)
            except DuplicateError as e:
                if e.field != "accession_no" or attempt >= attempts:
                    raise
                collided.add(e.value)
                logger.warning(f"Accession allocation collided ({e.value}), retrying {attempt}/{attempts}")
                attempt += 1

    def _insert_copies(self, conn: sqlite3.Connection, catalog_item_id: int, numbers: List[str],
                       branch: Optional[str], location: Optional[str], status: CopyStatus,
                       member_id: Optional[int]) -> List[Copy]:
        item = self._load_catalog_item(conn, catalog_item_id)
        if member_id is not None:
            self._require_member(conn, member_id)
        branch = TextValidator.blank_to_none(branch)
        location = TextValidator.blank_to_none(location)
        reserved_at = self._now(conn) if member_id is not None else None

        copy_ids = []
        copy_no = item.next_copy_no
        for accession_no in numbers:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO copies (catalog_item_id, accession_no, copy_no, branch, location,
                                        status, reserved_by_member_id, reserved_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (catalog_item_id, accession_no, copy_no, branch, location, status.value,
                     member_id, reserved_at),
                )
            except sqlite3.IntegrityError as e:
                raise self._remap_integrity_error(e, accession_no) from e
            copy_ids.append(cursor.lastrowid)
            copy_no += 1

        conn.execute("UPDATE catalog_items SET next_copy_no = ? WHERE id = ?", (copy_no, catalog_item_id))
        self._bump_sequence(conn, numbers)
        logger.info(f"Created {len(numbers)} copy(ies) of item {catalog_item_id} with status {status.value}")
        return [self._load_copy(conn, copy_id) for copy_id in copy_ids]

    @staticmethod
    def _accession_numbers(conn: sqlite3.Connection) -> Set[str]:
        rows = conn.execute(
            """
            SELECT accession_no FROM copies
            UNION SELECT accession_no FROM catalog_items WHERE accession_no IS NOT NULL
            UNION SELECT accession_no FROM retired_accession_numbers
            """
        ).fetchall()
        return {row[0] for row in rows}

    @staticmethod
    def _highest_issued(conn: sqlite3.Connection) -> int:
        row = conn.execute(
            """
            SELECT MAX(
                COALESCE((SELECT highest_issued FROM accession_sequence WHERE id = 1), 0),
                COALESCE((SELECT MAX(CAST(accession_no AS INTEGER)) FROM copies), 0),
                COALESCE((SELECT MAX(CAST(accession_no AS INTEGER)) FROM catalog_items), 0),
                COALESCE((SELECT MAX(CAST(accession_no AS INTEGER)) FROM retired_accession_numbers), 0)
            )
            """
        ).fetchone()
        return int(row[0] or 0)

    @staticmethod
    def _bump_sequence(conn: sqlite3.Connection, numbers: List[str]) -> None:
        highest = max(int(n) for n in numbers)
        conn.execute(
            "UPDATE accession_sequence SET highest_issued = MAX(highest_issued, ?) WHERE id = 1",
            (highest,),
        )

    @staticmethod
    def _now(conn: sqlite3.Connection) -> str:
        return conn.execute("SELECT CURRENT_TIMESTAMP").fetchone()[0]

    @staticmethod
    def _load_catalog_item(conn: sqlite3.Connection, catalog_item_id: int) -> CatalogItem:
        row = conn.execute("SELECT * FROM catalog_items WHERE id = ?", (catalog_item_id,)).fetchone()
        if row is None:
            raise NotFoundError(
                f"Catalog item {catalog_item_id} not found.", field="catalog_item_id", value=catalog_item_id
            )
        return CatalogItem.from_dict(dict(row))

    @staticmethod
    def _load_copy(conn: sqlite3.Connection, copy_id: int) -> Copy:
        row = conn.execute("SELECT * FROM copies WHERE id = ?", (copy_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Copy {copy_id} not found.", field="copy_id", value=copy_id)
        return Copy.from_dict(dict(row))

    @staticmethod
    def _require_member(conn: sqlite3.Connection, member_id: int) -> None:
        row = conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone()
        if row is None:
            raise NotFoundError(
                f"Member {member_id} not found.", field="reserved_by_member_id", value=member_id
            )

    @staticmethod
    def _stale(copy_id: int, version: int) -> TransitionRejectedError:
        logger.warning(f"Rejected stale update of copy {copy_id} (version {version})")
        return TransitionRejectedError(
            f"Copy {copy_id} was changed by another request; reload and try again.",
            field="version", value=version,
        )

    @staticmethod
    def _remap_integrity_error(exc: sqlite3.IntegrityError, accession_no: Optional[str]) -> CirculationError:
        """Translate a database constraint failure into the core's error taxonomy."""
        message = str(exc)
        logger.warning(f"Persistence rejected write: {message}")
        if "UNIQUE" in message and "accession_no" in message:
            return DuplicateError(
                f"Accession number {accession_no} is already in use.", field="accession_no", value=accession_no
            )
        if "UNIQUE" in message and "copy_no" in message:
            return DuplicateError("Copy number already assigned for this item.", field="copy_no")
        if "CHECK" in message and "length(accession_no)" in message:
            return FormatError("Accession number must be exactly 7 digits.", field="accession_no", value=accession_no)
        if "FOREIGN KEY" in message:
            return NotFoundError("Referenced record does not exist.")
        return TransitionRejectedError(f"Copy update rejected: {message}", field="status")

    def close(self) -> None:
        """Compatibility helper: connections are opened per operation, nothing to close."""
        return None
