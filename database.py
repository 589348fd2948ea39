import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator

from dotenv import load_dotenv

# Load .env before reading LIBRARY_DB_FILE so import order does not matter.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) Per-process temporary file
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.path.join(tempfile.gettempdir(), f"library_circulation_{os.getpid()}.db")
)

COPY_STATUSES = ("Available", "Borrowed", "Reserved", "Lost", "Under Repair", "Paid", "Pending")
REQUEST_STATUSES = ("Pending", "Approved", "Disapproved", "Returned")
REQUEST_FLOWS = ("self_service", "checkout")
RETURN_STATUSES = ("Returned", "Pending")


def _in_list(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database with foreign keys enforced."""
    conn = sqlite3.connect(DATABASE_FILE, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE``.

    The write lock is taken up front so reads made inside the block (existing
    accession numbers, copy versions) cannot be invalidated by another writer
    before the block commits. Commits on success, rolls back on any error.
    """
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables() -> None:
    """Create the required tables if they do not exist yet."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS catalog_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT,
                accession_no TEXT UNIQUE CHECK (accession_no IS NULL OR length(accession_no) = 7),
                next_copy_no INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_no TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                borrower_category TEXT NOT NULL DEFAULT 'Student',
                status TEXT NOT NULL DEFAULT 'Active',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # The reserved member is required for, and only for, Reserved copies.
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS copies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                catalog_item_id INTEGER NOT NULL,
                accession_no TEXT NOT NULL UNIQUE CHECK (length(accession_no) = 7),
                copy_no INTEGER NOT NULL,
                branch TEXT,
                location TEXT,
                status TEXT NOT NULL DEFAULT 'Available' CHECK (status IN ({_in_list(COPY_STATUSES)})),
                reserved_by_member_id INTEGER,
                reserved_at TIMESTAMP,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (catalog_item_id, copy_no),
                CHECK ((status = 'Reserved') = (reserved_by_member_id IS NOT NULL)),
                FOREIGN KEY (catalog_item_id) REFERENCES catalog_items(id) ON DELETE CASCADE,
                FOREIGN KEY (reserved_by_member_id) REFERENCES members(id)
            )
        """)

        # Deleted copies keep their accession numbers out of circulation forever.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS retired_accession_numbers (
                accession_no TEXT PRIMARY KEY,
                retired_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accession_sequence (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                highest_issued INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS borrow_requests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL,
                catalog_item_id INTEGER NOT NULL,
                copy_id INTEGER,
                return_date TEXT NOT NULL,
                return_time TEXT NOT NULL DEFAULT '13:00',
                notes TEXT,
                status TEXT NOT NULL DEFAULT 'Pending' CHECK (status IN ({_in_list(REQUEST_STATUSES)})),
                flow TEXT NOT NULL DEFAULT 'self_service' CHECK (flow IN ({_in_list(REQUEST_FLOWS)})),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE,
                FOREIGN KEY (catalog_item_id) REFERENCES catalog_items(id) ON DELETE CASCADE,
                FOREIGN KEY (copy_id) REFERENCES copies(id) ON DELETE SET NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS book_returns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                borrow_request_id INTEGER NOT NULL,
                return_date TEXT NOT NULL,
                return_time TEXT NOT NULL,
                condition_on_return TEXT NOT NULL DEFAULT 'Good'
                    CHECK (condition_on_return IN ('Good', 'Damaged', 'Lost')),
                penalty_amount REAL NOT NULL DEFAULT 0 CHECK (penalty_amount >= 0),
                remarks TEXT,
                status TEXT NOT NULL DEFAULT 'Returned' CHECK (status IN ({_in_list(RETURN_STATUSES)})),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (borrow_request_id) REFERENCES borrow_requests(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_catalog_item ON copies(catalog_item_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_status ON copies(catalog_item_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_requests_status ON borrow_requests(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_requests_copy ON borrow_requests(copy_id)")

        cursor.execute("INSERT OR IGNORE INTO accession_sequence (id, highest_issued) VALUES (1, 0)")
        conn.commit()
    finally:
        conn.close()


def initialize_database():
    """Create tables and seed the accession sequence."""
    create_tables()
    logger.debug(f"Database ready at {DATABASE_FILE}")
