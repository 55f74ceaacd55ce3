"""SQLite connections, schema and the write transaction helper.

Per-book locks keep borrows of different books from waiting on each other in
process, but SQLite admits one writer per database file, so their short
``BEGIN IMMEDIATE`` transactions still queue briefly on the database write lock.
"""

import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings
from errors import Busy, InternalError, LendingError

# Make sure .env is loaded before the module-level default below is resolved.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LENDING_DB_FILE (explicit override)
# 2) a per-process temp file
DATABASE_FILE = (
    os.environ.get("LENDING_DB_FILE")
    or settings.db_file
    or os.path.join(tempfile.gettempdir(), f"lending_{os.getpid()}.db")
)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode (``isolation_level=None``); writes go
    through ``transaction()`` which issues an explicit ``BEGIN IMMEDIATE``.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.db_busy_timeout_seconds,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one write transaction.

    The write lock is taken up front (``BEGIN IMMEDIATE``) so a read followed
    by a write inside the block cannot be invalidated by another writer. The
    transaction commits when the block exits normally and rolls back on any
    exception. SQLite lock timeouts surface as ``Busy``; other database
    failures surface as a generic ``InternalError`` and are logged here.
    """
    conn = get_db_connection(db_file)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                logger.warning(f"Could not start transaction: {e}")
                raise Busy() from e
            raise
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    except LendingError:
        raise
    except sqlite3.OperationalError as e:
        if _is_busy(e):
            logger.warning(f"Database busy: {e}")
            raise Busy() from e
        logger.exception("Database operation failed")
        raise InternalError() from e
    except sqlite3.Error as e:
        logger.exception("Database operation failed")
        raise InternalError() from e
    finally:
        conn.close()


@contextmanager
def read_connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Short-lived connection for read-only queries."""
    conn = get_db_connection(db_file)
    try:
        yield conn
    except sqlite3.Error as e:
        logger.exception("Database read failed")
        raise InternalError() from e
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the lending tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while a writer holds the lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                isbn TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                total_pages INTEGER NOT NULL CHECK(total_pages >= 1),
                capacity INTEGER NOT NULL DEFAULT 3 CHECK(capacity >= 1),
                reserved INTEGER NOT NULL DEFAULT 0,
                total_loan_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK(reserved >= 0 AND reserved <= capacity)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                book_isbn TEXT NOT NULL,
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'returned')),
                renewal_count INTEGER NOT NULL DEFAULT 0 CHECK(renewal_count >= 0 AND renewal_count <= 2),
                last_read_page INTEGER NOT NULL DEFAULT 1 CHECK(last_read_page >= 1),
                fine_amount REAL,
                fine_paid INTEGER NOT NULL DEFAULT 0,
                fine_paid_at TEXT,
                notes TEXT NOT NULL DEFAULT '',
                FOREIGN KEY (book_isbn) REFERENCES books(isbn)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS reading_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                loan_id INTEGER NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                pages_read INTEGER NOT NULL CHECK(pages_read >= 0),
                FOREIGN KEY (loan_id) REFERENCES loans(id) ON DELETE CASCADE
            )
        """)

        # At most one unreturned loan per (user, book)
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_active_user_book "
            "ON loans(user_id, book_isbn) WHERE return_date IS NULL"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_user ON loans(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_book ON loans(book_isbn)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reading_sessions_loan ON reading_sessions(loan_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_loan_count ON books(total_loan_count DESC)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
