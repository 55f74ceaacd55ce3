import logging
import sqlite3
from typing import Any, Dict, List, Optional

import database
from book import Book, normalize_isbn
from database import initialize_database, read_connection, transaction
from errors import BookAlreadyExists, ValidationError
from inventory import BOOK_COLUMNS
from lending_service import LendingService
from loan import to_iso

logger = logging.getLogger(__name__)


class Library:
    """Entry point wiring book records and the lending engine to one database file."""

    def __init__(self, db_file: Optional[str] = None, lending: Optional[LendingService] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        initialize_database(self.db_file)  # Ensure DB and tables exist
        self.lending = lending or LendingService(self.db_file)
        self.lending.db_file = self.db_file

    # ------------------------- Book records ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Register a lendable book. Prevent duplicates by ISBN."""
        book.isbn = normalize_isbn(book.isbn)
        if not book.isbn:
            raise ValidationError("ISBN cannot be empty.")
        if not book.title or not book.author:
            raise ValidationError("Title and author are required.")
        if not isinstance(book.total_pages, int) or book.total_pages < 1:
            raise ValidationError("Total pages must be a positive integer.")
        if not isinstance(book.capacity, int) or book.capacity < 1:
            raise ValidationError("Capacity must be a positive integer.")

        with transaction(self.db_file) as conn:
            try:
                conn.execute(
                    "INSERT INTO books (isbn, title, author, total_pages, capacity) VALUES (?, ?, ?, ?, ?)",
                    (book.isbn, book.title, book.author, book.total_pages, book.capacity),
                )
            except sqlite3.IntegrityError as e:
                # transaction() passes LendingError through untouched
                raise BookAlreadyExists(f"Book with ISBN {book.isbn} already exists.") from e
        book.reserved = 0
        book.total_loan_count = 0
        logger.info(f"Book registered: {book}")
        return self.find_book(book.isbn) or book

    def find_book(self, isbn: str) -> Optional[Book]:
        with read_connection(self.db_file) as conn:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE isbn = ?", (normalize_isbn(isbn),)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def availability(self, isbn: str) -> Dict[str, Any]:
        """Current capacity usage of one book. Raises BookNotFound."""
        with read_connection(self.db_file) as conn:
            return self.lending.ledger.availability(conn, normalize_isbn(isbn))

    def list_books(self) -> List[Book]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books ORDER BY title").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def popular_books(self, limit: int = 10) -> List[Book]:
        """Books ordered by how often they have been lent."""
        limit = max(int(limit), 1)
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                f"SELECT {BOOK_COLUMNS} FROM books ORDER BY total_loan_count DESC, title LIMIT ?",
                (limit,),
            ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def get_statistics(self) -> Dict[str, Any]:
        """Get lending statistics."""
        now = to_iso(self.lending.now())
        with read_connection(self.db_file) as conn:
            total_books, total_capacity, total_reserved = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(capacity), 0), COALESCE(SUM(reserved), 0) FROM books"
            ).fetchone()
            active_loans = conn.execute("SELECT COUNT(*) FROM loans WHERE status = 'active'").fetchone()[0]
            overdue_loans = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE status = 'active' AND due_date < ?", (now,)
            ).fetchone()[0]
            returned_loans = conn.execute("SELECT COUNT(*) FROM loans WHERE status = 'returned'").fetchone()[0]
            outstanding_fines = conn.execute(
                "SELECT COALESCE(SUM(fine_amount), 0) FROM loans WHERE fine_amount > 0 AND fine_paid = 0"
            ).fetchone()[0]

        return {
            "total_books": total_books,
            "total_capacity": total_capacity,
            "total_reserved": total_reserved,
            "active_loans": active_loans,
            "overdue_loans": overdue_loans,
            "returned_loans": returned_loans,
            "outstanding_fines": float(outstanding_fines),
        }

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
