"""Inventory ledger: the only code that writes a book's lending counters."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from book import Book
from errors import BookNotFound, InventoryExhausted, InventoryUnderflow

logger = logging.getLogger(__name__)

BOOK_COLUMNS = "isbn, title, author, total_pages, capacity, reserved, total_loan_count, created_at"


@dataclass(frozen=True)
class Reservation:
    """Proof that one unit of a book's capacity was taken."""

    isbn: str
    reserved: int
    capacity: int


class InventoryLedger:
    """Reserves and releases book capacity.

    Every method runs on the caller's connection so the counter change commits
    or rolls back together with the loan change it accompanies. The
    check-and-increment is a single conditional UPDATE, which SQLite executes
    atomically; no read-then-write window exists.
    """

    def get_book(self, conn: sqlite3.Connection, isbn: str) -> Optional[Book]:
        row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE isbn = ?", (isbn,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def require_book(self, conn: sqlite3.Connection, isbn: str) -> Book:
        book = self.get_book(conn, isbn)
        if book is None:
            raise BookNotFound(f"Book {isbn} not found")
        return book

    def reserve(self, conn: sqlite3.Connection, isbn: str) -> Reservation:
        cursor = conn.execute(
            "UPDATE books SET reserved = reserved + 1, total_loan_count = total_loan_count + 1 "
            "WHERE isbn = ? AND reserved < capacity",
            (isbn,),
        )
        if cursor.rowcount == 0:
            # Nothing changed: either the book is unknown or it is fully lent
            book = self.require_book(conn, isbn)
            logger.warning(f"Inventory exhausted for {isbn}: {book.reserved}/{book.capacity} reserved")
            raise InventoryExhausted()
        book = self.require_book(conn, isbn)
        return Reservation(isbn=isbn, reserved=book.reserved, capacity=book.capacity)

    def release(self, conn: sqlite3.Connection, isbn: str) -> int:
        """Give one unit of capacity back. Returns the new reserved count."""
        cursor = conn.execute(
            "UPDATE books SET reserved = reserved - 1 WHERE isbn = ? AND reserved > 0",
            (isbn,),
        )
        if cursor.rowcount == 0:
            self.require_book(conn, isbn)
            logger.error(f"Release on {isbn} would make reserved negative")
            raise InventoryUnderflow(f"Book {isbn} has no reservation to release")
        return self.require_book(conn, isbn).reserved

    def availability(self, conn: sqlite3.Connection, isbn: str) -> dict:
        book = self.require_book(conn, isbn)
        return {
            "isbn": book.isbn,
            "capacity": book.capacity,
            "reserved": book.reserved,
            "available": book.available,
            "is_available_for_loan": book.is_available_for_loan,
        }
