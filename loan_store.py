"""SQLite persistence for loans and their reading sessions."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, List, Optional

from errors import LoanNotFound
from loan import Fine, Loan, LoanStatus, ReadingSession, from_iso, to_iso

LOAN_COLUMNS = (
    "id, user_id, book_isbn, issue_date, due_date, return_date, status, renewal_count, "
    "last_read_page, fine_amount, fine_paid, fine_paid_at, notes"
)


class LoanStore:
    """Reads and writes loans on a caller-supplied connection."""

    # ------------------------- Mapping ------------------------- #
    @staticmethod
    def _row_to_loan(row: sqlite3.Row, sessions: List[ReadingSession]) -> Loan:
        fine = None
        if row["fine_amount"] is not None:
            fine = Fine(
                amount=row["fine_amount"],
                paid=bool(row["fine_paid"]),
                paid_at=from_iso(row["fine_paid_at"]),
            )
        return Loan(
            id=row["id"],
            user_id=row["user_id"],
            book_isbn=row["book_isbn"],
            issue_date=from_iso(row["issue_date"]),
            due_date=from_iso(row["due_date"]),
            return_date=from_iso(row["return_date"]),
            status=LoanStatus(row["status"]),
            renewal_count=row["renewal_count"],
            last_read_page=row["last_read_page"],
            reading_sessions=sessions,
            fine=fine,
            notes=row["notes"] or "",
        )

    @staticmethod
    def _sessions(conn: sqlite3.Connection, loan_id: int) -> List[ReadingSession]:
        rows = conn.execute(
            "SELECT start_time, end_time, pages_read FROM reading_sessions WHERE loan_id = ? ORDER BY id",
            (loan_id,),
        ).fetchall()
        return [
            ReadingSession(
                start_time=from_iso(r["start_time"]),
                end_time=from_iso(r["end_time"]),
                pages_read=r["pages_read"],
            )
            for r in rows
        ]

    # ------------------------- Reads ------------------------- #
    def get(self, conn: sqlite3.Connection, loan_id: int) -> Optional[Loan]:
        row = conn.execute(f"SELECT {LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_loan(row, self._sessions(conn, row["id"]))

    def require(self, conn: sqlite3.Connection, loan_id: int) -> Loan:
        loan = self.get(conn, loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def find_active(self, conn: sqlite3.Connection, user_id: str, isbn: str) -> Optional[Loan]:
        row = conn.execute(
            f"SELECT {LOAN_COLUMNS} FROM loans WHERE user_id = ? AND book_isbn = ? AND return_date IS NULL",
            (user_id, isbn),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_loan(row, self._sessions(conn, row["id"]))

    def count_active_for_user(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM loans WHERE user_id = ? AND status = 'active'", (user_id,)
        ).fetchone()
        return row[0]

    def list(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: Optional[str] = None,
        isbn: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        overdue_at: Optional[datetime] = None,
    ) -> List[Loan]:
        """List loans, newest first. ``overdue_at`` keeps active loans due before it."""
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if isbn is not None:
            clauses.append("book_isbn = ?")
            params.append(isbn)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if overdue_at is not None:
            clauses.append("status = 'active' AND due_date < ?")
            params.append(to_iso(overdue_at))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(
            f"SELECT {LOAN_COLUMNS} FROM loans {where} ORDER BY issue_date DESC, id DESC", params
        ).fetchall()
        return [self._row_to_loan(r, self._sessions(conn, r["id"])) for r in rows]

    # ------------------------- Writes ------------------------- #
    def insert(self, conn: sqlite3.Connection, loan: Loan) -> Loan:
        """Insert a new loan. Raises sqlite3.IntegrityError on a duplicate active loan."""
        cursor = conn.execute(
            "INSERT INTO loans (user_id, book_isbn, issue_date, due_date, status, renewal_count, last_read_page, notes) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                loan.user_id,
                loan.book_isbn,
                to_iso(loan.issue_date),
                to_iso(loan.due_date),
                loan.status.value,
                loan.renewal_count,
                loan.last_read_page,
                loan.notes,
            ),
        )
        loan.id = cursor.lastrowid
        return loan

    def save(self, conn: sqlite3.Connection, loan: Loan) -> Loan:
        """Write back the mutable fields of an existing loan."""
        fine = loan.fine
        conn.execute(
            "UPDATE loans SET due_date = ?, return_date = ?, status = ?, renewal_count = ?, last_read_page = ?, "
            "fine_amount = ?, fine_paid = ?, fine_paid_at = ?, notes = ? WHERE id = ?",
            (
                to_iso(loan.due_date),
                to_iso(loan.return_date),
                loan.status.value,
                loan.renewal_count,
                loan.last_read_page,
                fine.amount if fine else None,
                1 if fine and fine.paid else 0,
                to_iso(fine.paid_at) if fine else None,
                loan.notes,
                loan.id,
            ),
        )
        return loan

    def append_session(self, conn: sqlite3.Connection, loan_id: int, session: ReadingSession) -> None:
        conn.execute(
            "INSERT INTO reading_sessions (loan_id, start_time, end_time, pages_read) VALUES (?, ?, ?, ?)",
            (loan_id, to_iso(session.start_time), to_iso(session.end_time), session.pages_read),
        )
