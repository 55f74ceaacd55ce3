"""Loan entity and the values derived from it.

Derived values (overdue state, days overdue, reading progress) are computed
from stored fields on demand and never persisted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

SECONDS_PER_DAY = 24 * 60 * 60
MAX_RENEWALS = 2
# Upper bounds on caller-supplied spans
MAX_RENEWAL_DAYS = 365
MAX_SESSION_SECONDS = SECONDS_PER_DAY


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width format so stored timestamps also compare correctly as text
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class ReadingSession:
    start_time: datetime
    end_time: datetime
    pages_read: int

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "pages_read": self.pages_read,
        }


@dataclass
class Fine:
    amount: float
    paid: bool = False
    paid_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {"amount": self.amount, "paid": self.paid, "paid_at": to_iso(self.paid_at)}


@dataclass
class Loan:
    """A borrowing of one book by one user."""

    id: Optional[int]
    user_id: str
    book_isbn: str
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: LoanStatus = LoanStatus.ACTIVE
    renewal_count: int = 0
    last_read_page: int = 1
    reading_sessions: List[ReadingSession] = field(default_factory=list)
    fine: Optional[Fine] = None
    notes: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return is_overdue(self, now or utcnow())

    def days_overdue(self, now: Optional[datetime] = None) -> int:
        if not self.is_overdue(now):
            return 0
        return days_overdue(self.due_date, now or utcnow())

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_isbn": self.book_isbn,
            "issue_date": to_iso(self.issue_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date),
            "status": self.status.value,
            "renewal_count": self.renewal_count,
            "last_read_page": self.last_read_page,
            "reading_sessions": [s.to_dict() for s in self.reading_sessions],
            "fine": self.fine.to_dict() if self.fine else None,
            "notes": self.notes,
            "is_overdue": self.is_overdue(now),
            "days_overdue": self.days_overdue(now),
        }


def is_overdue(loan: Loan, now: datetime) -> bool:
    return loan.status == LoanStatus.ACTIVE and ensure_utc(now) > ensure_utc(loan.due_date)


def days_overdue(due_date: datetime, at: datetime) -> int:
    """Whole days between ``due_date`` and ``at``, rounded up. 0 if not late."""
    late = (ensure_utc(at) - ensure_utc(due_date)).total_seconds()
    if late <= 0:
        return 0
    return math.ceil(late / SECONDS_PER_DAY)


def reading_progress(last_read_page: int, total_pages: int) -> int:
    """Percentage of the book read, rounded half up and capped at 100."""
    if not total_pages or total_pages <= 0:
        return 0
    percent = math.floor(last_read_page / total_pages * 100 + 0.5)
    return min(percent, 100)
