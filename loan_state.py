"""Lifecycle rules for a single loan.

A loan starts Active and ends Returned. Renewal, fine assessment and fine
payment are transitions inside those two states. The machine works on
in-memory ``Loan`` objects only; persisting them and coordinating with the
inventory ledger is the lending service's job.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import settings
from errors import (
    AlreadyReturned,
    FineAlreadyPaid,
    MaxRenewalsReached,
    NoOutstandingFine,
    ValidationError,
)
from loan import MAX_RENEWAL_DAYS, MAX_RENEWALS, Fine, Loan, LoanStatus, days_overdue, ensure_utc, is_overdue, utcnow

logger = logging.getLogger(__name__)


class LoanStateMachine:
    def __init__(
        self,
        default_loan_days: int = settings.default_loan_days,
        renewal_days: int = settings.renewal_days,
        fine_per_day: float = settings.fine_per_day,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_loan_days = default_loan_days
        self.renewal_days = renewal_days
        self.fine_per_day = fine_per_day
        self.clock = clock

    def now(self) -> datetime:
        return ensure_utc(self.clock())

    def is_overdue(self, loan: Loan) -> bool:
        return is_overdue(loan, self.now())

    def create(self, user_id: str, isbn: str, due_date: Optional[datetime] = None) -> Loan:
        """Build a fresh Active loan. The caller has already reserved capacity."""
        issued = self.now()
        due = ensure_utc(due_date) if due_date else issued + timedelta(days=self.default_loan_days)
        if due <= issued:
            raise ValidationError("Due date must be in the future")
        return Loan(
            id=None,
            user_id=user_id,
            book_isbn=isbn,
            issue_date=issued,
            due_date=due,
            status=LoanStatus.ACTIVE,
            renewal_count=0,
            last_read_page=1,
        )

    def renew(self, loan: Loan, days_to_add: Optional[int] = None) -> Loan:
        days = self.renewal_days if days_to_add is None else days_to_add
        if not isinstance(days, int) or isinstance(days, bool) or days <= 0:
            raise ValidationError("Days to add must be a positive integer")
        if days > MAX_RENEWAL_DAYS:
            raise ValidationError(f"Days to add cannot exceed {MAX_RENEWAL_DAYS}")
        if loan.status != LoanStatus.ACTIVE:
            raise AlreadyReturned("Cannot renew returned book")
        if loan.renewal_count >= MAX_RENEWALS:
            raise MaxRenewalsReached()

        loan.due_date = loan.due_date + timedelta(days=days)
        loan.renewal_count += 1
        return loan

    def return_book(self, loan: Loan) -> Loan:
        if loan.return_date is not None or loan.status == LoanStatus.RETURNED:
            raise AlreadyReturned()

        returned_at = self.now()
        late_days = days_overdue(loan.due_date, returned_at) if is_overdue(loan, returned_at) else 0
        loan.return_date = returned_at
        loan.status = LoanStatus.RETURNED
        # Assessed once from stored dates, never recomputed
        loan.fine = Fine(amount=round(late_days * self.fine_per_day, 2))
        if late_days:
            logger.info(f"Loan {loan.id} returned {late_days} day(s) late, fine {loan.fine.amount}")
        return loan

    def pay_fine(self, loan: Loan) -> Loan:
        if loan.fine is None or loan.fine.amount <= 0:
            raise NoOutstandingFine(f"Loan {loan.id} has no fine to pay")
        if loan.fine.paid:
            raise FineAlreadyPaid(f"Fine for loan {loan.id} is already paid")
        loan.fine.paid = True
        loan.fine.paid_at = self.now()
        return loan
