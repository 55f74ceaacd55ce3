"""Lending use cases: borrow, return, renew, reading progress and fines.

Each write use case is one unit of work: it holds the per-key locks for the
entities it touches and runs inside a single ``BEGIN IMMEDIATE`` transaction,
so the loan change and the matching inventory counter change commit together
or not at all.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional, Union

from auth import Principal
from book import normalize_isbn
from config import settings
from database import read_connection, transaction
from errors import (
    AlreadyReturned,
    DuplicateActiveLoan,
    Forbidden,
    LoanNotActive,
    LoanNotFound,
    MaxLoansReached,
    OverdueRenewalForbidden,
    UserInactive,
    ValidationError,
)
from inventory import InventoryLedger
from loan import Loan, LoanStatus, ensure_utc, utcnow
from loan_state import LoanStateMachine
from loan_store import LoanStore
from locks import KeyedLockRegistry, book_key, loan_key, user_key
from reading_progress import ProgressUpdate, ReadingProgressTracker

logger = logging.getLogger(__name__)


def parse_status(value: Union[str, LoanStatus, None]) -> Optional[LoanStatus]:
    if value is None or value == "":
        return None
    if isinstance(value, LoanStatus):
        return value
    try:
        return LoanStatus(value.strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid status: {value}. Allowed: active, returned") from None


class LendingService:
    def __init__(
        self,
        db_file: Optional[str] = None,
        *,
        ledger: Optional[InventoryLedger] = None,
        machine: Optional[LoanStateMachine] = None,
        tracker: Optional[ReadingProgressTracker] = None,
        store: Optional[LoanStore] = None,
        locks: Optional[KeyedLockRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_file = db_file
        self.clock = clock
        self.ledger = ledger or InventoryLedger()
        self.machine = machine or LoanStateMachine(clock=clock)
        self.tracker = tracker or ReadingProgressTracker(clock=clock)
        self.store = store or LoanStore()
        self.locks = locks or KeyedLockRegistry(timeout=settings.lock_timeout_seconds)

    def now(self) -> datetime:
        return ensure_utc(self.clock())

    # ------------------------- Helpers ------------------------- #
    def _peek(self, loan_id: int) -> Loan:
        """Read a loan outside any lock. Only its immutable fields may be trusted."""
        with read_connection(self.db_file) as conn:
            return self.store.require(conn, loan_id)

    @staticmethod
    def _check_manage(principal: Principal, loan: Loan, action: str) -> None:
        if not principal.can_manage(loan.user_id):
            raise Forbidden(f"Not authorized to {action} this loan")

    # ------------------------- Use cases ------------------------- #
    def borrow(self, principal: Principal, isbn: str) -> Loan:
        """Reserve a copy of ``isbn`` and open an Active loan for the principal."""
        if not principal.is_active:
            raise UserInactive()
        isbn = normalize_isbn(isbn)
        if not isbn:
            raise ValidationError("Book ISBN is required")

        with self.locks.hold(user_key(principal.user_id), book_key(isbn)):
            with transaction(self.db_file) as conn:
                self.ledger.require_book(conn, isbn)
                if self.store.find_active(conn, principal.user_id, isbn) is not None:
                    raise DuplicateActiveLoan()
                active = self.store.count_active_for_user(conn, principal.user_id)
                if active >= principal.max_books_allowed:
                    raise MaxLoansReached(
                        f"You have reached the maximum limit of {principal.max_books_allowed} borrowed books"
                    )

                reservation = self.ledger.reserve(conn, isbn)
                # From here on any failure must give the reservation back. The
                # transaction rollback undoes the counter change with the loan.
                try:
                    loan = self.machine.create(principal.user_id, isbn)
                    self.store.insert(conn, loan)
                except sqlite3.IntegrityError as e:
                    logger.warning(f"Duplicate active loan for {principal.user_id}/{isbn}; releasing reservation")
                    raise DuplicateActiveLoan() from e
                except Exception:
                    logger.warning(f"Loan creation for {principal.user_id}/{isbn} failed; releasing reservation")
                    raise

        logger.info(
            f"Loan {loan.id} issued: user={principal.user_id} isbn={isbn} "
            f"reserved={reservation.reserved}/{reservation.capacity}"
        )
        return loan

    def return_loan(self, principal: Principal, loan_id: int) -> Loan:
        """Close an Active loan and give its capacity back to the book."""
        peeked = self._peek(loan_id)
        self._check_manage(principal, peeked, "return")

        with self.locks.hold(loan_key(loan_id), book_key(peeked.book_isbn)):
            with transaction(self.db_file) as conn:
                loan = self.store.require(conn, loan_id)
                self.machine.return_book(loan)
                self.store.save(conn, loan)
                self.ledger.release(conn, loan.book_isbn)

        logger.info(f"Loan {loan.id} returned by {principal.user_id} ({principal.role.value}), fine={loan.fine.amount}")
        return loan

    def renew(self, principal: Principal, loan_id: int, days_to_add: Optional[int] = None) -> Loan:
        with self.locks.hold(loan_key(loan_id)):
            with transaction(self.db_file) as conn:
                loan = self.store.require(conn, loan_id)
                self._check_manage(principal, loan, "renew")
                if not loan.is_active:
                    raise AlreadyReturned("Cannot renew returned book")
                # Staff may extend an overdue loan; self-service users may not
                if self.machine.is_overdue(loan) and not principal.is_staff:
                    raise OverdueRenewalForbidden()
                self.machine.renew(loan, days_to_add)
                self.store.save(conn, loan)

        logger.info(f"Loan {loan.id} renewed ({loan.renewal_count}), due {loan.due_date.isoformat()}")
        return loan

    def update_progress(
        self,
        principal: Principal,
        loan_id: int,
        page_number: int,
        session_duration_seconds: Optional[float] = None,
    ) -> ProgressUpdate:
        with self.locks.hold(loan_key(loan_id)):
            with transaction(self.db_file) as conn:
                loan = self.store.require(conn, loan_id)
                if not principal.owns(loan.user_id):
                    raise Forbidden("Not authorized to update this loan")
                if not loan.is_active:
                    raise LoanNotActive()
                book = self.ledger.require_book(conn, loan.book_isbn)
                update = self.tracker.update_progress(loan, page_number, book.total_pages, session_duration_seconds)
                if update.session is not None:
                    self.store.append_session(conn, loan.id, update.session)
                    self.store.save(conn, loan)
        return update

    def pay_fine(self, principal: Principal, loan_id: int) -> Loan:
        with self.locks.hold(loan_key(loan_id)):
            with transaction(self.db_file) as conn:
                loan = self.store.require(conn, loan_id)
                self._check_manage(principal, loan, "pay the fine for")
                self.machine.pay_fine(loan)
                self.store.save(conn, loan)

        logger.info(f"Fine of {loan.fine.amount} paid for loan {loan.id}")
        return loan

    # ------------------------- Queries ------------------------- #
    def get_loan(self, principal: Principal, loan_id: int) -> Loan:
        with read_connection(self.db_file) as conn:
            loan = self.store.get(conn, loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        self._check_manage(principal, loan, "access")
        return loan

    def list_user_loans(self, principal: Principal, status: Union[str, LoanStatus, None] = None) -> List[Loan]:
        with read_connection(self.db_file) as conn:
            return self.store.list(conn, user_id=principal.user_id, status=parse_status(status))

    def list_loans(
        self,
        principal: Principal,
        *,
        status: Union[str, LoanStatus, None] = None,
        user_id: Optional[str] = None,
        isbn: Optional[str] = None,
        overdue: bool = False,
    ) -> List[Loan]:
        if not principal.is_staff:
            raise Forbidden("Only librarians and administrators can list all loans")
        with read_connection(self.db_file) as conn:
            return self.store.list(
                conn,
                user_id=user_id,
                isbn=isbn,
                status=parse_status(status),
                overdue_at=self.now() if overdue else None,
            )

    def reading_summary(self, principal: Principal, loan_id: int) -> dict:
        with read_connection(self.db_file) as conn:
            loan = self.store.require(conn, loan_id)
            self._check_manage(principal, loan, "access")
            book = self.ledger.require_book(conn, loan.book_isbn)
        summary = self.tracker.summary(loan, book.total_pages)
        summary["loan_id"] = loan.id
        return summary
