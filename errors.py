"""Typed errors raised by the lending engine.

Every failed precondition raises its own class so callers (the HTTP adapter,
the CLI, the borrow rollback path) can branch on the type instead of parsing
messages. ``code`` is a stable machine-readable identifier and ``retryable``
tells the caller whether trying again later can succeed.
"""

from __future__ import annotations


class LendingError(Exception):
    """Base class for every error the lending engine raises."""

    code = "lending_error"
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ").capitalize()


# ------------------------- Validation ------------------------- #
class ValidationError(LendingError):
    """Malformed or out-of-range input. Fixable by the caller."""

    code = "validation_error"


# ------------------------- Business conflicts ------------------------- #
class ConflictError(LendingError):
    """A business rule rejected the request."""

    code = "conflict"


class InventoryExhausted(ConflictError):
    code = "inventory_exhausted"

    @classmethod
    def default_message(cls) -> str:
        return "Book is not available for borrowing at this time"


class DuplicateActiveLoan(ConflictError):
    code = "duplicate_active_loan"

    @classmethod
    def default_message(cls) -> str:
        return "You already have an active loan for this book"


class MaxLoansReached(ConflictError):
    code = "max_loans_reached"


class MaxRenewalsReached(ConflictError):
    code = "max_renewals_reached"

    @classmethod
    def default_message(cls) -> str:
        return "Maximum renewals reached"


class AlreadyReturned(ConflictError):
    code = "already_returned"

    @classmethod
    def default_message(cls) -> str:
        return "Book already returned"


class LoanNotActive(ConflictError):
    code = "loan_not_active"

    @classmethod
    def default_message(cls) -> str:
        return "Cannot update reading progress on inactive loan"


class FineAlreadyPaid(ConflictError):
    code = "fine_already_paid"


class NoOutstandingFine(ConflictError):
    code = "no_outstanding_fine"


class BookAlreadyExists(ConflictError):
    code = "book_already_exists"


# ------------------------- Authorization ------------------------- #
class AuthorizationError(LendingError):
    """The principal's role or ownership does not permit the operation."""

    code = "authorization_error"


class Forbidden(AuthorizationError):
    code = "forbidden"

    @classmethod
    def default_message(cls) -> str:
        return "Not authorized to access this loan"


class UserInactive(AuthorizationError):
    code = "user_inactive"

    @classmethod
    def default_message(cls) -> str:
        return "User account is not active"


class OverdueRenewalForbidden(AuthorizationError):
    code = "overdue_renewal_forbidden"

    @classmethod
    def default_message(cls) -> str:
        return "Cannot renew overdue loan. Please contact the librarian"


# ------------------------- Not found ------------------------- #
class NotFoundError(LendingError):
    code = "not_found"


class BookNotFound(NotFoundError):
    code = "book_not_found"

    @classmethod
    def default_message(cls) -> str:
        return "Book not found"


class LoanNotFound(NotFoundError):
    code = "loan_not_found"

    @classmethod
    def default_message(cls) -> str:
        return "Loan not found"


# ------------------------- Transient ------------------------- #
class TransientError(LendingError):
    """Lock or transaction timeout. Safe to retry with backoff."""

    code = "transient_error"
    retryable = True


class Busy(TransientError):
    code = "busy"

    @classmethod
    def default_message(cls) -> str:
        return "Resource is busy, try again"


# ------------------------- Internal ------------------------- #
class InternalError(LendingError):
    """Unexpected failure. The message shown to callers stays generic."""

    code = "internal_error"

    @classmethod
    def default_message(cls) -> str:
        return "Internal server error"


class InventoryUnderflow(InternalError):
    code = "inventory_underflow"
