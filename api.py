import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from auth import Principal, parse_role
from book import Book
from config import settings
from database import get_db_connection
from errors import (
    AuthorizationError,
    ConflictError,
    Forbidden,
    InternalError,
    LendingError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from library import Library
from loan import MAX_RENEWAL_DAYS, MAX_SESSION_SECONDS

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library(os.environ.get("LENDING_DB_FILE") or None)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Error mapping ---
STATUS_BY_ERROR = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TransientError, 503),
)


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    if isinstance(exc, InternalError):
        # Details stay in the server log
        logger.error(f"Internal error on {request.method} {request.url.path}: {exc!r}")
        return JSONResponse(status_code=500, content={"detail": InternalError.default_message(), "code": InternalError.code})

    status = next((code for cls, code in STATUS_BY_ERROR if isinstance(exc, cls)), 400)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": exc.code}, headers=headers)


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the shared API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )


def get_principal(
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
    x_user_active: bool = Header(True, alias="X-User-Active"),
    x_max_books: Optional[int] = Header(None, alias="X-Max-Books"),
) -> Principal:
    """Build the principal from headers set by the upstream identity layer."""
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity")
    try:
        role = parse_role(x_user_role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Principal(
        user_id=x_user_id.strip(),
        role=role,
        is_active=x_user_active,
        max_books_allowed=settings.default_max_books if x_max_books is None else x_max_books,
    )


def get_library() -> Library:
    return library


# --- Models ---
class BookModel(BaseModel):
    isbn: str
    title: str
    author: str
    total_pages: int
    capacity: int
    reserved: int
    available: int
    total_loan_count: int
    created_at: str | None = None


class AvailabilityModel(BaseModel):
    isbn: str
    capacity: int
    reserved: int
    available: int
    is_available_for_loan: bool


class BookCreateModel(BaseModel):
    isbn: str
    title: str
    author: str
    total_pages: int = Field(ge=1)
    capacity: int = Field(default=3, ge=1, description="Maximum simultaneous loans")


class BorrowModel(BaseModel):
    isbn: str


class RenewModel(BaseModel):
    days_to_add: int | None = Field(default=None, ge=1, le=MAX_RENEWAL_DAYS)


class ProgressRequestModel(BaseModel):
    page_number: int
    session_duration: float | None = Field(default=None, ge=0, le=MAX_SESSION_SECONDS, description="Seconds spent reading")


class ReadingSessionModel(BaseModel):
    start_time: str
    end_time: str
    pages_read: int


class FineModel(BaseModel):
    amount: float
    paid: bool
    paid_at: str | None = None


class LoanModel(BaseModel):
    id: int
    user_id: str
    book_isbn: str
    issue_date: str
    due_date: str
    return_date: str | None = None
    status: str
    renewal_count: int
    last_read_page: int
    reading_sessions: List[ReadingSessionModel] = []
    fine: FineModel | None = None
    notes: str = ""
    is_overdue: bool
    days_overdue: int


class ProgressModel(BaseModel):
    last_read_page: int
    progress_percent: int
    session: ReadingSessionModel | None = None


class ReadingSummaryModel(BaseModel):
    loan_id: int
    last_read_page: int
    total_pages: int
    progress_percent: int
    session_count: int
    pages_read: int
    reading_seconds: int


class StatsModel(BaseModel):
    total_books: int
    total_capacity: int
    total_reserved: int
    active_loans: int
    overdue_loans: int
    returned_loans: int
    outstanding_fines: float


def _loan_payload(lib: Library, loan) -> dict:
    return loan.to_dict(now=lib.lending.now())


def _require_staff(principal: Principal) -> None:
    if not principal.is_staff:
        raise Forbidden("Only librarians and administrators can do this")


# --- Health ---
@app.get("/health")
async def health():
    """Lightweight health check with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel], dependencies=[Depends(get_api_key)])
def list_books(lib: Library = Depends(get_library)):
    return [b.to_dict() for b in lib.list_books()]


@app.get("/books/popular", response_model=List[BookModel], dependencies=[Depends(get_api_key)])
def popular_books(limit: int = Query(10, ge=1, le=100), lib: Library = Depends(get_library)):
    return [b.to_dict() for b in lib.popular_books(limit)]


@app.get("/books/{isbn}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def get_book(isbn: str, lib: Library = Depends(get_library)):
    book = lib.find_book(isbn)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book.to_dict()


@app.get("/books/{isbn}/availability", response_model=AvailabilityModel, dependencies=[Depends(get_api_key)])
def book_availability(isbn: str, lib: Library = Depends(get_library)):
    return lib.availability(isbn)


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(
    payload: BookCreateModel,
    principal: Principal = Depends(get_principal),
    lib: Library = Depends(get_library),
):
    _require_staff(principal)
    book = lib.add_book(Book(
        title=payload.title,
        author=payload.author,
        isbn=payload.isbn,
        total_pages=payload.total_pages,
        capacity=payload.capacity,
    ))
    return book.to_dict()


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def borrow_book(
    payload: BorrowModel,
    principal: Principal = Depends(get_principal),
    lib: Library = Depends(get_library),
):
    loan = lib.lending.borrow(principal, payload.isbn)
    return _loan_payload(lib, loan)


@app.get("/loans", response_model=List[LoanModel], dependencies=[Depends(get_api_key)])
def list_loans(
    status: Optional[str] = Query(None, description="active | returned"),
    user: Optional[str] = Query(None),
    book: Optional[str] = Query(None),
    overdue: bool = Query(False),
    principal: Principal = Depends(get_principal),
    lib: Library = Depends(get_library),
):
    loans = lib.lending.list_loans(principal, status=status, user_id=user, isbn=book, overdue=overdue)
    return [_loan_payload(lib, loan) for loan in loans]


@app.get("/loans/mine", response_model=List[LoanModel], dependencies=[Depends(get_api_key)])
def my_loans(
    status: Optional[str] = Query(None, description="active | returned"),
    principal: Principal = Depends(get_principal),
    lib: Library = Depends(get_library),
):
    return [_loan_payload(lib, loan) for loan in lib.lending.list_user_loans(principal, status)]


@app.get("/loans/{loan_id}", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def get_loan(loan_id: int, principal: Principal = Depends(get_principal), lib: Library = Depends(get_library)):
    return _loan_payload(lib, lib.lending.get_loan(principal, loan_id))


@app.put("/loans/{loan_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def return_book(loan_id: int, principal: Principal = Depends(get_principal), lib: Library = Depends(get_library)):
    return _loan_payload(lib, lib.lending.return_loan(principal, loan_id))


@app.put("/loans/{loan_id}/renew", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def renew_loan(
    loan_id: int,
    payload: Optional[RenewModel] = None,
    principal: Principal = Depends(get_principal),
    lib: Library = Depends(get_library),
):
    return _loan_payload(lib, lib.lending.renew(principal, loan_id, payload.days_to_add if payload else None))


@app.put("/loans/{loan_id}/progress", response_model=ProgressModel, dependencies=[Depends(get_api_key)])
def update_progress(
    loan_id: int,
    payload: ProgressRequestModel,
    principal: Principal = Depends(get_principal),
    lib: Library = Depends(get_library),
):
    update = lib.lending.update_progress(principal, loan_id, payload.page_number, payload.session_duration)
    return update.to_dict()


@app.get("/loans/{loan_id}/progress", response_model=ReadingSummaryModel, dependencies=[Depends(get_api_key)])
def reading_summary(loan_id: int, principal: Principal = Depends(get_principal), lib: Library = Depends(get_library)):
    return lib.lending.reading_summary(principal, loan_id)


@app.put("/loans/{loan_id}/fine/pay", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def pay_fine(loan_id: int, principal: Principal = Depends(get_principal), lib: Library = Depends(get_library)):
    return _loan_payload(lib, lib.lending.pay_fine(principal, loan_id))


# --- Stats ---
@app.get("/stats", response_model=StatsModel, dependencies=[Depends(get_api_key)])
def get_stats(principal: Principal = Depends(get_principal), lib: Library = Depends(get_library)):
    _require_staff(principal)
    return lib.get_statistics()
