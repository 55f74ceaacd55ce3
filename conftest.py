import os
from datetime import datetime, timedelta, timezone

import pytest

from auth import Principal, Role
from book import Book
from lending_service import LendingService
from library import Library
from loan_state import LoanStateMachine
from locks import KeyedLockRegistry
from reading_progress import ReadingProgressTracker

DAY0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; call it to get the current time."""

    def __init__(self, start: datetime = DAY0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set_day(self, day: int) -> None:
        self.now = DAY0 + timedelta(days=day)


def make_service(db_file: str, clock: FakeClock, lock_timeout: float = 5.0) -> LendingService:
    return LendingService(
        db_file,
        machine=LoanStateMachine(default_loan_days=21, renewal_days=14, fine_per_day=1.0, clock=clock),
        tracker=ReadingProgressTracker(default_session_seconds=300, clock=clock),
        locks=KeyedLockRegistry(timeout=lock_timeout),
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lib(tmp_path, request, clock):
    # A fresh database file for every test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, lending=make_service(db_file, clock))
    yield lib
    try:
        lib.close()
    except Exception:
        pass
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def add_book(lib):
    def _add(isbn: str = "9780441172719", capacity: int = 3, pages: int = 200, title: str = "Dune",
             author: str = "Frank Herbert") -> Book:
        return lib.add_book(Book(title=title, author=author, isbn=isbn, total_pages=pages, capacity=capacity))
    return _add


@pytest.fixture
def alice():
    return Principal(user_id="alice", role=Role.USER, max_books_allowed=5)


@pytest.fixture
def bob():
    return Principal(user_id="bob", role=Role.USER, max_books_allowed=5)


@pytest.fixture
def librarian():
    return Principal(user_id="lena", role=Role.LIBRARIAN)


@pytest.fixture
def admin():
    return Principal(user_id="ada", role=Role.ADMIN)
