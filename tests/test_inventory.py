import sqlite3

import pytest

from database import transaction
from errors import BookNotFound, InternalError, InventoryExhausted, InventoryUnderflow
from inventory import InventoryLedger

ledger = InventoryLedger()


def test_reserve_increments_counters(lib, add_book):
    add_book(isbn="111", capacity=2)

    with transaction(lib.db_file) as conn:
        reservation = ledger.reserve(conn, "111")

    assert reservation.isbn == "111"
    assert reservation.reserved == 1
    assert reservation.capacity == 2
    book = lib.find_book("111")
    assert book.reserved == 1
    assert book.total_loan_count == 1


def test_reserve_when_full_has_no_side_effects(lib, add_book):
    add_book(isbn="111", capacity=1)
    with transaction(lib.db_file) as conn:
        ledger.reserve(conn, "111")

    with pytest.raises(InventoryExhausted):
        with transaction(lib.db_file) as conn:
            ledger.reserve(conn, "111")

    book = lib.find_book("111")
    assert book.reserved == 1
    assert book.total_loan_count == 1


def test_reserve_unknown_book(lib):
    with pytest.raises(BookNotFound):
        with transaction(lib.db_file) as conn:
            ledger.reserve(conn, "nope")


def test_release_decrements_but_keeps_popularity(lib, add_book):
    add_book(isbn="111", capacity=2)
    with transaction(lib.db_file) as conn:
        ledger.reserve(conn, "111")
        ledger.reserve(conn, "111")
        assert ledger.release(conn, "111") == 1

    book = lib.find_book("111")
    assert book.reserved == 1
    assert book.total_loan_count == 2


def test_release_guards_against_underflow(lib, add_book):
    add_book(isbn="111", capacity=1)

    with pytest.raises(InventoryUnderflow):
        with transaction(lib.db_file) as conn:
            ledger.release(conn, "111")

    assert lib.find_book("111").reserved == 0


def test_release_unknown_book(lib):
    with pytest.raises(BookNotFound):
        with transaction(lib.db_file) as conn:
            ledger.release(conn, "nope")


def test_storage_rejects_reserved_above_capacity(lib, add_book):
    add_book(isbn="111", capacity=1)
    # Bypass the ledger to hit the table constraint directly
    with pytest.raises(InternalError) as excinfo:
        with transaction(lib.db_file) as conn:
            conn.execute("UPDATE books SET reserved = 2 WHERE isbn = '111'")
    assert isinstance(excinfo.value.__cause__, sqlite3.IntegrityError)
    assert lib.find_book("111").reserved == 0


def test_availability(lib, add_book):
    add_book(isbn="111", capacity=2)
    with transaction(lib.db_file) as conn:
        ledger.reserve(conn, "111")
        info = ledger.availability(conn, "111")

    assert info == {
        "isbn": "111",
        "capacity": 2,
        "reserved": 1,
        "available": 1,
        "is_available_for_loan": True,
    }
