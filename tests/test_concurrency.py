import random
import threading
from collections import Counter

import pytest

from auth import Principal
from conftest import make_service
from errors import AlreadyReturned, Busy, InventoryExhausted, LendingError, MaxLoansReached
from locks import KeyedLockRegistry, book_key, loan_key
from loan import LoanStatus


def run_together(*calls):
    """Start every call at the same moment and collect ``(result, error)`` pairs."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(index, call):
        barrier.wait()
        try:
            outcomes[index] = (call(), None)
        except Exception as e:
            outcomes[index] = (None, e)

    threads = [threading.Thread(target=worker, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


def test_last_copy_goes_to_exactly_one_borrower(lib, add_book, alice, bob):
    add_book(isbn="111", capacity=1)

    outcomes = run_together(
        lambda: lib.lending.borrow(alice, "111"),
        lambda: lib.lending.borrow(bob, "111"),
    )

    loans = [result for result, error in outcomes if error is None]
    errors = [error for result, error in outcomes if error is not None]
    assert len(loans) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InventoryExhausted)
    assert lib.find_book("111").reserved == 1


def test_many_borrowers_never_overbook(lib, add_book):
    add_book(isbn="111", capacity=3)
    users = [Principal(user_id=f"user{i}") for i in range(8)]

    outcomes = run_together(*[lambda u=u: lib.lending.borrow(u, "111") for u in users])

    winners = [result for result, error in outcomes if error is None]
    assert len(winners) == 3
    assert all(isinstance(error, InventoryExhausted) for result, error in outcomes if error is not None)
    book = lib.find_book("111")
    assert book.reserved == 3
    assert book.total_loan_count == 3


def test_same_user_cap_holds_under_concurrency(lib, add_book):
    add_book(isbn="111")
    add_book(isbn="222")
    carol = Principal(user_id="carol", max_books_allowed=1)

    outcomes = run_together(
        lambda: lib.lending.borrow(carol, "111"),
        lambda: lib.lending.borrow(carol, "222"),
    )

    errors = [error for result, error in outcomes if error is not None]
    assert len(errors) == 1
    assert isinstance(errors[0], MaxLoansReached)
    assert lib.find_book("111").reserved + lib.find_book("222").reserved == 1


def test_concurrent_returns_release_once(lib, add_book, alice, librarian):
    add_book(isbn="111", capacity=2)
    loan = lib.lending.borrow(alice, "111")

    outcomes = run_together(
        lambda: lib.lending.return_loan(alice, loan.id),
        lambda: lib.lending.return_loan(librarian, loan.id),
    )

    errors = [error for result, error in outcomes if error is not None]
    assert len(errors) == 1
    assert isinstance(errors[0], AlreadyReturned)
    assert lib.find_book("111").reserved == 0


def test_renew_and_return_on_same_loan_serialize(lib, add_book, alice):
    add_book(isbn="111")
    loan = lib.lending.borrow(alice, "111")

    run_together(
        lambda: lib.lending.renew(alice, loan.id),
        lambda: lib.lending.return_loan(alice, loan.id),
    )

    stored = lib.lending.get_loan(alice, loan.id)
    assert stored.status == LoanStatus.RETURNED
    assert stored.renewal_count in (0, 1)
    assert lib.find_book("111").reserved == 0


def test_lock_wait_is_bounded(lib, add_book, alice, clock):
    add_book(isbn="111")
    service = make_service(lib.db_file, clock, lock_timeout=0.1)

    with service.locks.hold(book_key("111")):
        with pytest.raises(Busy) as excinfo:
            service.borrow(alice, "111")

    assert excinfo.value.retryable is True
    assert lib.find_book("111").reserved == 0
    # The registry gives up partial acquisitions, so the retry succeeds
    assert service.borrow(alice, "111").id is not None


def test_busy_loan_blocks_renew(lib, add_book, alice, clock):
    add_book(isbn="111")
    service = make_service(lib.db_file, clock, lock_timeout=0.1)
    loan = service.borrow(alice, "111")

    with service.locks.hold(loan_key(loan.id)):
        with pytest.raises(Busy):
            service.renew(alice, loan.id)

    assert service.get_loan(alice, loan.id).renewal_count == 0


def test_different_books_do_not_contend(lib, add_book, bob, clock):
    add_book(isbn="111")
    add_book(isbn="222")
    service = make_service(lib.db_file, clock, lock_timeout=0.1)

    with service.locks.hold(book_key("111")):
        loan = service.borrow(bob, "222")

    assert loan.book_isbn == "222"


def test_lock_registry_drops_idle_entries(lib, add_book, alice, bob):
    add_book(isbn="111")
    loans = [lib.lending.borrow(alice, "111"), lib.lending.borrow(bob, "111")]
    for loan in loans:
        owner = Principal(user_id=loan.user_id)
        lib.lending.renew(owner, loan.id)
        lib.lending.return_loan(owner, loan.id)

    assert len(lib.lending.locks) == 0


def test_registry_releases_in_any_order():
    registry = KeyedLockRegistry(timeout=0.1)
    with registry.hold("b", "a", "a"):
        assert len(registry) == 2
    with registry.hold("a"):
        pass
    assert len(registry) == 0


def test_committed_borrow_is_not_undone_when_caller_walks_away(lib, add_book, alice):
    # A caller that gives up after the borrow committed still owns the loan;
    # nothing releases the copy until the loan is returned.
    add_book(isbn="111", capacity=1)

    worker = threading.Thread(target=lambda: lib.lending.borrow(alice, "111"))
    worker.start()
    worker.join(timeout=30)

    assert lib.find_book("111").reserved == 1
    active = lib.lending.list_user_loans(alice, "active")
    assert len(active) == 1

    lib.lending.return_loan(alice, active[0].id)
    assert lib.find_book("111").reserved == 0


def test_random_operations_keep_invariants(lib, add_book, librarian):
    capacities = {"111": 1, "222": 2, "333": 3}
    for isbn, capacity in capacities.items():
        add_book(isbn=isbn, capacity=capacity, pages=50)
    users = [Principal(user_id=f"user{i}", max_books_allowed=2) for i in range(5)]

    def session(seed):
        rng = random.Random(seed)
        for _ in range(40):
            user = rng.choice(users)
            action = rng.choice(["borrow", "borrow", "return", "renew", "progress"])
            try:
                if action == "borrow":
                    lib.lending.borrow(user, rng.choice(list(capacities)))
                    continue
                mine = lib.lending.list_user_loans(user, "active")
                if not mine:
                    continue
                loan = rng.choice(mine)
                if action == "return":
                    lib.lending.return_loan(user, loan.id)
                elif action == "renew":
                    lib.lending.renew(user, loan.id)
                else:
                    lib.lending.update_progress(user, loan.id, rng.randint(1, 50), 60)
            except LendingError:
                pass

    outcomes = run_together(*[lambda s=s: session(s) for s in range(6)])
    assert [error for result, error in outcomes if error is not None] == []

    all_loans = lib.lending.list_loans(librarian)
    active = [loan for loan in all_loans if loan.status == LoanStatus.ACTIVE]
    per_book = Counter(loan.book_isbn for loan in active)
    per_pair = Counter((loan.user_id, loan.book_isbn) for loan in active)
    per_user = Counter(loan.user_id for loan in active)

    for isbn, capacity in capacities.items():
        book = lib.find_book(isbn)
        assert 0 <= book.reserved <= capacity
        assert book.reserved == per_book[isbn]
        assert book.total_loan_count == sum(1 for loan in all_loans if loan.book_isbn == isbn)
    assert all(count == 1 for count in per_pair.values())
    assert all(count <= 2 for count in per_user.values())
    for loan in all_loans:
        assert 0 <= loan.renewal_count <= 2
        assert loan.last_read_page == 1 + sum(s.pages_read for s in loan.reading_sessions)
        assert (loan.return_date is None) == (loan.status == LoanStatus.ACTIVE)
    assert len(lib.lending.locks) == 0
