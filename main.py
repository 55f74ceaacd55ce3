import json
import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from auth import Principal, parse_role
from book import Book
from config import settings
from errors import LendingError
from library import Library
from utils.ui_helpers import print_books, print_loan, print_loans, print_stats, set_output_mode, get_output_mode

APP_NAME = "Lending CLI"

console = Console()
logger = logging.getLogger(__name__)

# --- Typer CLI application ---
app = typer.Typer(help="Library lending CLI")

_state = {"db_file": None}


def _get_library() -> Library:
    return Library(_state["db_file"] or database.DATABASE_FILE)


def _principal(user: str, role: str, max_books: Optional[int], inactive: bool) -> Principal:
    try:
        parsed = parse_role(role)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=2)
    return Principal(
        user_id=user,
        role=parsed,
        is_active=not inactive,
        max_books_allowed=settings.default_max_books if max_books is None else max_books,
    )


def _fail(error: LendingError) -> None:
    print(f"Error: {error}")
    raise typer.Exit(code=1)


# Options shared by every command that acts on behalf of someone
UserOption = typer.Option(..., "--user", "-u", help="Acting user id")
RoleOption = typer.Option("user", "--role", "-r", help="Role: user | librarian | admin")
MaxBooksOption = typer.Option(None, "--max-books", help="Per-user active loan cap")
InactiveOption = typer.Option(False, "--inactive", help="Treat the account as inactive")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine log messages"),
):
    """Global CLI options (output mode, database, logging)."""
    if output:
        set_output_mode(output)
    _state["db_file"] = db
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)


@app.command("add-book")
def cli_add_book(
    isbn: str,
    title: str = typer.Option(..., "--title", "-t"),
    author: str = typer.Option(..., "--author", "-a"),
    pages: int = typer.Option(..., "--pages", "-p", help="Total pages"),
    capacity: int = typer.Option(3, "--capacity", "-c", help="Maximum simultaneous loans"),
):
    """Register a lendable book."""
    lib = _get_library()
    try:
        book = lib.add_book(Book(title=title, author=author, isbn=isbn, total_pages=pages, capacity=capacity))
    except LendingError as e:
        _fail(e)
    print(f"Successfully added: {book.title} by {book.author} ({book.capacity} copies)")


@app.command("books")
def cli_books(popular: bool = typer.Option(False, "--popular", help="Order by times lent")):
    """List books with their current loan counts."""
    lib = _get_library()
    print_books(lib.popular_books() if popular else lib.list_books())


@app.command("borrow")
def cli_borrow(
    isbn: str,
    user: str = UserOption,
    role: str = RoleOption,
    max_books: Optional[int] = MaxBooksOption,
    inactive: bool = InactiveOption,
):
    """Borrow a book."""
    lib = _get_library()
    try:
        loan = lib.lending.borrow(_principal(user, role, max_books, inactive), isbn)
    except LendingError as e:
        _fail(e)
    print(f"Loan {loan.id} created, due {loan.due_date.date().isoformat()}")


@app.command("return")
def cli_return(loan_id: int, user: str = UserOption, role: str = RoleOption):
    """Return a borrowed book."""
    lib = _get_library()
    try:
        loan = lib.lending.return_loan(_principal(user, role, None, False), loan_id)
    except LendingError as e:
        _fail(e)
    print(f"Loan {loan.id} returned.")
    if loan.fine and loan.fine.amount > 0:
        print(f"Fine due: {loan.fine.amount:.2f}")


@app.command("renew")
def cli_renew(
    loan_id: int,
    user: str = UserOption,
    role: str = RoleOption,
    days: Optional[int] = typer.Option(None, "--days", help="Days to add (default from config)"),
):
    """Renew a loan."""
    lib = _get_library()
    try:
        loan = lib.lending.renew(_principal(user, role, None, False), loan_id, days)
    except LendingError as e:
        _fail(e)
    print(f"Loan {loan.id} renewed ({loan.renewal_count}/2), due {loan.due_date.date().isoformat()}")


@app.command("progress")
def cli_progress(
    loan_id: int,
    page: int,
    user: str = UserOption,
    duration: Optional[float] = typer.Option(None, "--duration", help="Seconds spent reading"),
):
    """Record reading progress on a loan."""
    lib = _get_library()
    try:
        update = lib.lending.update_progress(_principal(user, "user", None, False), loan_id, page, duration)
    except LendingError as e:
        _fail(e)
    if get_output_mode() == "json":
        print(json.dumps(update.to_dict(), ensure_ascii=False))
    else:
        print(f"Last read page: {update.last_read_page} ({update.progress_percent}%)")


@app.command("pay-fine")
def cli_pay_fine(loan_id: int, user: str = UserOption, role: str = RoleOption):
    """Mark a loan's fine as paid."""
    lib = _get_library()
    try:
        loan = lib.lending.pay_fine(_principal(user, role, None, False), loan_id)
    except LendingError as e:
        _fail(e)
    print(f"Fine of {loan.fine.amount:.2f} paid for loan {loan.id}.")


@app.command("loans")
def cli_loans(
    user: str = UserOption,
    role: str = RoleOption,
    status: Optional[str] = typer.Option(None, "--status", help="active | returned"),
    all_users: bool = typer.Option(False, "--all", help="All users' loans (staff only)"),
    overdue: bool = typer.Option(False, "--overdue", help="Only overdue loans (with --all)"),
    loan_id: Optional[int] = typer.Option(None, "--id", help="Show a single loan"),
):
    """List loans."""
    lib = _get_library()
    principal = _principal(user, role, None, False)
    try:
        if loan_id is not None:
            print_loan(lib.lending.get_loan(principal, loan_id))
            return
        if all_users:
            loans = lib.lending.list_loans(principal, status=status, overdue=overdue)
        else:
            loans = lib.lending.list_user_loans(principal, status)
    except LendingError as e:
        _fail(e)
    print_loans(loans)


@app.command("stats")
def cli_stats():
    """Show lending statistics."""
    print_stats(_get_library().get_statistics())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Start the HTTP API with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    env = dict(os.environ)
    if _state["db_file"]:
        env["LENDING_DB_FILE"] = _state["db_file"]
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, env=env)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/]")


if __name__ == "__main__":
    app()
