import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LENDING_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'ISBN - Title by Author [reserved/capacity]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("On loan", justify="right")
        table.add_column("Times lent", justify="right")
        for b in books:
            table.add_row(b.isbn, b.title, b.author, f"{b.reserved}/{b.capacity}", str(b.total_loan_count))
        _console.print(table)
    else:
        for b in books:
            print(f"{b.isbn} - {b.title} by {b.author} [{b.reserved}/{b.capacity}]")

def print_loans(loans: List[Any]) -> None:
    mode = get_output_mode()

    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        print(json.dumps([l.to_dict() for l in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Loans", header_style="bold cyan")
        table.add_column("ID", justify="right")
        table.add_column("User")
        table.add_column("ISBN", style="magenta")
        table.add_column("Status")
        table.add_column("Due")
        table.add_column("Renewals", justify="right")
        table.add_column("Page", justify="right")
        for l in loans:
            status = l.status.value
            if l.is_overdue():
                status = f"[red]overdue ({l.days_overdue()}d)[/]"
            table.add_row(str(l.id), l.user_id, l.book_isbn, status, l.due_date.date().isoformat(),
                          str(l.renewal_count), str(l.last_read_page))
        _console.print(table)
    else:
        for l in loans:
            print(format_loan(l))

def format_loan(loan: Any) -> str:
    status = loan.status.value
    if loan.is_overdue():
        status = f"overdue by {loan.days_overdue()} day(s)"
    line = (f"Loan {loan.id}: {loan.book_isbn} for {loan.user_id} - {status}, "
            f"due {loan.due_date.date().isoformat()}, renewals {loan.renewal_count}")
    if loan.fine is not None and loan.fine.amount > 0:
        line += f", fine {loan.fine.amount:.2f} ({'paid' if loan.fine.paid else 'unpaid'})"
    return line

def print_loan(loan: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(loan.to_dict(), ensure_ascii=False))
    elif mode == "rich":
        _console.print(Panel.fit(format_loan(loan), title=f"Loan {loan.id}", border_style="green"))
    else:
        print(format_loan(loan))

def print_stats(stats: Dict[str, Any]) -> None:
    """Print lending statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{key.replace('_', ' ').title()}: {value}")
