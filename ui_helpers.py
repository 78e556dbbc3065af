import os
import json
from typing import Any, Dict, List
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "RENTAL_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_book_list(books: List[Dict[str, Any]]) -> None:
    """Print books in the current output mode.
    - plain: 'id - Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps(books, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b["id"], b["title"], b["author"], b["genre"],
                          f"{b['available_copies']}/{b['total_copies']}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b['id']} - {b['title']} by {b['author']} [{b['available_copies']}/{b['total_copies']}]")


def print_rental_list(rentals: List[Dict[str, Any]], empty_message: str = "No rentals found.") -> None:
    mode = get_output_mode()

    if not rentals:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps(rentals, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Rentals", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Renter")
        table.add_column("Due")
        table.add_column("Status")
        table.add_column("Days overdue", justify="right")
        for r in rentals:
            title = (r.get("book") or {}).get("title", r["book_id"])
            table.add_row(r["id"], title, r["renter_email"], r["due_date"][:10],
                          r["status"], str(r["days_overdue"]))
        _console.print(table)
    else:
        for r in rentals:
            title = (r.get("book") or {}).get("title", r["book_id"])
            print(f"{r['id']} - {title} -> {r['renter_email']} due {r['due_date'][:10]} "
                  f"({r['status']}, {r['days_overdue']} days overdue)")


def print_rental(rental: Dict[str, Any], headline: str) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(rental, ensure_ascii=False))
        return
    title = (rental.get("book") or {}).get("title", rental["book_id"])
    lines = [
        f"Rental: {rental['id']}",
        f"Book: {title}",
        f"Renter: {rental['renter_name']} <{rental['renter_email']}>",
        f"Due: {rental['due_date'][:10]}",
        f"Status: {rental['status']}",
        f"Late fee: {rental['late_fee']:.2f}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=headline, border_style="green"))
    else:
        print(headline)
        for line in lines:
            print(line)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print book and rental statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    books = stats.get("books", {}).get("overall", {})
    rentals = stats.get("rentals", {}).get("overall", {})

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Total Books:[/] {books.get('total_books', 0)}\n"
            f"[bold]Copies:[/] {books.get('available_copies', 0)} available / {books.get('total_copies', 0)} total\n"
            f"[bold]Active Rentals:[/] {rentals.get('active_rentals', 0)}\n"
            f"[bold]Overdue Rentals:[/] {rentals.get('overdue_rentals', 0)}\n"
            f"[bold]Late Fees:[/] {rentals.get('total_late_fees', 0):.2f}"
        )
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
    else:
        print(f"Total Books: {books.get('total_books', 0)}")
        print(f"Total Copies: {books.get('total_copies', 0)}")
        print(f"Available Copies: {books.get('available_copies', 0)}")
        print(f"Rented Copies: {books.get('rented_copies', 0)}")
        print(f"Active Rentals: {rentals.get('active_rentals', 0)}")
        print(f"Overdue Rentals: {rentals.get('overdue_rentals', 0)}")
        print(f"Total Late Fees: {rentals.get('total_late_fees', 0):.2f}")
