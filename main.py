import subprocess
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, NoReturn, Optional

import typer

from config import configure_logging, settings
from database import Database, to_utc, utcnow
from errors import RentalServiceError
from rental_service import RentalService
from ui_helpers import (
    print_book_list,
    print_rental,
    print_rental_list,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Book Rental CLI"

app = typer.Typer(help=APP_NAME)

_state = {"db_file": None}


@contextmanager
def open_service() -> Iterator[RentalService]:
    """Open the database for one command and hand a service over it."""
    db = Database(_state["db_file"] or settings.database_file)
    try:
        yield RentalService(db, settings)
    finally:
        db.close()


def _fail(error: RentalServiceError) -> NoReturn:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db_file: Optional[str] = typer.Option(
        None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE or library.db)",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level for the CLI"),
):
    """Global options for the CLI (output mode, database file)."""
    configure_logging(log_level)
    if output:
        set_output_mode(output)
    _state["db_file"] = db_file


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, help="Bind address"),
    port: int = typer.Option(settings.api_port, help="Port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    print(f"Starting API on http://{host}:{port}")
    cmd = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        cmd.append("--reload")
    subprocess.run(cmd, check=False)


@app.command("books")
def cli_books(
    genre: Optional[str] = typer.Option(None, help="Only this genre"),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Match title, author or genre"),
    available: bool = typer.Option(False, "--available", help="Only books with free copies"),
    include_inactive: bool = typer.Option(False, "--all", help="Include soft-deleted books"),
    page: int = typer.Option(1, min=1),
    limit: int = typer.Option(20, min=1, max=100),
):
    """List books."""
    with open_service() as service:
        try:
            result = service.library.list_books(
                page=page, limit=limit, genre=genre, search=search,
                available=True if available else None, sort_by="title", sort_order="asc",
                include_inactive=include_inactive,
            )
        except RentalServiceError as e:
            _fail(e)
        print_book_list([b.to_dict() for b in result.items])


@app.command("add-book")
def cli_add_book(
    title: str = typer.Option(..., help="Book title"),
    author: str = typer.Option(..., help="Author name"),
    genre: str = typer.Option("Other", help="One of the supported genres"),
    copies: int = typer.Option(1, help="Total copies"),
    isbn: Optional[str] = typer.Option(None, help="ISBN (digits and hyphens)"),
    year: Optional[int] = typer.Option(None, help="Published year"),
):
    """Add a book with all copies available."""
    with open_service() as service:
        try:
            book = service.library.create_book(
                title=title, author=author, genre=genre, total_copies=copies,
                available_copies=copies, isbn=isbn, published_year=year,
            )
        except RentalServiceError as e:
            _fail(e)
        print(f"Successfully added: {book.title} by {book.author} ({book.id})")


@app.command("remove-book")
def cli_remove_book(book_id: str):
    """Soft-delete a book; existing rentals are kept."""
    with open_service() as service:
        try:
            service.library.soft_delete_book(book_id)
        except RentalServiceError as e:
            _fail(e)
        print(f"Book {book_id} has been removed.")


@app.command("rent")
def cli_rent(
    book_id: str,
    name: str = typer.Option(..., "--name", help="Renter name"),
    email: str = typer.Option(..., "--email", help="Renter email"),
    days: int = typer.Option(14, "--days", min=1, help="Loan length in days"),
    due: Optional[datetime] = typer.Option(None, "--due", help="Explicit due date, overrides --days"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Rent one copy of a book."""
    due_date = to_utc(due) if due else utcnow() + timedelta(days=days)
    with open_service() as service:
        try:
            rental = service.rent(book_id, renter_name=name, renter_email=email, due_date=due_date,
                                  renter_phone=phone, notes=notes)
        except RentalServiceError as e:
            _fail(e)
        print_rental(service.present(rental), "Book rented")


@app.command("return")
def cli_return(rental_id: str, notes: Optional[str] = typer.Option(None, "--notes")):
    """Return a rented copy; late fees are charged automatically."""
    with open_service() as service:
        try:
            rental = service.return_book(rental_id, notes=notes)
        except RentalServiceError as e:
            _fail(e)
        print_rental(service.present(rental), "Book returned")


@app.command("status")
def cli_status(rental_id: str, status: str, notes: Optional[str] = typer.Option(None, "--notes")):
    """Set a rental's status (active, overdue or returned)."""
    with open_service() as service:
        try:
            rental = service.update_rental_status(rental_id, status, notes=notes)
        except RentalServiceError as e:
            _fail(e)
        print_rental(service.present(rental), "Rental updated")


@app.command("rentals")
def cli_rentals(
    email: Optional[str] = typer.Option(None, "--email", help="Only this renter"),
    status: Optional[str] = typer.Option(None, "--status"),
    page: int = typer.Option(1, min=1),
    limit: int = typer.Option(20, min=1, max=100),
):
    """List rentals, newest first."""
    with open_service() as service:
        try:
            result = service.list_rentals(page=page, limit=limit, status=status, renter_email=email)
        except RentalServiceError as e:
            _fail(e)
        print_rental_list(service.present_page(result)["items"])


@app.command("overdue")
def cli_overdue(page: int = typer.Option(1, min=1), limit: int = typer.Option(20, min=1, max=100)):
    """List overdue rentals, oldest due date first."""
    with open_service() as service:
        result = service.list_overdue_rentals(page=page, limit=limit)
        print_rental_list(service.present_page(result)["items"], empty_message="No overdue rentals.")


@app.command("stats")
def cli_stats():
    """Show book and rental statistics."""
    with open_service() as service:
        stats = {
            "books": service.library.get_statistics(),
            "rentals": service.get_rental_statistics(),
        }
    print_stats_result(stats)


if __name__ == "__main__":
    app()
