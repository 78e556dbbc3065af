import logging
import sqlite3
from typing import Any, Dict, Optional

from book import Book, GENRES
from config import Settings, settings as default_settings
from database import Database, utcnow
from errors import Conflict, NotFound, ValidationError
from pagination import Page, order_clause, page_window
from validators import ISBNValidator

logger = logging.getLogger(__name__)

BOOK_SORT_FIELDS = {
    "title": "title COLLATE NOCASE",
    "author": "author COLLATE NOCASE",
    "genre": "genre",
    "published_year": "published_year",
    "created_at": "created_at",
    "available_copies": "available_copies",
}

UPDATABLE_FIELDS = {
    "title", "author", "genre", "isbn", "published_year", "total_copies",
    "available_copies", "description", "cover_image", "is_active",
}


class Library:
    """Manages the book catalogue and the copy-count ledger of each book."""

    def __init__(self, db: Database, settings: Optional[Settings] = None) -> None:
        self.db = db
        self.settings = settings or default_settings

    # ------------------------- Core operations ------------------------- #
    def create_book(self, **fields: Any) -> Book:
        """Validate and store a new book. Duplicate ISBNs are rejected."""
        book = Book(**fields)
        book.validate()
        if book.available_copies > book.total_copies:
            raise ValidationError("Available copies cannot exceed total copies")
        self._ensure_isbn_free(book.isbn)

        now = utcnow()
        book.created_at = now
        book.updated_at = now
        try:
            self.db.insert("books", book.to_row())
        except sqlite3.IntegrityError as e:
            raise Conflict("Book with this ISBN already exists") from e
        logger.info("Created book %s (%s)", book.id, book.title)
        return book

    def get_book(self, book_id: str) -> Book:
        row = self.db.get("books", book_id)
        if not row:
            raise NotFound("Book not found")
        return Book.from_dict(row)

    def update_book(self, book_id: str, **changes: Any) -> Book:
        """Apply a partial update; available copies are checked against the effective total."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
        if not changes:
            raise ValidationError("At least one field must be provided for update")

        book = self.get_book(book_id)
        if "isbn" in changes:
            changes["isbn"] = ISBNValidator.normalize_isbn(changes["isbn"])
            self._ensure_isbn_free(changes["isbn"], exclude_id=book_id)

        total = changes.get("total_copies", book.total_copies)
        available = changes.get("available_copies")
        if available is not None and available > total:
            raise ValidationError("Available copies cannot exceed total copies")

        for name, value in changes.items():
            if name in ("title", "author", "genre") and isinstance(value, str):
                value = value.strip()
            setattr(book, name, value)
        book.validate()
        self.save_book(book)
        logger.info("Updated book %s: %s", book_id, ", ".join(sorted(changes)))
        return book

    def soft_delete_book(self, book_id: str) -> Book:
        """Hide a book from default listings. Copies and rentals are left as they are."""
        book = self.get_book(book_id)
        book.is_active = False
        self.save_book(book)
        logger.info("Soft-deleted book %s", book_id)
        return book

    def save_book(self, book: Book, expected_available: Optional[int] = None) -> None:
        """Persist a book, clamping available copies to the total first.

        With ``expected_available`` the write only succeeds while the stored
        available count still has that value.
        """
        book.clamp_copies()
        book.updated_at = utcnow()
        row = book.to_row()
        row.pop("id")
        row.pop("created_at")
        expected = None if expected_available is None else {"available_copies": expected_available}
        try:
            changed = self.db.update("books", book.id, row, expected=expected)
        except sqlite3.IntegrityError as e:
            raise Conflict("Book with this ISBN already exists") from e
        if changed == 0:
            if expected is not None and self.db.get("books", book.id) is not None:
                raise Conflict("Book availability changed concurrently, please retry")
            raise NotFound("Book not found")

    # ------------------------- Ledger ------------------------- #
    def decrement_availability(self, book: Book) -> Book:
        previous = book.available_copies
        book.rent_copy()
        self._save_copies(book, previous)
        return book

    def increment_availability(self, book: Book) -> Book:
        previous = book.available_copies
        book.return_copy()
        self._save_copies(book, previous)
        return book

    def _save_copies(self, book: Book, previous: int) -> None:
        expected = previous if self.settings.optimistic_copy_updates else None
        self.save_book(book, expected_available=expected)

    # ------------------------- Queries ------------------------- #
    def list_books(self, page: int = 1, limit: Optional[int] = None,
                   genre: Optional[str] = None, search: Optional[str] = None,
                   available: Optional[bool] = None, sort_by: str = "created_at",
                   sort_order: str = "desc", include_inactive: bool = False) -> Page:
        page, limit, offset = page_window(page, limit or self.settings.default_page_size,
                                          self.settings.max_page_size)
        where = ["1 = 1"] if include_inactive else ["is_active = 1"]
        params: list = []
        if genre:
            if genre not in GENRES:
                raise ValidationError("Invalid genre filter")
            where.append("genre = ?")
            params.append(genre)
        if search:
            term = f"%{search.strip()}%"
            where.append("(title LIKE ? OR author LIKE ? OR genre LIKE ?)")
            params.extend([term, term, term])
        if available is True:
            where.append("available_copies > 0")
        elif available is False:
            where.append("available_copies = 0")

        clause = " AND ".join(where)
        rows = self.db.find("books", clause, params,
                            order_by=order_clause(sort_by, sort_order, BOOK_SORT_FIELDS),
                            limit=limit, offset=offset)
        total = self.db.count("books", clause, params)
        return Page(items=[Book.from_dict(r) for r in rows], page=page, limit=limit, total=total)

    def list_available_books(self, page: int = 1, limit: Optional[int] = None,
                             genre: Optional[str] = None, search: Optional[str] = None,
                             sort_by: str = "title", sort_order: str = "asc") -> Page:
        return self.list_books(page=page, limit=limit, genre=genre, search=search,
                               available=True, sort_by=sort_by, sort_order=sort_order)

    def list_books_by_genre(self, genre: str, page: int = 1, limit: Optional[int] = None) -> Page:
        return self.list_books(page=page, limit=limit, genre=genre, sort_by="title", sort_order="asc")

    def get_statistics(self) -> Dict[str, Any]:
        """Copy totals over active books, overall and per genre."""
        overall = self.db.query("""
            SELECT COUNT(*) AS total_books,
                   COALESCE(SUM(total_copies), 0) AS total_copies,
                   COALESCE(SUM(available_copies), 0) AS available_copies,
                   COALESCE(SUM(total_copies - available_copies), 0) AS rented_copies
            FROM books WHERE is_active = 1
        """)[0]
        by_genre = self.db.query("""
            SELECT genre, COUNT(*) AS count,
                   SUM(total_copies) AS total_copies,
                   SUM(available_copies) AS available_copies
            FROM books WHERE is_active = 1
            GROUP BY genre ORDER BY count DESC, genre ASC
        """)
        return {"overall": overall, "by_genre": by_genre}

    # ------------------------- Utilities ------------------------- #
    def _ensure_isbn_free(self, isbn: Optional[str], exclude_id: Optional[str] = None) -> None:
        if not isbn:
            return
        where, params = "isbn = ?", [isbn]
        if exclude_id:
            where += " AND id != ?"
            params.append(exclude_id)
        if self.db.count("books", where, params):
            raise Conflict("Book with this ISBN already exists")
