from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from database import from_db_timestamp, to_db_timestamp, utcnow
from errors import InvalidOperation, ValidationError
from validators import ISBNValidator, TextValidator

GENRES = (
    "Fiction", "Non-Fiction", "Mystery", "Romance", "Thriller",
    "Science Fiction", "Fantasy", "Biography", "History",
    "Self-Help", "Business", "Technology", "Health", "Travel",
    "Cooking", "Art", "Music", "Sports", "Education", "Other",
)

MIN_PUBLISHED_YEAR = 1000
MAX_TOTAL_COPIES = 1000


class Book:
    """A title in the catalogue together with its copy-count ledger."""

    def __init__(self, title: str, author: str, genre: str, total_copies: int,
                 available_copies: int | None = None, isbn: str | None = None,
                 published_year: int | None = None, description: str | None = None,
                 cover_image: str | None = None, is_active: bool = True,
                 id: str | None = None, created_at: datetime | None = None,
                 updated_at: datetime | None = None) -> None:
        self.id = id or uuid.uuid4().hex
        self.title = title.strip() if title else title
        self.author = author.strip() if author else author
        self.genre = genre.strip() if genre else genre
        self.isbn = ISBNValidator.normalize_isbn(isbn)
        self.published_year = published_year
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.description = description
        self.cover_image = cover_image or None
        self.is_active = is_active
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    # ------------------------- Ledger rules ------------------------- #
    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    @property
    def rented_copies(self) -> int:
        return self.total_copies - self.available_copies

    def can_be_rented(self) -> bool:
        return self.is_active and self.available_copies > 0

    def rent_copy(self) -> None:
        """Take one copy out of the available pool."""
        if not self.can_be_rented():
            raise InvalidOperation("Book is not available for rental")
        self.available_copies -= 1

    def return_copy(self) -> None:
        """Put one copy back into the available pool."""
        if self.available_copies >= self.total_copies:
            raise InvalidOperation("All copies are already available")
        self.available_copies += 1

    def clamp_copies(self) -> None:
        if self.available_copies > self.total_copies:
            self.available_copies = self.total_copies

    def validate(self) -> None:
        """Raise ValidationError listing every field that breaks a rule."""
        errors = []
        if not TextValidator.validate_length(self.title, 2, 200):
            errors.append("Title must be between 2 and 200 characters long")
        if not TextValidator.validate_length(self.author, 2, 100):
            errors.append("Author name must be between 2 and 100 characters long")
        if self.genre not in GENRES:
            errors.append("Invalid genre")
        if self.isbn is not None and not ISBNValidator.is_valid_isbn(self.isbn):
            errors.append("ISBN must contain only numbers and hyphens")
        if self.published_year is not None and not (
                MIN_PUBLISHED_YEAR <= self.published_year <= utcnow().year):
            errors.append("Published year must be between 1000 and the current year")
        if not isinstance(self.total_copies, int) or not 1 <= self.total_copies <= MAX_TOTAL_COPIES:
            errors.append("Total copies must be between 1 and 1000")
        if not isinstance(self.available_copies, int) or self.available_copies < 0:
            errors.append("Available copies cannot be negative")
        if self.description is not None and len(self.description) > 1000:
            errors.append("Description cannot exceed 1000 characters")
        if not TextValidator.is_valid_cover_image(self.cover_image):
            errors.append("Cover image must be a valid URL ending with image extension")
        if errors:
            raise ValidationError(", ".join(errors), errors)

    # ------------------------- Serialization ------------------------- #
    def summary(self) -> dict:
        """Fields shown when a rental displays its book."""
        return {"id": self.id, "title": self.title, "author": self.author, "genre": self.genre}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "genre": self.genre,
            "isbn": self.isbn,
            "published_year": self.published_year,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "is_available": self.is_available,
            "description": self.description,
            "cover_image": self.cover_image,
            "is_active": self.is_active,
            "created_at": to_db_timestamp(self.created_at),
            "updated_at": to_db_timestamp(self.updated_at),
        }

    def to_row(self) -> dict[str, Any]:
        row = self.to_dict()
        row.pop("is_available")
        row["is_active"] = 1 if self.is_active else 0
        return row

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            genre=data["genre"],
            isbn=data.get("isbn"),
            published_year=data.get("published_year"),
            total_copies=data["total_copies"],
            available_copies=data["available_copies"],
            description=data.get("description"),
            cover_image=data.get("cover_image"),
            is_active=bool(data.get("is_active", True)),
            created_at=from_db_timestamp(data.get("created_at")),
            updated_at=from_db_timestamp(data.get("updated_at")),
        )
