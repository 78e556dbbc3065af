import re
from typing import Optional

ISBN_PATTERN = re.compile(r"^[\d-]+$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\d\s\-\+\(\)]+$")
COVER_IMAGE_PATTERN = re.compile(r"^https?://.+\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)


class ISBNValidator:
    """ISBN check used by the book ledger: digits and hyphens only, no checksum."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        s = raw.strip()
        return s or None

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        return bool(ISBN_PATTERN.match(isbn))


class TextValidator:
    """Length checks and renter contact formats."""

    @staticmethod
    def validate_length(text: Optional[str], min_len: int, max_len: int) -> bool:
        if text is None:
            return False
        return min_len <= len(text.strip()) <= max_len

    @staticmethod
    def normalize_email(email: Optional[str]) -> str:
        if email is None:
            return ""
        return email.strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(EMAIL_PATTERN.match(email))

    @staticmethod
    def is_valid_phone(phone: Optional[str]) -> bool:
        # optional field
        if not phone:
            return True
        return bool(PHONE_PATTERN.match(phone))

    @staticmethod
    def is_valid_cover_image(url: Optional[str]) -> bool:
        if not url:
            return True
        return bool(COVER_IMAGE_PATTERN.match(url))
