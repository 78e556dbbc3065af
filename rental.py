"""Rental entity and the rules of its lifecycle.

A rental is stored with one of three statuses. ``overdue`` is partly a view:
an ``active`` rental whose due date has passed reads as overdue through
:meth:`Rental.effective_status` without being rewritten. The stored value
catches up only at the reconciliation points, which are a return and an
explicit status update (see :meth:`Rental.reconcile`). Nothing sweeps the
table in the background.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from database import from_db_timestamp, to_db_timestamp, to_utc, utcnow
from errors import AlreadyReturned, InvalidTransition, ValidationError
from validators import TextValidator

ONE_DAY = timedelta(days=1)


class RentalStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"

    @classmethod
    def parse(cls, value: "str | RentalStatus") -> "RentalStatus":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError("Invalid rental status") from None


# Statuses that still hold a copy of the book
OPEN_STATUSES = (RentalStatus.ACTIVE, RentalStatus.OVERDUE)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta / ONE_DAY)


class Rental:
    """One renter holding one copy of one book."""

    def __init__(self, book_id: str, renter_name: str, renter_email: str,
                 rental_date: datetime, due_date: datetime,
                 renter_phone: Optional[str] = None,
                 return_date: Optional[datetime] = None,
                 status: RentalStatus = RentalStatus.ACTIVE,
                 late_fee: float = 0.0, notes: Optional[str] = None,
                 id: Optional[str] = None,
                 created_at: Optional[datetime] = None,
                 updated_at: Optional[datetime] = None) -> None:
        self.id = id or uuid.uuid4().hex
        self.book_id = book_id
        self.renter_name = renter_name.strip() if renter_name else renter_name
        self.renter_email = TextValidator.normalize_email(renter_email)
        self.renter_phone = renter_phone.strip() if renter_phone else None
        self.rental_date = to_utc(rental_date)
        self.due_date = to_utc(due_date)
        self.return_date = to_utc(return_date) if return_date else None
        self.status = RentalStatus.parse(status)
        self.late_fee = late_fee
        self.notes = notes or None
        self.created_at = created_at
        self.updated_at = updated_at

    @classmethod
    def new(cls, book_id: str, renter_name: str, renter_email: str,
            due_date: datetime, renter_phone: Optional[str] = None,
            notes: Optional[str] = None, rental_date: Optional[datetime] = None,
            now: Optional[datetime] = None) -> "Rental":
        """Build a validated active rental; rental_date defaults to now."""
        rental = cls(
            book_id=book_id,
            renter_name=renter_name,
            renter_email=renter_email,
            renter_phone=renter_phone,
            rental_date=rental_date or now or utcnow(),
            due_date=due_date,
            notes=notes,
        )
        rental.validate()
        return rental

    # ------------------------- Derived values ------------------------- #
    def days_overdue(self, now: Optional[datetime] = None) -> int:
        if self.status == RentalStatus.RETURNED:
            return 0
        return max(0, _ceil_days(to_utc(now or utcnow()) - self.due_date))

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return self.status == RentalStatus.ACTIVE and self.days_overdue(now) > 0

    def rental_duration(self, now: Optional[datetime] = None) -> int:
        end = self.return_date or to_utc(now or utcnow())
        return _ceil_days(end - self.rental_date)

    def effective_status(self, now: Optional[datetime] = None) -> RentalStatus:
        """Status as observed at ``now``; an active rental past due reads as overdue."""
        if self.is_overdue(now):
            return RentalStatus.OVERDUE
        return self.status

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    # ------------------------- Transitions ------------------------- #
    def mark_returned(self, now: datetime, rate_per_day: float = 1.0) -> None:
        if self.status == RentalStatus.RETURNED:
            raise AlreadyReturned("Book is already returned")
        now = to_utc(now)
        if now < self.rental_date:
            raise ValidationError("Return date cannot be before rental date")
        # fee is measured while the rental is still open
        days_late = self.days_overdue(now)
        if days_late > 0:
            self.late_fee = days_late * rate_per_day
        self.return_date = now
        self.status = RentalStatus.RETURNED

    def update_status(self, new_status: "str | RentalStatus", notes: Optional[str] = None) -> None:
        new_status = RentalStatus.parse(new_status)
        if self.status == RentalStatus.RETURNED and new_status != RentalStatus.RETURNED:
            raise InvalidTransition("Cannot change status of returned rental")
        self.status = new_status
        if notes:
            self.notes = notes

    def reconcile(self, now: Optional[datetime] = None) -> None:
        """Bring the stored status in line with the time-derived view."""
        if self.status == RentalStatus.ACTIVE and self.days_overdue(now) > 0:
            self.status = RentalStatus.OVERDUE

    # ------------------------- Validation ------------------------- #
    def validate(self) -> None:
        errors = []
        if not self.book_id:
            errors.append("Book reference is required")
        if not TextValidator.validate_length(self.renter_name, 2, 100):
            errors.append("Renter name must be between 2 and 100 characters long")
        if not TextValidator.is_valid_email(self.renter_email):
            errors.append("Please provide a valid email address")
        if not TextValidator.is_valid_phone(self.renter_phone):
            errors.append("Phone number contains invalid characters")
        if self.due_date <= self.rental_date:
            errors.append("Due date must be after rental date")
        if self.return_date is not None and self.return_date < self.rental_date:
            errors.append("Return date cannot be before rental date")
        if self.late_fee < 0:
            errors.append("Late fee cannot be negative")
        if self.notes is not None and len(self.notes) > 500:
            errors.append("Notes cannot exceed 500 characters")
        if errors:
            raise ValidationError(", ".join(errors), errors)

    # ------------------------- Serialization ------------------------- #
    def to_dict(self, now: Optional[datetime] = None, book: Optional[dict] = None) -> dict:
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "renter_name": self.renter_name,
            "renter_email": self.renter_email,
            "renter_phone": self.renter_phone,
            "rental_date": to_db_timestamp(self.rental_date),
            "due_date": to_db_timestamp(self.due_date),
            "return_date": to_db_timestamp(self.return_date),
            "status": self.status.value,
            "late_fee": self.late_fee,
            "notes": self.notes,
            "created_at": to_db_timestamp(self.created_at),
            "updated_at": to_db_timestamp(self.updated_at),
            "days_overdue": self.days_overdue(now),
            "is_overdue": self.is_overdue(now),
            "effective_status": self.effective_status(now).value,
            "rental_duration": self.rental_duration(now),
        }
        if book is not None:
            data["book"] = book
        return data

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "renter_name": self.renter_name,
            "renter_email": self.renter_email,
            "renter_phone": self.renter_phone,
            "rental_date": to_db_timestamp(self.rental_date),
            "due_date": to_db_timestamp(self.due_date),
            "return_date": to_db_timestamp(self.return_date),
            "status": self.status.value,
            "late_fee": self.late_fee,
            "notes": self.notes,
            "created_at": to_db_timestamp(self.created_at),
            "updated_at": to_db_timestamp(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Rental":
        return Rental(
            id=data["id"],
            book_id=data["book_id"],
            renter_name=data["renter_name"],
            renter_email=data["renter_email"],
            renter_phone=data.get("renter_phone"),
            rental_date=from_db_timestamp(data["rental_date"]),
            due_date=from_db_timestamp(data["due_date"]),
            return_date=from_db_timestamp(data.get("return_date")),
            status=data.get("status", RentalStatus.ACTIVE.value),
            late_fee=data.get("late_fee") or 0.0,
            notes=data.get("notes"),
            created_at=from_db_timestamp(data.get("created_at")),
            updated_at=from_db_timestamp(data.get("updated_at")),
        )
