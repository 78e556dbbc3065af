import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from book import Book
from config import Settings, settings as default_settings
from database import Database, to_db_timestamp, utcnow
from errors import NotFound, ValidationError
from pagination import Page, order_clause, page_window
from rental import OPEN_STATUSES, Rental, RentalStatus
from validators import TextValidator

logger = logging.getLogger(__name__)

RENTAL_SORT_FIELDS = {
    "rental_date": "rental_date",
    "due_date": "due_date",
    "return_date": "return_date",
    "renter_name": "renter_name COLLATE NOCASE",
    "status": "status",
}

# Stored overdue, or still stored active with the due date behind us
_OVERDUE_WHERE = "(status = 'overdue' OR (status = 'active' AND due_date < ?))"


class RentalTracker:
    """Stores rentals and answers the rental listings and statistics."""

    def __init__(self, db: Database, settings: Optional[Settings] = None) -> None:
        self.db = db
        self.settings = settings or default_settings

    # ------------------------- Persistence ------------------------- #
    def create(self, rental: Rental) -> Rental:
        now = utcnow()
        rental.created_at = now
        rental.updated_at = now
        self.db.insert("rentals", rental.to_row())
        return rental

    def get(self, rental_id: str) -> Rental:
        row = self.db.get("rentals", rental_id)
        if not row:
            raise NotFound("Rental not found")
        return Rental.from_dict(row)

    def save(self, rental: Rental) -> Rental:
        rental.validate()
        rental.updated_at = utcnow()
        row = rental.to_row()
        row.pop("id")
        row.pop("created_at")
        if self.db.update("rentals", rental.id, row) == 0:
            raise NotFound("Rental not found")
        return rental

    def delete(self, rental_id: str) -> None:
        self.db.delete("rentals", rental_id)

    def find_open_rental(self, book_id: str, renter_email: str) -> Optional[Rental]:
        """Return the rental still holding a copy of this book for this renter, if any."""
        rows = self.db.find(
            "rentals", "book_id = ? AND renter_email = ? AND status IN (?, ?)",
            [book_id, TextValidator.normalize_email(renter_email)] + [s.value for s in OPEN_STATUSES],
            limit=1,
        )
        return Rental.from_dict(rows[0]) if rows else None

    # ------------------------- Queries ------------------------- #
    def list_rentals(self, page: int = 1, limit: Optional[int] = None,
                     status: Optional[str] = None, renter_email: Optional[str] = None,
                     book_id: Optional[str] = None, sort_by: str = "rental_date",
                     sort_order: str = "desc") -> Page:
        where, params = ["1 = 1"], []
        if status:
            where.append("status = ?")
            params.append(RentalStatus.parse(status).value)
        if renter_email:
            where.append("renter_email = ?")
            params.append(TextValidator.normalize_email(renter_email))
        if book_id:
            where.append("book_id = ?")
            params.append(book_id)
        return self._page(" AND ".join(where), params,
                          order_clause(sort_by, sort_order, RENTAL_SORT_FIELDS), page, limit)

    def list_by_renter(self, email: str, page: int = 1, limit: Optional[int] = None,
                       status: Optional[str] = None) -> Page:
        if not TextValidator.is_valid_email(TextValidator.normalize_email(email)):
            raise ValidationError("Please provide a valid email address")
        return self.list_rentals(page=page, limit=limit, status=status, renter_email=email,
                                 sort_by="rental_date", sort_order="desc")

    def list_overdue(self, now: Optional[datetime] = None, page: int = 1,
                     limit: Optional[int] = None) -> Page:
        return self._page(_OVERDUE_WHERE, [to_db_timestamp(now or utcnow())],
                          "due_date ASC, id ASC", page, limit)

    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        overall = self.db.query(f"""
            SELECT COUNT(*) AS total_rentals,
                   COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) AS active_rentals,
                   COALESCE(SUM(CASE WHEN status = 'returned' THEN 1 ELSE 0 END), 0) AS returned_rentals,
                   COALESCE(SUM(CASE WHEN {_OVERDUE_WHERE} THEN 1 ELSE 0 END), 0) AS overdue_rentals,
                   COALESCE(SUM(late_fee), 0) AS total_late_fees
            FROM rentals
        """, [to_db_timestamp(now or utcnow())])[0]
        monthly = self.db.query("""
            SELECT CAST(substr(rental_date, 1, 4) AS INTEGER) AS year,
                   CAST(substr(rental_date, 6, 2) AS INTEGER) AS month,
                   COUNT(*) AS count
            FROM rentals
            GROUP BY year, month
            ORDER BY year DESC, month DESC
            LIMIT 12
        """)
        return {"overall": overall, "monthly": monthly}

    # ------------------------- Display ------------------------- #
    def book_summaries(self, rentals: List[Rental]) -> Dict[str, dict]:
        """Load the display summary of every book referenced by ``rentals``."""
        ids = sorted({r.book_id for r in rentals})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self.db.find("books", f"id IN ({placeholders})", ids)
        return {row["id"]: Book.from_dict(row).summary() for row in rows}

    def _page(self, where: str, params: list, order_by: str, page: int,
              limit: Optional[int]) -> Page:
        page, limit, offset = page_window(page, limit or self.settings.default_page_size,
                                          self.settings.max_page_size)
        rows = self.db.find("rentals", where, params, order_by=order_by, limit=limit, offset=offset)
        total = self.db.count("rentals", where, params)
        return Page(items=[Rental.from_dict(r) for r in rows], page=page, limit=limit, total=total)
