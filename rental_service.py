"""Rental coordinator: the only component that changes a book and a rental together.

Each operation is a plain sequence of storage calls. There is no transaction
around the book write and the rental write, so two concurrent ``rent`` calls
for the last copy can both pass the availability check unless
``Settings.optimistic_copy_updates`` is enabled.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from config import Settings, settings as default_settings
from database import Database, to_utc, utcnow
from errors import Conflict, InvalidOperation, InvariantViolation, NotFound
from library import Library
from pagination import Page
from rental import Rental, RentalStatus
from rental_tracker import RentalTracker

logger = logging.getLogger(__name__)


class RentalService:

    def __init__(self, db: Database, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings or default_settings
        self.library = Library(db, self.settings)
        self.rentals = RentalTracker(db, self.settings)
        self.clock = clock

    def now(self) -> datetime:
        return to_utc(self.clock())

    # ------------------------- Transitions ------------------------- #
    def rent(self, book_id: str, renter_name: str, renter_email: str, due_date: datetime,
             renter_phone: Optional[str] = None, notes: Optional[str] = None) -> Rental:
        """Rent one copy of a book.

        Raises NotFound, InvalidOperation (book not rentable), Conflict (the
        renter already holds this book) or ValidationError. The book is only
        decremented once the rental row exists.
        """
        book = self.library.get_book(book_id)
        if not book.can_be_rented():
            raise InvalidOperation("Book is not available for rental")
        if self.rentals.find_open_rental(book.id, renter_email):
            raise Conflict("You already have an active rental for this book")

        rental = Rental.new(
            book_id=book.id,
            renter_name=renter_name,
            renter_email=renter_email,
            renter_phone=renter_phone,
            due_date=due_date,
            notes=notes,
            now=self.now(),
        )
        self.rentals.create(rental)
        try:
            self.library.decrement_availability(book)
        except Conflict:
            # lost the optimistic copy-count race: the rental must not outlive it
            self.rentals.delete(rental.id)
            raise
        logger.info("Rented book %s to %s (rental %s, due %s)",
                    book.id, rental.renter_email, rental.id, rental.due_date.date())
        return rental

    def return_book(self, rental_id: str, return_date: Optional[datetime] = None,
                    notes: Optional[str] = None) -> Rental:
        """Close a rental, charge any late fee and give the copy back to the book.

        The rental is saved as returned before the book is touched. If the
        book cannot take the copy back, InvariantViolation is raised and the
        rental stays returned.
        """
        rental = self.rentals.get(rental_id)
        if rental.status == RentalStatus.RETURNED:
            raise InvalidOperation("Book is already returned")

        rental.mark_returned(return_date or self.now(), self.settings.late_fee_per_day)
        if notes:
            rental.notes = notes
        self.rentals.save(rental)
        logger.info("Returned rental %s (late fee %.2f)", rental.id, rental.late_fee)

        self._give_back_copy(rental)
        return rental

    def update_rental_status(self, rental_id: str, status: str,
                             notes: Optional[str] = None) -> Rental:
        """Administrative status change.

        Returned is terminal. Moving an open rental to returned goes through
        the full return so the book's copy count follows.
        """
        rental = self.rentals.get(rental_id)
        new_status = RentalStatus.parse(status)
        if rental.status != RentalStatus.RETURNED and new_status == RentalStatus.RETURNED:
            return self.return_book(rental_id, notes=notes)

        rental.update_status(new_status, notes)
        rental.reconcile(self.now())
        self.rentals.save(rental)
        logger.info("Rental %s status set to %s", rental.id, rental.status.value)
        return rental

    def _give_back_copy(self, rental: Rental) -> None:
        """Increment the book for a rental already saved as returned.

        The rental is authoritative here, so a lost copy-count race is retried
        once against a fresh read before giving up.
        """
        try:
            try:
                self.library.increment_availability(self.library.get_book(rental.book_id))
            except Conflict:
                logger.warning("Copy count changed during return of rental %s, retrying", rental.id)
                self.library.increment_availability(self.library.get_book(rental.book_id))
        except (NotFound, InvalidOperation, Conflict) as e:
            logger.error("Copy count not restored for rental %s on book %s: %s",
                         rental.id, rental.book_id, e)
            raise InvariantViolation(
                f"Rental {rental.id} was returned but book {rental.book_id} could not take the copy back"
            ) from e

    # ------------------------- Queries ------------------------- #
    def get_rental(self, rental_id: str) -> Rental:
        return self.rentals.get(rental_id)

    def list_rentals(self, **filters: Any) -> Page:
        return self.rentals.list_rentals(**filters)

    def list_rentals_by_renter(self, email: str, **filters: Any) -> Page:
        return self.rentals.list_by_renter(email, **filters)

    def list_overdue_rentals(self, **filters: Any) -> Page:
        return self.rentals.list_overdue(now=self.now(), **filters)

    def get_rental_statistics(self) -> Dict[str, Any]:
        return self.rentals.get_statistics(now=self.now())

    def present(self, rental: Rental) -> dict:
        """Rental as shown to callers, with its book summary populated."""
        books = self.rentals.book_summaries([rental])
        return rental.to_dict(now=self.now(), book=books.get(rental.book_id))

    def present_page(self, page: Page) -> dict:
        books = self.rentals.book_summaries(page.items)
        now = self.now()
        return {
            "items": [r.to_dict(now=now, book=books.get(r.book_id)) for r in page.items],
            "pagination": page.pagination(),
        }
