import logging
from datetime import timedelta

import pytest

from errors import Conflict, InvalidOperation, InvalidTransition, InvariantViolation, NotFound, ValidationError
from library import Library
from rental import RentalStatus


def _rent(service, book, email="jane@example.com", days=7, **kwargs):
    return service.rent(
        book.id,
        renter_name=kwargs.pop("renter_name", "Jane Reader"),
        renter_email=email,
        due_date=service.now() + timedelta(days=days),
        **kwargs,
    )


def _available(service, book):
    return service.library.get_book(book.id).available_copies


def _open_rentals(service, book):
    page = service.list_rentals(book_id=book.id, limit=100)
    return [r for r in page.items if r.is_open]


def test_rent_takes_a_copy(service, make_book, clock):
    book = make_book(total_copies=5)
    rental = _rent(service, book, renter_phone="+1 555 0100", notes="front desk")

    assert rental.status == RentalStatus.ACTIVE
    assert rental.rental_date == clock()
    assert rental.due_date == clock() + timedelta(days=7)
    assert _available(service, book) == 4

    stored = service.get_rental(rental.id)
    assert stored.renter_email == "jane@example.com"
    assert stored.renter_phone == "+1 555 0100"
    assert stored.notes == "front desk"


def test_rent_then_return_restores_copies(service, make_book):
    book = make_book(total_copies=3)
    rental = _rent(service, book)
    service.return_book(rental.id)
    assert _available(service, book) == 3


def test_rent_missing_book(service):
    with pytest.raises(NotFound, match="Book not found"):
        service.rent("missing", "Jane Reader", "jane@example.com", service.now() + timedelta(days=1))


def test_rent_without_copies(service, make_book):
    book = make_book(total_copies=1, available_copies=0)
    with pytest.raises(InvalidOperation, match="not available for rental"):
        _rent(service, book)
    assert _available(service, book) == 0
    assert service.list_rentals().total == 0


def test_rent_inactive_book(service, make_book):
    book = make_book(total_copies=2)
    service.library.soft_delete_book(book.id)
    with pytest.raises(InvalidOperation):
        _rent(service, book)
    assert _available(service, book) == 2


def test_rent_with_past_due_date_changes_nothing(service, make_book):
    book = make_book(total_copies=2)
    with pytest.raises(ValidationError, match="Due date must be after rental date"):
        _rent(service, book, days=-1)
    assert _available(service, book) == 2
    assert service.list_rentals().total == 0


def test_duplicate_open_rental_conflicts(service, make_book):
    book = make_book(total_copies=5)
    _rent(service, book, email="jane@example.com")
    with pytest.raises(Conflict, match="already have an active rental"):
        _rent(service, book, email="  JANE@example.com")
    assert _available(service, book) == 4
    assert service.list_rentals().total == 1


def test_overdue_rental_still_blocks_duplicate(service, make_book):
    book = make_book(total_copies=5)
    rental = _rent(service, book)
    service.update_rental_status(rental.id, "overdue")
    with pytest.raises(Conflict):
        _rent(service, book)


def test_renter_can_rent_again_after_return(service, make_book):
    book = make_book(total_copies=5)
    first = _rent(service, book)
    service.return_book(first.id)
    second = _rent(service, book)
    assert second.id != first.id
    assert _available(service, book) == 4


def test_other_renters_are_independent(service, make_book):
    book = make_book(total_copies=2)
    _rent(service, book, email="a@example.com")
    _rent(service, book, email="b@example.com")
    assert _available(service, book) == 0
    with pytest.raises(InvalidOperation):
        _rent(service, book, email="c@example.com")


def test_copy_count_matches_open_rentals(service, make_book):
    book = make_book(total_copies=3)
    emails = ["a@example.com", "b@example.com", "c@example.com"]
    rentals = []
    for email in emails:
        rentals.append(_rent(service, book, email=email))
        stored = service.library.get_book(book.id)
        assert stored.available_copies + len(_open_rentals(service, book)) == stored.total_copies

    for rental in rentals:
        service.return_book(rental.id)
        stored = service.library.get_book(book.id)
        assert stored.available_copies + len(_open_rentals(service, book)) == stored.total_copies
        assert 0 <= stored.available_copies <= stored.total_copies


def test_late_return_charges_fee(service, make_book, clock):
    book = make_book(total_copies=5)
    rental = _rent(service, book, days=7)
    assert _available(service, book) == 4

    clock.advance(days=9)
    observed = service.get_rental(rental.id)
    assert observed.status == RentalStatus.ACTIVE
    assert observed.days_overdue(service.now()) == 2
    assert observed.is_overdue(service.now()) is True

    returned = service.return_book(rental.id)
    assert returned.status == RentalStatus.RETURNED
    assert returned.late_fee == 2.0
    assert returned.return_date == clock()
    assert _available(service, book) == 5

    stored = service.get_rental(rental.id)
    assert stored.late_fee == 2.0
    assert stored.status == RentalStatus.RETURNED


def test_on_time_return_has_no_fee(service, make_book, clock):
    book = make_book()
    rental = _rent(service, book, days=7)
    clock.advance(days=6)
    assert service.return_book(rental.id, notes="good condition").late_fee == 0.0
    assert service.get_rental(rental.id).notes == "good condition"


def test_late_fee_rate_is_configurable(service, settings, make_book, clock):
    settings.late_fee_per_day = 0.5
    book = make_book()
    rental = _rent(service, book, days=1)
    clock.advance(days=5)
    assert service.return_book(rental.id).late_fee == 2.0


def test_double_return_changes_nothing(service, make_book, clock):
    book = make_book(total_copies=2)
    rental = _rent(service, book)
    first = service.return_book(rental.id)

    clock.advance(days=30)
    with pytest.raises(InvalidOperation, match="already returned"):
        service.return_book(rental.id)

    stored = service.get_rental(rental.id)
    assert stored.return_date == first.return_date
    assert stored.late_fee == first.late_fee
    assert _available(service, book) == 2


def test_return_missing_rental(service):
    with pytest.raises(NotFound, match="Rental not found"):
        service.return_book("missing")


def test_return_when_book_cannot_take_copy(service, make_book):
    book = make_book(total_copies=2)
    rental = _rent(service, book)
    # someone restocked the book by hand while the copy was out
    service.library.update_book(book.id, available_copies=2)

    with pytest.raises(InvariantViolation) as exc:
        service.return_book(rental.id)
    assert exc.value.status_code == 500
    assert service.get_rental(rental.id).status == RentalStatus.RETURNED
    assert _available(service, book) == 2


def test_return_after_book_soft_deleted(service, make_book):
    book = make_book(total_copies=2)
    rental = _rent(service, book)
    service.library.soft_delete_book(book.id)

    assert service.get_rental(rental.id).status == RentalStatus.ACTIVE
    assert _available(service, book) == 1

    service.return_book(rental.id)
    stored = service.library.get_book(book.id)
    assert stored.available_copies == 2
    assert stored.is_active is False


def test_status_update_between_open_states(service, make_book):
    book = make_book()
    rental = _rent(service, book)
    updated = service.update_rental_status(rental.id, "overdue", notes="reminder sent")
    assert updated.status == RentalStatus.OVERDUE
    assert updated.notes == "reminder sent"

    back = service.update_rental_status(rental.id, "active")
    assert back.status == RentalStatus.ACTIVE
    assert service.get_rental(rental.id).status == RentalStatus.ACTIVE


def test_status_update_reconciles_past_due(service, make_book, clock):
    book = make_book()
    rental = _rent(service, book, days=3)
    clock.advance(days=4)
    updated = service.update_rental_status(rental.id, "active")
    assert updated.status == RentalStatus.OVERDUE
    assert service.get_rental(rental.id).status == RentalStatus.OVERDUE


def test_status_update_to_returned_runs_return(service, make_book, clock):
    book = make_book(total_copies=2)
    rental = _rent(service, book, days=2)
    clock.advance(days=3)
    updated = service.update_rental_status(rental.id, "returned")
    assert updated.status == RentalStatus.RETURNED
    assert updated.return_date == clock()
    assert updated.late_fee == 1.0
    assert _available(service, book) == 2


def test_returned_rental_status_is_terminal(service, make_book):
    book = make_book(total_copies=2)
    rental = _rent(service, book)
    service.return_book(rental.id)

    with pytest.raises(InvalidTransition, match="Cannot change status of returned rental"):
        service.update_rental_status(rental.id, "active")
    assert service.get_rental(rental.id).status == RentalStatus.RETURNED
    assert _available(service, book) == 2


def test_status_update_rejects_unknown_status(service, make_book):
    rental = _rent(service, make_book())
    with pytest.raises(ValidationError, match="Invalid rental status"):
        service.update_rental_status(rental.id, "lost")


def _take_copy_after_read(service, db, settings, monkeypatch, times=1):
    """Make another writer take a copy right after each of the next ``times`` book reads."""
    other = Library(db, settings)
    read_book = service.library.get_book
    remaining = [times]

    def read_then_take(book_id):
        book = read_book(book_id)
        if remaining[0] > 0:
            remaining[0] -= 1
            other.decrement_availability(other.get_book(book_id))
        return book

    monkeypatch.setattr(service.library, "get_book", read_then_take)


def test_lost_copy_race_removes_rental(service, db, settings, make_book, monkeypatch):
    settings.optimistic_copy_updates = True
    book = make_book(total_copies=2)
    _take_copy_after_read(service, db, settings, monkeypatch)

    with pytest.raises(Conflict, match="changed concurrently"):
        _rent(service, book)
    assert service.list_rentals().total == 0
    # only the other writer's copy is out
    assert _available(service, book) == 1


def test_return_retries_lost_copy_race(service, db, settings, make_book, monkeypatch):
    settings.optimistic_copy_updates = True
    book = make_book(total_copies=3)
    rental = _rent(service, book)
    assert _available(service, book) == 2

    _take_copy_after_read(service, db, settings, monkeypatch)
    returned = service.return_book(rental.id)

    assert returned.status == RentalStatus.RETURNED
    assert service.get_rental(rental.id).status == RentalStatus.RETURNED
    # our copy is back, the other writer still holds one
    assert _available(service, book) == 2


def test_return_losing_race_twice_is_invariant_violation(service, db, settings, make_book,
                                                          monkeypatch, caplog):
    settings.optimistic_copy_updates = True
    book = make_book(total_copies=3)
    rental = _rent(service, book)

    _take_copy_after_read(service, db, settings, monkeypatch, times=2)
    with caplog.at_level(logging.ERROR, logger="rental_service"):
        with pytest.raises(InvariantViolation):
            service.return_book(rental.id)

    assert any(r.levelno == logging.ERROR for r in caplog.records)
    assert service.get_rental(rental.id).status == RentalStatus.RETURNED
    assert _available(service, book) == 0


def test_list_overdue(service, make_book, clock):
    book = make_book(total_copies=5)
    late_soon = _rent(service, book, email="a@example.com", days=1)
    late_later = _rent(service, book, email="b@example.com", days=7)
    flagged = _rent(service, book, email="c@example.com", days=30)
    service.update_rental_status(flagged.id, "overdue")

    clock.advance(days=2)
    page = service.list_overdue_rentals()
    assert [r.id for r in page.items] == [late_soon.id, flagged.id]

    clock.advance(days=6)
    page = service.list_overdue_rentals()
    assert [r.id for r in page.items] == [late_soon.id, late_later.id, flagged.id]

    service.return_book(late_soon.id)
    page = service.list_overdue_rentals()
    assert [r.id for r in page.items] == [late_later.id, flagged.id]


def test_list_rentals_filters(service, make_book):
    dune = make_book()
    emma = make_book(title="Emma", author="Jane Austen", genre="Romance")
    first = _rent(service, dune, email="jane@example.com")
    _rent(service, emma, email="jane@example.com")
    _rent(service, dune, email="bob@example.com")
    service.return_book(first.id)

    assert service.list_rentals().total == 3
    assert service.list_rentals(status="returned").total == 1
    assert service.list_rentals(book_id=dune.id).total == 2
    assert service.list_rentals_by_renter("JANE@example.com").total == 2
    assert service.list_rentals_by_renter("jane@example.com", status="active").total == 1

    with pytest.raises(ValidationError):
        service.list_rentals_by_renter("not-an-email")
    with pytest.raises(ValidationError):
        service.list_rentals(status="lost")


def test_rental_statistics(service, make_book, clock):
    book = make_book(total_copies=5)
    returned = _rent(service, book, email="a@example.com", days=1)
    _rent(service, book, email="b@example.com", days=2)
    _rent(service, book, email="c@example.com", days=30)

    clock.advance(days=4)
    service.return_book(returned.id)

    stats = service.get_rental_statistics()
    assert stats["overall"] == {
        "total_rentals": 3,
        "active_rentals": 2,
        "returned_rentals": 1,
        "overdue_rentals": 1,
        "total_late_fees": 3.0,
    }
    assert stats["monthly"] == [{"year": 2025, "month": 3, "count": 3}]


def test_present_includes_book_summary(service, make_book, clock):
    book = make_book()
    rental = _rent(service, book, days=1)
    clock.advance(days=3)

    data = service.present(rental)
    assert data["book"] == {"id": book.id, "title": "Dune", "author": "Frank Herbert",
                            "genre": "Science Fiction"}
    assert data["days_overdue"] == 2
    assert data["is_overdue"] is True

    listing = service.present_page(service.list_rentals())
    assert listing["items"][0]["book"]["title"] == "Dune"
    assert listing["pagination"]["total_items"] == 1
