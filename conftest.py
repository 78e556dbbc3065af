from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from database import Database
from rental_service import RentalService

START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable time source for overdue and late-fee tests."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path, request):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return Settings(database_file=db_file, late_fee_per_day=1.0, optimistic_copy_updates=False)


@pytest.fixture
def db(settings):
    database = Database(settings.database_file)
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(db, settings, clock):
    return RentalService(db, settings, clock=clock)


@pytest.fixture
def lib(service):
    return service.library


@pytest.fixture
def make_book(lib):
    def _make(**overrides):
        fields = {"title": "Dune", "author": "Frank Herbert", "genre": "Science Fiction", "total_copies": 5}
        fields.update(overrides)
        return lib.create_book(**fields)
    return _make
