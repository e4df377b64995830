"""Shared fixtures: a file-backed SQLite database per test, a controllable clock, a fake gateway."""

from datetime import datetime, timedelta, timezone
import threading

import pytest

from config import Settings
from database_manager import DatabaseManager
from catalog import StaticCatalog
from payment import SimulatedPaymentCoordinator
from reservation_engine import ReservationEngine

SHOW_ID = "test_show_123"
SHOW_SEATS = ["A1", "A2", "A3"]


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 14, 19, 0, tzinfo=timezone.utc)):
        self._lock = threading.Lock()
        self.now = start

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'reservations.db'}",
        hold_duration_seconds=600,
        demo_show=False,
    )


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings.database_url)
    yield manager
    manager.dispose()


@pytest.fixture
def payments():
    return SimulatedPaymentCoordinator()


@pytest.fixture
def catalog():
    return StaticCatalog()


@pytest.fixture
def engine(db, payments, catalog, settings, clock):
    return ReservationEngine(db, payments, catalog=catalog, settings=settings, clock=clock)


@pytest.fixture
def show_id(engine):
    result, error = engine.initialize_show(SHOW_ID, SHOW_SEATS, "12.50")
    assert error is None, error
    return SHOW_ID


def assert_invariants(engine, show_id):
    report, error = engine.verify_invariants(show_id)
    assert error is None
    assert report["valid"], report["problems"]
    return report
