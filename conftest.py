"""Shared fixtures: isolated engines per test, one per backend."""

from datetime import datetime, timedelta, timezone

import pytest

from database_manager import DatabaseManager
from orchestrator import ReservationOrchestrator

T0 = datetime(2026, 7, 1, 19, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock so expiry tests never sleep."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    db = DatabaseManager(f"sqlite:///{tmp_path / 'seats.db'}")
    yield db
    db.dispose()


@pytest.fixture(params=["memory", "sql"])
def orchestrator(request, clock):
    if request.param == "memory":
        return ReservationOrchestrator.in_memory(clock=clock)
    return ReservationOrchestrator.with_database(request.getfixturevalue("database"), clock=clock)


@pytest.fixture
def screening(orchestrator):
    """Five seats, A1..A5, at 10.00 each."""
    return orchestrator.create_screening("screening-1", rows=["A"], seats_per_row=5, price="10.00")


def statuses(orchestrator, screening_id="screening-1"):
    return {seat.label: seat.status.value for seat in orchestrator.seat_store.get_seats(screening_id)}
