import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import statuses
from domain import Hold, HoldConflict, HoldState, SeatId
from errors import ValidationError
from orchestrator import ReservationOrchestrator


def test_hold_moves_seats_to_held(orchestrator, screening, clock):
    hold = orchestrator.hold_manager.request_hold("screening-1", ["A2", "A1"], "x", ttl_seconds=600)

    assert isinstance(hold, Hold)
    assert hold.seat_ids == (SeatId("A", 1), SeatId("A", 2))
    assert hold.created_at == clock.now
    assert (hold.expires_at - hold.created_at).total_seconds() == 600
    assert statuses(orchestrator) == {"A1": "held", "A2": "held", "A3": "available", "A4": "available",
                                      "A5": "available"}


def test_conflict_names_only_contested_seats_and_rolls_back(orchestrator, screening):
    manager = orchestrator.hold_manager
    manager.request_hold("screening-1", ["A1", "A2"], "x", ttl_seconds=600)

    result = manager.request_hold("screening-1", ["A2", "A3"], "y", ttl_seconds=600)

    assert isinstance(result, HoldConflict)
    assert [seat.label for seat in result.unavailable_seats] == ["A2"]
    assert statuses(orchestrator)["A3"] == "available"


def test_rollback_releases_seats_acquired_before_the_conflict(orchestrator, screening):
    manager = orchestrator.hold_manager
    manager.request_hold("screening-1", ["A4"], "x", ttl_seconds=600)

    result = manager.request_hold("screening-1", ["A1", "A2", "A4", "A5"], "y", ttl_seconds=600)

    assert [seat.label for seat in result.unavailable_seats] == ["A4"]
    assert statuses(orchestrator) == {"A1": "available", "A2": "available", "A3": "available", "A4": "held",
                                      "A5": "available"}


def test_conflict_reports_later_unavailable_seats_too(orchestrator, screening):
    manager = orchestrator.hold_manager
    manager.request_hold("screening-1", ["A2"], "x", ttl_seconds=600)
    manager.request_hold("screening-1", ["A5"], "z", ttl_seconds=600)

    result = manager.request_hold("screening-1", ["A2", "A3", "A5"], "y", ttl_seconds=600)

    assert [seat.label for seat in result.unavailable_seats] == ["A2", "A5"]


def test_release_then_rehold_by_another_holder(orchestrator, screening):
    manager = orchestrator.hold_manager
    first = manager.request_hold("screening-1", ["A1", "A2"], "x", ttl_seconds=600)

    assert manager.release_hold(first.hold_id)
    assert manager.release_hold(first.hold_id) is False
    second = manager.request_hold("screening-1", ["A1", "A2"], "y", ttl_seconds=600)

    assert isinstance(second, Hold)
    assert second.holder_id == "y"


def test_sweep_releases_expired_holds(orchestrator, screening, clock):
    manager = orchestrator.hold_manager
    hold = manager.request_hold("screening-1", ["A1", "A2"], "x", ttl_seconds=1)

    clock.advance(2)
    released = manager.sweep_expired(clock.now)

    assert released == [hold.hold_id]
    assert statuses(orchestrator)["A1"] == "available"
    assert manager.sweep_expired(clock.now) == []

    clock.advance(1)
    again = manager.request_hold("screening-1", ["A1", "A2"], "y", ttl_seconds=600)
    assert isinstance(again, Hold)
    assert again.created_at == clock.now


def test_sweep_leaves_unexpired_holds(orchestrator, screening, clock):
    manager = orchestrator.hold_manager
    manager.request_hold("screening-1", ["A1"], "x", ttl_seconds=60)

    assert manager.sweep_expired(clock.advance(59)) == []
    assert statuses(orchestrator)["A1"] == "held"


def test_expired_hold_is_freed_on_access_without_sweep(orchestrator, screening, clock):
    manager = orchestrator.hold_manager
    stale = manager.request_hold("screening-1", ["A1", "A2"], "x", ttl_seconds=5)

    clock.advance(10)
    fresh = manager.request_hold("screening-1", ["A2", "A3"], "y", ttl_seconds=600)

    assert isinstance(fresh, Hold)
    assert manager.holds.get(stale.hold_id) is None
    assert statuses(orchestrator)["A1"] == "available"


def test_get_hold_expires_lazily(orchestrator, screening, clock):
    manager = orchestrator.hold_manager
    hold = manager.request_hold("screening-1", ["A1"], "x", ttl_seconds=5)

    assert manager.get_hold(hold.hold_id).state == HoldState.ACTIVE
    clock.advance(5)
    assert manager.get_hold(hold.hold_id).state == HoldState.EXPIRED
    assert statuses(orchestrator)["A1"] == "available"


def test_consumed_hold_is_never_swept(orchestrator, screening, clock):
    manager = orchestrator.hold_manager
    hold = manager.request_hold("screening-1", ["A1"], "x", ttl_seconds=5)
    assert manager.holds.try_set_state(hold.hold_id, HoldState.ACTIVE, HoldState.CONSUMED)

    clock.advance(60)

    assert manager.sweep_expired(clock.now) == []
    assert manager.release_hold(hold.hold_id) is False
    assert statuses(orchestrator)["A1"] == "held"


def test_conflict_leaves_out_seats_held_by_a_lapsed_hold(orchestrator, screening, clock):
    manager = orchestrator.hold_manager
    stale = manager.request_hold("screening-1", ["A3"], "x", ttl_seconds=5)
    clock.advance(10)
    manager.request_hold("screening-1", ["A2"], "z", ttl_seconds=600)

    result = manager.request_hold("screening-1", ["A2", "A3"], "y", ttl_seconds=600)

    assert isinstance(result, HoldConflict)
    assert [seat.label for seat in result.unavailable_seats] == ["A2"]
    assert statuses(orchestrator)["A3"] == "available"
    assert manager.holds.get(stale.hold_id) is None


@pytest.mark.parametrize("ttl", [0, -1, True])
def test_invalid_ttl(orchestrator, screening, ttl):
    with pytest.raises(ValidationError):
        orchestrator.hold_manager.request_hold("screening-1", ["A1"], "x", ttl_seconds=ttl)


def test_empty_request_rejected(orchestrator, screening):
    with pytest.raises(ValidationError):
        orchestrator.hold_manager.request_hold("screening-1", [], "x", ttl_seconds=60)


@pytest.mark.parametrize("backend", ["memory", "sql"])
def test_concurrent_overlapping_holds_one_winner_per_seat(request, backend):
    if backend == "memory":
        orchestrator = ReservationOrchestrator.in_memory()
    else:
        orchestrator = ReservationOrchestrator.with_database(request.getfixturevalue("database"))
    orchestrator.create_screening("busy", rows=["A"], seats_per_row=10, price="8")
    requests = [["A1", "A2"], ["A2", "A3"], ["A3", "A4"], ["A4", "A5"], ["A5", "A1"]] * 4
    barrier = threading.Barrier(len(requests))

    def attempt(seats):
        barrier.wait()
        return seats, orchestrator.hold_manager.request_hold("busy", seats, "u", ttl_seconds=600)

    with ThreadPoolExecutor(max_workers=len(requests)) as executor:
        outcomes = list(executor.map(attempt, requests))

    owners = {}
    for seats, result in outcomes:
        if isinstance(result, Hold):
            for seat in result.seat_ids:
                assert seat.label not in owners
                owners[seat.label] = result.hold_id
        else:
            # Reported seats always come from the request itself
            assert {seat.label for seat in result.unavailable_seats} <= set(seats)
            assert result.unavailable_seats

    seat_statuses = statuses(orchestrator, "busy")
    for label in ["A1", "A2", "A3", "A4", "A5"]:
        assert seat_statuses[label] == ("held" if label in owners else "available")
    assert all(seat_statuses[f"A{n}"] == "available" for n in range(6, 11))
