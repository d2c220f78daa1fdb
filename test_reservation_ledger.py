import threading
import uuid
from decimal import Decimal

import pytest

from conftest import statuses
from domain import HoldState, Payment, PaymentStatus, Reservation, ReservationStatus, SeatId, SeatStatus
from errors import ExpiredHoldError, NotFoundError, ReservationConflict
from orchestrator import ReservationOrchestrator


@pytest.fixture
def hold(orchestrator, screening):
    return orchestrator.hold_manager.request_hold("screening-1", ["A1", "A2"], "user-x", ttl_seconds=600)


def test_pending_reservation_consumes_hold(orchestrator, hold):
    reservation = orchestrator.ledger.create_pending_reservation(hold, "user-x", Decimal("10.00"))

    assert reservation.status == ReservationStatus.PENDING
    assert reservation.total_price == Decimal("20.00")
    assert reservation.payment.status == PaymentStatus.PENDING
    assert reservation.confirmation_code.startswith("CONF-") and len(reservation.confirmation_code) == 13
    assert len(reservation.reservation_code) == 10
    assert orchestrator.hold_manager.holds.get(hold.hold_id).state == HoldState.CONSUMED


def test_converting_same_hold_twice_returns_existing(orchestrator, hold):
    first = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    second = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)

    assert second.reservation_id == first.reservation_id


def test_expired_hold_cannot_be_converted(orchestrator, hold, clock):
    clock.advance(600)

    with pytest.raises(ExpiredHoldError):
        orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    assert statuses(orchestrator)["A1"] == "available"


def test_swept_hold_cannot_be_converted(orchestrator, hold, clock):
    orchestrator.hold_manager.sweep_expired(clock.advance(601))

    with pytest.raises(ExpiredHoldError):
        orchestrator.ledger.create_pending_reservation(hold, "user-x", 10, now=clock.now)


def test_confirm_books_seats_and_discards_hold(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)

    confirmed = orchestrator.ledger.confirm_payment(pending.reservation_id, transaction_id="tx-1")

    assert confirmed.status == ReservationStatus.CONFIRMED
    assert confirmed.payment.status == PaymentStatus.COMPLETED
    assert confirmed.payment.transaction_id == "tx-1"
    assert statuses(orchestrator)["A1"] == "booked"
    assert statuses(orchestrator)["A2"] == "booked"
    assert orchestrator.hold_manager.holds.get(hold.hold_id) is None
    assert orchestrator.ledger.audit_consistency("screening-1").ok


def test_confirm_is_idempotent(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    orchestrator.ledger.confirm_payment(pending.reservation_id)

    again = orchestrator.ledger.confirm_payment(pending.reservation_id)

    assert again.status == ReservationStatus.CONFIRMED


def test_confirm_compensates_when_a_seat_was_moved_out_of_band(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    store = orchestrator.seat_store
    # Admin override: A2 forced back to available behind the ledger's back
    assert store.try_transition("screening-1", SeatId("A", 2), SeatStatus.HELD, SeatStatus.AVAILABLE)

    with pytest.raises(ReservationConflict) as excinfo:
        orchestrator.ledger.confirm_payment(pending.reservation_id)

    assert [seat.label for seat in excinfo.value.seat_ids] == ["A2"]
    seat_a1 = store.get_seats("screening-1", [SeatId("A", 1)])[0]
    assert seat_a1.status == SeatStatus.HELD
    assert seat_a1.hold_id == hold.hold_id
    assert orchestrator.reservations.get(pending.reservation_id).status == ReservationStatus.PENDING


def test_cancel_confirmed_releases_seats_and_is_idempotent(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    orchestrator.ledger.confirm_payment(pending.reservation_id)

    first = orchestrator.ledger.cancel_reservation(pending.reservation_id)
    second = orchestrator.ledger.cancel_reservation(pending.reservation_id)

    assert first.status == second.status == ReservationStatus.CANCELLED
    assert set(statuses(orchestrator).values()) == {"available"}


def test_cancel_pending_releases_held_seats(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)

    orchestrator.ledger.cancel_reservation(pending.reservation_id)

    assert set(statuses(orchestrator).values()) == {"available"}
    assert orchestrator.hold_manager.holds.get(hold.hold_id) is None


def test_confirm_after_cancel_is_rejected(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    orchestrator.ledger.cancel_reservation(pending.reservation_id)

    with pytest.raises(ReservationConflict):
        orchestrator.ledger.confirm_payment(pending.reservation_id)
    assert set(statuses(orchestrator).values()) == {"available"}


def test_fail_payment_discards_pending(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)

    failed = orchestrator.ledger.fail_payment(pending.reservation_id, transaction_id="tx-9")

    assert failed.status == ReservationStatus.CANCELLED
    assert failed.payment.status == PaymentStatus.FAILED
    assert set(statuses(orchestrator).values()) == {"available"}


def test_fail_payment_after_confirmation_is_a_conflict(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    orchestrator.ledger.confirm_payment(pending.reservation_id)

    with pytest.raises(ReservationConflict):
        orchestrator.ledger.fail_payment(pending.reservation_id)
    assert statuses(orchestrator)["A1"] == "booked"


def test_stale_pending_reservations_time_out(orchestrator, hold, clock):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)

    assert orchestrator.ledger.expire_stale_pending(clock.advance(1799), max_age_seconds=1800) == []
    expired = orchestrator.ledger.expire_stale_pending(clock.advance(1), max_age_seconds=1800)

    assert expired == [pending.reservation_id]
    assert orchestrator.reservations.get(pending.reservation_id).payment.status == PaymentStatus.FAILED
    assert set(statuses(orchestrator).values()) == {"available"}


def test_busy_reservation_rejects_second_writer(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    assert orchestrator.reservations.try_claim(pending.reservation_id)

    with pytest.raises(ReservationConflict):
        orchestrator.ledger.cancel_reservation(pending.reservation_id)

    orchestrator.reservations.release_claim(pending.reservation_id)
    assert orchestrator.ledger.cancel_reservation(pending.reservation_id).status == ReservationStatus.CANCELLED


def test_unknown_reservation(orchestrator, screening):
    with pytest.raises(NotFoundError):
        orchestrator.ledger.confirm_payment(uuid.uuid4())


def test_audit_flags_booked_seat_without_reservation(orchestrator, screening):
    orchestrator.seat_store.try_transition("screening-1", SeatId("A", 3), SeatStatus.AVAILABLE, SeatStatus.BOOKED)

    report = orchestrator.ledger.audit_consistency("screening-1")

    assert not report.ok
    assert report.booked_without_reservation == [SeatId("A", 3)]


def test_audit_flags_confirmed_reservation_missing_booked_seat(orchestrator, hold):
    pending = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    orchestrator.ledger.confirm_payment(pending.reservation_id)
    orchestrator.seat_store.try_transition("screening-1", SeatId("A", 1), SeatStatus.BOOKED, SeatStatus.AVAILABLE)

    report = orchestrator.ledger.audit_consistency("screening-1")

    assert report.reserved_but_not_booked == {str(pending.reservation_id): [SeatId("A", 1)]}


def test_confirm_and_cancel_race_never_double_transitions():
    orchestrator = ReservationOrchestrator.in_memory()
    orchestrator.create_screening("race", rows=["A", "B"], seats_per_row=10, price="9")

    for attempt in range(20):
        row_seats = [f"A{n}" for n in range(1, 11)] if attempt % 2 == 0 else [f"B{n}" for n in range(1, 11)]
        hold = orchestrator.start_booking("race", row_seats, f"user-{attempt}")
        pending = orchestrator.checkout(hold.hold_id)
        barrier = threading.Barrier(2)
        errors = []

        def run(action):
            barrier.wait()
            try:
                action(pending.reservation_id)
            except ReservationConflict as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(orchestrator.ledger.confirm_payment,)),
                   threading.Thread(target=run, args=(orchestrator.ledger.cancel_reservation,))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = orchestrator.reservations.get(pending.reservation_id)
        seat_states = {s.status for s in orchestrator.seat_store.get_seats("race") if s.label in row_seats}
        assert len(errors) <= 1
        if final.status == ReservationStatus.CONFIRMED:
            assert seat_states == {SeatStatus.BOOKED}
            orchestrator.cancel(final.reservation_id)
        else:
            assert final.status == ReservationStatus.CANCELLED
            assert seat_states == {SeatStatus.AVAILABLE}
        assert orchestrator.audit("race").ok


def test_audit_flags_seat_claimed_by_two_confirmed_reservations(orchestrator, hold, clock):
    first = orchestrator.ledger.create_pending_reservation(hold, "user-x", 10)
    orchestrator.ledger.confirm_payment(first.reservation_id)
    # A second confirmed record for A2 written outside the booking flow
    stray_id = uuid.uuid4()
    orchestrator.reservations.add(Reservation(
        reservation_id=stray_id,
        screening_id="screening-1",
        user_id="user-y",
        seat_ids=(SeatId("A", 2),),
        total_price=Decimal("10.00"),
        hold_id=None,
        status=ReservationStatus.CONFIRMED,
        created_at=clock.now,
        payment=Payment(stray_id, Decimal("10.00"), PaymentStatus.COMPLETED),
    ))

    report = orchestrator.ledger.audit_consistency("screening-1")

    assert not report.ok
    assert report.double_booked == {SeatId("A", 2): sorted([str(first.reservation_id), str(stray_id)])}
    assert report.booked_without_reservation == []
    assert report.to_dict()["double_booked"] == {"A2": sorted([str(first.reservation_id), str(stray_id)])}
