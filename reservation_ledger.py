"""Durable reservations: hold conversion, payment confirmation, cancellation and audit."""

import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from domain import (AuditReport, Hold, HoldState, Payment, PaymentMethod, PaymentStatus, Reservation,
                    ReservationStatus, SeatStatus, utcnow)
from errors import ExpiredHoldError, NotFoundError, ReservationConflict, ValidationError
from hold_manager import HoldManager

logger = logging.getLogger(__name__)


class ReservationLedger:
    def __init__(self, hold_manager: HoldManager, reservations, clock: Callable[[], datetime] = utcnow):
        self.hold_manager = hold_manager
        self.seat_store = hold_manager.seat_store
        self.holds = hold_manager.holds
        self.reservations = reservations
        self.clock = clock

    def create_pending_reservation(self, hold: Hold, user_id: str, price_per_seat,
                                   now: Optional[datetime] = None) -> Reservation:
        """Consume an unexpired hold and record a pending reservation for its seats.

        The ``active -> consumed`` compare-and-set on the hold is what keeps the
        expiry sweep away from seats that are on their way to payment.
        """
        now = now or self.clock()
        price_per_seat = Decimal(str(price_per_seat))
        if price_per_seat < 0:
            raise ValidationError("price_per_seat must not be negative")

        current = self.holds.get(hold.hold_id)
        if current is None:
            existing = self.reservations.find_by_hold(hold.hold_id)
            if existing is not None:
                return existing
            raise ExpiredHoldError(hold.hold_id)
        if current.state == HoldState.CONSUMED:
            existing = self.reservations.find_by_hold(hold.hold_id)
            if existing is not None:
                return existing
            raise ReservationConflict(f"hold {hold.hold_id} is being converted")
        if current.state == HoldState.EXPIRED or current.is_expired(now):
            self.hold_manager.release_hold(hold.hold_id)
            logger.warning(f"Hold {hold.hold_id} expired before checkout")
            raise ExpiredHoldError(hold.hold_id)

        if not self.holds.try_set_state(hold.hold_id, HoldState.ACTIVE, HoldState.CONSUMED):
            # Lost the race against the sweep or an explicit release
            raise ExpiredHoldError(hold.hold_id)

        reservation_id = uuid.uuid4()
        total = price_per_seat * len(current.seat_ids)
        reservation = Reservation(
            reservation_id=reservation_id,
            screening_id=current.screening_id,
            user_id=user_id,
            seat_ids=current.seat_ids,
            total_price=total,
            hold_id=current.hold_id,
            status=ReservationStatus.PENDING,
            created_at=now,
            payment=Payment(reservation_id, total, PaymentStatus.PENDING),
        )
        self.reservations.add(reservation)
        logger.info(f"Reservation pending: {reservation_id}, screening={current.screening_id}, "
                    f"seats={len(current.seat_ids)}, total={total}")
        return reservation

    @contextmanager
    def _claimed(self, reservation_id):
        if not self.reservations.try_claim(reservation_id):
            raise ReservationConflict(f"reservation {reservation_id} is being updated, please retry")
        try:
            yield
        finally:
            self.reservations.release_claim(reservation_id)

    def _require(self, reservation_id) -> Reservation:
        reservation = self.reservations.get(reservation_id)
        if reservation is None:
            raise NotFoundError(f"reservation {reservation_id} not found")
        return reservation

    def confirm_payment(self, reservation_id, transaction_id: Optional[str] = None,
                        payment_method: Optional[PaymentMethod] = None) -> Reservation:
        reservation = self._require(reservation_id)
        if reservation.status == ReservationStatus.CONFIRMED:
            return reservation
        if reservation.status == ReservationStatus.CANCELLED:
            raise ReservationConflict(f"reservation {reservation_id} is cancelled")

        with self._claimed(reservation_id):
            reservation = self._require(reservation_id)
            if reservation.status == ReservationStatus.CONFIRMED:
                return reservation
            if reservation.status != ReservationStatus.PENDING:
                raise ReservationConflict(f"reservation {reservation_id} is {reservation.status.value}")

            booked = []
            for seat_id in sorted(reservation.seat_ids):
                if self.seat_store.try_transition(reservation.screening_id, seat_id, SeatStatus.HELD,
                                                  SeatStatus.BOOKED, expected_hold_id=reservation.hold_id):
                    booked.append(seat_id)
                    continue
                for done in reversed(booked):
                    self.seat_store.try_transition(reservation.screening_id, done, SeatStatus.BOOKED,
                                                   SeatStatus.HELD, hold_id=reservation.hold_id,
                                                   expected_hold_id=None)
                logger.error(
                    f"Seat {reservation.screening_id}/{seat_id.label} left 'held' outside the booking flow; "
                    f"confirmation of {reservation_id} aborted"
                )
                raise ReservationConflict(
                    f"seat {seat_id.label} is no longer held for reservation {reservation_id}",
                    seat_ids=[seat_id],
                )

            self.reservations.try_set_status(reservation_id, ReservationStatus.PENDING, ReservationStatus.CONFIRMED)
            self.reservations.update_payment(reservation_id, PaymentStatus.COMPLETED, payment_method, transaction_id)
            if reservation.hold_id is not None:
                self.hold_manager.discard(reservation.hold_id)

        logger.info(f"Reservation confirmed: {reservation_id}, code={reservation.confirmation_code}")
        return self._require(reservation_id)

    def cancel_reservation(self, reservation_id) -> Reservation:
        """Release the reservation's seats and mark it cancelled. Repeat calls are no-ops."""
        return self._cancel(reservation_id)

    def fail_payment(self, reservation_id, transaction_id: Optional[str] = None,
                     payment_method: Optional[PaymentMethod] = None) -> Reservation:
        """Payment failed or timed out: discard the pending reservation and free its seats."""
        return self._cancel(reservation_id, payment_failed=True, transaction_id=transaction_id,
                            payment_method=payment_method)

    def _cancel(self, reservation_id, payment_failed=False, transaction_id=None, payment_method=None):
        reservation = self._require(reservation_id)
        if reservation.status == ReservationStatus.CANCELLED:
            return reservation

        with self._claimed(reservation_id):
            reservation = self._require(reservation_id)
            if reservation.status == ReservationStatus.CANCELLED:
                return reservation
            if payment_failed:
                if reservation.status == ReservationStatus.CONFIRMED:
                    raise ReservationConflict(f"reservation {reservation_id} is already paid")
                self.reservations.update_payment(reservation_id, PaymentStatus.FAILED, payment_method,
                                                 transaction_id)

            if reservation.status == ReservationStatus.CONFIRMED:
                expected, expected_hold = SeatStatus.BOOKED, None
            else:
                expected, expected_hold = SeatStatus.HELD, reservation.hold_id

            for seat_id in sorted(reservation.seat_ids):
                if not self.seat_store.try_transition(reservation.screening_id, seat_id, expected,
                                                      SeatStatus.AVAILABLE, expected_hold_id=expected_hold):
                    logger.warning(f"Seat {reservation.screening_id}/{seat_id.label} was not {expected.value} "
                                   f"while cancelling {reservation_id}")

            self.reservations.try_set_status(reservation_id, reservation.status, ReservationStatus.CANCELLED)
            if reservation.status == ReservationStatus.PENDING and reservation.hold_id is not None:
                self.hold_manager.discard(reservation.hold_id)

        logger.info(f"Reservation cancelled: {reservation_id}")
        return self._require(reservation_id)

    def expire_stale_pending(self, now: Optional[datetime] = None, max_age_seconds: int = 1800) -> List[uuid.UUID]:
        now = now or self.clock()
        cutoff = now - timedelta(seconds=max_age_seconds)
        expired = []
        for reservation in self.reservations.list_stale_pending(cutoff):
            try:
                self.fail_payment(reservation.reservation_id)
            except ReservationConflict as e:
                # Confirmation won the race; leave it for the next sweep if still pending
                logger.info(f"Skipping stale reservation {reservation.reservation_id}: {e}")
                continue
            expired.append(reservation.reservation_id)
        if expired:
            logger.info(f"Payment timeout: {len(expired)} pending reservations cancelled")
        return expired

    def audit_consistency(self, screening_id: str) -> AuditReport:
        """Booked seats must match confirmed reservations one to one."""
        report = AuditReport(screening_id)
        owners = defaultdict(list)
        for reservation in self.reservations.list_by_screening(screening_id, ReservationStatus.CONFIRMED):
            for seat_id in reservation.seat_ids:
                owners[seat_id].append(str(reservation.reservation_id))

        seats = {seat.seat_id: seat.status for seat in self.seat_store.get_seats(screening_id)}
        for seat_id, status in seats.items():
            if status == SeatStatus.BOOKED and seat_id not in owners:
                report.booked_without_reservation.append(seat_id)
        for seat_id, reservation_ids in owners.items():
            if len(reservation_ids) > 1:
                report.double_booked[seat_id] = sorted(reservation_ids)
            if seats.get(seat_id) != SeatStatus.BOOKED:
                for reservation_id in reservation_ids:
                    report.reserved_but_not_booked.setdefault(reservation_id, []).append(seat_id)

        if not report.ok:
            logger.error(f"Consistency audit failed for {screening_id}: {report.to_dict()}")
        return report
