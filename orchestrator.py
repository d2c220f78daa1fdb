"""Façade sequencing seat map, seat store, hold manager and ledger for callers."""

import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, Optional, Union

from domain import (AuditReport, Hold, HoldConflict, HoldState, PaymentMethod, Reservation, Screening, SeatStatus,
                    SeatTransition, SweepResult, normalize_seat_ids, utcnow)
from errors import NotFoundError, ValidationError
from hold_manager import DEFAULT_HOLD_TTL_SECONDS, HoldManager
from repositories import (InMemoryHoldRepository, InMemoryReservationRepository, InMemoryScreeningRepository,
                          SqlHoldRepository, SqlReservationRepository, SqlScreeningRepository)
from reservation_ledger import ReservationLedger
from seat_map import generate_seats, generate_seats_for_capacity
from seat_store import InMemorySeatStateStore, SeatStateStore, SqlSeatStateStore

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_TIMEOUT_SECONDS = 1800


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"invalid identifier: {value!r}")


def _as_price(value) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("price must be a non-negative number")
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("price must be a non-negative number")
    if not price.is_finite() or price < 0:
        raise ValidationError("price must be a non-negative number")
    return price.quantize(Decimal("0.01"))


def _as_payment_method(value) -> Optional[PaymentMethod]:
    if value is None or isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"payment_method must be one of: {', '.join(m.value for m in PaymentMethod)}")


class ReservationOrchestrator:
    """Entry point for the booking UI, the payment webhook and admin actions.

    Every collaborator is injected; use ``in_memory()`` or ``with_database()``
    to build a wired instance.
    """

    def __init__(self, seat_store: SeatStateStore, screenings, holds, reservations, *,
                 clock: Callable[[], datetime] = utcnow,
                 hold_ttl_seconds: int = DEFAULT_HOLD_TTL_SECONDS,
                 payment_timeout_seconds: int = DEFAULT_PAYMENT_TIMEOUT_SECONDS,
                 database=None):
        self.seat_store = seat_store
        self.screenings = screenings
        self.clock = clock
        self.hold_ttl_seconds = hold_ttl_seconds
        self.payment_timeout_seconds = payment_timeout_seconds
        self.database = database
        self.hold_manager = HoldManager(seat_store, holds, clock=clock)
        self.ledger = ReservationLedger(self.hold_manager, reservations, clock=clock)
        self.seat_store.subscribe(self._on_seat_transition)

    @classmethod
    def in_memory(cls, **kwargs) -> "ReservationOrchestrator":
        return cls(InMemorySeatStateStore(), InMemoryScreeningRepository(), InMemoryHoldRepository(),
                   InMemoryReservationRepository(), **kwargs)

    @classmethod
    def with_database(cls, database, **kwargs) -> "ReservationOrchestrator":
        return cls(SqlSeatStateStore(database), SqlScreeningRepository(database), SqlHoldRepository(database),
                   SqlReservationRepository(database), database=database, **kwargs)

    @property
    def reservations(self):
        return self.ledger.reservations

    @staticmethod
    def _on_seat_transition(event: SeatTransition) -> None:
        logger.debug(f"Seat {event.screening_id}/{event.seat_id.label}: "
                     f"{event.old_status.value} -> {event.new_status.value}")

    # Screenings

    def create_screening(self, screening_id: str, *, price, rows=None, seats_per_row=None, total_seats=None,
                         film_title: str = "", room: str = "", starts_at: Optional[datetime] = None,
                         is_active: bool = True) -> Screening:
        """Create a screening and its seat map, from an explicit layout or a seat count."""
        if not isinstance(screening_id, str) or not screening_id.strip():
            raise ValidationError("screening_id must be a non-empty string")
        screening_id = screening_id.strip()
        price = _as_price(price)
        if not isinstance(is_active, bool):
            raise ValidationError("is_active must be a boolean")

        if rows is not None or seats_per_row is not None:
            seats = generate_seats(rows or (), seats_per_row if seats_per_row is not None else 0, screening_id)
            if total_seats is not None and total_seats != len(seats):
                raise ValidationError("total_seats does not match the seat layout")
        elif total_seats is not None:
            seats = generate_seats_for_capacity(total_seats, screening_id)
        else:
            raise ValidationError("either rows and seats_per_row or total_seats is required")

        layout_rows = tuple(dict.fromkeys(seat.row for seat in seats))
        screening = Screening(
            screening_id=screening_id,
            total_seats=len(seats),
            price=price,
            rows=layout_rows,
            seats_per_row=max(seat.number for seat in seats),
            film_title=film_title,
            room=room,
            starts_at=starts_at,
            is_active=is_active,
        )
        self.screenings.add(screening)
        try:
            self.seat_store.register_seats(screening_id, seats)
        except Exception:
            # A screening never exists without its seat map
            self.screenings.delete(screening_id)
            raise
        logger.info(f"Initialized screening {screening_id} with {len(seats)} seats")
        return screening

    def get_screening(self, screening_id: str) -> Screening:
        screening = self.screenings.get(screening_id)
        if screening is None:
            raise NotFoundError(f"screening {screening_id} not found")
        return screening

    def update_screening(self, screening_id: str, *, price=None, is_active: Optional[bool] = None) -> Screening:
        """Only the price and the activation flag change after creation."""
        self.get_screening(screening_id)
        changes = {}
        if price is not None:
            changes["price"] = _as_price(price)
        if is_active is not None:
            if not isinstance(is_active, bool):
                raise ValidationError("is_active must be a boolean")
            changes["is_active"] = is_active
        if not changes:
            raise ValidationError("nothing to update")
        return self.screenings.update(screening_id, **changes)

    def seat_availability(self, screening_id: str) -> Dict:
        """Live per-status totals and per-seat details, ordered by row then number."""
        screening = self.get_screening(screening_id)
        seats = self.seat_store.get_seats(screening_id)
        counts = {status: 0 for status in SeatStatus}
        for seat in seats:
            counts[seat.status] += 1
        return {
            "screening_id": screening_id,
            "is_active": screening.is_active,
            "price": str(screening.price),
            "total_seats": len(seats),
            "available_seats": counts[SeatStatus.AVAILABLE],
            "held_seats": counts[SeatStatus.HELD],
            "booked_seats": counts[SeatStatus.BOOKED],
            "is_fully_booked": counts[SeatStatus.AVAILABLE] == 0,
            "seats": [
                {"seat_id": seat.label, "row": seat.row, "number": seat.number, "status": seat.status.value}
                for seat in seats
            ],
            "updated_at": self.clock().isoformat(),
        }

    # Booking flow

    def start_booking(self, screening_id: str, seat_ids: Iterable, user_id: str,
                      ttl_seconds: Optional[int] = None) -> Union[Hold, HoldConflict]:
        screening = self.get_screening(screening_id)
        if not screening.is_active:
            raise ValidationError(f"screening {screening_id} is not open for booking")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id must be a non-empty string")

        requested = normalize_seat_ids(seat_ids)
        known = self.seat_store.get_statuses(screening_id, requested)
        unknown = [seat.label for seat in requested if seat not in known]
        if unknown:
            raise ValidationError(f"invalid seat ID(s): {', '.join(unknown)}")

        return self.hold_manager.request_hold(screening_id, requested, user_id.strip(),
                                              self.hold_ttl_seconds if ttl_seconds is None else ttl_seconds)

    def get_hold(self, hold_id) -> Hold:
        hold = self.hold_manager.get_hold(_as_uuid(hold_id))
        if hold is None:
            raise NotFoundError(f"hold {hold_id} not found")
        return hold

    def release_hold(self, hold_id) -> bool:
        return self.hold_manager.release_hold(_as_uuid(hold_id))

    def checkout(self, hold_id) -> Reservation:
        """Turn a fresh hold into a pending reservation at the screening's current price."""
        hold_uuid = _as_uuid(hold_id)
        hold = self.hold_manager.holds.get(hold_uuid)
        if hold is None:
            existing = self.reservations.find_by_hold(hold_uuid)
            if existing is not None:
                return existing
            raise NotFoundError(f"hold {hold_id} not found")
        screening = self.get_screening(hold.screening_id)
        return self.ledger.create_pending_reservation(hold, hold.holder_id, screening.price)

    def on_payment_result(self, reference_id, success: bool, *, transaction_id: Optional[str] = None,
                          payment_method=None) -> Optional[Reservation]:
        """Apply a payment outcome to a hold or to a pending reservation."""
        reference = _as_uuid(reference_id)
        method = _as_payment_method(payment_method)

        hold = self.hold_manager.holds.get(reference)
        if hold is not None and hold.state != HoldState.CONSUMED:
            if not success:
                self.hold_manager.release_hold(reference)
                logger.info(f"Payment failed for hold {reference}; seats released")
                return None
            reservation = self.checkout(reference)
            return self.ledger.confirm_payment(reservation.reservation_id, transaction_id, method)

        reservation = self.reservations.get(reference) or self.reservations.find_by_hold(reference)
        if reservation is None:
            raise NotFoundError(f"no hold or reservation {reference_id}")
        if success:
            return self.ledger.confirm_payment(reservation.reservation_id, transaction_id, method)
        logger.info(f"Payment failed for reservation {reservation.reservation_id}")
        return self.ledger.fail_payment(reservation.reservation_id, transaction_id, method)

    def cancel(self, reservation_id) -> Reservation:
        return self.ledger.cancel_reservation(_as_uuid(reservation_id))

    def get_reservation(self, reservation_id) -> Reservation:
        reservation = self.reservations.get(_as_uuid(reservation_id))
        if reservation is None:
            raise NotFoundError(f"reservation {reservation_id} not found")
        return reservation

    # Maintenance

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self.clock()
        return SweepResult(
            released_holds=self.hold_manager.sweep_expired(now),
            expired_reservations=self.ledger.expire_stale_pending(now, self.payment_timeout_seconds),
        )

    def audit(self, screening_id: str) -> AuditReport:
        self.get_screening(screening_id)
        return self.ledger.audit_consistency(screening_id)

    def reset(self) -> Dict[str, int]:
        """Drop every hold and reservation and put all seats back to available."""
        if self.database is not None:
            _, result = self.database.reset_all_seats()
            return result
        return {
            "holds_cleared": self.hold_manager.holds.clear(),
            "reservations_cleared": self.reservations.clear(),
            "seats_reset": self.seat_store.reset(),
        }

    def health(self) -> Dict:
        if self.database is not None:
            return self.database.health_check()
        return {"status": "healthy", "database": "in-memory", "screenings": self.screenings.count()}
