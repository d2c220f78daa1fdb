"""Domain types shared by the seat store, hold manager, ledger and orchestrator."""

import enum
import re
import secrets
import string
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

from errors import ValidationError

HOLD_CONFLICT_MESSAGE = "seat no longer available, please reselect"

_SEAT_LABEL = re.compile(r"^([A-Za-z]+)(\d+)$")
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends that drop the offset."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SeatStatus(str, enum.Enum):
    """Seat lifecycle states. No other value is ever stored."""
    AVAILABLE = 'available'
    HELD = 'held'
    BOOKED = 'booked'


class HoldState(str, enum.Enum):
    ACTIVE = 'active'
    CONSUMED = 'consumed'
    EXPIRED = 'expired'


class ReservationStatus(str, enum.Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'


class PaymentStatus(str, enum.Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'


class PaymentMethod(str, enum.Enum):
    CREDIT_CARD = 'credit_card'
    PAYPAL = 'paypal'


class SeatId(NamedTuple):
    """Seat identity inside a screening. Tuple ordering gives A2 before A10."""
    row: str
    number: int

    @property
    def label(self) -> str:
        return f"{self.row}{self.number}"

    def __str__(self) -> str:
        return self.label


def parse_seat_id(value) -> SeatId:
    """Accept a SeatId, a (row, number) pair or a label such as "B7"."""
    if isinstance(value, SeatId):
        return value
    if isinstance(value, (tuple, list)) and len(value) == 2:
        row, number = value
        if not isinstance(row, str) or not row.strip() or isinstance(number, bool) or not isinstance(number, int):
            raise ValidationError(f"invalid seat id: {value!r}")
        return SeatId(row.strip().upper(), number)
    if not isinstance(value, str):
        raise ValidationError(f"invalid seat id: {value!r}")
    match = _SEAT_LABEL.match(value.strip())
    if not match:
        raise ValidationError(f"invalid seat id: {value!r}")
    return SeatId(match.group(1).upper(), int(match.group(2)))


def normalize_seat_ids(values) -> List[SeatId]:
    """Parse, reject empty or duplicate input and return seats in acquisition order."""
    if values is None:
        raise ValidationError("seat_ids must contain at least one seat")
    seat_ids = [parse_seat_id(value) for value in values]
    if not seat_ids:
        raise ValidationError("seat_ids must contain at least one seat")
    if len(set(seat_ids)) != len(seat_ids):
        raise ValidationError("seat_ids must not contain duplicates")
    return sorted(seat_ids)


def generate_confirmation_code() -> str:
    return "CONF-" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))


def generate_reservation_code() -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(10))


@dataclass(frozen=True)
class Seat:
    screening_id: str
    row: str
    number: int
    status: SeatStatus = SeatStatus.AVAILABLE
    hold_id: Optional[uuid.UUID] = None

    @property
    def seat_id(self) -> SeatId:
        return SeatId(self.row, self.number)

    @property
    def label(self) -> str:
        return self.seat_id.label


@dataclass(frozen=True)
class SeatTransition:
    """Event emitted by a seat store after every successful compare-and-set."""
    screening_id: str
    seat_id: SeatId
    old_status: SeatStatus
    new_status: SeatStatus
    hold_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class Screening:
    screening_id: str
    total_seats: int
    price: Decimal
    rows: Tuple[str, ...] = ()
    seats_per_row: int = 0
    film_title: str = ""
    room: str = ""
    starts_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def with_changes(self, **changes) -> "Screening":
        return replace(self, **changes)


@dataclass(frozen=True)
class Hold:
    hold_id: uuid.UUID
    screening_id: str
    seat_ids: Tuple[SeatId, ...]
    holder_id: str
    created_at: datetime
    expires_at: datetime
    state: HoldState = HoldState.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict:
        return {
            "hold_id": str(self.hold_id),
            "screening_id": self.screening_id,
            "seat_ids": [seat.label for seat in self.seat_ids],
            "holder_id": self.holder_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "state": self.state.value,
        }


@dataclass(frozen=True)
class HoldConflict:
    """Normal outcome of a contested hold request; never raised."""
    screening_id: str
    unavailable_seats: Tuple[SeatId, ...]
    message: str = HOLD_CONFLICT_MESSAGE

    def to_dict(self) -> Dict:
        return {
            "error": self.message,
            "screening_id": self.screening_id,
            "unavailable_seats": [seat.label for seat in self.unavailable_seats],
        }


@dataclass(frozen=True)
class Payment:
    reservation_id: uuid.UUID
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "amount": str(self.amount),
            "status": self.status.value,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "transaction_id": self.transaction_id,
        }


@dataclass(frozen=True)
class Reservation:
    reservation_id: uuid.UUID
    screening_id: str
    user_id: str
    seat_ids: Tuple[SeatId, ...]
    total_price: Decimal
    hold_id: Optional[uuid.UUID]
    status: ReservationStatus = ReservationStatus.PENDING
    confirmation_code: str = field(default_factory=generate_confirmation_code)
    reservation_code: str = field(default_factory=generate_reservation_code)
    created_at: datetime = field(default_factory=utcnow)
    payment: Optional[Payment] = None

    @property
    def seats_count(self) -> int:
        return len(self.seat_ids)

    def to_dict(self) -> Dict:
        return {
            "reservation_id": str(self.reservation_id),
            "screening_id": self.screening_id,
            "user_id": self.user_id,
            "seat_ids": [seat.label for seat in self.seat_ids],
            "total_price": str(self.total_price),
            "status": self.status.value,
            "confirmation_code": self.confirmation_code,
            "reservation_code": self.reservation_code,
            "created_at": self.created_at.isoformat(),
            "payment": self.payment.to_dict() if self.payment else None,
        }


@dataclass
class AuditReport:
    screening_id: str
    booked_without_reservation: List[SeatId] = field(default_factory=list)
    reserved_but_not_booked: Dict[str, List[SeatId]] = field(default_factory=dict)
    double_booked: Dict[SeatId, List[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not (self.booked_without_reservation or self.reserved_but_not_booked or self.double_booked)

    def to_dict(self) -> Dict:
        return {
            "screening_id": self.screening_id,
            "consistent": self.ok,
            "booked_without_reservation": [seat.label for seat in self.booked_without_reservation],
            "reserved_but_not_booked": {
                reservation_id: [seat.label for seat in seats]
                for reservation_id, seats in self.reserved_but_not_booked.items()
            },
            "double_booked": {seat.label: owners for seat, owners in self.double_booked.items()},
        }


@dataclass
class SweepResult:
    released_holds: List[uuid.UUID] = field(default_factory=list)
    expired_reservations: List[uuid.UUID] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "released_holds": [str(hold_id) for hold_id in self.released_holds],
            "expired_reservations": [str(rid) for rid in self.expired_reservations],
        }
