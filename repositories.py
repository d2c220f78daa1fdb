"""Screening, hold and reservation records for both backends.

Record-level state changes (hold state, reservation status, the reservation
claim flag) are compare-and-set operations, same as seats.
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from domain import (Hold, HoldState, Payment, PaymentMethod, PaymentStatus, Reservation, ReservationStatus,
                    Screening, SeatId, as_utc)
from errors import DuplicateScreeningError
from models import Hold as HoldRow
from models import Payment as PaymentRow
from models import Reservation as ReservationRow
from models import Screening as ScreeningRow
from models import Seat as SeatRow


def _dump_seats(seat_ids) -> List[list]:
    return [[seat.row, seat.number] for seat in seat_ids]


def _load_seats(raw) -> tuple:
    return tuple(SeatId(row, number) for row, number in raw)


# In-memory backend

class InMemoryScreeningRepository:
    def __init__(self):
        self._screenings: Dict[str, Screening] = {}
        self._lock = threading.Lock()

    def add(self, screening: Screening) -> Screening:
        with self._lock:
            if screening.screening_id in self._screenings:
                raise DuplicateScreeningError(f"screening {screening.screening_id} already exists")
            self._screenings[screening.screening_id] = screening
            return screening

    def get(self, screening_id: str) -> Optional[Screening]:
        return self._screenings.get(screening_id)

    def update(self, screening_id: str, **changes) -> Optional[Screening]:
        with self._lock:
            current = self._screenings.get(screening_id)
            if current is None:
                return None
            updated = current.with_changes(**changes)
            self._screenings[screening_id] = updated
            return updated

    def delete(self, screening_id: str) -> bool:
        with self._lock:
            return self._screenings.pop(screening_id, None) is not None

    def count(self) -> int:
        return len(self._screenings)

    def clear(self) -> int:
        with self._lock:
            count = len(self._screenings)
            self._screenings.clear()
            return count


class InMemoryHoldRepository:
    def __init__(self):
        self._holds: Dict[uuid.UUID, Hold] = {}
        self._lock = threading.Lock()

    def add(self, hold: Hold) -> Hold:
        with self._lock:
            self._holds[hold.hold_id] = hold
            return hold

    def get(self, hold_id: uuid.UUID) -> Optional[Hold]:
        return self._holds.get(hold_id)

    def try_set_state(self, hold_id: uuid.UUID, expected: HoldState, new: HoldState) -> bool:
        with self._lock:
            hold = self._holds.get(hold_id)
            if hold is None or hold.state != expected:
                return False
            self._holds[hold_id] = Hold(hold.hold_id, hold.screening_id, hold.seat_ids, hold.holder_id,
                                        hold.created_at, hold.expires_at, new)
            return True

    def delete(self, hold_id: uuid.UUID) -> bool:
        with self._lock:
            return self._holds.pop(hold_id, None) is not None

    def list_expirable(self, now: datetime) -> List[Hold]:
        with self._lock:
            holds = [h for h in self._holds.values() if h.state == HoldState.ACTIVE and h.expires_at <= now]
        return sorted(holds, key=lambda h: h.expires_at)

    def clear(self) -> int:
        with self._lock:
            count = len(self._holds)
            self._holds.clear()
            return count


class InMemoryReservationRepository:
    def __init__(self):
        self._reservations: Dict[uuid.UUID, Reservation] = {}
        self._in_flight = set()
        self._lock = threading.Lock()

    def add(self, reservation: Reservation) -> Reservation:
        with self._lock:
            self._reservations[reservation.reservation_id] = reservation
            return reservation

    def get(self, reservation_id: uuid.UUID) -> Optional[Reservation]:
        return self._reservations.get(reservation_id)

    def find_by_hold(self, hold_id: uuid.UUID) -> Optional[Reservation]:
        with self._lock:
            for reservation in self._reservations.values():
                if reservation.hold_id == hold_id:
                    return reservation
        return None

    def list_by_screening(self, screening_id: str, status: Optional[ReservationStatus] = None) -> List[Reservation]:
        with self._lock:
            return [
                r for r in self._reservations.values()
                if r.screening_id == screening_id and (status is None or r.status == status)
            ]

    def list_stale_pending(self, created_before: datetime) -> List[Reservation]:
        with self._lock:
            return [
                r for r in self._reservations.values()
                if r.status == ReservationStatus.PENDING and r.created_at <= created_before
            ]

    def try_set_status(self, reservation_id, expected: ReservationStatus, new: ReservationStatus) -> bool:
        with self._lock:
            current = self._reservations.get(reservation_id)
            if current is None or current.status != expected:
                return False
            self._reservations[reservation_id] = replace(current, status=new)
            return True

    def try_claim(self, reservation_id) -> bool:
        with self._lock:
            if reservation_id not in self._reservations or reservation_id in self._in_flight:
                return False
            self._in_flight.add(reservation_id)
            return True

    def release_claim(self, reservation_id) -> None:
        with self._lock:
            self._in_flight.discard(reservation_id)

    def update_payment(self, reservation_id, status: PaymentStatus, payment_method: Optional[PaymentMethod] = None,
                       transaction_id: Optional[str] = None) -> None:
        with self._lock:
            current = self._reservations.get(reservation_id)
            if current is None:
                return
            payment = current.payment or Payment(reservation_id, current.total_price)
            payment = Payment(payment.reservation_id, payment.amount, status,
                              payment_method or payment.payment_method,
                              transaction_id or payment.transaction_id)
            self._reservations[reservation_id] = replace(current, payment=payment)

    def clear(self) -> int:
        with self._lock:
            count = len(self._reservations)
            self._reservations.clear()
            self._in_flight.clear()
            return count


# SQL backend

class SqlScreeningRepository:
    def __init__(self, database):
        self.db = database

    @staticmethod
    def _to_domain(row: ScreeningRow) -> Screening:
        return Screening(
            screening_id=row.screening_id,
            total_seats=row.total_seats,
            price=row.price,
            rows=tuple(row.rows or ()),
            seats_per_row=row.seats_per_row,
            film_title=row.film_title,
            room=row.room,
            starts_at=as_utc(row.starts_at),
            is_active=row.is_active,
            created_at=as_utc(row.created_at),
        )

    def add(self, screening: Screening) -> Screening:
        try:
            with self.db.get_session() as session:
                session.add(ScreeningRow(
                    screening_id=screening.screening_id,
                    film_title=screening.film_title,
                    room=screening.room,
                    starts_at=screening.starts_at,
                    total_seats=screening.total_seats,
                    price=screening.price,
                    is_active=screening.is_active,
                    rows=list(screening.rows),
                    seats_per_row=screening.seats_per_row,
                    created_at=screening.created_at,
                ))
        except IntegrityError as e:
            raise DuplicateScreeningError(f"screening {screening.screening_id} already exists") from e
        return screening

    def get(self, screening_id: str) -> Optional[Screening]:
        with self.db.get_session() as session:
            row = session.get(ScreeningRow, screening_id)
            return self._to_domain(row) if row else None

    def update(self, screening_id: str, **changes) -> Optional[Screening]:
        with self.db.get_session() as session:
            row = session.get(ScreeningRow, screening_id, with_for_update=True)
            if row is None:
                return None
            for key, value in changes.items():
                setattr(row, key, value)
            session.flush()
            return self._to_domain(row)

    def delete(self, screening_id: str) -> bool:
        with self.db.get_session() as session:
            session.execute(delete(SeatRow).where(SeatRow.screening_id == screening_id))
            return session.execute(delete(ScreeningRow).where(ScreeningRow.screening_id == screening_id)).rowcount == 1

    def count(self) -> int:
        with self.db.get_session() as session:
            return session.scalar(select(func.count()).select_from(ScreeningRow))

    def clear(self) -> int:
        with self.db.get_session() as session:
            return session.execute(delete(ScreeningRow)).rowcount


class SqlHoldRepository:
    def __init__(self, database):
        self.db = database

    @staticmethod
    def _to_domain(row: HoldRow) -> Hold:
        return Hold(
            hold_id=row.hold_id,
            screening_id=row.screening_id,
            seat_ids=_load_seats(row.seat_ids),
            holder_id=row.holder_id,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
            state=row.state,
        )

    def add(self, hold: Hold) -> Hold:
        with self.db.get_session() as session:
            session.add(HoldRow(
                hold_id=hold.hold_id,
                screening_id=hold.screening_id,
                seat_ids=_dump_seats(hold.seat_ids),
                holder_id=hold.holder_id,
                state=hold.state,
                expires_at=hold.expires_at,
                created_at=hold.created_at,
            ))
        return hold

    def get(self, hold_id) -> Optional[Hold]:
        with self.db.get_session() as session:
            row = session.get(HoldRow, hold_id)
            return self._to_domain(row) if row else None

    def try_set_state(self, hold_id, expected: HoldState, new: HoldState) -> bool:
        stmt = (
            update(HoldRow)
            .where(HoldRow.hold_id == hold_id, HoldRow.state == expected)
            .values(state=new)
            .execution_options(synchronize_session=False)
        )
        with self.db.get_session() as session:
            return session.execute(stmt).rowcount == 1

    def delete(self, hold_id) -> bool:
        with self.db.get_session() as session:
            return session.execute(delete(HoldRow).where(HoldRow.hold_id == hold_id)).rowcount == 1

    def list_expirable(self, now: datetime) -> List[Hold]:
        with self.db.get_session() as session:
            rows = session.scalars(
                select(HoldRow)
                .where(HoldRow.state == HoldState.ACTIVE, HoldRow.expires_at <= now)
                .order_by(HoldRow.expires_at)
            ).all()
            return [self._to_domain(row) for row in rows]

    def clear(self) -> int:
        with self.db.get_session() as session:
            return session.execute(delete(HoldRow)).rowcount


class SqlReservationRepository:
    def __init__(self, database):
        self.db = database

    @staticmethod
    def _to_domain(row: ReservationRow) -> Reservation:
        payment = None
        if row.payment is not None:
            payment = Payment(row.reservation_id, row.payment.amount, row.payment.status,
                              row.payment.payment_method, row.payment.transaction_id)
        return Reservation(
            reservation_id=row.reservation_id,
            screening_id=row.screening_id,
            user_id=row.user_id,
            seat_ids=_load_seats(row.seat_ids),
            total_price=row.total_price,
            hold_id=row.hold_id,
            status=row.status,
            confirmation_code=row.confirmation_code,
            reservation_code=row.reservation_code,
            created_at=as_utc(row.created_at),
            payment=payment,
        )

    def add(self, reservation: Reservation) -> Reservation:
        with self.db.get_session() as session:
            row = ReservationRow(
                reservation_id=reservation.reservation_id,
                screening_id=reservation.screening_id,
                user_id=reservation.user_id,
                seat_ids=_dump_seats(reservation.seat_ids),
                total_price=reservation.total_price,
                status=reservation.status,
                hold_id=reservation.hold_id,
                confirmation_code=reservation.confirmation_code,
                reservation_code=reservation.reservation_code,
                in_flight=False,
                created_at=reservation.created_at,
            )
            if reservation.payment is not None:
                row.payment = PaymentRow(
                    reservation_id=reservation.reservation_id,
                    amount=reservation.payment.amount,
                    status=reservation.payment.status,
                    payment_method=reservation.payment.payment_method,
                    transaction_id=reservation.payment.transaction_id,
                )
            session.add(row)
        return reservation

    def _query(self, *criteria) -> List[Reservation]:
        with self.db.get_session() as session:
            rows = session.scalars(select(ReservationRow).where(*criteria)).all()
            return [self._to_domain(row) for row in rows]

    def get(self, reservation_id) -> Optional[Reservation]:
        with self.db.get_session() as session:
            row = session.get(ReservationRow, reservation_id)
            return self._to_domain(row) if row else None

    def find_by_hold(self, hold_id) -> Optional[Reservation]:
        found = self._query(ReservationRow.hold_id == hold_id)
        return found[0] if found else None

    def list_by_screening(self, screening_id, status=None) -> List[Reservation]:
        criteria = [ReservationRow.screening_id == screening_id]
        if status is not None:
            criteria.append(ReservationRow.status == status)
        return self._query(*criteria)

    def list_stale_pending(self, created_before: datetime) -> List[Reservation]:
        return self._query(
            ReservationRow.status == ReservationStatus.PENDING,
            ReservationRow.created_at <= created_before,
        )

    def _conditional_update(self, criteria, values) -> bool:
        stmt = (
            update(ReservationRow)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self.db.get_session() as session:
            return session.execute(stmt).rowcount == 1

    def try_set_status(self, reservation_id, expected, new) -> bool:
        return self._conditional_update(
            [ReservationRow.reservation_id == reservation_id, ReservationRow.status == expected],
            {"status": new},
        )

    def try_claim(self, reservation_id) -> bool:
        return self._conditional_update(
            [ReservationRow.reservation_id == reservation_id, ReservationRow.in_flight.is_(False)],
            {"in_flight": True},
        )

    def release_claim(self, reservation_id) -> None:
        self._conditional_update([ReservationRow.reservation_id == reservation_id], {"in_flight": False})

    def update_payment(self, reservation_id, status, payment_method=None, transaction_id=None) -> None:
        with self.db.get_session() as session:
            row = session.get(ReservationRow, reservation_id)
            if row is None:
                return
            if row.payment is None:
                row.payment = PaymentRow(reservation_id=reservation_id, amount=row.total_price)
            row.payment.status = status
            if payment_method is not None:
                row.payment.payment_method = payment_method
            if transaction_id is not None:
                row.payment.transaction_id = transaction_id

    def clear(self) -> int:
        with self.db.get_session() as session:
            session.execute(delete(PaymentRow))
            return session.execute(delete(ReservationRow)).rowcount
