"""Seat state stores: the single source of truth for every seat's status.

``try_transition`` is the only way a seat status changes. Both backends make
it atomic per seat: the in-memory store through one lock per seat, the SQL
store through a single conditional UPDATE.
"""

import logging
import threading
import uuid
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update

from domain import Seat, SeatId, SeatStatus, SeatTransition
from models import Seat as SeatRow

logger = logging.getLogger(__name__)

# Sentinel for "do not compare the seat's current hold reference"
ANY_HOLD = object()

Listener = Callable[[SeatTransition], None]


class SeatStateStore:
    """Shared behaviour: listener registration and event fan-out."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, event: SeatTransition) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # The transition already happened; a broken listener must not undo it
                logger.exception(f"Seat listener failed for {event.screening_id}/{event.seat_id.label}")

    def register_seats(self, screening_id: str, seats: Iterable[Seat]) -> int:
        raise NotImplementedError

    def get_seats(self, screening_id: str, seat_ids: Optional[Iterable[SeatId]] = None) -> List[Seat]:
        raise NotImplementedError

    def try_transition(self, screening_id: str, seat_id: SeatId, expected: SeatStatus, new: SeatStatus, *,
                       hold_id: Optional[uuid.UUID] = None, expected_hold_id=ANY_HOLD) -> bool:
        raise NotImplementedError

    def reset(self, screening_id: Optional[str] = None) -> int:
        raise NotImplementedError

    def get_statuses(self, screening_id: str, seat_ids: Iterable[SeatId]) -> Dict[SeatId, SeatStatus]:
        """Current status per seat. Unknown seats are simply absent."""
        return {seat.seat_id: seat.status for seat in self.get_seats(screening_id, list(seat_ids))}

    def status_counts(self, screening_id: str) -> Dict[SeatStatus, int]:
        counts = Counter(seat.status for seat in self.get_seats(screening_id))
        return {status: counts.get(status, 0) for status in SeatStatus}


class InMemorySeatStateStore(SeatStateStore):
    """Process-local store with one lock per seat."""

    def __init__(self):
        super().__init__()
        self._seats: Dict[tuple, Seat] = {}
        self._seat_locks: Dict[tuple, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def register_seats(self, screening_id, seats):
        with self._registry_lock:
            created = 0
            for seat in seats:
                key = (screening_id, seat.row, seat.number)
                if key in self._seats:
                    continue
                self._seats[key] = Seat(screening_id, seat.row, seat.number, SeatStatus.AVAILABLE)
                self._seat_locks[key] = threading.Lock()
                created += 1
            return created

    def get_seats(self, screening_id, seat_ids=None):
        if seat_ids is None:
            seats = [seat for key, seat in list(self._seats.items()) if key[0] == screening_id]
        else:
            seats = []
            for seat_id in seat_ids:
                seat = self._seats.get((screening_id, seat_id.row, seat_id.number))
                if seat is not None:
                    seats.append(seat)
        return sorted(seats, key=lambda seat: seat.seat_id)

    def try_transition(self, screening_id, seat_id, expected, new, *, hold_id=None, expected_hold_id=ANY_HOLD):
        key = (screening_id, seat_id.row, seat_id.number)
        lock = self._seat_locks.get(key)
        if lock is None:
            return False
        with lock:
            current = self._seats[key]
            if current.status != expected:
                return False
            if expected_hold_id is not ANY_HOLD and current.hold_id != expected_hold_id:
                return False
            self._seats[key] = Seat(screening_id, seat_id.row, seat_id.number, new, hold_id)
        self._emit(SeatTransition(screening_id, seat_id, expected, new, hold_id if hold_id else current.hold_id))
        return True

    def reset(self, screening_id=None):
        count = 0
        with self._registry_lock:
            for key, lock in self._seat_locks.items():
                if screening_id is not None and key[0] != screening_id:
                    continue
                with lock:
                    self._seats[key] = Seat(key[0], key[1], key[2], SeatStatus.AVAILABLE)
                    count += 1
        return count


class SqlSeatStateStore(SeatStateStore):
    """Seat rows in a relational database; each CAS is one conditional UPDATE."""

    def __init__(self, database):
        super().__init__()
        self.db = database

    @staticmethod
    def _to_domain(row: SeatRow) -> Seat:
        return Seat(row.screening_id, row.row, row.number, row.status, row.hold_id)

    def register_seats(self, screening_id, seats):
        with self.db.get_session() as session:
            rows = [
                SeatRow(screening_id=screening_id, row=seat.row, number=seat.number,
                        status=SeatStatus.AVAILABLE)
                for seat in seats
            ]
            session.add_all(rows)
            return len(rows)

    def get_seats(self, screening_id, seat_ids=None):
        with self.db.get_session() as session:
            query = select(SeatRow).where(SeatRow.screening_id == screening_id)
            rows = session.scalars(query.order_by(SeatRow.row, SeatRow.number)).all()
            seats = [self._to_domain(row) for row in rows]
        if seat_ids is not None:
            wanted = set(seat_ids)
            seats = [seat for seat in seats if seat.seat_id in wanted]
        return sorted(seats, key=lambda seat: seat.seat_id)

    def try_transition(self, screening_id, seat_id, expected, new, *, hold_id=None, expected_hold_id=ANY_HOLD):
        stmt = update(SeatRow).where(
            SeatRow.screening_id == screening_id,
            SeatRow.row == seat_id.row,
            SeatRow.number == seat_id.number,
            SeatRow.status == expected,
        )
        if expected_hold_id is not ANY_HOLD:
            if expected_hold_id is None:
                stmt = stmt.where(SeatRow.hold_id.is_(None))
            else:
                stmt = stmt.where(SeatRow.hold_id == expected_hold_id)
        stmt = stmt.values(status=new, hold_id=hold_id).execution_options(synchronize_session=False)

        with self.db.get_session() as session:
            changed = session.execute(stmt).rowcount == 1

        if changed:
            reference = hold_id if hold_id else (None if expected_hold_id is ANY_HOLD else expected_hold_id)
            self._emit(SeatTransition(screening_id, seat_id, expected, new, reference))
        return changed

    def reset(self, screening_id=None):
        stmt = update(SeatRow).values(status=SeatStatus.AVAILABLE, hold_id=None)
        if screening_id is not None:
            stmt = stmt.where(SeatRow.screening_id == screening_id)
        with self.db.get_session() as session:
            return session.execute(stmt.execution_options(synchronize_session=False)).rowcount
