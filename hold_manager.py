"""Time-boxed, all-or-nothing seat holds on top of single-seat compare-and-set."""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Union

from domain import Hold, HoldConflict, HoldState, SeatId, SeatStatus, normalize_seat_ids, utcnow
from errors import ValidationError
from seat_store import SeatStateStore

logger = logging.getLogger(__name__)

DEFAULT_HOLD_TTL_SECONDS = 600


class HoldManager:
    """Acquires seats in a fixed order and compensates on partial failure.

    Each seat goes ``available -> held`` in ascending order. On the first seat
    that cannot be taken, every seat this call acquired goes back to
    ``available``. No call waits on a seat held by another request.
    """

    def __init__(self, seat_store: SeatStateStore, holds, clock: Callable[[], datetime] = utcnow):
        self.seat_store = seat_store
        self.holds = holds
        self.clock = clock

    def request_hold(self, screening_id: str, seat_ids: Iterable, holder_id: str,
                     ttl_seconds: int = DEFAULT_HOLD_TTL_SECONDS,
                     now: Optional[datetime] = None) -> Union[Hold, HoldConflict]:
        if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, (int, float)) or ttl_seconds <= 0:
            raise ValidationError("ttl_seconds must be a positive number")
        if not holder_id:
            raise ValidationError("holder_id is required")
        ordered = normalize_seat_ids(seat_ids)
        now = now or self.clock()
        hold_id = uuid.uuid4()

        acquired: List[SeatId] = []
        failed_at = None
        for seat_id in ordered:
            if self._acquire(screening_id, seat_id, hold_id, now):
                acquired.append(seat_id)
            else:
                failed_at = seat_id
                break

        if failed_at is not None:
            self._rollback(screening_id, acquired, hold_id)
            unavailable = self._unavailable_from(screening_id, ordered, failed_at, now)
            logger.warning(
                f"Hold conflict on {screening_id} for {holder_id}: "
                f"{', '.join(seat.label for seat in unavailable)}"
            )
            return HoldConflict(screening_id, tuple(unavailable))

        hold = Hold(
            hold_id=hold_id,
            screening_id=screening_id,
            seat_ids=tuple(ordered),
            holder_id=holder_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self.holds.add(hold)
        logger.info(f"Hold created: {screening_id}, hold_id={hold_id}, seats={len(ordered)}")
        return hold

    def _acquire(self, screening_id, seat_id, hold_id, now) -> bool:
        if self.seat_store.try_transition(screening_id, seat_id, SeatStatus.AVAILABLE, SeatStatus.HELD,
                                          hold_id=hold_id):
            return True
        # Passive expiry: a seat still held by a lapsed hold is freed on access
        if self._expire_blocking_hold(screening_id, seat_id, now):
            return self.seat_store.try_transition(screening_id, seat_id, SeatStatus.AVAILABLE, SeatStatus.HELD,
                                                  hold_id=hold_id)
        return False

    def _expire_blocking_hold(self, screening_id, seat_id, now) -> bool:
        seats = self.seat_store.get_seats(screening_id, [seat_id])
        if not seats or seats[0].status != SeatStatus.HELD or seats[0].hold_id is None:
            return False
        blocking = self.holds.get(seats[0].hold_id)
        if blocking is None:
            return False
        if blocking.state != HoldState.ACTIVE or not blocking.is_expired(now):
            return False
        return self._release(blocking, HoldState.ACTIVE, reason="expired")

    def _rollback(self, screening_id, acquired, hold_id) -> None:
        for seat_id in reversed(acquired):
            if not self.seat_store.try_transition(screening_id, seat_id, SeatStatus.HELD, SeatStatus.AVAILABLE,
                                                  expected_hold_id=hold_id):
                logger.error(f"Rollback could not release {screening_id}/{seat_id.label} for hold {hold_id}")

    def _unavailable_from(self, screening_id, ordered, failed_at, now) -> List[SeatId]:
        # Seats after the failing one were never attempted; report their current state.
        # A seat still held by a lapsed hold is freed here and not reported.
        remaining = ordered[ordered.index(failed_at) + 1:]
        statuses = self.seat_store.get_statuses(screening_id, remaining)
        return [failed_at] + [
            seat_id for seat_id in remaining
            if statuses.get(seat_id) != SeatStatus.AVAILABLE
            and not self._expire_blocking_hold(screening_id, seat_id, now)
        ]

    def get_hold(self, hold_id, now: Optional[datetime] = None) -> Optional[Hold]:
        """Return the hold, releasing it first when it is active and past its TTL."""
        hold = self.holds.get(hold_id)
        if hold is None:
            return None
        now = now or self.clock()
        if hold.state == HoldState.ACTIVE and hold.is_expired(now):
            self._release(hold, HoldState.ACTIVE, reason="expired")
            return self.holds.get(hold_id) or replace(hold, state=HoldState.EXPIRED)
        return hold

    def release_hold(self, hold_id) -> bool:
        """Free an active hold's seats. Unknown or consumed holds are left alone."""
        hold = self.holds.get(hold_id)
        if hold is None:
            return False
        if hold.state == HoldState.CONSUMED:
            logger.warning(f"Hold {hold_id} belongs to a reservation; not released")
            return False
        if hold.state == HoldState.EXPIRED:
            # A previous release stopped before deleting the record
            self._free_seats(hold)
            self.holds.delete(hold.hold_id)
            return True
        return self._release(hold, HoldState.ACTIVE, reason="released")

    def _release(self, hold: Hold, expected: HoldState, reason: str) -> bool:
        if not self.holds.try_set_state(hold.hold_id, expected, HoldState.EXPIRED):
            # Consumed by the ledger or released by someone else in the meantime
            return False
        self._free_seats(hold)
        self.holds.delete(hold.hold_id)
        logger.info(f"Hold {reason}: {hold.screening_id}, hold_id={hold.hold_id}")
        return True

    def _free_seats(self, hold: Hold) -> None:
        for seat_id in hold.seat_ids:
            # No-op on seats that no longer reference this hold
            self.seat_store.try_transition(hold.screening_id, seat_id, SeatStatus.HELD, SeatStatus.AVAILABLE,
                                           expected_hold_id=hold.hold_id)

    def sweep_expired(self, now: Optional[datetime] = None) -> List[uuid.UUID]:
        """Release every active hold whose expiry is at or before ``now``."""
        now = now or self.clock()
        released = [
            hold.hold_id for hold in self.holds.list_expirable(now)
            if self._release(hold, HoldState.ACTIVE, reason="expired")
        ]
        if released:
            logger.info(f"Swept {len(released)} expired holds")
        return released

    def discard(self, hold_id) -> None:
        """Drop the record of a hold whose seats now belong to a reservation."""
        self.holds.delete(hold_id)
