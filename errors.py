"""Error taxonomy for the reservation engine.

A contested hold is not an error; it comes back as ``domain.HoldConflict``.
"""

from typing import Iterable, Optional


class SeatReservationError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(SeatReservationError):
    """Malformed input, rejected before any mutation."""


class NotFoundError(SeatReservationError):
    pass


class ExpiredHoldError(SeatReservationError):
    """The hold passed its TTL; the caller should start the booking again."""

    def __init__(self, hold_id, message: Optional[str] = None):
        self.hold_id = hold_id
        super().__init__(message or f"hold {hold_id} has expired")


class ReservationConflict(SeatReservationError):
    """A reservation could not move forward; retryable by the caller."""

    def __init__(self, message: str, seat_ids: Iterable = ()):
        self.seat_ids = tuple(seat_ids)
        super().__init__(message)


class StoreUnavailableError(SeatReservationError):
    """Infrastructure failure. Fatal for the current request."""


class DuplicateScreeningError(ValidationError):
    pass
