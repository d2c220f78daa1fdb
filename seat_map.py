"""Seat map generation for a screening's room layout."""

import math
from typing import List, Sequence, Tuple

from domain import Seat, SeatStatus
from errors import ValidationError

DEFAULT_ROWS = ('A', 'B', 'C', 'D', 'E', 'F', 'G', 'H', 'I', 'J')
MAX_TOTAL_SEATS = 500


def _validate_rows(rows: Sequence[str]) -> Tuple[str, ...]:
    if not isinstance(rows, (str, list, tuple)):
        raise ValidationError("rows must be a list of row labels")
    if not rows:
        raise ValidationError("rows must contain at least one row label")
    labels = []
    for row in rows:
        if not isinstance(row, str) or not row.strip().isalpha():
            raise ValidationError(f"invalid row label: {row!r}")
        labels.append(row.strip().upper())
    if len(set(labels)) != len(labels):
        raise ValidationError("row labels must be unique")
    return tuple(labels)


def generate_seats(rows: Sequence[str], seats_per_row: int, screening_id: str = "") -> List[Seat]:
    """Return one available seat per (row, 1..seats_per_row), row by row."""
    labels = _validate_rows(rows)
    if isinstance(seats_per_row, bool) or not isinstance(seats_per_row, int) or seats_per_row <= 0:
        raise ValidationError("seats_per_row must be a positive integer")
    if len(labels) * seats_per_row > MAX_TOTAL_SEATS:
        raise ValidationError(f"a screening may have at most {MAX_TOTAL_SEATS} seats")
    return [
        Seat(screening_id=screening_id, row=row, number=number, status=SeatStatus.AVAILABLE)
        for row in labels
        for number in range(1, seats_per_row + 1)
    ]


def default_layout(total_seats: int) -> Tuple[Tuple[str, ...], int]:
    """Rows A-J with an even share of seats each, trimmed to the rows actually needed."""
    if isinstance(total_seats, bool) or not isinstance(total_seats, int) or not 1 <= total_seats <= MAX_TOTAL_SEATS:
        raise ValidationError(f"total_seats must be an integer between 1 and {MAX_TOTAL_SEATS}")
    seats_per_row = math.ceil(total_seats / len(DEFAULT_ROWS))
    rows_needed = math.ceil(total_seats / seats_per_row)
    return DEFAULT_ROWS[:rows_needed], seats_per_row


def generate_seats_for_capacity(total_seats: int, screening_id: str = "") -> List[Seat]:
    """Generate exactly ``total_seats`` seats; the last row may be short."""
    rows, seats_per_row = default_layout(total_seats)
    return generate_seats(rows, seats_per_row, screening_id)[:total_seats]
