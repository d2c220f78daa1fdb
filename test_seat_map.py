import pytest

from domain import SeatId, SeatStatus, normalize_seat_ids, parse_seat_id
from errors import ValidationError
from seat_map import default_layout, generate_seats, generate_seats_for_capacity


def test_generate_seats_one_per_row_and_number():
    seats = generate_seats(["A", "B"], 3, "s1")

    assert [seat.label for seat in seats] == ["A1", "A2", "A3", "B1", "B2", "B3"]
    assert all(seat.status == SeatStatus.AVAILABLE for seat in seats)
    assert all(seat.screening_id == "s1" for seat in seats)


@pytest.mark.parametrize("rows, per_row", [
    ([], 5), (["A"], 0), (["A"], -2), (["A", "A"], 2), (["1"], 2),
    (5, 2), (None, 2), ({"A": 1}, 2), (["A"], 501), (["A", "B"], 10 ** 8),
])
def test_generate_seats_rejects_bad_layouts(rows, per_row):
    with pytest.raises(ValidationError):
        generate_seats(rows, per_row)


def test_default_layout_matches_repair_layout():
    assert default_layout(100) == (tuple("ABCDEFGHIJ"), 10)
    assert default_layout(45) == (tuple("ABCDEFGHI"), 5)
    assert default_layout(3) == (("A", "B", "C"), 1)


def test_generate_seats_for_capacity_is_exact():
    seats = generate_seats_for_capacity(23)

    assert len(seats) == 23
    assert seats[-1].label == "H2"


def test_capacity_bounds():
    with pytest.raises(ValidationError):
        generate_seats_for_capacity(0)
    with pytest.raises(ValidationError):
        generate_seats_for_capacity(501)


def test_seat_labels_parse_and_sort_numerically():
    assert parse_seat_id("b12") == SeatId("B", 12)
    assert parse_seat_id(("C", 4)).label == "C4"
    assert normalize_seat_ids(["A10", "A2", "B1"]) == [SeatId("A", 2), SeatId("A", 10), SeatId("B", 1)]


@pytest.mark.parametrize("bad", ["", "12", "A", "A-1", None, 7])
def test_invalid_seat_labels(bad):
    with pytest.raises(ValidationError):
        parse_seat_id(bad)


def test_duplicate_seats_rejected():
    with pytest.raises(ValidationError):
        normalize_seat_ids(["A1", "a1"])


def test_explicit_layout_up_to_the_seat_limit():
    assert len(generate_seats(list("ABCDEFGHIJ"), 50)) == 500
