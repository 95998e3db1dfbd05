from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import ScheduleConflictError
from scheduling import ensure_no_conflict, exam_window, find_conflict, intervals_overlap

NINE = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def test_exam_window_handles_fractional_hours():
    start, end = exam_window(NINE, Decimal("1.5"))
    assert start == NINE
    assert end == NINE + timedelta(minutes=90)


@pytest.mark.parametrize("b_start_h, b_end_h, expected", [
    (9, 11, True),     # identical
    (10, 12, True),    # tail overlap
    (8, 9.5, True),    # head overlap
    (9.5, 10, True),   # contained
    (11, 12, False),   # back-to-back after
    (7, 9, False),     # back-to-back before
    (12, 13, False),   # disjoint
])
def test_intervals_overlap_is_half_open(b_start_h, b_end_h, expected):
    day = datetime(2025, 3, 10, tzinfo=timezone.utc)
    a = (day + timedelta(hours=9), day + timedelta(hours=11))
    b = (day + timedelta(hours=b_start_h), day + timedelta(hours=b_end_h))
    assert intervals_overlap(*a, *b) is expected
    assert intervals_overlap(*b, *a) is expected


def test_find_conflict_returns_first_overlapping_exam(store):
    store.seed_exam("maths", "c-jss1", NINE, 2, title="Maths")
    clash = find_conflict(store, "c-jss1", NINE + timedelta(hours=1), 2)
    assert clash["id"] == "maths"
    assert clash["ends_at"] == NINE + timedelta(hours=2)


def test_back_to_back_exams_do_not_conflict(store):
    store.seed_exam("maths", "c-jss1", NINE, 2)
    assert find_conflict(store, "c-jss1", NINE + timedelta(hours=2), 1) is None


def test_other_classes_are_ignored(store):
    store.seed_exam("maths", "c-jss2", NINE, 2)
    assert find_conflict(store, "c-jss1", NINE, 2) is None


def test_excluded_exam_does_not_conflict_with_itself(store):
    store.seed_exam("maths", "c-jss1", NINE, 2)
    assert find_conflict(store, "c-jss1", NINE + timedelta(minutes=30), 2, exclude_exam_id="maths") is None


def test_ensure_no_conflict_reports_the_conflicting_window(store):
    store.seed_exam("maths", "c-jss1", NINE, 2, title="Maths")
    with pytest.raises(ScheduleConflictError) as exc:
        ensure_no_conflict(store, "c-jss1", NINE + timedelta(hours=1), 1)
    body = exc.value.to_dict()
    assert exc.value.status == 409
    assert body["conflicting_exam_id"] == "maths"
    assert body["conflicting_title"] == "Maths"
    assert body["conflicting_starts_at"] == NINE.isoformat()
    assert body["conflicting_ends_at"] == (NINE + timedelta(hours=2)).isoformat()
