# scheduling.py
# -----------------------------------------------------------------------------
# Per-class exam schedule validation. Intervals are half-open [start, end):
# an exam ending at 12:00 and another starting at 12:00 do not overlap.
# -----------------------------------------------------------------------------

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from errors import ScheduleConflictError

Hours = Union[int, float, Decimal]


def exam_window(starts_at: datetime, duration_hours: Hours) -> Tuple[datetime, datetime]:
    return starts_at, starts_at + timedelta(hours=float(duration_hours))


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def find_conflict(store, class_id: str, starts_at: datetime, duration_hours: Hours,
                  exclude_exam_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    First existing exam of the class whose window overlaps the candidate, or None.
    Must run in the same transaction as the write that follows it, after the
    class row has been locked.
    """
    cand_start, cand_end = exam_window(starts_at, duration_hours)
    for existing in store.exams_for_class(class_id, exclude_exam_id):
        ex_start, ex_end = exam_window(existing["starts_at"], existing["duration_hours"])
        if intervals_overlap(cand_start, cand_end, ex_start, ex_end):
            return {**existing, "ends_at": ex_end}
    return None


def ensure_no_conflict(store, class_id: str, starts_at: datetime, duration_hours: Hours,
                       exclude_exam_id: Optional[str] = None) -> None:
    clash = find_conflict(store, class_id, starts_at, duration_hours, exclude_exam_id)
    if clash is None:
        return
    print(f"[exam] schedule conflict for class {class_id} with exam {clash['id']}", flush=True)
    raise ScheduleConflictError(
        "Schedule conflict: the exam time overlaps with an existing one.",
        conflicting_exam_id=clash["id"],
        conflicting_title=clash.get("title"),
        conflicting_starts_at=clash["starts_at"],
        conflicting_ends_at=clash["ends_at"],
    )
