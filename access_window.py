# access_window.py
# -----------------------------------------------------------------------------
# Time-window gate for students. No state is persisted: Locked / Open / Closed
# is recomputed from the exam row and the wall clock on every request.
#   fetch questions : open from (start - buffer) through end, inclusive
#   submit answers  : open until end, inclusive (no early restriction)
# -----------------------------------------------------------------------------

import os
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from errors import NotFoundError, TooEarlyError, WindowClosedError, window_details
from roles import Caller, student_class, student_exam_kind
from scheduling import exam_window

FETCH_BUFFER_MIN = int(os.getenv("CBT_FETCH_BUFFER_MIN") or 30)


class WindowState(Enum):
    LOCKED = "locked"
    OPEN = "open"
    CLOSED = "closed"


def fetch_bounds(exam: Dict[str, Any], buffer_min: Optional[int] = None):
    start, end = exam_window(exam["starts_at"], exam["duration_hours"])
    buffer = FETCH_BUFFER_MIN if buffer_min is None else buffer_min
    return start - timedelta(minutes=buffer), end


def fetch_state(exam: Dict[str, Any], now: datetime, buffer_min: Optional[int] = None) -> WindowState:
    allowed_start, end = fetch_bounds(exam, buffer_min)
    if now < allowed_start:
        return WindowState.LOCKED
    if now > end:
        return WindowState.CLOSED
    return WindowState.OPEN


def submit_state(exam: Dict[str, Any], now: datetime) -> WindowState:
    _, end = exam_window(exam["starts_at"], exam["duration_hours"])
    return WindowState.OPEN if now <= end else WindowState.CLOSED


def require_fetch_open(exam: Dict[str, Any], now: datetime, buffer_min: Optional[int] = None) -> None:
    state = fetch_state(exam, now, buffer_min)
    if state is WindowState.OPEN:
        return
    opens_at, closes_at = fetch_bounds(exam, buffer_min)
    if state is WindowState.LOCKED:
        raise TooEarlyError("It is not yet time for the exam.", **window_details(opens_at, closes_at))
    raise WindowClosedError("The time for this exam has passed.", **window_details(opens_at, closes_at))


def require_submit_open(exam: Dict[str, Any], now: datetime) -> None:
    if submit_state(exam, now) is WindowState.OPEN:
        return
    _, closes_at = exam_window(exam["starts_at"], exam["duration_hours"])
    raise WindowClosedError(
        "The time for this exam has passed. Submission is no longer accepted.",
        **window_details(None, closes_at),
    )


def visible_exam(store, caller: Caller, exam_id: str, lock: Optional[str] = None) -> Dict[str, Any]:
    """
    The exam, if this student may see it at all. Another class's exam, or one
    of the wrong kind, is reported exactly like a missing exam.
    """
    class_id = student_class(caller)
    kind = student_exam_kind(caller)
    exam = store.exam_by_id(exam_id, lock=lock)
    if not exam or exam["class_id"] != class_id or exam["exam_kind"] != kind:
        raise NotFoundError("Exam not found.")
    return exam


def current_exam(store, caller: Caller, now: datetime, buffer_min: Optional[int] = None) -> Dict[str, Any]:
    """Earliest exam of the student's class and kind whose fetch window is open now."""
    class_id = student_class(caller)
    kind = student_exam_kind(caller)
    for exam in store.exams_for_student(class_id, kind):
        if fetch_state(exam, now, buffer_min) is WindowState.OPEN:
            return exam
    raise NotFoundError("No current exam available for you at this time.")
