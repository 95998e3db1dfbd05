# ranking.py
# -----------------------------------------------------------------------------
# Class position of a student in an exam, derived on read from the published
# results of the same exam and class. Ties share a position and the next
# position is skipped (90, 90, 70 -> 1st, 1st, 3rd).
# -----------------------------------------------------------------------------

from typing import Any, Dict, Iterable, List, Optional

from catalog import require_staff_read
from errors import NotFoundError
from roles import Caller, student_exam_kind


def ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def competition_rank(score: float, scores: Iterable[float]) -> int:
    return 1 + sum(1 for s in scores if float(s) > float(score))


def rank_for(store, student_id: str, exam_id: str, class_id: str) -> Optional[Dict[str, Any]]:
    """
    Position of a published result within its class. None when the student
    has no published result for the exam.
    """
    mine = store.result_for(exam_id, student_id)
    if not mine or not mine.get("published"):
        return None
    scores = store.published_scores(exam_id, class_id)
    position = competition_rank(mine["score"], scores)
    return {"position": position, "ordinal": ordinal(position), "out_of": len(scores)}


def my_results(store, caller: Caller) -> List[Dict[str, Any]]:
    """Published results of the calling student (active term when there is one), each with its position."""
    student_exam_kind(caller)
    term_id = store.active_term_id(caller.branch_id) if caller.branch_id else None
    rows = store.published_results_for_student(caller.user_id, term_id)
    out = []
    # one rank lookup per exam, each bounded by class size
    for row in rows:
        rank = rank_for(store, caller.user_id, row["exam_id"], row["class_id"])
        if rank is None:
            continue
        out.append({
            **row,
            "score": float(row["score"]),
            "position": rank["ordinal"],
            "rank": rank["position"],
            "out_of": rank["out_of"],
        })
    return out


def exam_results_view(store, caller: Caller, exam_id: str) -> Dict[str, Any]:
    """Staff view of every result of an exam (published or not) with class positions."""
    exam = store.exam_by_id(exam_id)
    if not exam:
        raise NotFoundError("Exam not found.")
    class_ids = require_staff_read(store, caller, exam)
    rows = store.results_for_exam(exam_id, class_ids)
    by_class: Dict[str, List[float]] = {}
    for r in rows:
        by_class.setdefault(r["class_id"], []).append(float(r["score"]))
    results = []
    for r in rows:
        position = competition_rank(r["score"], by_class[r["class_id"]])
        results.append({**r, "score": float(r["score"]), "rank": position, "position": ordinal(position)})
    return {"exam": exam, "results": results}
