# scoring.py
# -----------------------------------------------------------------------------
# Scoring engine: grades one submission against the canonical question set,
# persists exactly one result per (exam, student), and lets the class teacher
# publish results. Answers naming questions outside the exam are ignored.
# -----------------------------------------------------------------------------

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from access_window import require_submit_open, visible_exam
from errors import AlreadySubmittedError, NoQuestionsError, NotFoundError, ScopeError, ValidationError
from roles import Caller, require_teacher, student_class


def normalize_index(value: Any) -> Optional[int]:
    """
    Option index as an int, or None when the value is not a usable index.
    Accepts 2, "2" and 2.0; rejects booleans, fractions and negatives.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value >= 0 else None
    if isinstance(value, str):
        s = value.strip()
        if s.isdecimal():
            try:
                return int(s)
            except ValueError:
                return None
    return None


def _percentage(raw: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(raw * 100.0 / total, 2)


def grade(questions: List[Dict[str, Any]], answers: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Pure grading. questions carry id / subject_id / subject_title / correct_index;
    answers carry questionId / selectedOptionIndex. Only the first answer for a
    question counts.
    """
    by_id = {q["id"]: q for q in questions}
    picked: Dict[str, Optional[int]] = {}
    for a in answers:
        qid = str(a.get("questionId") or "")
        if qid not in by_id or qid in picked:
            continue
        picked[qid] = normalize_index(a.get("selectedOptionIndex"))

    raw = 0
    subjects: Dict[str, Dict[str, Any]] = {}
    for q in questions:
        s = subjects.setdefault(q["subject_id"], {
            "subject_id": q["subject_id"],
            "title": q.get("subject_title"),
            "correct": 0,
            "answered": 0,
            "total": 0,
        })
        s["total"] += 1
        if picked.get(q["id"]) is not None:
            s["answered"] += 1
        if q["id"] in picked and picked[q["id"]] == int(q["correct_index"]):
            raw += 1
            s["correct"] += 1
    for s in subjects.values():
        s["percentage"] = _percentage(s["correct"], s["total"])

    return {
        "raw_score": raw,
        "percentage": _percentage(raw, len(questions)),
        "total_questions": len(questions),
        "answered_questions": sum(1 for v in picked.values() if v is not None),
        "subjects": list(subjects.values()),
        "answers": [{"question_id": k, "selected": v} for k, v in picked.items()],
    }


def _validate_answers(answers: Any) -> List[Dict[str, Any]]:
    if not isinstance(answers, list):
        raise ValidationError("answers must be an array of {questionId, selectedOptionIndex}.", field="answers")
    for a in answers:
        if not isinstance(a, dict):
            raise ValidationError("answers must be an array of {questionId, selectedOptionIndex}.", field="answers")
    return answers


def submit_answers(store, caller: Caller, exam_id: str, answers: Any, now: datetime) -> Dict[str, Any]:
    if not exam_id:
        raise ValidationError("examId is required.", field="examId")
    answers = _validate_answers(answers)
    # FOR SHARE keeps the exam from being rescheduled or deleted mid-submission
    exam = visible_exam(store, caller, exam_id, lock="share")
    require_submit_open(exam, now)

    if store.result_for(exam_id, caller.user_id):
        raise AlreadySubmittedError("You have already submitted this exam.")

    questions = store.questions_for_exam(exam_id)
    if not questions:
        print(f"[exam] exam {exam_id} has no questions; refusing to score", flush=True)
        raise NoQuestionsError("No questions found for this exam.")

    graded = grade(questions, answers)
    result = {
        "id": uuid.uuid4().hex,
        "exam_id": exam_id,
        "student_id": caller.user_id,
        "class_id": student_class(caller),
        "term_id": store.active_term_id(exam["branch_id"]),
        "raw_score": graded["raw_score"],
        "score": graded["percentage"],
        "total_questions": graded["total_questions"],
        "answered_questions": graded["answered_questions"],
        "answers": {"answers": graded["answers"], "subjects": graded["subjects"]},
        "submitted_at": now,
    }
    if not store.insert_result(result):
        # lost the race against a concurrent submission of the same student
        raise AlreadySubmittedError("You have already submitted this exam.")

    print(f"[exam] scored {exam_id} for {caller.user_id}: {graded['raw_score']}/{graded['total_questions']}", flush=True)
    return {
        "exam_id": exam_id,
        "result_id": result["id"],
        "score": graded["percentage"],
        "raw_score": graded["raw_score"],
        "total_questions": graded["total_questions"],
        "answered_questions": graded["answered_questions"],
        "subjects": graded["subjects"],
        "submitted_at": now,
    }


def publish_results(store, caller: Caller, exam_id: str, class_id: str, now: datetime) -> Dict[str, Any]:
    """Marks every unpublished result of the exam for the class as published. Idempotent."""
    staff_id = require_teacher(caller)
    if not exam_id or not class_id:
        raise ValidationError("examId and classId are required.")
    cls = store.class_by_id(class_id)
    if not cls:
        raise NotFoundError("Class not found.")
    if cls.get("teacher_id") != staff_id:
        raise ScopeError("You are not authorized to publish results for this class.")
    if not store.exam_by_id(exam_id):
        raise NotFoundError("Exam not found.")

    n = store.publish_results(exam_id, class_id, caller.user_id, now)
    print(f"[results] published {n} result(s) of {exam_id} for class {class_id}", flush=True)
    return {"exam_id": exam_id, "class_id": class_id, "published": n}
