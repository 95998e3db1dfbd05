# catalog.py
# -----------------------------------------------------------------------------
# Exam catalog: create / update / delete exams, add subjects, and the scoped
# read views for staff and students. Every write runs on a CbtStore bound to a
# single transaction; schedule validation happens inside that transaction
# after the class row is locked.
# -----------------------------------------------------------------------------

import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from access_window import current_exam, require_fetch_open, visible_exam
from errors import ExamHasResultsError, NotFoundError, ScopeError, ValidationError
from roles import (
    EXTERNAL,
    INTERNAL,
    Caller,
    Role,
    exam_admin_branch,
    require_branch_access,
    student_class,
    student_exam_kind,
)
from scheduling import ensure_no_conflict, exam_window
from scoring import normalize_index

EXAM_KINDS = (INTERNAL, EXTERNAL)
SINGLE_SUBJECT = "Single-Subject"
MULTI_SUBJECT = "Multi-Subject"
SUBJECT_KINDS = (SINGLE_SUBJECT, MULTI_SUBJECT)
MAX_DURATION_HOURS = Decimal("24")


# ------------------------------- payload parsing -----------------------------
def _text(payload: Dict[str, Any], key: str) -> str:
    value = str(payload.get(key) or "").strip()
    if not value:
        raise ValidationError(f"{key} is required.", field=key)
    return value

def parse_start_time(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    else:
        s = str(raw or "").strip()
        if not s:
            raise ValidationError("startTime is required.", field="startTime")
        try:
            value = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("startTime must be an ISO 8601 timestamp.", field="startTime") from None
    # naive timestamps are taken as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value

def parse_duration(raw: Any) -> Decimal:
    if isinstance(raw, bool):
        raise ValidationError("durationHours must be a number.", field="durationHours")
    try:
        hours = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("durationHours must be a number.", field="durationHours") from None
    if not hours.is_finite():
        raise ValidationError("durationHours must be a number.", field="durationHours")
    if hours > MAX_DURATION_HOURS:
        raise ValidationError(f"durationHours may not exceed {MAX_DURATION_HOURS}.", field="durationHours")
    # stored as NUMERIC(5, 2); validate the value that will be persisted
    hours = hours.quantize(Decimal("0.01"))
    if hours <= 0:
        raise ValidationError("durationHours must be greater than zero.", field="durationHours")
    return hours

def _choice(payload: Dict[str, Any], key: str, allowed) -> str:
    value = _text(payload, key)
    if value not in allowed:
        raise ValidationError(f"{key} must be one of: {', '.join(allowed)}.", field=key)
    return value

def parse_question(raw: Any, where: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValidationError(f"{where}: question must be an object.")
    text = str(raw.get("text") or "").strip()
    if not text:
        raise ValidationError(f"{where}: question text is required.")
    options = raw.get("options")
    if not isinstance(options, list) or len(options) < 2:
        raise ValidationError(f"{where}: at least two options are required.")
    if any(not isinstance(o, str) for o in options):
        raise ValidationError(f"{where}: options must be strings.")
    options = [o.strip() for o in options]
    if any(not o for o in options):
        raise ValidationError(f"{where}: options may not be blank.")
    correct = normalize_index(raw.get("correctIndex", raw.get("correctAnswerIndex")))
    if correct is None or not (0 <= correct < len(options)):
        raise ValidationError(f"{where}: correctIndex must point at one of the question's own options.")
    return {"prompt": text, "options": options, "correct_index": correct}

def parse_subject(raw: Any, where: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValidationError(f"{where}: subject must be an object.")
    title = str(raw.get("title") or "").strip()
    if not title:
        raise ValidationError(f"{where}: subject title is required.")
    questions = raw.get("questions")
    if not isinstance(questions, list) or not questions:
        raise ValidationError(f"{where}: each subject must contain a non-empty 'questions' array.")
    return {
        "title": title,
        "questions": [parse_question(q, f"{where} question {j}") for j, q in enumerate(questions, start=1)],
    }

def parse_exam_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    payload = payload or {}
    exam_kind = _choice(payload, "examKind", EXAM_KINDS)
    subject_kind = _choice(payload, "subjectKind", SUBJECT_KINDS)
    raw_subjects = payload.get("subjects")
    if not isinstance(raw_subjects, list) or not raw_subjects:
        raise ValidationError("Please provide at least one subject with questions.", field="subjects")
    subjects = [parse_subject(s, f"subject {i}") for i, s in enumerate(raw_subjects, start=1)]
    if subject_kind == SINGLE_SUBJECT and len(subjects) != 1:
        raise ValidationError("A Single-Subject exam must have exactly one subject.", field="subjects")
    class_name = str(payload.get("className") or "").strip()
    class_id = str(payload.get("classId") or "").strip()
    if not class_name and not class_id:
        raise ValidationError("className is required.", field="className")
    assessment = str(payload.get("assessmentType") or "").strip() or None
    return {
        "title": _text(payload, "title"),
        "exam_kind": exam_kind,
        "subject_kind": subject_kind,
        "assessment_type": assessment if exam_kind == INTERNAL else None,
        "class_name": class_name,
        "class_id": class_id,
        "starts_at": parse_start_time(payload.get("startTime")),
        "duration_hours": parse_duration(payload.get("durationHours")),
        "branch_id": str(payload.get("branchId") or "").strip() or None,
        "subjects": subjects,
    }


# ------------------------------- writes --------------------------------------
def _insert_subject(store, exam_id: str, subject: Dict[str, Any], position: int) -> Dict[str, Any]:
    subject_id = uuid.uuid4().hex
    store.insert_subject({"id": subject_id, "exam_id": exam_id, "title": subject["title"], "position": position})
    for pos, q in enumerate(subject["questions"]):
        store.insert_question({"id": uuid.uuid4().hex, "subject_id": subject_id, "position": pos, **q})
    return {"id": subject_id, "title": subject["title"], "position": position,
            "question_count": len(subject["questions"])}

def _resolve_branch(caller: Caller, requested: Optional[str]) -> str:
    scope = exam_admin_branch(caller)
    if scope is not None:
        if requested and requested != scope:
            raise ScopeError("You are not authorized to manage exams of another branch.")
        return scope
    branch_id = requested or caller.branch_id
    if not branch_id:
        raise ValidationError("branchId is required when acting across branches.", field="branchId")
    return branch_id

def _resolve_class(store, branch_id: str, meta: Dict[str, Any]) -> Dict[str, Any]:
    # the class row lock serializes concurrent scheduling for the same class
    if meta["class_id"]:
        cls = store.class_by_id(meta["class_id"], lock=True)
        if cls and cls["branch_id"] != branch_id:
            cls = None
    else:
        cls = store.class_by_name(branch_id, meta["class_name"], lock=True)
    if not cls:
        raise NotFoundError("Class not found for the given branch.",
                            class_name=meta["class_name"] or None, class_id=meta["class_id"] or None)
    return cls

def create_exam(store, caller: Caller, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate, schedule and persist an exam with its subjects and questions."""
    exam_admin_branch(caller)
    meta = parse_exam_payload(payload)
    branch_id = _resolve_branch(caller, meta["branch_id"])
    cls = _resolve_class(store, branch_id, meta)

    ensure_no_conflict(store, cls["id"], meta["starts_at"], meta["duration_hours"])

    _, ends_at = exam_window(meta["starts_at"], meta["duration_hours"])
    exam = {
        "id": uuid.uuid4().hex,
        "title": meta["title"],
        "exam_kind": meta["exam_kind"],
        "assessment_type": meta["assessment_type"],
        "subject_kind": meta["subject_kind"],
        "class_id": cls["id"],
        "branch_id": branch_id,
        "starts_at": meta["starts_at"],
        "duration_hours": meta["duration_hours"],
        "ends_at": ends_at,
        "created_by": caller.user_id,
    }
    store.insert_exam(exam)
    subjects = [_insert_subject(store, exam["id"], s, pos) for pos, s in enumerate(meta["subjects"])]
    print(f"[exam] created {exam['id']} for class {cls['id']} ({len(subjects)} subjects)", flush=True)
    return {**exam, "class_name": cls["name"], "subjects": subjects}

def _locked_exam_in_scope(store, caller: Caller, exam_id: str) -> Dict[str, Any]:
    exam_admin_branch(caller)
    exam = store.exam_by_id(exam_id, lock="update")
    if not exam:
        raise NotFoundError("Exam not found.")
    require_branch_access(caller, exam["branch_id"])
    return exam

def update_exam(store, caller: Caller, exam_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Partial update; the schedule is re-validated against every other exam of the class."""
    payload = payload or {}
    exam = _locked_exam_in_scope(store, caller, exam_id)
    store.class_by_id(exam["class_id"], lock=True)

    fields = {
        "title": exam["title"],
        "exam_kind": exam["exam_kind"],
        "assessment_type": exam.get("assessment_type"),
        "starts_at": exam["starts_at"],
        "duration_hours": exam["duration_hours"],
    }
    if "title" in payload:
        fields["title"] = _text(payload, "title")
    if "examKind" in payload:
        fields["exam_kind"] = _choice(payload, "examKind", EXAM_KINDS)
    if "assessmentType" in payload:
        fields["assessment_type"] = str(payload.get("assessmentType") or "").strip() or None
    if fields["exam_kind"] == EXTERNAL:
        fields["assessment_type"] = None
    if "startTime" in payload:
        fields["starts_at"] = parse_start_time(payload.get("startTime"))
    if "durationHours" in payload:
        fields["duration_hours"] = parse_duration(payload.get("durationHours"))

    ensure_no_conflict(store, exam["class_id"], fields["starts_at"], fields["duration_hours"],
                       exclude_exam_id=exam_id)
    _, fields["ends_at"] = exam_window(fields["starts_at"], fields["duration_hours"])
    store.update_exam(exam_id, fields)
    print(f"[exam] updated {exam_id}", flush=True)
    return {**exam, **fields}

def delete_exam(store, caller: Caller, exam_id: str) -> None:
    """Refused once any result exists; subjects and questions cascade."""
    _locked_exam_in_scope(store, caller, exam_id)
    n = store.count_results(exam_id)
    if n:
        raise ExamHasResultsError(
            "Exam already has submitted results and cannot be deleted.", result_count=n)
    store.delete_exam(exam_id)
    print(f"[exam] deleted {exam_id}", flush=True)

def add_subject(store, caller: Caller, exam_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    exam = _locked_exam_in_scope(store, caller, exam_id)
    subject = parse_subject(payload or {}, "subject")
    position = store.next_subject_position(exam_id)
    if exam["subject_kind"] == SINGLE_SUBJECT and position > 0:
        raise ValidationError("A Single-Subject exam cannot take another subject.", field="subjects")
    return _insert_subject(store, exam_id, subject, position)


# ------------------------------- staff reads ---------------------------------
def _teacher_class_ids(store, caller: Caller) -> List[str]:
    if not caller.staff_id:
        raise ScopeError("Authenticated user is not registered as a staff member.")
    class_ids = store.class_ids_for_teacher(caller.staff_id)
    if not class_ids:
        raise NotFoundError("Teacher is not assigned to any class.")
    return class_ids

def list_exams(store, caller: Caller, branch_filter: Optional[str] = None) -> List[Dict[str, Any]]:
    if caller.primary_role is Role.TEACHER:
        return store.list_exams(class_ids=_teacher_class_ids(store, caller))
    scope = exam_admin_branch(caller)
    return store.list_exams(branch_id=scope if scope is not None else branch_filter)

def require_staff_read(store, caller: Caller, exam: Dict[str, Any]) -> Optional[List[str]]:
    """
    Raises ScopeError unless the caller may read this exam's staff data.
    Returns the class ids a teacher is limited to (None for administrators).
    """
    if caller.primary_role is Role.TEACHER:
        class_ids = _teacher_class_ids(store, caller)
        if exam["class_id"] not in class_ids:
            raise ScopeError("You are not authorized to view this exam.")
        return class_ids
    require_branch_access(caller, exam["branch_id"])
    return None

def exam_detail(store, caller: Caller, exam_id: str) -> Dict[str, Any]:
    """Staff view, answer key included."""
    exam = store.exam_by_id(exam_id)
    if not exam:
        raise NotFoundError("Exam not found.")
    require_staff_read(store, caller, exam)
    return {**exam, "subjects": group_questions(store.questions_for_exam(exam_id), with_key=True)}


# ------------------------------- student reads -------------------------------
def public_question(q: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": q["id"], "text": q["prompt"], "options": list(q.get("options") or [])}

def group_questions(questions: List[Dict[str, Any]], with_key: bool = False) -> List[Dict[str, Any]]:
    subjects: Dict[str, Dict[str, Any]] = {}
    for q in questions:
        s = subjects.setdefault(q["subject_id"], {"id": q["subject_id"], "title": q["subject_title"], "questions": []})
        item = public_question(q)
        if with_key:
            item["correct_index"] = q["correct_index"]
        s["questions"].append(item)
    return list(subjects.values())

def upcoming_for_student(store, caller: Caller) -> List[Dict[str, Any]]:
    """Exams of the student's class and kind that the student has not submitted yet."""
    return store.exams_for_student(student_class(caller), student_exam_kind(caller), pending_for=caller.user_id)

def current_exam_view(store, caller: Caller, now: datetime) -> Dict[str, Any]:
    exam = current_exam(store, caller, now)
    return {**exam, "subjects": group_questions(store.questions_for_exam(exam["id"]))}

def subjects_view(store, caller: Caller, exam_id: str) -> Dict[str, Any]:
    exam = visible_exam(store, caller, exam_id)
    return {**exam, "subjects": store.subjects_for_exam(exam_id)}

def questions_view(store, caller: Caller, exam_id: str, now: datetime,
                   subject_id: Optional[str] = None) -> List[Dict[str, Any]]:
    exam = visible_exam(store, caller, exam_id)
    require_fetch_open(exam, now)
    return [public_question(q) for q in store.questions_for_exam(exam_id, subject_id)]
