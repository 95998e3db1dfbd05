# exam.py
# -----------------------------------------------------------------------------
# CBT exam blueprint: staff catalog (create / list / detail / update / delete /
# add subject), the student views behind the access window, and answer
# submission. Every request runs its core call inside one store session
# (one transaction); typed CbtErrors render as the JSON error envelope.
# -----------------------------------------------------------------------------

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict

from flask import Blueprint, request, jsonify, g

import catalog
import scoring
from errors import CbtError, error_response


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_json(value: Any) -> Any:
    """Timestamps as ISO 8601, numerics as floats, recursively."""
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def current_caller():
    return getattr(g, "caller", None)


def require_caller():
    if current_caller() is None:
        return jsonify({"ok": False, "error": "unauthorized"}), 401
    return None


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + "/exams".
    Required deps: session (context manager yielding a CbtStore)
    Optional deps: clock (returns an aware UTC datetime)
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or "") + "/exams")

    session: Callable = deps["session"]
    clock: Callable[[], datetime] = deps.get("clock") or utcnow

    bp.before_request(require_caller)
    bp.register_error_handler(CbtError, error_response)

    def _payload() -> Dict[str, Any]:
        return request.get_json(silent=True) or {}

    # ------------------------------- staff ------------------------------------
    @bp.post("")
    def create_exam():
        with session() as store:
            exam = catalog.create_exam(store, g.caller, _payload())
        return jsonify({"ok": True, "exam": to_json(exam)}), 201

    @bp.get("")
    def list_exams():
        with session() as store:
            rows = catalog.list_exams(store, g.caller, request.args.get("branchId") or None)
        return jsonify({"ok": True, "exams": to_json(rows)})

    @bp.get("/<exam_id>")
    def exam_detail(exam_id: str):
        with session() as store:
            exam = catalog.exam_detail(store, g.caller, exam_id)
        return jsonify({"ok": True, "exam": to_json(exam)})

    @bp.put("/<exam_id>")
    def update_exam(exam_id: str):
        with session() as store:
            exam = catalog.update_exam(store, g.caller, exam_id, _payload())
        return jsonify({"ok": True, "exam": to_json(exam)})

    @bp.delete("/<exam_id>")
    def delete_exam(exam_id: str):
        with session() as store:
            catalog.delete_exam(store, g.caller, exam_id)
        return jsonify({"ok": True, "deleted": exam_id})

    @bp.post("/<exam_id>/subjects")
    def add_subject(exam_id: str):
        with session() as store:
            subject = catalog.add_subject(store, g.caller, exam_id, _payload())
        return jsonify({"ok": True, "subject": to_json(subject)}), 201

    # ------------------------------- students ---------------------------------
    @bp.get("/student/upcoming")
    def upcoming():
        with session() as store:
            rows = catalog.upcoming_for_student(store, g.caller)
        return jsonify({"ok": True, "exams": to_json(rows)})

    @bp.get("/student/current")
    def current():
        with session() as store:
            exam = catalog.current_exam_view(store, g.caller, clock())
        return jsonify({"ok": True, "exam": to_json(exam)})

    @bp.get("/<exam_id>/subjects")
    def subjects(exam_id: str):
        with session() as store:
            exam = catalog.subjects_view(store, g.caller, exam_id)
        return jsonify({"ok": True, "exam": to_json(exam)})

    @bp.get("/<exam_id>/questions")
    def questions(exam_id: str):
        with session() as store:
            rows = catalog.questions_view(store, g.caller, exam_id, clock())
        return jsonify({"ok": True, "questions": rows})

    @bp.get("/<exam_id>/subjects/<subject_id>/questions")
    def subject_questions(exam_id: str, subject_id: str):
        with session() as store:
            rows = catalog.questions_view(store, g.caller, exam_id, clock(), subject_id)
        return jsonify({"ok": True, "questions": rows})

    @bp.post("/answers")
    def submit():
        body = _payload()
        with session() as store:
            ack = scoring.submit_answers(store, g.caller, str(body.get("examId") or ""),
                                         body.get("answers"), clock())
        return jsonify({"ok": True, "result": to_json(ack)}), 201

    return bp
