# results.py
# -----------------------------------------------------------------------------
# Results blueprint: staff result listing, publication by the class teacher,
# and a student's own published results with class positions.
# -----------------------------------------------------------------------------

from datetime import datetime
from typing import Any, Callable, Dict

from flask import Blueprint, request, jsonify, g

import ranking
import scoring
from errors import CbtError, error_response
from exam import utcnow, require_caller, to_json


def create_results_blueprint(base_path: str, deps: Dict[str, Any], name: str = "results") -> Blueprint:
    """Same deps as the exam blueprint; shares its /exams prefix."""
    bp = Blueprint(name, __name__, url_prefix=(base_path or "") + "/exams")

    session: Callable = deps["session"]
    clock: Callable[[], datetime] = deps.get("clock") or utcnow

    bp.before_request(require_caller)
    bp.register_error_handler(CbtError, error_response)

    @bp.get("/<exam_id>/results")
    def exam_results(exam_id: str):
        with session() as store:
            view = ranking.exam_results_view(store, g.caller, exam_id)
        return jsonify({"ok": True, **to_json(view)})

    @bp.put("/results/publish")
    def publish():
        body = request.get_json(silent=True) or {}
        with session() as store:
            out = scoring.publish_results(store, g.caller, str(body.get("examId") or ""),
                                          str(body.get("classId") or ""), clock())
        return jsonify({"ok": True, **out})

    @bp.get("/results/me")
    def my_results():
        with session() as store:
            rows = ranking.my_results(store, g.caller)
        return jsonify({"ok": True, "results": to_json(rows)})

    return bp
