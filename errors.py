# errors.py
# -----------------------------------------------------------------------------
# Typed failures raised by the CBT core. Every error renders to the same JSON
# envelope the blueprints use for success: {"ok": false, "error": <code>, ...}
# -----------------------------------------------------------------------------

from datetime import datetime
from typing import Any, Dict, Optional

from flask import jsonify


class CbtError(Exception):
    status = 500
    code = "server_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        for k, v in self.details.items():
            body[k] = v.isoformat() if isinstance(v, datetime) else v
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(CbtError):
    status = 400
    code = "validation_error"


class NotFoundError(CbtError):
    status = 404
    code = "not_found"


class ScopeError(CbtError):
    status = 403
    code = "forbidden"


class ScheduleConflictError(CbtError):
    """Carries the conflicting exam's id and window so the caller can adjust."""
    status = 409
    code = "schedule_conflict"


class TooEarlyError(CbtError):
    status = 403
    code = "too_early"


class WindowClosedError(CbtError):
    status = 403
    code = "window_closed"


class AlreadySubmittedError(CbtError):
    status = 409
    code = "already_submitted"


class ExamHasResultsError(CbtError):
    status = 409
    code = "exam_has_results"


class NoQuestionsError(CbtError):
    status = 500
    code = "no_questions"


class TransientStoreError(CbtError):
    status = 503
    code = "store_unavailable"
    retryable = True


def error_response(err: CbtError):
    return jsonify(err.to_dict()), err.status


def window_details(opens_at: Optional[datetime], closes_at: datetime) -> Dict[str, Any]:
    out: Dict[str, Any] = {"closes_at": closes_at}
    if opens_at is not None:
        out["opens_at"] = opens_at
    return out
