# store.py
# -----------------------------------------------------------------------------
# All SQL of the CBT core. A CbtStore wraps one open transaction (database.Tx)
# so every method call of one request shares the same atomic unit of work.
# Integrity violations raised by the database are translated into the typed
# errors the callers expect.
# -----------------------------------------------------------------------------

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors as pg_errors

from errors import ExamHasResultsError, ScheduleConflictError

_EXAM_COLUMNS = """
    id, title, exam_kind, assessment_type, subject_kind, class_id, branch_id,
    starts_at, duration_hours, ends_at, created_by, created_at, updated_at
"""


def _loads(raw: Any) -> Any:
    # jsonb comes back decoded; text/json columns may not
    if isinstance(raw, (bytes, str)):
        return json.loads(raw)
    return raw


class CbtStore:
    def __init__(self, tx):
        self.tx = tx

    # ------------------------------- classes / terms ---------------------------
    def class_by_name(self, branch_id: str, name: str, lock: bool = False) -> Optional[Dict[str, Any]]:
        return self.tx.fetch_one(f"""
            SELECT id, name, branch_id, teacher_id
              FROM classes
             WHERE branch_id = %s AND lower(name) = lower(%s)
             LIMIT 1
             {"FOR UPDATE" if lock else ""};
        """, (branch_id, name.strip()))

    def class_by_id(self, class_id: str, lock: bool = False) -> Optional[Dict[str, Any]]:
        return self.tx.fetch_one(f"""
            SELECT id, name, branch_id, teacher_id
              FROM classes
             WHERE id = %s
             {"FOR UPDATE" if lock else ""};
        """, (class_id,))

    def class_ids_for_teacher(self, staff_id: str) -> List[str]:
        rows = self.tx.fetch_all("SELECT id FROM classes WHERE teacher_id = %s;", (staff_id,))
        return [r["id"] for r in rows]

    def active_term_id(self, branch_id: str) -> Optional[str]:
        row = self.tx.fetch_one("""
            SELECT id
              FROM terms
             WHERE branch_id = %s AND is_active = TRUE
             LIMIT 1;
        """, (branch_id,))
        return (row or {}).get("id")

    # ------------------------------- exams -------------------------------------
    def exams_for_class(self, class_id: str, exclude_exam_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Existing exams of a class. Caller must already hold the class row lock."""
        return self.tx.fetch_all("""
            SELECT id, title, starts_at, duration_hours
              FROM exams
             WHERE class_id = %s
               AND (%s::text IS NULL OR id <> %s::text)
             ORDER BY starts_at;
        """, (class_id, exclude_exam_id, exclude_exam_id))

    def exam_by_id(self, exam_id: str, lock: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """lock: None, 'share' (blocks delete/update) or 'update'."""
        suffix = {None: "", "share": "FOR SHARE", "update": "FOR UPDATE"}[lock]
        return self.tx.fetch_one(f"""
            SELECT {_EXAM_COLUMNS}
              FROM exams
             WHERE id = %s
             {suffix};
        """, (exam_id,))

    def insert_exam(self, exam: Dict[str, Any]) -> None:
        try:
            self.tx.execute("""
                INSERT INTO exams
                    (id, title, exam_kind, assessment_type, subject_kind, class_id, branch_id,
                     starts_at, duration_hours, ends_at, created_by)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
            """, (exam["id"], exam["title"], exam["exam_kind"], exam.get("assessment_type"),
                  exam["subject_kind"], exam["class_id"], exam["branch_id"], exam["starts_at"],
                  exam["duration_hours"], exam["ends_at"], exam["created_by"]))
        except pg_errors.ExclusionViolation as e:
            raise ScheduleConflictError(
                "Schedule conflict: the exam time overlaps with an existing one.",
                starts_at=exam["starts_at"], ends_at=exam["ends_at"],
            ) from e

    def update_exam(self, exam_id: str, fields: Dict[str, Any]) -> None:
        try:
            self.tx.execute("""
                UPDATE exams
                   SET title = %s, exam_kind = %s, assessment_type = %s,
                       starts_at = %s, duration_hours = %s, ends_at = %s,
                       updated_at = now()
                 WHERE id = %s;
            """, (fields["title"], fields["exam_kind"], fields.get("assessment_type"),
                  fields["starts_at"], fields["duration_hours"], fields["ends_at"], exam_id))
        except pg_errors.ExclusionViolation as e:
            raise ScheduleConflictError(
                "Schedule conflict: the updated exam time overlaps with an existing one.",
                starts_at=fields["starts_at"], ends_at=fields["ends_at"],
            ) from e

    def delete_exam(self, exam_id: str) -> int:
        try:
            return self.tx.execute("DELETE FROM exams WHERE id = %s;", (exam_id,))
        except pg_errors.ForeignKeyViolation as e:
            raise ExamHasResultsError("Exam already has submitted results and cannot be deleted.") from e

    def list_exams(self, branch_id: Optional[str] = None,
                   class_ids: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        where, params = [], []
        if branch_id is not None:
            where.append("e.branch_id = %s")
            params.append(branch_id)
        if class_ids is not None:
            where.append("e.class_id = ANY(%s)")
            params.append(list(class_ids))
        clause = ("WHERE " + " AND ".join(where)) if where else ""
        return self.tx.fetch_all(f"""
            SELECT e.id, e.title, e.exam_kind, e.assessment_type, e.subject_kind,
                   e.class_id, c.name AS class_name, e.branch_id,
                   e.starts_at, e.duration_hours, e.ends_at,
                   (SELECT string_agg(s.title, ', ' ORDER BY s.position)
                      FROM exam_subjects s WHERE s.exam_id = e.id) AS subjects
              FROM exams e
              JOIN classes c ON c.id = e.class_id
              {clause}
             ORDER BY e.starts_at DESC;
        """, tuple(params))

    def exams_for_student(self, class_id: str, exam_kind: str,
                          pending_for: Optional[str] = None) -> List[Dict[str, Any]]:
        """Exams a student may see; pending_for keeps only those that student has not submitted."""
        return self.tx.fetch_all(f"""
            SELECT e.id, e.title, e.exam_kind, e.subject_kind, e.class_id, e.branch_id,
                   e.starts_at, e.duration_hours, e.ends_at
              FROM exams e
              LEFT JOIN exam_results er ON er.exam_id = e.id AND er.student_id = %s
             WHERE e.class_id = %s
               AND e.exam_kind = %s
               {"AND er.id IS NULL" if pending_for is not None else ""}
             ORDER BY e.starts_at ASC;
        """, (pending_for, class_id, exam_kind))

    # ------------------------------- subjects / questions ----------------------
    def insert_subject(self, subject: Dict[str, Any]) -> None:
        self.tx.execute("""
            INSERT INTO exam_subjects (id, exam_id, title, position)
            VALUES (%s, %s, %s, %s);
        """, (subject["id"], subject["exam_id"], subject["title"], subject["position"]))

    def insert_question(self, question: Dict[str, Any]) -> None:
        self.tx.execute("""
            INSERT INTO exam_questions (id, subject_id, prompt, options, correct_index, position)
            VALUES (%s, %s, %s, %s::jsonb, %s, %s);
        """, (question["id"], question["subject_id"], question["prompt"],
              json.dumps(question["options"], ensure_ascii=False),
              question["correct_index"], question["position"]))

    def next_subject_position(self, exam_id: str) -> int:
        row = self.tx.fetch_one("""
            SELECT COALESCE(MAX(position), -1) + 1 AS n
              FROM exam_subjects
             WHERE exam_id = %s;
        """, (exam_id,))
        return int((row or {}).get("n") or 0)

    def subjects_for_exam(self, exam_id: str) -> List[Dict[str, Any]]:
        return self.tx.fetch_all("""
            SELECT id, title, position
              FROM exam_subjects
             WHERE exam_id = %s
             ORDER BY position, title;
        """, (exam_id,))

    def questions_for_exam(self, exam_id: str, subject_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Canonical question set including the answer key. Never hand straight to students."""
        rows = self.tx.fetch_all("""
            SELECT q.id, q.subject_id, s.title AS subject_title,
                   q.prompt, q.options, q.correct_index
              FROM exam_questions q
              JOIN exam_subjects s ON s.id = q.subject_id
             WHERE s.exam_id = %s
               AND (%s::text IS NULL OR q.subject_id = %s::text)
             ORDER BY s.position, q.position;
        """, (exam_id, subject_id, subject_id))
        for r in rows:
            r["options"] = _loads(r.get("options")) or []
        return rows

    # ------------------------------- results -----------------------------------
    def count_results(self, exam_id: str) -> int:
        row = self.tx.fetch_one("SELECT COUNT(*) AS n FROM exam_results WHERE exam_id = %s;", (exam_id,))
        return int((row or {}).get("n") or 0)

    def result_for(self, exam_id: str, student_id: str) -> Optional[Dict[str, Any]]:
        return self.tx.fetch_one("""
            SELECT id, exam_id, student_id, class_id, score, raw_score, total_questions,
                   answered_questions, submitted_at, published
              FROM exam_results
             WHERE exam_id = %s AND student_id = %s;
        """, (exam_id, student_id))

    def insert_result(self, result: Dict[str, Any]) -> bool:
        """False when a result for (exam_id, student_id) already exists."""
        row = self.tx.fetch_one("""
            INSERT INTO exam_results
                (id, exam_id, student_id, class_id, term_id, raw_score, score,
                 total_questions, answered_questions, answers, submitted_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            ON CONFLICT (exam_id, student_id) DO NOTHING
            RETURNING id;
        """, (result["id"], result["exam_id"], result["student_id"], result["class_id"],
              result.get("term_id"), result["raw_score"], result["score"],
              result["total_questions"], result["answered_questions"],
              json.dumps(result["answers"], ensure_ascii=False, default=str),
              result["submitted_at"]))
        return row is not None

    def publish_results(self, exam_id: str, class_id: str, publisher_id: str, at: datetime) -> int:
        return self.tx.execute("""
            UPDATE exam_results
               SET published = TRUE, published_by = %s, published_at = %s
             WHERE exam_id = %s AND class_id = %s AND published = FALSE;
        """, (publisher_id, at, exam_id, class_id))

    def published_scores(self, exam_id: str, class_id: str) -> List[float]:
        rows = self.tx.fetch_all("""
            SELECT score
              FROM exam_results
             WHERE exam_id = %s AND class_id = %s AND published = TRUE
             ORDER BY score DESC;
        """, (exam_id, class_id))
        return [float(r["score"]) for r in rows]

    def results_for_exam(self, exam_id: str,
                         class_ids: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        return self.tx.fetch_all(f"""
            SELECT id, student_id, class_id, score, raw_score, total_questions,
                   answered_questions, submitted_at, published, published_at
              FROM exam_results
             WHERE exam_id = %s
               {"AND class_id = ANY(%s)" if class_ids is not None else ""}
             ORDER BY score DESC, submitted_at ASC;
        """, (exam_id, list(class_ids)) if class_ids is not None else (exam_id,))

    def published_results_for_student(self, student_id: str,
                                      term_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.tx.fetch_all(f"""
            SELECT er.id, er.exam_id, e.title AS exam_title, er.class_id, er.score,
                   er.raw_score, er.total_questions, er.answered_questions,
                   er.submitted_at, er.published_at
              FROM exam_results er
              JOIN exams e ON e.id = er.exam_id
             WHERE er.student_id = %s
               AND er.published = TRUE
               {"AND er.term_id = %s" if term_id is not None else ""}
             ORDER BY e.starts_at DESC;
        """, (student_id, term_id) if term_id is not None else (student_id,))
