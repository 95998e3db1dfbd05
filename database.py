# database.py: psycopg3 + pooling, transaction-scoped contexts for the CBT core
# Connection resolution order: DATABASE_URL_LOCAL -> DATABASE_URL -> DB_* over TCP.

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg.conninfo import conninfo_to_dict, make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from errors import TransientStoreError

# =============================================================================
# DB configuration
# =============================================================================
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or 5432)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")

DB_POOL_MIN = int(os.getenv("DB_POOL_MIN") or 1)
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)
STORE_TIMEOUT_MS = int(os.getenv("CBT_STORE_TIMEOUT_MS") or 5000)


def parse_database_url(url: str) -> Dict[str, Any]:
    if not url:
        raise ValueError("empty URL")
    scheme, sep, rest = url.partition("://")
    # SQLAlchemy-style driver suffixes (postgresql+psycopg://) are not libpq syntax
    if not sep or scheme.split("+", 1)[0] not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{scheme}'")
    try:
        params = conninfo_to_dict("postgresql://" + rest)
    except psycopg.ProgrammingError as e:
        raise ValueError(str(e)) from e
    if not params.get("dbname"):
        raise ValueError("URL missing dbname")
    params.setdefault("connect_timeout", 10)
    params.setdefault("options", "-c search_path=public")
    return params

def connection_kwargs() -> Dict[str, Any]:
    for origin, url in (("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL), ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            kwargs = parse_database_url(url)
        except ValueError as e:
            print(f"[DB] Ignoring {origin}: {e}", flush=True)
            continue
        print(f"[DB] {origin}: TCP -> {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}", flush=True)
        return kwargs

    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
    print(f"[DB] DB_*: TCP -> {DB_HOST}:{DB_PORT}", flush=True)
    return {
        "host": DB_HOST,
        "port": DB_PORT,
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = make_conninfo(**connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=DB_POOL_MIN, max_size=DB_POOL_MAX, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

# =============================================================================
# Transaction-scoped context
# =============================================================================
class Tx:
    """Cursor bound to one open transaction. Passed explicitly into the core."""

    def __init__(self, cur):
        self._cur = cur

    def fetch_all(self, q, params=None) -> List[Dict[str, Any]]:
        self._cur.execute(q, params or ())
        return self._cur.fetchall()

    def fetch_one(self, q, params=None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(q, params)
        return rows[0] if rows else None

    def execute(self, q, params=None) -> int:
        self._cur.execute(q, params or ())
        return self._cur.rowcount


@contextmanager
def transaction(timeout_ms: Optional[int] = None) -> Iterator[Tx]:
    """
    One atomic unit of work. Commits on clean exit, rolls back on any error.
    Timeouts, lock/serialization failures and pool exhaustion are reported as
    a retryable TransientStoreError; everything else propagates unchanged.
    """
    timeout = int(timeout_ms or STORE_TIMEOUT_MS)
    try:
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute("SELECT set_config('statement_timeout', %s, true);", (str(timeout),))
                    cur.execute("SELECT set_config('lock_timeout', %s, true);", (str(timeout),))
                    yield Tx(cur)
    except (psycopg.OperationalError, PoolTimeout) as e:
        print(f"[DB] transaction rolled back: {e}", flush=True)
        raise TransientStoreError("Storage is temporarily unavailable; please retry.") from e

# =============================================================================
# Schema
# =============================================================================
# classes/terms belong to the administration service; they are created here
# only so a standalone deployment has the columns the CBT core reads.
SCHEMA_DDL = (
    "CREATE EXTENSION IF NOT EXISTS btree_gist;",
    """
    CREATE TABLE IF NOT EXISTS classes (
      id          TEXT PRIMARY KEY,
      name        TEXT NOT NULL,
      branch_id   TEXT NOT NULL,
      teacher_id  TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS terms (
      id          TEXT PRIMARY KEY,
      name        TEXT NOT NULL,
      branch_id   TEXT,
      is_active   BOOLEAN NOT NULL DEFAULT FALSE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exams (
      id               TEXT PRIMARY KEY,
      title            TEXT NOT NULL,
      exam_kind        TEXT NOT NULL CHECK (exam_kind IN ('Internal', 'External')),
      assessment_type  TEXT,
      subject_kind     TEXT NOT NULL CHECK (subject_kind IN ('Single-Subject', 'Multi-Subject')),
      class_id         TEXT NOT NULL REFERENCES classes(id) ON DELETE RESTRICT,
      branch_id        TEXT NOT NULL,
      starts_at        TIMESTAMPTZ NOT NULL,
      duration_hours   NUMERIC(5, 2) NOT NULL CHECK (duration_hours > 0),
      ends_at          TIMESTAMPTZ NOT NULL,
      created_by       TEXT NOT NULL,
      created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
      CONSTRAINT exams_no_overlap EXCLUDE USING gist (
        class_id WITH =,
        tstzrange(starts_at, ends_at, '[)') WITH &&
      )
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_subjects (
      id        TEXT PRIMARY KEY,
      exam_id   TEXT NOT NULL REFERENCES exams(id) ON DELETE CASCADE,
      title     TEXT NOT NULL,
      position  INT NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_questions (
      id             TEXT PRIMARY KEY,
      subject_id     TEXT NOT NULL REFERENCES exam_subjects(id) ON DELETE CASCADE,
      prompt         TEXT NOT NULL,
      options        JSONB NOT NULL,
      correct_index  INT NOT NULL CHECK (correct_index >= 0),
      position       INT NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_results (
      id                  TEXT PRIMARY KEY,
      exam_id             TEXT NOT NULL REFERENCES exams(id) ON DELETE RESTRICT,
      student_id          TEXT NOT NULL,
      class_id            TEXT NOT NULL,
      term_id             TEXT REFERENCES terms(id) ON DELETE SET NULL,
      raw_score           INT NOT NULL,
      score               NUMERIC(5, 2) NOT NULL,
      total_questions     INT NOT NULL,
      answered_questions  INT NOT NULL,
      answers             JSONB,
      submitted_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
      published           BOOLEAN NOT NULL DEFAULT FALSE,
      published_by        TEXT,
      published_at        TIMESTAMPTZ,
      CONSTRAINT exam_results_one_per_student UNIQUE (exam_id, student_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS exam_subjects_exam_idx ON exam_subjects (exam_id, position);",
    "CREATE INDEX IF NOT EXISTS exam_questions_subject_idx ON exam_questions (subject_id, position);",
    "CREATE INDEX IF NOT EXISTS exam_results_rank_idx ON exam_results (exam_id, class_id, published, score DESC);",
)

def ensure_schema():
    with transaction(timeout_ms=60000) as tx:
        for ddl in SCHEMA_DDL:
            tx.execute(ddl)
    print("[DB] CBT schema ensured.", flush=True)
