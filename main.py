# main.py: CBT exam service, BASE_PATH-aware (psycopg3 + pooling)
# Identity is forwarded by the upstream authorization layer as trusted headers;
# this app only attaches it to the request and hands it to the blueprints.

import os
from contextlib import contextmanager
from typing import Iterator, Optional

from flask import Flask, request, jsonify, g

from database import ensure_schema, fetch_one, transaction
from exam import create_exam_blueprint, utcnow
from results import create_results_blueprint
from roles import Caller, caller_from, parse_roles
from store import CbtStore

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False

INIT_SCHEMA = os.getenv("CBT_INIT_SCHEMA", "").lower() in {"1", "true", "yes"}

def _bp(path: str = "") -> str:
    if not path.startswith("/"):
        path = "/" + path
    return (BASE_PATH + path) if BASE_PATH else path

# =============================================================================
# Identity (trusted headers)
# =============================================================================
def caller_from_headers(headers) -> Optional[Caller]:
    user_id = (headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None
    return caller_from(
        user_id,
        parse_roles(headers.get("X-User-Roles")),
        branch_id=(headers.get("X-Branch-Id") or "").strip(),
        class_id=(headers.get("X-Class-Id") or "").strip(),
        staff_id=(headers.get("X-Staff-Id") or "").strip(),
    )

def _is_public_path(path: str) -> bool:
    return path in {"/healthz", _bp("/healthz")}

@app.before_request
def attach_identity():
    if _is_public_path(request.path):
        return
    caller = caller_from_headers(request.headers)
    if caller is None:
        print(f"[auth] missing identity on {request.method} {request.path}", flush=True)
        return jsonify({"ok": False, "error": "unauthorized"}), 401
    g.caller = caller

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])

# =============================================================================
# Store sessions & blueprints
# =============================================================================
@contextmanager
def cbt_session() -> Iterator[CbtStore]:
    with transaction() as tx:
        yield CbtStore(tx)

_cbt_deps = {
    "session": cbt_session,
    "clock": utcnow,
}
app.register_blueprint(create_exam_blueprint(BASE_PATH, _cbt_deps, name="exam"))
app.register_blueprint(create_results_blueprint(BASE_PATH, _cbt_deps, name="results"))

if INIT_SCHEMA:
    try:
        ensure_schema()
    except Exception as e:
        print(f"[DB] ensure_schema failed: {e}", flush=True)
        raise

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
