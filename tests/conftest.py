import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from flask import Flask, g, request


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exam import create_exam_blueprint  # noqa: E402
from fakes import FakeStore, FixedClock, session_for  # noqa: E402
from main import caller_from_headers  # noqa: E402
from results import create_results_blueprint  # noqa: E402

# Monday 09:00 UTC
T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    s = FakeStore()
    s.add_class("c-jss1", "JSS1", "b-1", teacher_id="staff-7")
    s.add_class("c-jss2", "JSS2", "b-1", teacher_id="staff-8")
    s.add_class("c-far", "JSS1", "b-2", teacher_id="staff-9")
    s.add_term("t-1", "b-1", active=True)
    return s


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def app(store, clock):
    app = Flask(__name__)
    app.testing = True
    deps = {"session": session_for(store), "clock": clock}
    app.register_blueprint(create_exam_blueprint("", deps))
    app.register_blueprint(create_results_blueprint("", deps))

    @app.before_request
    def _set_caller():
        caller = caller_from_headers(request.headers)
        if caller is not None:
            g.caller = caller

    return app


@pytest.fixture
def client(app):
    return app.test_client()
