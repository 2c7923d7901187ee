"""
Shared pytest fixtures for the Business Diagnostic Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - catalogs: Loaded reference catalogs
    - company_id / assessment: a company and its first assessment via the API
    - fill_answers: answer every question of an assessment via the API
    - submitted: an assessment submitted with ADM_FIN critical, others strong
"""

import pytest

from diagnostic import create_app
from diagnostic.models import db as _db
from diagnostic.services import catalog_service

BASE = "/api/v1/diagnostic"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def catalogs():
    """The packaged catalogs, loaded and validated."""
    return catalog_service.load_all_catalogs()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def company_id():
    return "acme-ltda"


@pytest.fixture()
def assessment(client, company_id):
    """Create and return the company's first assessment via the API."""
    res = client.post(f"{BASE}/assessments?company_id={company_id}", json={"segment": "C"})
    assert res.status_code == 201
    return res.get_json()


@pytest.fixture()
def fill_answers(client, company_id):
    """Return a callable that answers every question of an assessment.

    ``values`` maps process_key → int (every question) or
    {question_key: int} (remaining questions use ``default``).
    """

    def _fill(assessment_id, values=None, default=9):
        values = values or {}
        answers = []
        for q in catalog_service.get_question_catalog().questions_for("C"):
            override = values.get(q.process_key)
            if isinstance(override, dict):
                value = override.get(q.question_key, default)
            elif override is not None:
                value = override
            else:
                value = default
            answers.append({
                "process_key": q.process_key,
                "question_key": q.question_key,
                "answer_value": value,
            })
        res = client.put(
            f"{BASE}/assessments/{assessment_id}/answers?company_id={company_id}",
            json={"answers": answers},
        )
        assert res.status_code == 200, res.get_json()
        return res.get_json()

    return _fill


@pytest.fixture()
def submitted(client, company_id, assessment, fill_answers):
    """Assessment v1 submitted with ADM_FIN all 1 (LOW) and the rest all 9 (HIGH)."""
    fill_answers(assessment["id"], {"ADM_FIN": 1})
    res = client.post(f"{BASE}/assessments/{assessment['id']}/submit?company_id={company_id}")
    assert res.status_code == 200, res.get_json()
    return res.get_json()
