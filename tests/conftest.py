"""
Shared pytest fixtures for the Phase Review test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - gateway: BackendGateway whose HTTP session loops back into the test
      client, installed as the module singleton so services talk to the
      real dispatch endpoint without a network
    - project / templates: Pre-created Project with three phase templates
    - student / teacher / admin: Actors
"""

from urllib.parse import urlsplit

import pytest
import requests

from phasereview import create_app
from phasereview.integrations import backend_gateway as gw_module
from phasereview.integrations.backend_gateway import BackendGateway
from phasereview.models import db as _db
from phasereview.models.phase import PhaseTemplate
from phasereview.models.project import Project, ProjectTask
from phasereview.services.permission import Actor, Role


STUDENT_ID = 100
TEACHER_ID = 200
ADMIN_ID = 300


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


# ── Loopback gateway ─────────────────────────────────────────────────────


class LoopbackSession:
    """Minimal requests.Session stand-in that serves requests from the Flask test client.

    Every call is recorded in ``calls`` as ``(operation, body, headers)``.
    """

    def __init__(self, client):
        self._client = client
        self.calls = []

    def request(self, method, url, headers=None, json=None, timeout=None):
        self.calls.append(((json or {}).get("operation"), json, dict(headers or {})))
        res = self._client.open(urlsplit(url).path, method=method, headers=headers, json=json)

        response = requests.Response()
        response.status_code = res.status_code
        response._content = res.get_data()
        response.headers.update(res.headers)
        response.encoding = "utf-8"
        response.url = url
        return response

    def operations(self):
        return [op for op, _, _ in self.calls]


@pytest.fixture()
def gateway(app, client, monkeypatch):
    """BackendGateway wired to the reference backend and installed as the singleton."""
    loopback = LoopbackSession(client)
    gw = BackendGateway(
        base_url=app.config["PHASE_BACKEND_URL"],
        token=app.config["PHASE_BACKEND_TOKEN"],
        timeout=app.config["PHASE_BACKEND_TIMEOUT"],
        session=loopback,
        backoff_seconds=[0, 0],
    )
    monkeypatch.setattr(gw_module, "backend_gateway", gw)
    return gw


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def student():
    return Actor(id=STUDENT_ID, role=Role.STUDENT)


@pytest.fixture()
def teacher():
    return Actor(id=TEACHER_ID, role=Role.TEACHER)


@pytest.fixture()
def admin():
    return Actor(id=ADMIN_ID, role=Role.ADMIN)


# ── ORM helper factories ─────────────────────────────────────────────────


def make_project(master_id: int = 1, title: str = "Capstone") -> Project:
    """Create and commit a Project."""
    project = Project(project_master_id=master_id, title=title, created_by=STUDENT_ID)
    _db.session.add(project)
    _db.session.commit()
    return project


def make_template(master_id: int = 1, name: str = "Proposal", sequence: int = 1) -> PhaseTemplate:
    """Create and commit a PhaseTemplate."""
    template = PhaseTemplate(project_master_id=master_id, name=name, sequence=sequence)
    _db.session.add(template)
    _db.session.commit()
    return template


def make_tasks(project: Project, done: int, total: int) -> list[ProjectTask]:
    """Create ``total`` tasks of which the first ``done`` are finished."""
    tasks = [
        ProjectTask(project_id=project.id, name=f"Task {i + 1}", is_done=i < done)
        for i in range(total)
    ]
    _db.session.add_all(tasks)
    _db.session.commit()
    return tasks


@pytest.fixture()
def project():
    return make_project()


@pytest.fixture()
def templates(project):
    return [
        make_template(project.project_master_id, name, seq)
        for seq, name in enumerate(("Proposal", "Design", "Final Defense"), start=1)
    ]
