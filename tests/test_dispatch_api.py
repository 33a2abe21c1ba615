"""
Dispatch endpoint tests: raw envelopes over HTTP.

These go through the Flask test client directly (no gateway) to pin the wire
contract: status codes, error codes and details the client maps back onto
exceptions.  Also covers the health probes and the ``seed-demo`` CLI command.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from phasereview import create_app
from phasereview.blueprints import dispatch_bp as dispatch_module
from phasereview.config import ProductionConfig
from phasereview.models import db
from phasereview.models.phase import PhaseInstance, PhaseStatusRecord, PhaseTemplate
from phasereview.models.project import Project, ProjectTask
from phasereview.services import phase_store

from conftest import STUDENT_ID, TEACHER_ID

URL = "/api/v1/dispatch"


def _post(client, operation, **payload):
    res = client.post(URL, json={"operation": operation, **payload})
    return res, res.get_json()


def _start(client, template, project):
    res, body = _post(
        client, "startPhaseInstance",
        phase_main_id=template.id, project_main_id=project.id,
        actor_id=STUDENT_ID, actor_role="student",
    )
    assert res.status_code == 201, body
    return body["data"]["phase"]["phase_project_id"]


def _teacher(**payload):
    return {"actor_id": TEACHER_ID, "actor_role": "teacher", **payload}


# ═════════════════════════════════════════════════════════════════════════════
# Envelope
# ═════════════════════════════════════════════════════════════════════════════


class TestEnvelope:

    def test_success_envelope(self, client, project, templates):
        res, body = _post(client, "fetchProjectPhases", project_main_id=project.id)

        assert res.status_code == 200
        assert body["status"] == "success"
        assert [row["phase_main_name"] for row in body["data"]] == ["Proposal", "Design", "Final Defense"]
        assert {row["status"] for row in body["data"]} == {"NotStarted"}

    def test_start_returns_201_with_history(self, client, project, templates):
        res, body = _post(
            client, "startPhaseInstance",
            phase_main_id=templates[1].id, project_main_id=project.id,
            actor_id=STUDENT_ID, actor_role="student",
        )

        assert res.status_code == 201
        assert body["data"]["status"] == "InProgress"
        assert [r["status_name"] for r in body["data"]["status_history"]] == ["InProgress"]

    def test_body_must_be_json_object(self, client):
        res = client.post(URL, data="operation=fetchTasks", content_type="text/plain")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

        res = client.post(URL, json=["fetchTasks"])
        assert res.status_code == 400

    def test_operation_required(self, client):
        res = client.post(URL, json={"project_main_id": 1})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_unknown_operation(self, client):
        res, body = _post(client, "deletePhase", phase_project_id=1)

        assert res.status_code == 400
        assert body["status"] == "error"
        assert body["code"] == "ERR_UNKNOWN_OPERATION"
        assert body["details"] == {"operation": "deletePhase"}

    def test_unexpected_keys_are_ignored(self, client, project, templates):
        res, _ = _post(client, "fetchProjectPhases", project_main_id=project.id, drop_tables=True)
        assert res.status_code == 200

    def test_not_found(self, client):
        res, body = _post(client, "listRevisions", phase_project_id=404)

        assert res.status_code == 404
        assert body["code"] == "ERR_NOT_FOUND"
        assert body["details"]["resource_id"] == 404

    def test_non_integer_id(self, client):
        res, body = _post(client, "fetchTasks", project_main_id="abc")
        assert res.status_code == 400
        assert body["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_route_uses_envelope(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["status"] == "error"

    def test_get_is_not_allowed(self, client):
        assert client.get(URL).status_code == 405


# ═════════════════════════════════════════════════════════════════════════════
# Transitions over the wire
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitions:

    def test_illegal_transition_details(self, client, project, templates):
        instance_id = _start(client, templates[0], project)

        res, body = _post(client, "approvePhase", **_teacher(phase_project_id=instance_id, approve=True))

        assert res.status_code == 409
        assert body["code"] == "ERR_ILLEGAL_TRANSITION"
        assert body["details"]["current_status"] == "InProgress"
        assert "InProgress" in body["message"]

    def test_forbidden_role(self, client, project, templates):
        instance_id = _start(client, templates[0], project)

        res, body = _post(
            client, "sendToReview",
            phase_project_id=instance_id, actor_id=STUDENT_ID, actor_role="student",
        )

        assert res.status_code == 403
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["details"]["event"] == "send_to_review"

    def test_start_twice(self, client, project, templates):
        _start(client, templates[0], project)

        res, body = _post(
            client, "startPhaseInstance",
            phase_main_id=templates[0].id, project_main_id=project.id,
            actor_id=STUDENT_ID, actor_role="student",
        )

        assert res.status_code == 409
        assert body["code"] == "ERR_ILLEGAL_TRANSITION"
        assert PhaseInstance.query.count() == 1

    def test_stale_expected_status(self, client, project, templates):
        instance_id = _start(client, templates[0], project)
        _post(client, "sendToReview", **_teacher(phase_project_id=instance_id))

        res, body = _post(
            client, "sendToReview",
            **_teacher(phase_project_id=instance_id, expected_status="InProgress"),
        )

        # UnderReview has no send_to_review edge, so the table refuses first.
        assert body["code"] == "ERR_ILLEGAL_TRANSITION"

        _post(client, "createRevisionRequest", **_teacher(
            phase_project_id=instance_id, revision_feed_back="More detail",
        ))
        res, body = _post(
            client, "approvePhase",
            **_teacher(phase_project_id=instance_id, approve=False, expected_status="RevisionNeeded"),
        )

        assert res.status_code == 409
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["field"] == "status"
        assert PhaseStatusRecord.query.filter_by(phase_instance_id=instance_id).count() == 2

    def test_concurrent_status_write_conflicts(self, client, project, templates):
        instance_id = _start(client, templates[0], project)
        real_append = phase_store._append_status

        def racing_append(instance, status, actor_id):
            record = real_append(instance, status, actor_id)
            # A competing writer lands the same sequence number first.
            with db.session.no_autoflush:
                db.session.execute(
                    db.insert(PhaseStatusRecord).values(
                        phase_instance_id=instance.id, sequence=record.sequence,
                        status="UnderReview", created_by=999,
                    )
                )
            return record

        with patch.object(phase_store, "_append_status", side_effect=racing_append):
            res, body = _post(client, "sendToReview", **_teacher(phase_project_id=instance_id))

        assert res.status_code == 409
        assert body["code"] == "ERR_CONFLICT_STATE"
        history = PhaseStatusRecord.query.filter_by(phase_instance_id=instance_id).all()
        assert [r.status for r in history] == ["InProgress"]

    def test_approve_requires_boolean(self, client, project, templates):
        instance_id = _start(client, templates[0], project)
        _post(client, "sendToReview", **_teacher(phase_project_id=instance_id))

        res, body = _post(client, "approvePhase", **_teacher(phase_project_id=instance_id, approve="yes"))

        assert res.status_code == 400
        assert body["code"] == "ERR_VALIDATION_INVALID"

    def test_guard_refusal_is_422(self, client, project, templates):
        instance_id = _start(client, templates[0], project)
        _post(client, "sendToReview", **_teacher(phase_project_id=instance_id))

        res, body = _post(client, "approvePhase", **_teacher(phase_project_id=instance_id, approve=True))

        assert res.status_code == 422
        assert body["code"] == "ERR_REVIEW_GUARD"

    def test_guard_follows_config(self, app, client, project, templates, monkeypatch):
        monkeypatch.setitem(app.config, "PHASE_APPROVAL_REQUIRES_REVIEW_PASS", False)
        instance_id = _start(client, templates[0], project)
        _post(client, "sendToReview", **_teacher(phase_project_id=instance_id))

        res, body = _post(client, "approvePhase", **_teacher(phase_project_id=instance_id, approve=True))

        assert res.status_code == 201
        assert body["data"]["status_name"] == "Approved"

    def test_unanswered_request_blocks_another(self, client, project, templates):
        instance_id = _start(client, templates[0], project)
        _post(client, "sendToReview", **_teacher(phase_project_id=instance_id))
        _, created = _post(client, "createRevisionRequest", **_teacher(
            phase_project_id=instance_id, revision_feed_back="Fix the ERD",
        ))
        revision_id = created["data"]["revision_id"]

        res, body = _post(client, "createRevisionRequest", **_teacher(
            phase_project_id=instance_id, revision_feed_back="Also the glossary",
        ))
        assert res.status_code == 422
        assert body["code"] == "ERR_REVIEW_GUARD"
        assert str(revision_id) in body["message"]

        res, body = _post(client, "approvePhase", **_teacher(phase_project_id=instance_id, approve=False))
        assert res.status_code == 422
        assert body["code"] == "ERR_REVIEW_GUARD"

        # The pending request itself can still have its status appended
        res, body = _post(
            client, "appendRevisionStatus", **_teacher(phase_project_id=instance_id, revision_id=revision_id),
        )
        assert res.status_code == 201
        assert body["data"]["status_name"] == "RevisionNeeded"

    def test_answer_twice_returns_winning_file(self, client, project, templates):
        instance_id = _start(client, templates[0], project)
        _post(client, "sendToReview", **_teacher(phase_project_id=instance_id))
        _, created = _post(client, "createRevisionRequest", **_teacher(
            phase_project_id=instance_id, revision_feed_back="Fix the ERD",
        ))
        revision_id = created["data"]["revision_id"]
        _post(client, "appendRevisionStatus", **_teacher(phase_project_id=instance_id, revision_id=revision_id))
        student = {"actor_id": STUDENT_ID, "actor_role": "student"}

        res, _ = _post(client, "answerRevision", revision_id=revision_id, revised_file="erd_v2.png", **student)
        assert res.status_code == 200

        res, body = _post(client, "answerRevision", revision_id=revision_id, revised_file="erd_v3.png", **student)
        assert res.status_code == 409
        assert body["code"] == "ERR_ALREADY_ANSWERED"
        assert body["details"]["revised_file"] == "erd_v2.png"

    def test_database_error_is_500_envelope(self, client, project):
        def broken_handler(**_payload):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        failing = (broken_handler, ("project_main_id",), 200)
        with patch.dict(dispatch_module._OPERATIONS, {"fetchTasks": failing}):
            res, body = _post(client, "fetchTasks", project_main_id=project.id)

        assert res.status_code == 500
        assert body["code"] == "ERR_DATABASE"
        assert body["message"] == "Database error"


# ═════════════════════════════════════════════════════════════════════════════
# Health and CLI
# ═════════════════════════════════════════════════════════════════════════════


class TestHealth:

    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        body = res.get_json()

        assert res.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["backend_gateway"]["status"] == "ok"
        assert body["checks"]["app"]["testing"] is True

    def test_response_time_header(self, client):
        res = client.get("/api/v1/health/ready")
        assert "X-Request-Duration-Ms" in res.headers
        assert res.headers["X-Request-ID"]


class TestSeedDemo:

    def test_seed_demo_creates_project(self, app):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["seed-demo", "--master-id", "7"])

        assert result.exit_code == 0, result.output
        project = Project.query.filter_by(project_master_id=7).one()
        assert PhaseTemplate.query.filter_by(project_master_id=7).count() == len(phase_store.DEMO_PHASES)
        assert ProjectTask.query.filter_by(project_id=project.id).count() == len(phase_store.DEMO_TASKS)

    def test_seed_demo_is_idempotent(self, app):
        runner = app.test_cli_runner()
        runner.invoke(args=["seed-demo"])
        runner.invoke(args=["seed-demo"])

        assert Project.query.filter_by(project_master_id=1).count() == 1

    @pytest.mark.parametrize("master_id", [2, 3])
    def test_seed_demo_function(self, master_id):
        first = phase_store.seed_demo(project_master_id=master_id)
        second = phase_store.seed_demo(project_master_id=master_id)

        assert first["created"] is True
        assert second == {"project_main_id": first["project_main_id"], "created": False}


class TestConfig:

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            create_app("production")

    def test_production_requires_secret_key(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", "sqlite:///:memory:")
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(RuntimeError, match="SECRET_KEY"):
            create_app("production")

    def test_testing_config_points_gateway_at_loopback(self, app):
        assert app.config["TESTING"] is True
        assert app.config["PHASE_BACKEND_URL"].endswith("/api/v1/dispatch")
        assert app.config["PHASE_APPROVAL_REQUIRES_REVIEW_PASS"] is True
