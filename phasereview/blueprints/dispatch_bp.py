"""
Dispatch Blueprint: the operation-tagged endpoint of the reference backend.

Endpoint:
    POST /api/v1/dispatch
         Body: { "operation": "<name>", ...payload }
         Returns: { "status": "success", "message": "ok", "data": ... }
              or  { "status": "error", "message": ..., "code": "ERR_...", "data": null,
                    "details": {...} }

Layer contract:
    - Blueprint: parse the envelope, pick the handler, translate exceptions.
    - NO db.session calls here: all writes owned by services.phase_store.
    - Error codes come from utils.errors.E so the client gateway can map them
      back onto phasereview.core.exceptions.
"""

import logging

from flask import Blueprint, g, request
from sqlalchemy.exc import SQLAlchemyError

from phasereview.core.exceptions import (
    AlreadyAnsweredError,
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDenied,
    ReviewGuardError,
    UnknownStatusError,
    ValidationError,
)
from phasereview.integrations.backend_gateway import Operation
from phasereview.models import db
from phasereview.services import phase_store
from phasereview.utils.errors import E, dispatch_error, dispatch_success

logger = logging.getLogger(__name__)

dispatch_bp = Blueprint("dispatch", __name__, url_prefix="/api/v1")


# operation → (handler, accepted payload keys, success status)
_OPERATIONS = {
    Operation.START_PHASE_INSTANCE: (
        phase_store.start_phase_instance,
        ("phase_main_id", "project_main_id", "actor_id", "actor_role"),
        201,
    ),
    Operation.FETCH_PHASE_DETAIL: (
        phase_store.fetch_phase_detail,
        ("phase_project_id", "phase_main_id", "project_main_id"),
        200,
    ),
    Operation.FETCH_PROJECT_PHASES: (
        phase_store.fetch_project_phases,
        ("project_main_id",),
        200,
    ),
    Operation.SEND_TO_REVIEW: (
        phase_store.send_to_review,
        ("phase_project_id", "expected_status", "actor_id", "actor_role"),
        201,
    ),
    Operation.APPROVE_PHASE: (
        phase_store.approve_phase,
        ("phase_project_id", "approve", "expected_status", "actor_id", "actor_role"),
        201,
    ),
    Operation.CREATE_REVISION_REQUEST: (
        phase_store.create_revision_request,
        ("phase_project_id", "revision_feed_back", "revision_file", "expected_status",
         "actor_id", "actor_role"),
        201,
    ),
    Operation.APPEND_REVISION_STATUS: (
        phase_store.append_revision_status,
        ("phase_project_id", "revision_id", "expected_status", "actor_id", "actor_role"),
        201,
    ),
    Operation.ANSWER_REVISION: (
        phase_store.answer_revision,
        ("revision_id", "revised_file", "actor_id", "actor_role"),
        200,
    ),
    Operation.LIST_REVISIONS: (
        phase_store.list_revisions,
        ("phase_project_id",),
        200,
    ),
    Operation.POST_DISCUSSION: (
        phase_store.post_discussion,
        ("phase_project_id", "user_id", "user_type", "discussion_text"),
        201,
    ),
    Operation.UPLOAD_ATTACHMENT: (
        phase_store.upload_attachment,
        ("phase_project_id", "user_id", "user_type", "phase_file_name"),
        201,
    ),
    Operation.FETCH_TASKS: (
        phase_store.fetch_tasks,
        ("project_main_id",),
        200,
    ),
}


@dispatch_bp.route("/dispatch", methods=["POST"])
def dispatch():
    """Run one operation and wrap its result in the response envelope."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return dispatch_error(E.VALIDATION_INVALID, "Request body must be a JSON object")

    operation = body.get("operation")
    if not operation:
        return dispatch_error(E.VALIDATION_REQUIRED, "operation is required")
    g.dispatch_operation = operation

    entry = _OPERATIONS.get(operation)
    if entry is None:
        return dispatch_error(
            E.UNKNOWN_OPERATION, f"Unknown operation: {operation}",
            details={"operation": operation},
        )

    handler, fields, success_status = entry
    payload = {key: body[key] for key in fields if key in body}
    data = handler(**payload)
    return dispatch_success(data, status=success_status)


# ── Exception → envelope ───────────────────────────────────────────────────────


@dispatch_bp.errorhandler(NotFoundError)
def _not_found(exc):
    return dispatch_error(
        E.NOT_FOUND, str(exc),
        details={"resource": exc.resource, "resource_id": exc.resource_id},
    )


@dispatch_bp.errorhandler(ValidationError)
def _invalid(exc):
    return dispatch_error(E.VALIDATION_INVALID, str(exc), details=exc.details)


@dispatch_bp.errorhandler(UnknownStatusError)
def _unknown_status(exc):
    return dispatch_error(E.VALIDATION_INVALID, str(exc), details={"status": exc.value})


@dispatch_bp.errorhandler(IllegalTransitionError)
def _illegal(exc):
    return dispatch_error(
        E.ILLEGAL_TRANSITION, str(exc),
        details={
            "event": exc.event,
            "current_status": exc.current_status,
            "instance_id": exc.instance_id,
            "reason": exc.reason,
        },
    )


@dispatch_bp.errorhandler(ReviewGuardError)
def _guard(exc):
    return dispatch_error(
        E.REVIEW_GUARD, str(exc),
        details={"event": exc.event, "instance_id": exc.instance_id, "reason": exc.reason},
    )


@dispatch_bp.errorhandler(AlreadyAnsweredError)
def _answered(exc):
    return dispatch_error(
        E.ALREADY_ANSWERED, str(exc),
        details={"revision_id": exc.revision_id, "revised_file": exc.revised_file},
    )


@dispatch_bp.errorhandler(ConflictError)
def _conflict(exc):
    code = E.CONFLICT_STATE if exc.field == "status" else E.CONFLICT_DUPLICATE
    return dispatch_error(
        code, str(exc),
        details={"resource": exc.resource, "field": exc.field, "value": exc.value},
    )


@dispatch_bp.errorhandler(PermissionDenied)
def _forbidden(exc):
    return dispatch_error(
        E.FORBIDDEN, str(exc),
        details={"actor_id": exc.actor_id, "role": exc.role, "event": exc.event},
    )


@dispatch_bp.errorhandler(SQLAlchemyError)
def _database(exc):
    db.session.rollback()
    logger.exception(
        "Database error in %s", g.get("dispatch_operation"),
        extra={"operation": g.get("dispatch_operation")},
    )
    return dispatch_error(E.DATABASE, "Database error")
