"""
Revision subsystem: the teacher feedback / student response loop.

A revision request is created by a teacher while the phase is under review
(see ``phase_lifecycle.request_revision``).  The student answers it exactly
once by uploading a revised file.  Answering is allowed while the phase
instance is RevisionNeeded or already resolved (Approved, Completed, Failed);
the backend enforces the single answer with a conditional update, so a second
answer always fails with AlreadyAnsweredError and the first file is kept.

Usage:
    from phasereview.services.revision_service import answer_revision, list_revisions

    revisions = list_revisions(instance_id=7)
    answer_revision(revisions[-1].id, "chapter2_v2.pdf", student)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from phasereview.core.exceptions import IllegalTransitionError, ValidationError
from phasereview.integrations import backend_gateway as gw_module
from phasereview.integrations.backend_gateway import Operation
from phasereview.services.permission import Actor, check_permission
from phasereview.services.phase_records import (
    ANSWERABLE_STATUSES,
    PhaseStatus,
    RevisionRequest,
)

logger = logging.getLogger(__name__)

RESPOND_EVENT = "respond_to_revision"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def list_revisions(instance_id: int, *, gateway=None) -> list[RevisionRequest]:
    """Return the revision requests of a phase instance in creation order."""
    gw = gateway or gw_module.backend_gateway
    data = gw.dispatch(
        Operation.LIST_REVISIONS, phase_project_id=instance_id,
    ).raise_for_error()
    revisions = [RevisionRequest.from_dict(row) for row in data or []]
    revisions.sort(key=_creation_key)
    return revisions


def answer_revision(
    revision_id: int,
    filename: str,
    actor: Actor,
    *,
    instance_status: PhaseStatus | str | None = None,
    gateway=None,
) -> RevisionRequest:
    """
    Attach the student's revised file to a revision request.

    Args:
        revision_id: Revision request being answered.
        filename: Stored name of the uploaded file (bytes are handled elsewhere).
        actor: Must be a student.
        instance_status: Status the caller last saw.  When given, an obviously
            illegal answer is refused without a backend round trip; the backend
            re-checks against the real current status either way.

    Raises:
        PermissionDenied, ValidationError, IllegalTransitionError,
        AlreadyAnsweredError, NotFoundError, ExternalUnavailableError
    """
    check_permission(actor, RESPOND_EVENT)

    filename = (filename or "").strip()
    if not filename:
        raise ValidationError("A revised file is required", details={"revision_id": revision_id})

    if instance_status is not None:
        status = PhaseStatus.parse(instance_status)
        if status not in ANSWERABLE_STATUSES:
            raise IllegalTransitionError(RESPOND_EVENT, status)

    gw = gateway or gw_module.backend_gateway
    data = gw.dispatch(
        Operation.ANSWER_REVISION,
        revision_id=revision_id,
        revised_file=filename,
        **actor.to_dict(),
    ).raise_for_error()
    revision = RevisionRequest.from_dict(data)

    logger.info(
        "Revision %s answered with %s",
        revision.id, revision.revised_file,
        extra={
            "revision_id": revision.id,
            "instance_id": revision.instance_id,
            "event": RESPOND_EVENT,
            "actor_id": actor.id,
        },
    )
    return revision


def latest_revision(revisions: list[RevisionRequest]) -> RevisionRequest | None:
    """The most recently created revision request, or None."""
    if not revisions:
        return None
    return max(revisions, key=_creation_key)


def open_revisions(revisions: list[RevisionRequest]) -> list[RevisionRequest]:
    return [r for r in revisions if not r.is_answered]


def revision_summary(revisions: list[RevisionRequest]) -> dict:
    """Counts shown on the review panel."""
    latest = latest_revision(revisions)
    answered = sum(1 for r in revisions if r.is_answered)
    return {
        "total": len(revisions),
        "answered": answered,
        "open": len(revisions) - answered,
        "latest_revision_id": latest.id if latest else None,
        "latest_answered": latest.is_answered if latest else None,
    }


def _creation_key(revision: RevisionRequest):
    return (revision.created_at or _EPOCH, revision.id)
