"""
Reference persistence backend: the server side of every dispatch operation.

Each public function implements one operation of the dispatch endpoint and
returns the ``data`` member of the success envelope.  The transition table,
role map, review guards and current-status rule are the same objects the
client-side services use, so a request is judged by identical rules on both
sides.

Write serialisation:
    - Status appends take ``max(sequence) + 1`` for the instance.  Two writers
      that read the same current status try to insert the same sequence; the
      unique constraint lets exactly one of them commit and the other gets
      ConflictError.
    - A client that decided on a status other than the real current one
      (``expected_status``) is refused with ConflictError before writing.
    - Revision answers use ``UPDATE ... WHERE revised_file IS NULL``; a zero
      row count means another answer won and raises AlreadyAnsweredError.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from phasereview.core.exceptions import (
    AlreadyAnsweredError,
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from phasereview.models import db
from phasereview.models.phase import (
    PhaseAttachment,
    PhaseDiscussion,
    PhaseInstance,
    PhaseRevision,
    PhaseStatusRecord,
    PhaseTemplate,
)
from phasereview.models.project import Project, ProjectTask, ProjectTaskAssignee
from phasereview.services.permission import Actor, check_permission
from phasereview.services.phase_lifecycle import (
    ReviewPolicy,
    check_review_guards,
    validate_transition,
)
from phasereview.services.phase_records import (
    ANSWERABLE_STATUSES,
    PhaseStatus,
    RevisionRequest,
    StatusRecord,
    current_status,
    parse_timestamp,
)
from phasereview.services.revision_service import RESPOND_EVENT

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

def _require(value, field: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required", details={"field": field})
    return value


def _int(value, field: str) -> int:
    _require(value, field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={"field": field}) from None


def _get_or_404(model, pk, resource: str):
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource, pk)
    return obj


def _get_instance(instance_id) -> PhaseInstance:
    return _get_or_404(PhaseInstance, _int(instance_id, "phase_project_id"), "PhaseInstance")


def _status_records(instance: PhaseInstance) -> list[StatusRecord]:
    return [
        StatusRecord(
            instance_id=row.phase_instance_id,
            status=PhaseStatus.parse(row.status),
            created_by=row.created_by,
            created_at=parse_timestamp(row.created_at),
        )
        for row in instance.status_records
    ]


def _current(instance: PhaseInstance | None) -> PhaseStatus:
    if instance is None:
        return PhaseStatus.NOT_STARTED
    return current_status(_status_records(instance))


def _check_expected(instance: PhaseInstance, current: PhaseStatus, expected) -> None:
    if expected in (None, ""):
        return
    if PhaseStatus.parse(expected) != current:
        raise ConflictError(
            "PhaseInstance", "status", current.value,
            message=(
                f"Phase instance {instance.id} changed while the request was "
                f"prepared: expected '{PhaseStatus.parse(expected)}', now '{current}'"
            ),
        )


def _append_status(instance: PhaseInstance, status: PhaseStatus, actor_id) -> PhaseStatusRecord:
    """Add the next status record for ``instance`` (caller commits)."""
    last = (
        db.session.query(func.max(PhaseStatusRecord.sequence))
        .filter(PhaseStatusRecord.phase_instance_id == instance.id)
        .scalar()
    )
    record = PhaseStatusRecord(
        phase_instance_id=instance.id,
        sequence=(last or 0) + 1,
        status=status.value,
        created_by=actor_id,
    )
    db.session.add(record)
    return record


def _commit_status(instance_id: int, status: PhaseStatus) -> None:
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning(
            "Concurrent status write rejected for instance %s", instance_id,
            extra={"instance_id": instance_id, "to_status": status.value},
        )
        raise ConflictError(
            "PhaseInstance", "status", status.value,
            message=f"Phase instance {instance_id} was updated concurrently; reload and retry",
        ) from None


def _detail(template: PhaseTemplate, project_id: int, instance: PhaseInstance | None) -> dict:
    return {
        "template": template.to_dict(),
        "project_main_id": project_id,
        "phase": instance.to_dict() if instance else None,
        "status": _current(instance).value,
        "status_history": [r.to_dict() for r in instance.status_records] if instance else [],
        "discussions": [d.to_dict() for d in instance.discussions] if instance else [],
        "files": [f.to_dict() for f in instance.attachments] if instance else [],
    }


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

def fetch_phase_detail(
    phase_project_id=None,
    phase_main_id=None,
    project_main_id=None,
) -> dict:
    """Detail by instance id, or by (template, project) whether started or not."""
    if phase_project_id not in (None, ""):
        instance = _get_instance(phase_project_id)
        return _detail(instance.template, instance.project_id, instance)

    template = _get_or_404(PhaseTemplate, _int(phase_main_id, "phase_main_id"), "PhaseTemplate")
    project = _get_or_404(Project, _int(project_main_id, "project_main_id"), "Project")
    instance = PhaseInstance.query.filter_by(
        phase_template_id=template.id, project_id=project.id,
    ).first()
    return _detail(template, project.id, instance)


def fetch_project_phases(project_main_id=None) -> list[dict]:
    """All templates of the project's master project with their current status."""
    project = _get_or_404(Project, _int(project_main_id, "project_main_id"), "Project")
    templates = (
        PhaseTemplate.query
        .filter_by(project_master_id=project.project_master_id)
        .order_by(PhaseTemplate.sequence, PhaseTemplate.id)
        .all()
    )
    instances = {
        inst.phase_template_id: inst
        for inst in PhaseInstance.query.filter_by(project_id=project.id).all()
    }

    rows = []
    for template in templates:
        instance = instances.get(template.id)
        row = template.to_dict()
        row["status"] = _current(instance).value
        row["phase_project_id"] = instance.id if instance else None
        rows.append(row)
    return rows


def list_revisions(phase_project_id=None) -> list[dict]:
    instance = _get_instance(phase_project_id)
    return [r.to_dict() for r in instance.revisions]


def fetch_tasks(project_main_id=None) -> list[dict]:
    project = _get_or_404(Project, _int(project_main_id, "project_main_id"), "Project")
    return [t.to_dict() for t in project.tasks.order_by(ProjectTask.id).all()]


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

def start_phase_instance(
    phase_main_id=None,
    project_main_id=None,
    actor_id=None,
    actor_role=None,
) -> dict:
    actor = Actor.of(actor_id, actor_role)
    check_permission(actor, "start")

    template = _get_or_404(PhaseTemplate, _int(phase_main_id, "phase_main_id"), "PhaseTemplate")
    project = _get_or_404(Project, _int(project_main_id, "project_main_id"), "Project")
    if template.project_master_id != project.project_master_id:
        raise ValidationError(
            f"Phase template {template.id} does not belong to project {project.id}",
            details={"phase_main_id": template.id, "project_main_id": project.id},
        )

    existing = PhaseInstance.query.filter_by(
        phase_template_id=template.id, project_id=project.id,
    ).first()
    if existing is not None:
        raise IllegalTransitionError(
            "start", _current(existing), instance_id=existing.id, reason="phase already started",
        )
    to_status = validate_transition(PhaseStatus.NOT_STARTED, "start")

    instance = PhaseInstance(
        phase_template_id=template.id, project_id=project.id, created_by=actor.id,
    )
    db.session.add(instance)
    try:
        db.session.flush()
        _append_status(instance, to_status, actor.id)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(
            "PhaseInstance", "phase_main_id", template.id,
            message=f"Phase {template.id} was already started for project {project.id}",
        ) from None

    logger.info(
        "Phase instance %s started", instance.id,
        extra={"instance_id": instance.id, "project_id": project.id, "template_id": template.id},
    )
    return _detail(template, project.id, instance)


def _check_guards(instance, event, current, recording_revision_id=None):
    policy = ReviewPolicy.from_config(current_app.config)
    revisions = [RevisionRequest.from_dict(r.to_dict()) for r in instance.revisions]
    check_review_guards(
        event, current, revisions, policy,
        instance_id=instance.id, recording_revision_id=recording_revision_id,
    )


def _record_transition(
    instance_id, event: str, actor: Actor, expected_status, recording_revision_id=None,
) -> dict:
    check_permission(actor, event)
    instance = _get_instance(instance_id)
    current = _current(instance)
    to_status = validate_transition(current, event, instance_id=instance.id)
    _check_expected(instance, current, expected_status)
    _check_guards(instance, event, current, recording_revision_id)

    record = _append_status(instance, to_status, actor.id)
    _commit_status(instance.id, to_status)

    logger.info(
        "Phase instance %s: %s -> %s", instance.id, current, to_status,
        extra={
            "instance_id": instance.id,
            "event": event,
            "from_status": current.value,
            "to_status": to_status.value,
            "actor_id": actor.id,
        },
    )
    return record.to_dict()


def send_to_review(phase_project_id=None, expected_status=None, actor_id=None, actor_role=None) -> dict:
    return _record_transition(
        phase_project_id, "send_to_review", Actor.of(actor_id, actor_role), expected_status,
    )


def approve_phase(
    phase_project_id=None,
    approve=None,
    expected_status=None,
    actor_id=None,
    actor_role=None,
) -> dict:
    """Single operation for both final outcomes: approve=True → Approved, False → Failed."""
    if not isinstance(approve, bool):
        raise ValidationError("approve must be true or false", details={"field": "approve"})
    event = "approve" if approve else "decline"
    return _record_transition(
        phase_project_id, event, Actor.of(actor_id, actor_role), expected_status,
    )


def create_revision_request(
    phase_project_id=None,
    revision_feed_back=None,
    revision_file=None,
    expected_status=None,
    actor_id=None,
    actor_role=None,
) -> dict:
    """Step 1 of request_revision: store the feedback while the phase is under review."""
    actor = Actor.of(actor_id, actor_role)
    check_permission(actor, "request_revision")
    feedback = str(_require(revision_feed_back, "revision_feed_back")).strip()

    instance = _get_instance(phase_project_id)
    current = _current(instance)
    validate_transition(current, "request_revision", instance_id=instance.id)
    _check_expected(instance, current, expected_status)
    _check_guards(instance, "request_revision", current)

    revision = PhaseRevision(
        phase_instance_id=instance.id,
        created_by=actor.id,
        feedback=feedback,
        reference_file=(revision_file or None),
    )
    db.session.add(revision)
    db.session.commit()

    logger.info(
        "Revision request %s created for instance %s", revision.id, instance.id,
        extra={"instance_id": instance.id, "revision_id": revision.id, "actor_id": actor.id},
    )
    return revision.to_dict()


def append_revision_status(
    phase_project_id=None,
    revision_id=None,
    expected_status=None,
    actor_id=None,
    actor_role=None,
) -> dict:
    """Step 2 of request_revision: move the instance to RevisionNeeded."""
    instance = _get_instance(phase_project_id)
    revision = _get_or_404(PhaseRevision, _int(revision_id, "revision_id"), "RevisionRequest")
    if revision.phase_instance_id != instance.id:
        raise ValidationError(
            f"Revision request {revision.id} belongs to another phase instance",
            details={"revision_id": revision.id, "phase_project_id": instance.id},
        )
    return _record_transition(
        instance.id, "request_revision", Actor.of(actor_id, actor_role), expected_status,
        recording_revision_id=revision.id,
    )


def answer_revision(revision_id=None, revised_file=None, actor_id=None, actor_role=None) -> dict:
    """Attach the student's revised file; exactly one answer ever succeeds."""
    actor = Actor.of(actor_id, actor_role)
    check_permission(actor, RESPOND_EVENT)
    filename = str(_require(revised_file, "revised_file")).strip()

    revision = _get_or_404(PhaseRevision, _int(revision_id, "revision_id"), "RevisionRequest")
    if revision.revised_file:
        raise AlreadyAnsweredError(revision.id, revision.revised_file)

    current = _current(revision.instance)
    if current not in ANSWERABLE_STATUSES:
        raise IllegalTransitionError(
            RESPOND_EVENT, current, instance_id=revision.phase_instance_id,
        )

    updated = (
        PhaseRevision.query
        .filter(PhaseRevision.id == revision.id, PhaseRevision.revised_file.is_(None))
        .update(
            {
                "revised_file": filename,
                "revised_by": actor.id,
                "revised_at": datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.session.rollback()
        winner = db.session.get(PhaseRevision, revision.id)
        raise AlreadyAnsweredError(revision.id, winner.revised_file if winner else None)
    db.session.commit()
    db.session.refresh(revision)

    logger.info(
        "Revision %s answered", revision.id,
        extra={
            "revision_id": revision.id,
            "instance_id": revision.phase_instance_id,
            "actor_id": actor.id,
        },
    )
    return revision.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Discussion & attachments
# ═════════════════════════════════════════════════════════════════════════════

def post_discussion(
    phase_project_id=None,
    user_id=None,
    user_type=None,
    discussion_text=None,
) -> dict:
    actor = Actor.of(user_id, user_type)
    check_permission(actor, "post_discussion")
    text = str(_require(discussion_text, "discussion_text")).strip()
    instance = _get_instance(phase_project_id)

    entry = PhaseDiscussion(
        phase_instance_id=instance.id, user_id=actor.id, user_role=actor.role.value, text=text,
    )
    db.session.add(entry)
    db.session.commit()
    return entry.to_dict()


def upload_attachment(
    phase_project_id=None,
    user_id=None,
    user_type=None,
    phase_file_name=None,
) -> dict:
    actor = Actor.of(user_id, user_type)
    check_permission(actor, "upload_attachment")
    filename = str(_require(phase_file_name, "phase_file_name")).strip()
    instance = _get_instance(phase_project_id)

    attachment = PhaseAttachment(phase_instance_id=instance.id, user_id=actor.id, filename=filename)
    db.session.add(attachment)
    db.session.commit()
    return attachment.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Demo data
# ═════════════════════════════════════════════════════════════════════════════

DEMO_PHASES = (
    ("Proposal", "Problem statement, objectives and scope"),
    ("System Design", "Architecture, data model and interface mock-ups"),
    ("Implementation", "Working build of the core features"),
    ("Final Defense", "Documentation and final presentation"),
)

DEMO_TASKS = (
    ("Write problem statement", "High", True),
    ("Draft ERD", "Medium", True),
    ("Build login page", "Low", False),
    ("Integrate reporting module", "Critical", False),
)


def seed_demo(project_master_id: int = 1, student_id: int = 100, teacher_id: int = 200) -> dict:
    """Create one project with phase templates and tasks (idempotent per master project)."""
    project = Project.query.filter_by(project_master_id=project_master_id).first()
    if project is not None:
        return {"project_main_id": project.id, "created": False}

    project = Project(project_master_id=project_master_id, title="Demo Capstone", created_by=student_id)
    db.session.add(project)

    today = date.today()
    for seq, (name, description) in enumerate(DEMO_PHASES, start=1):
        db.session.add(PhaseTemplate(
            project_master_id=project_master_id,
            name=name,
            description=description,
            start_date=today,
            sequence=seq,
        ))
    db.session.flush()

    for name, priority, done in DEMO_TASKS:
        task = ProjectTask(
            project_id=project.id, name=name, priority=priority,
            is_done=done, assigned_by=teacher_id,
        )
        task.assignees.append(ProjectTaskAssignee(user_id=student_id))
        db.session.add(task)

    db.session.commit()
    return {"project_main_id": project.id, "created": True}
