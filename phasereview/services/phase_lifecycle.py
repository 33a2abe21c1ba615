"""
Phase Review: Phase Lifecycle Service

Manages phase instance status transitions with:
  - Transition validation (PHASE_TRANSITIONS)
  - Role checks (services.permission)
  - Review policy guards (ReviewPolicy)
  - The two-step revision request write and its resume path

Six valid transitions:
  NotStarted     --start-->            InProgress
  InProgress     --send_to_review-->   UnderReview
  RevisionNeeded --send_to_review-->   UnderReview
  UnderReview    --approve-->          Approved
  UnderReview    --decline-->          Failed
  UnderReview    --request_revision--> RevisionNeeded

Every other (status, event) pair raises IllegalTransitionError and leaves the
status log untouched.  State lives in the backend; each operation re-reads
the current status before writing and sends it as ``expected_status`` so the
backend can refuse a write that raced another one.

Usage:
    from phasereview.services.phase_lifecycle import approve_phase, start_phase

    detail = start_phase(template_id=3, project_id=11, actor=student)
    approve_phase(detail.instance_id, teacher)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from phasereview.core.exceptions import (
    IllegalTransitionError,
    PartialCommitError,
    ReviewGuardError,
    ValidationError,
)
from phasereview.integrations import backend_gateway as gw_module
from phasereview.integrations.backend_gateway import Operation
from phasereview.services.permission import EVENT_ROLES, Actor, Role, check_permission
from phasereview.services.phase_records import (
    ANSWERABLE_STATUSES,
    Attachment,
    Discussion,
    PhaseDetail,
    PhaseStatus,
    PhaseSummary,
    RevisionRequest,
    StatusRecord,
)
from phasereview.services.revision_service import (
    RESPOND_EVENT,
    latest_revision,
    list_revisions,
)

logger = logging.getLogger(__name__)


PHASE_TRANSITIONS: dict[str, dict] = {
    "start": {
        "from": [PhaseStatus.NOT_STARTED],
        "to": PhaseStatus.IN_PROGRESS,
    },
    "send_to_review": {
        "from": [PhaseStatus.IN_PROGRESS, PhaseStatus.REVISION_NEEDED],
        "to": PhaseStatus.UNDER_REVIEW,
    },
    "approve": {
        "from": [PhaseStatus.UNDER_REVIEW],
        "to": PhaseStatus.APPROVED,
    },
    "decline": {
        "from": [PhaseStatus.UNDER_REVIEW],
        "to": PhaseStatus.FAILED,
    },
    "request_revision": {
        "from": [PhaseStatus.UNDER_REVIEW],
        "to": PhaseStatus.REVISION_NEEDED,
    },
}


@dataclass(frozen=True)
class ReviewPolicy:
    """Guards layered on top of the transition table.

    approval_requires_review_pass:
        approve / decline need at least one revision request on the instance.
    enforce_answered_revisions:
        resubmitting out of RevisionNeeded, and every reviewer decision
        (approve, decline, request_revision), needs the latest revision
        request answered.
    """
    approval_requires_review_pass: bool = True
    enforce_answered_revisions: bool = True

    @classmethod
    def from_config(cls, config: Mapping) -> "ReviewPolicy":
        return cls(
            approval_requires_review_pass=bool(
                config.get("PHASE_APPROVAL_REQUIRES_REVIEW_PASS", True)
            ),
            enforce_answered_revisions=bool(
                config.get("PHASE_ENFORCE_ANSWERED_REVISIONS", True)
            ),
        )


# ═════════════════════════════════════════════════════════════════════════════
# Pure rules (shared with the backend in services.phase_store)
# ═════════════════════════════════════════════════════════════════════════════

def validate_transition(
    status: PhaseStatus | str,
    event: str,
    *,
    instance_id: int | None = None,
) -> PhaseStatus:
    """
    Return the status ``event`` leads to from ``status``.

    Raises:
        ValidationError: unknown event.
        IllegalTransitionError: event not allowed from ``status``.
    """
    rule = PHASE_TRANSITIONS.get(event)
    if rule is None:
        raise ValidationError(f"Unknown phase event: {event}", details={"event": event})

    current = PhaseStatus.parse(status)
    if current not in rule["from"]:
        raise IllegalTransitionError(event, current, instance_id=instance_id)
    return rule["to"]


_DECISION_EVENTS = ("approve", "decline", "request_revision")


def _waits_for_answer(event: str, status: PhaseStatus) -> bool:
    """Events that may not run while the latest revision request is unanswered."""
    if event in _DECISION_EVENTS:
        return True
    return event == "send_to_review" and status == PhaseStatus.REVISION_NEEDED


def check_review_guards(
    event: str,
    status: PhaseStatus,
    revisions: list[RevisionRequest],
    policy: ReviewPolicy,
    *,
    instance_id: int | None = None,
    recording_revision_id: int | None = None,
) -> None:
    """
    Raise ReviewGuardError if ``policy`` blocks an otherwise legal event.

    ``recording_revision_id`` is the request whose RevisionNeeded status is
    being appended; it is not yet expected to carry an answer.
    """
    if event in ("approve", "decline") and policy.approval_requires_review_pass:
        if not revisions:
            raise ReviewGuardError(
                event, instance_id,
                "at least one revision request must be recorded before a final decision",
            )

    if policy.enforce_answered_revisions and _waits_for_answer(event, status):
        earlier = [r for r in revisions if r.id != recording_revision_id]
        latest = latest_revision(earlier)
        if latest is not None and not latest.is_answered:
            raise ReviewGuardError(
                event, instance_id,
                f"revision request {latest.id} has not been answered yet",
            )


def guard_needs_revisions(event: str, status: PhaseStatus, policy: ReviewPolicy) -> bool:
    """True when ``check_review_guards`` needs the revision list for this event."""
    if event in ("approve", "decline") and policy.approval_requires_review_pass:
        return True
    return policy.enforce_answered_revisions and _waits_for_answer(event, status)


def get_available_actions(status: PhaseStatus | str, role: Role | str | None = None) -> list[str]:
    """
    Get the status-dependent events that are legal right now.

    Includes ``respond_to_revision`` while revision answers are accepted.
    Discussion and attachment posting are always available and not listed.
    """
    current = PhaseStatus.parse(status)
    wanted_role = Role.parse(role) if role is not None else None

    actions = [event for event, rule in PHASE_TRANSITIONS.items() if current in rule["from"]]
    if current in ANSWERABLE_STATUSES:
        actions.append(RESPOND_EVENT)

    if wanted_role is not None:
        actions = [a for a in actions if wanted_role in EVENT_ROLES[a]]
    return actions


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

def _gateway(gateway):
    return gateway or gw_module.backend_gateway


def fetch_phase_detail(template_id: int, project_id: int, *, gateway=None) -> PhaseDetail:
    """Template, instance (if started), status history, discussions and files."""
    data = _gateway(gateway).dispatch(
        Operation.FETCH_PHASE_DETAIL,
        phase_main_id=template_id,
        project_main_id=project_id,
    ).raise_for_error()
    return PhaseDetail.from_dict(data)


def fetch_instance_detail(instance_id: int, *, gateway=None) -> PhaseDetail:
    """Same as fetch_phase_detail, addressed by instance id (NotFoundError if unknown)."""
    data = _gateway(gateway).dispatch(
        Operation.FETCH_PHASE_DETAIL, phase_project_id=instance_id,
    ).raise_for_error()
    return PhaseDetail.from_dict(data)


def list_project_phases(project_id: int, *, gateway=None) -> list[PhaseSummary]:
    """Every phase template of the project's master project with its current status."""
    data = _gateway(gateway).dispatch(
        Operation.FETCH_PROJECT_PHASES, project_main_id=project_id,
    ).raise_for_error()
    return [PhaseSummary.from_dict(row) for row in data or []]


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

def _log_transition(event, instance_id, from_status, to_status, actor, **extra):
    logger.info(
        "Phase instance %s: %s %s -> %s",
        instance_id, event, from_status, to_status,
        extra={
            "instance_id": instance_id,
            "event": event,
            "from_status": str(from_status),
            "to_status": str(to_status),
            "actor_id": actor.id,
            **extra,
        },
    )


def start_phase(template_id: int, project_id: int, actor: Actor, *, gateway=None) -> PhaseDetail:
    """
    Create the phase instance for (template, project) with an InProgress record.

    Raises:
        PermissionDenied, IllegalTransitionError (instance already exists),
        NotFoundError, ExternalUnavailableError
    """
    check_permission(actor, "start")
    gw = _gateway(gateway)

    detail = fetch_phase_detail(template_id, project_id, gateway=gw)
    if detail.instance is not None:
        raise IllegalTransitionError(
            "start", detail.current_status,
            instance_id=detail.instance_id, reason="phase already started",
        )
    to_status = validate_transition(detail.current_status, "start")

    data = gw.dispatch(
        Operation.START_PHASE_INSTANCE,
        phase_main_id=template_id,
        project_main_id=project_id,
        **actor.to_dict(),
    ).raise_for_error()
    started = PhaseDetail.from_dict(data)

    _log_transition(
        "start", started.instance_id, PhaseStatus.NOT_STARTED, to_status, actor,
        project_id=project_id, template_id=template_id,
    )
    return started


def _transition(
    instance_id: int,
    event: str,
    actor: Actor,
    operation: str,
    *,
    gateway=None,
    policy: ReviewPolicy | None = None,
    **payload,
) -> StatusRecord:
    """Permission → current status → table → guards → backend write."""
    check_permission(actor, event)
    gw = _gateway(gateway)
    policy = policy or ReviewPolicy()

    detail = fetch_instance_detail(instance_id, gateway=gw)
    from_status = detail.current_status
    to_status = validate_transition(from_status, event, instance_id=instance_id)

    if guard_needs_revisions(event, from_status, policy):
        revisions = list_revisions(instance_id, gateway=gw)
        check_review_guards(event, from_status, revisions, policy, instance_id=instance_id)

    data = gw.dispatch(
        operation,
        phase_project_id=instance_id,
        expected_status=from_status.value,
        **actor.to_dict(),
        **payload,
    ).raise_for_error()
    record = StatusRecord.from_dict(data)

    _log_transition(event, instance_id, from_status, record.status, actor)
    return record


def send_to_review(instance_id: int, actor: Actor, *, gateway=None, policy=None) -> StatusRecord:
    return _transition(
        instance_id, "send_to_review", actor, Operation.SEND_TO_REVIEW,
        gateway=gateway, policy=policy,
    )


def approve_phase(instance_id: int, actor: Actor, *, gateway=None, policy=None) -> StatusRecord:
    return _transition(
        instance_id, "approve", actor, Operation.APPROVE_PHASE,
        gateway=gateway, policy=policy, approve=True,
    )


def decline_phase(instance_id: int, actor: Actor, *, gateway=None, policy=None) -> StatusRecord:
    """Final negative outcome; shares the backend operation with approve."""
    return _transition(
        instance_id, "decline", actor, Operation.APPROVE_PHASE,
        gateway=gateway, policy=policy, approve=False,
    )


def request_revision(
    instance_id: int,
    actor: Actor,
    feedback: str,
    reference_file: str | None = None,
    *,
    gateway=None,
    policy: ReviewPolicy | None = None,
) -> RevisionRequest:
    """
    Ask the student for a revision: create the request, then append RevisionNeeded.

    The two writes are separate backend operations.  If the first commits and
    the second fails for any reason, PartialCommitError carries the new
    revision id so the caller can finish with ``complete_revision_request``;
    calling this function again is refused by the answered-revision guard.

    Raises:
        PermissionDenied, ValidationError, IllegalTransitionError,
        ReviewGuardError, PartialCommitError, ExternalUnavailableError
    """
    check_permission(actor, "request_revision")
    feedback = (feedback or "").strip()
    if not feedback:
        raise ValidationError("Revision feedback is required", details={"instance_id": instance_id})

    gw = _gateway(gateway)
    policy = policy or ReviewPolicy()
    detail = fetch_instance_detail(instance_id, gateway=gw)
    from_status = detail.current_status
    validate_transition(from_status, "request_revision", instance_id=instance_id)

    if guard_needs_revisions("request_revision", from_status, policy):
        revisions = list_revisions(instance_id, gateway=gw)
        check_review_guards(
            "request_revision", from_status, revisions, policy, instance_id=instance_id,
        )

    data = gw.dispatch(
        Operation.CREATE_REVISION_REQUEST,
        phase_project_id=instance_id,
        expected_status=from_status.value,
        revision_feed_back=feedback,
        revision_file=reference_file,
        **actor.to_dict(),
    ).raise_for_error()
    revision = RevisionRequest.from_dict(data)

    try:
        record = _append_revision_status(instance_id, revision.id, from_status, actor, gw)
    except Exception as exc:
        logger.error(
            "Revision request %s created but status append failed: %s",
            revision.id, exc,
            extra={
                "instance_id": instance_id,
                "revision_id": revision.id,
                "operation": Operation.APPEND_REVISION_STATUS,
            },
        )
        raise PartialCommitError(
            instance_id, revision.id, Operation.APPEND_REVISION_STATUS, cause=exc,
        ) from exc

    _log_transition(
        "request_revision", instance_id, from_status, record.status, actor,
        revision_id=revision.id,
    )
    return revision


def complete_revision_request(
    instance_id: int,
    actor: Actor,
    revision_id: int,
    *,
    gateway=None,
) -> StatusRecord | None:
    """
    Finish a request_revision that raised PartialCommitError.

    Re-reads the status first.  Returns None without writing when the
    instance is already RevisionNeeded; never creates a revision request.
    """
    check_permission(actor, "request_revision")
    gw = _gateway(gateway)

    detail = fetch_instance_detail(instance_id, gateway=gw)
    from_status = detail.current_status
    if from_status == PhaseStatus.REVISION_NEEDED:
        logger.info(
            "Revision %s already recorded for instance %s", revision_id, instance_id,
            extra={"instance_id": instance_id, "revision_id": revision_id},
        )
        return None

    validate_transition(from_status, "request_revision", instance_id=instance_id)
    record = _append_revision_status(instance_id, revision_id, from_status, actor, gw)
    _log_transition(
        "request_revision", instance_id, from_status, record.status, actor,
        revision_id=revision_id,
    )
    return record


def _append_revision_status(instance_id, revision_id, from_status, actor, gw) -> StatusRecord:
    data = gw.dispatch(
        Operation.APPEND_REVISION_STATUS,
        phase_project_id=instance_id,
        revision_id=revision_id,
        expected_status=from_status.value,
        **actor.to_dict(),
    ).raise_for_error()
    return StatusRecord.from_dict(data)


# ═════════════════════════════════════════════════════════════════════════════
# Discussion & attachments (not constrained by status)
# ═════════════════════════════════════════════════════════════════════════════

def post_discussion(instance_id: int, actor: Actor, text: str, *, gateway=None) -> Discussion:
    check_permission(actor, "post_discussion")
    text = (text or "").strip()
    if not text:
        raise ValidationError("Discussion text is required", details={"instance_id": instance_id})

    data = _gateway(gateway).dispatch(
        Operation.POST_DISCUSSION,
        phase_project_id=instance_id,
        user_id=actor.id,
        user_type=actor.role.value,
        discussion_text=text,
    ).raise_for_error()
    return Discussion.from_dict(data)


def upload_attachment(instance_id: int, actor: Actor, filename: str, *, gateway=None) -> Attachment:
    check_permission(actor, "upload_attachment")
    filename = (filename or "").strip()
    if not filename:
        raise ValidationError("A file name is required", details={"instance_id": instance_id})

    data = _gateway(gateway).dispatch(
        Operation.UPLOAD_ATTACHMENT,
        phase_project_id=instance_id,
        user_id=actor.id,
        user_type=actor.role.value,
        phase_file_name=filename,
    ).raise_for_error()
    attachment = Attachment.from_dict(data)
    logger.info(
        "Attachment %s uploaded to phase instance %s", attachment.filename, instance_id,
        extra={"instance_id": instance_id, "actor_id": actor.id},
    )
    return attachment
