"""
Phase records: value objects shared by the state machine, the revision
subsystem and the analytics engine.

All records are parsed from the dispatch wire format (snake_case keys used by
the dashboard backend) via ``from_dict`` and serialised back with ``to_dict``.

Current-status rule:
    The current status of a phase instance is the status of the StatusRecord
    with the greatest ``created_at``.  Records sharing a timestamp resolve to
    the one appended last.  An empty history means ``NotStarted``.
    ``current_status()`` is the only implementation of this rule; the
    backend, the lifecycle service and the analytics engine all call it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable

from phasereview.core.exceptions import UnknownStatusError


# ═════════════════════════════════════════════════════════════════════════════
# Status enum
# ═════════════════════════════════════════════════════════════════════════════

class PhaseStatus(str, Enum):
    """Closed set of phase instance statuses.

    ``Approved`` and ``Completed`` are kept as separate members: both are
    terminal and both count as resolved, but they are not merged.
    """

    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    UNDER_REVIEW = "UnderReview"
    REVISION_NEEDED = "RevisionNeeded"
    APPROVED = "Approved"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: Any) -> "PhaseStatus":
        """Parse an enum value, a display label or a known legacy spelling.

        Raises:
            UnknownStatusError: for anything else (never defaults silently).
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise UnknownStatusError(value)
        key = " ".join(value.replace("_", " ").split()).lower()
        try:
            return _LOOKUP[key]
        except KeyError:
            raise UnknownStatusError(value) from None

    def __str__(self) -> str:
        return self.value


_LABELS = {
    PhaseStatus.NOT_STARTED: "Not Started",
    PhaseStatus.IN_PROGRESS: "In Progress",
    PhaseStatus.UNDER_REVIEW: "Under Review",
    PhaseStatus.REVISION_NEEDED: "Revision Needed",
    PhaseStatus.APPROVED: "Approved",
    PhaseStatus.COMPLETED: "Completed",
    PhaseStatus.FAILED: "Failed",
}

# Spellings written by the legacy dashboard backend that still exist in stored history.
LEGACY_STATUS_ALIASES = {
    "revision nedded": PhaseStatus.REVISION_NEEDED,
    "revisions needed": PhaseStatus.REVISION_NEEDED,
    "needs revision": PhaseStatus.REVISION_NEEDED,
    "passed": PhaseStatus.COMPLETED,
}

_LOOKUP: dict[str, PhaseStatus] = {}
for _status in PhaseStatus:
    _LOOKUP[_status.value.lower()] = _status
    _LOOKUP[_LABELS[_status].lower()] = _status
_LOOKUP.update(LEGACY_STATUS_ALIASES)

TERMINAL_STATUSES = frozenset({
    PhaseStatus.APPROVED,
    PhaseStatus.COMPLETED,
    PhaseStatus.FAILED,
})

# Statuses in which a student may still upload a revision response.
ANSWERABLE_STATUSES = frozenset({
    PhaseStatus.REVISION_NEEDED,
    PhaseStatus.APPROVED,
    PhaseStatus.COMPLETED,
    PhaseStatus.FAILED,
})


# ═════════════════════════════════════════════════════════════════════════════
# Parsing helpers
# ═════════════════════════════════════════════════════════════════════════════

def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 (or ``YYYY-MM-DD HH:MM:SS``) timestamp; naive means UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_day(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def _optional_int(value: Any) -> int | None:
    return int(value) if value not in (None, "") else None


# ═════════════════════════════════════════════════════════════════════════════
# Records
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class PhaseTemplate:
    """Milestone definition owned by a master project (read-only here)."""
    id: int
    name: str
    description: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    sequence: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseTemplate":
        return cls(
            id=int(data["phase_main_id"]),
            name=data.get("phase_main_name") or "",
            description=data.get("phase_main_description"),
            start_date=parse_day(data.get("phase_start_date")),
            end_date=parse_day(data.get("phase_end_date")),
            sequence=int(data.get("phase_sequence") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "phase_main_id": self.id,
            "phase_main_name": self.name,
            "phase_main_description": self.description,
            "phase_start_date": _iso(self.start_date),
            "phase_end_date": _iso(self.end_date),
            "phase_sequence": self.sequence,
        }


@dataclass
class PhaseInstance:
    """One student project's attempt at a phase template."""
    id: int
    template_id: int
    project_id: int
    created_by: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseInstance":
        return cls(
            id=int(data["phase_project_id"]),
            template_id=int(data["phase_main_id"]),
            project_id=int(data["project_main_id"]),
            created_by=_optional_int(data.get("created_by")),
            created_at=parse_timestamp(data.get("created_at")),
        )

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.id,
            "phase_main_id": self.template_id,
            "project_main_id": self.project_id,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }


@dataclass
class StatusRecord:
    """Append-only status log entry."""
    instance_id: int
    status: PhaseStatus
    created_by: int | None
    created_at: datetime

    @classmethod
    def from_dict(cls, data: dict) -> "StatusRecord":
        created_at = parse_timestamp(data.get("phase_project_status_created_at"))
        if created_at is None:
            raise ValueError("status record is missing phase_project_status_created_at")
        return cls(
            instance_id=int(data["phase_project_id"]),
            status=PhaseStatus.parse(data["status_name"]),
            created_by=_optional_int(data.get("phase_project_status_created_by")),
            created_at=created_at,
        )

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.instance_id,
            "status_name": self.status.value,
            "phase_project_status_created_by": self.created_by,
            "phase_project_status_created_at": _iso(self.created_at),
        }


@dataclass
class RevisionRequest:
    """One teacher feedback cycle, answerable once by the student."""
    id: int
    instance_id: int
    created_by: int | None
    feedback: str
    reference_file: str | None = None
    revised_file: str | None = None
    answered_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_answered(self) -> bool:
        return bool(self.revised_file)

    @classmethod
    def from_dict(cls, data: dict) -> "RevisionRequest":
        return cls(
            id=int(data["revision_id"]),
            instance_id=int(data["revision_phase_project_id"]),
            created_by=_optional_int(data.get("revision_created_by")),
            feedback=data.get("revision_feed_back") or "",
            reference_file=data.get("revision_file") or None,
            revised_file=data.get("revised_file") or None,
            answered_at=parse_timestamp(data.get("revised_at")),
            created_at=parse_timestamp(data.get("revision_created_at")),
        )

    def to_dict(self) -> dict:
        return {
            "revision_id": self.id,
            "revision_phase_project_id": self.instance_id,
            "revision_created_by": self.created_by,
            "revision_feed_back": self.feedback,
            "revision_file": self.reference_file,
            "revised_file": self.revised_file,
            "revised_at": _iso(self.answered_at),
            "revision_created_at": _iso(self.created_at),
            "is_answered": self.is_answered,
        }


@dataclass
class Discussion:
    instance_id: int
    author_id: int
    text: str
    author_role: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Discussion":
        return cls(
            instance_id=int(data["phase_project_id"]),
            author_id=int(data["user_id"]),
            text=data.get("discussion_text") or "",
            author_role=data.get("user_type"),
            created_at=parse_timestamp(data.get("discussion_created_at")),
        )

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.instance_id,
            "user_id": self.author_id,
            "user_type": self.author_role,
            "discussion_text": self.text,
            "discussion_created_at": _iso(self.created_at),
        }


@dataclass
class Attachment:
    instance_id: int
    author_id: int
    filename: str
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Attachment":
        return cls(
            instance_id=int(data["phase_project_id"]),
            author_id=int(data["user_id"]),
            filename=data["phase_file_name"],
            created_at=parse_timestamp(data.get("phase_file_created_at")),
        )

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.instance_id,
            "user_id": self.author_id,
            "phase_file_name": self.filename,
            "phase_file_created_at": _iso(self.created_at),
        }


@dataclass
class Task:
    """Project task; only the ``done`` flag feeds the analytics engine."""
    id: int
    project_id: int
    name: str = ""
    done: bool = False
    priority: str | None = None
    assignees: list[int] = field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=int(data["project_task_id"]),
            project_id=int(data["project_project_main_id"]),
            name=data.get("project_task_name") or "",
            done=int(data.get("project_task_is_done") or 0) == 1,
            priority=data.get("priority_name"),
            assignees=[int(u) for u in data.get("assigned_users") or []],
            start_date=parse_day(data.get("project_start_date")),
            end_date=parse_day(data.get("project_end_date")),
        )

    def to_dict(self) -> dict:
        return {
            "project_task_id": self.id,
            "project_project_main_id": self.project_id,
            "project_task_name": self.name,
            "project_task_is_done": 1 if self.done else 0,
            "priority_name": self.priority,
            "assigned_users": list(self.assignees),
            "project_start_date": _iso(self.start_date),
            "project_end_date": _iso(self.end_date),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Current status
# ═════════════════════════════════════════════════════════════════════════════

def current_status(records: Iterable[StatusRecord]) -> PhaseStatus:
    """Return the status of the most recently created record, or NotStarted."""
    latest: StatusRecord | None = None
    for record in records:
        if latest is None or record.created_at >= latest.created_at:
            latest = record
    return latest.status if latest is not None else PhaseStatus.NOT_STARTED


@dataclass
class PhaseDetail:
    """Everything the workspace needs about one (template, project) pair."""
    template: PhaseTemplate | None
    project_id: int
    instance: PhaseInstance | None = None
    history: list[StatusRecord] = field(default_factory=list)
    discussions: list[Discussion] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def current_status(self) -> PhaseStatus:
        return current_status(self.history)

    @property
    def instance_id(self) -> int | None:
        return self.instance.id if self.instance else None

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseDetail":
        phase = data.get("phase")
        template = data.get("template")
        return cls(
            template=PhaseTemplate.from_dict(template) if template else None,
            project_id=int(data["project_main_id"]),
            instance=PhaseInstance.from_dict(phase) if phase else None,
            history=[StatusRecord.from_dict(r) for r in data.get("status_history") or []],
            discussions=[Discussion.from_dict(d) for d in data.get("discussions") or []],
            attachments=[Attachment.from_dict(f) for f in data.get("files") or []],
        )

    def to_dict(self) -> dict:
        return {
            "template": self.template.to_dict() if self.template else None,
            "project_main_id": self.project_id,
            "phase": self.instance.to_dict() if self.instance else None,
            "status": self.current_status.value,
            "status_history": [r.to_dict() for r in self.history],
            "discussions": [d.to_dict() for d in self.discussions],
            "files": [f.to_dict() for f in self.attachments],
        }


@dataclass
class PhaseSummary:
    """Template plus current status of its instance in one project."""
    template: PhaseTemplate
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    instance_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseSummary":
        return cls(
            template=PhaseTemplate.from_dict(data),
            status=PhaseStatus.parse(data.get("status") or PhaseStatus.NOT_STARTED.value),
            instance_id=_optional_int(data.get("phase_project_id")),
        )

    def to_dict(self) -> dict:
        out = self.template.to_dict()
        out["status"] = self.status.value
        out["phase_project_id"] = self.instance_id
        return out
