"""
Progress & Risk Analytics: project completion and health signal.

Pure functions of (tasks, phases).  Nothing here is stored or cached; every
call recomputes from the data it is given, so the numbers can never be stale.
``fetch_project_progress`` is the only function that performs I/O: it reads
the inputs through the backend gateway and hands them to
``compute_project_progress``.

Formulas:
    task %     = round(done / total * 100), 0 without tasks
    phase %    = round(resolved / total * 100), resolved = Completed | Approved | Failed
    overall %  = round(sum(pct_i * w_i) / sum(w_i)), tasks 0.6, phases 0.4,
                 a weight only counts when its side has at least one item

    A Failed phase is resolved: it no longer needs work, so it counts toward
    phase progress even though it is a negative outcome.

Risk tiers (no phases → Unknown):
    Critical  every phase failed and tasks below 100 %
    Medium    any failure, ≥30 % of phases waiting on a revision,
              or tasks < 60 % with fewer than half the phases completed/approved
    Good      otherwise
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from phasereview.integrations import backend_gateway as gw_module
from phasereview.integrations.backend_gateway import Operation
from phasereview.services.phase_lifecycle import list_project_phases
from phasereview.services.phase_records import PhaseStatus, Task

logger = logging.getLogger(__name__)

TASK_WEIGHT = 0.6
PHASE_WEIGHT = 0.4

RESOLVED_STATUSES = frozenset({
    PhaseStatus.COMPLETED,
    PhaseStatus.APPROVED,
    PhaseStatus.FAILED,
})

_REVISION_RATE_MEDIUM = 30
_TASK_RATE_LOW = 60
_COMPLETION_RATE_LOW = 50


class ProgressLabel(str, Enum):
    COMPLETED = "Completed"
    NEARLY_COMPLETE = "NearlyComplete"
    IN_PROGRESS = "InProgress"
    STARTED = "Started"
    NOT_STARTED = "NotStarted"

    def __str__(self) -> str:
        return self.value


class RiskLevel(str, Enum):
    GOOD = "Good"
    MEDIUM = "Medium"
    CRITICAL = "Critical"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


RISK_RECOMMENDATIONS: dict[RiskLevel, tuple[str, ...]] = {
    RiskLevel.GOOD: (
        "Project is on track; keep the current pace.",
        "Continue submitting phases for review as they are finished.",
        "Keep task statuses up to date so progress stays accurate.",
    ),
    RiskLevel.MEDIUM: (
        "Answer outstanding revision requests before starting new work.",
        "Review failed phases with the adviser and agree on corrective actions.",
        "Break overdue tasks into smaller items and reassign where needed.",
        "Schedule a progress check-in with the team this week.",
    ),
    RiskLevel.CRITICAL: (
        "Every phase has failed; meet the adviser immediately.",
        "Re-plan the remaining scope and deadlines with the team.",
        "Finish all open tasks before resubmitting any phase.",
        "Escalate blockers to the course coordinator.",
    ),
    RiskLevel.UNKNOWN: (
        "No phases are defined for this project yet; risk cannot be assessed.",
    ),
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _pct(numerator: int, denominator: int) -> int:
    """Zero-safe whole percentage, halves rounded up."""
    return _round_half_up(numerator * 100 / denominator) if denominator else 0


def _status_of(phase) -> PhaseStatus:
    """Accept a PhaseSummary, a PhaseStatus or a raw status string."""
    status = getattr(phase, "status", phase)
    return PhaseStatus.parse(status)


def _done(task) -> bool:
    if isinstance(task, Task):
        return task.done
    if isinstance(task, dict):
        return int(task.get("project_task_is_done") or 0) == 1
    raise TypeError(f"Expected a Task or a task row, got {type(task).__name__}")


# ═════════════════════════════════════════════════════════════════════════════
# Core metric functions
# ═════════════════════════════════════════════════════════════════════════════

def compute_task_progress(tasks: Iterable) -> dict:
    """{completed, total, percentage} for Task objects or raw task rows; anything else is a TypeError."""
    tasks = list(tasks)
    completed = sum(1 for t in tasks if _done(t))
    return {"completed": completed, "total": len(tasks), "percentage": _pct(completed, len(tasks))}


def compute_phase_progress(phases: Iterable) -> dict:
    """{completed, total, percentage}; completed counts every resolved phase."""
    statuses = [_status_of(p) for p in phases]
    resolved = sum(1 for s in statuses if s in RESOLVED_STATUSES)
    return {"completed": resolved, "total": len(statuses), "percentage": _pct(resolved, len(statuses))}


def compute_overall_progress(task_progress: dict, phase_progress: dict) -> int:
    """Weighted blend of task and phase percentages."""
    weighted = 0.0
    total_weight = 0.0
    if task_progress["total"] > 0:
        weighted += task_progress["percentage"] * TASK_WEIGHT
        total_weight += TASK_WEIGHT
    if phase_progress["total"] > 0:
        weighted += phase_progress["percentage"] * PHASE_WEIGHT
        total_weight += PHASE_WEIGHT
    if not total_weight:
        return 0
    return _round_half_up(weighted / total_weight)


def status_label(overall: int) -> ProgressLabel:
    if overall >= 100:
        return ProgressLabel.COMPLETED
    if overall >= 80:
        return ProgressLabel.NEARLY_COMPLETE
    if overall >= 50:
        return ProgressLabel.IN_PROGRESS
    if overall > 0:
        return ProgressLabel.STARTED
    return ProgressLabel.NOT_STARTED


def progress_band(percentage: int) -> str:
    """Colour band for a progress percentage."""
    if percentage >= 80:
        return "green"
    if percentage >= 60:
        return "light-green"
    if percentage >= 40:
        return "yellow"
    if percentage >= 20:
        return "orange"
    return "red"


def status_breakdown(phases: Iterable) -> dict[str, int]:
    """Count of phases per status; every status is present, zero or not."""
    counts = {status.value: 0 for status in PhaseStatus}
    for phase in phases:
        counts[_status_of(phase).value] += 1
    return counts


def classify_risk(phases: Iterable, task_rate: int) -> RiskLevel:
    """
    Three-tier health signal from the phase status mix and task completion.

    Args:
        phases: PhaseSummary objects, statuses or status strings.
        task_rate: Task completion percentage (as from compute_task_progress).
    """
    breakdown = status_breakdown(phases)
    total = sum(breakdown.values())
    if total == 0:
        return RiskLevel.UNKNOWN

    failed = breakdown[PhaseStatus.FAILED.value]
    revision_rate = breakdown[PhaseStatus.REVISION_NEEDED.value] * 100 / total
    completion_rate = (
        breakdown[PhaseStatus.COMPLETED.value] + breakdown[PhaseStatus.APPROVED.value]
    ) * 100 / total

    if failed == total and task_rate < 100:
        return RiskLevel.CRITICAL
    if (
        failed > 0
        or revision_rate >= _REVISION_RATE_MEDIUM
        or (task_rate < _TASK_RATE_LOW and completion_rate < _COMPLETION_RATE_LOW)
    ):
        return RiskLevel.MEDIUM
    return RiskLevel.GOOD


# ═════════════════════════════════════════════════════════════════════════════
# Project report
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class ProgressReport:
    tasks_total: int
    tasks_done: int
    task_percentage: int
    phases_total: int
    phases_resolved: int
    phase_percentage: int
    overall_percentage: int
    label: ProgressLabel
    risk: RiskLevel
    recommendations: tuple[str, ...]
    breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def tasks_pending(self) -> int:
        return self.tasks_total - self.tasks_done

    @property
    def phases_pending(self) -> int:
        return self.phases_total - self.phases_resolved

    @property
    def band(self) -> str:
        return progress_band(self.overall_percentage)

    def to_dict(self) -> dict:
        return {
            "tasks": {
                "completed": self.tasks_done,
                "pending": self.tasks_pending,
                "total": self.tasks_total,
                "percentage": self.task_percentage,
            },
            "phases": {
                "completed": self.phases_resolved,
                "pending": self.phases_pending,
                "total": self.phases_total,
                "percentage": self.phase_percentage,
                "breakdown": dict(self.breakdown),
            },
            "overall": {
                "percentage": self.overall_percentage,
                "status": self.label.value,
                "band": self.band,
            },
            "risk": {
                "level": self.risk.value,
                "recommendations": list(self.recommendations),
            },
        }


def compute_project_progress(tasks: Iterable, phases: Iterable) -> ProgressReport:
    """Completion percentages, label and risk for one project."""
    tasks = list(tasks)
    phases = list(phases)

    task_progress = compute_task_progress(tasks)
    phase_progress = compute_phase_progress(phases)
    overall = compute_overall_progress(task_progress, phase_progress)
    risk = classify_risk(phases, task_progress["percentage"])

    return ProgressReport(
        tasks_total=task_progress["total"],
        tasks_done=task_progress["completed"],
        task_percentage=task_progress["percentage"],
        phases_total=phase_progress["total"],
        phases_resolved=phase_progress["completed"],
        phase_percentage=phase_progress["percentage"],
        overall_percentage=overall,
        label=status_label(overall),
        risk=risk,
        recommendations=RISK_RECOMMENDATIONS[risk],
        breakdown=status_breakdown(phases),
    )


def fetch_tasks(project_id: int, *, gateway=None) -> list[Task]:
    gw = gateway or gw_module.backend_gateway
    data = gw.dispatch(Operation.FETCH_TASKS, project_main_id=project_id).raise_for_error()
    return [Task.from_dict(row) for row in data or []]


def fetch_project_progress(project_id: int, *, gateway=None) -> ProgressReport:
    """Read tasks and phase statuses for a project, then compute its report."""
    gw = gateway or gw_module.backend_gateway
    tasks = fetch_tasks(project_id, gateway=gw)
    phases = list_project_phases(project_id, gateway=gw)

    report = compute_project_progress(tasks, phases)
    logger.debug(
        "Project %s progress=%s%% risk=%s", project_id, report.overall_percentage, report.risk,
        extra={"project_id": project_id},
    )
    return report
