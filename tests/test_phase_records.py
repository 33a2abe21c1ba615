"""Unit tests for phasereview.services.phase_records.

Coverage
--------
    - PhaseStatus.parse: values, labels, legacy spellings, unknown strings
    - current_status: latest created_at wins, ties go to the later append,
      empty history is NotStarted
    - wire parsing of records and PhaseDetail
"""

from datetime import datetime, timedelta, timezone

import pytest

from phasereview.core.exceptions import UnknownStatusError
from phasereview.services.phase_records import (
    PhaseDetail,
    PhaseStatus,
    PhaseSummary,
    RevisionRequest,
    StatusRecord,
    Task,
    current_status,
    parse_timestamp,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _rec(status, minutes=0, instance_id=1):
    return StatusRecord(
        instance_id=instance_id,
        status=status,
        created_by=1,
        created_at=T0 + timedelta(minutes=minutes),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Status parsing
# ═════════════════════════════════════════════════════════════════════════════


class TestStatusParsing:

    @pytest.mark.parametrize("raw,expected", [
        ("InProgress", PhaseStatus.IN_PROGRESS),
        ("In Progress", PhaseStatus.IN_PROGRESS),
        ("under review", PhaseStatus.UNDER_REVIEW),
        ("REVISION_NEEDED", PhaseStatus.REVISION_NEEDED),
        ("Revision Needed", PhaseStatus.REVISION_NEEDED),
        ("Approved", PhaseStatus.APPROVED),
        ("  Completed ", PhaseStatus.COMPLETED),
        ("failed", PhaseStatus.FAILED),
        ("Not Started", PhaseStatus.NOT_STARTED),
    ])
    def test_parse_values_and_labels(self, raw, expected):
        assert PhaseStatus.parse(raw) is expected

    @pytest.mark.parametrize("raw", ["Revision Nedded", "Needs Revision", "Revisions Needed"])
    def test_parse_legacy_revision_spellings(self, raw):
        assert PhaseStatus.parse(raw) is PhaseStatus.REVISION_NEEDED

    def test_parse_legacy_passed_is_completed(self):
        assert PhaseStatus.parse("Passed") is PhaseStatus.COMPLETED

    @pytest.mark.parametrize("raw", ["Done", "", "in-progress", None, 3])
    def test_unknown_status_fails_fast(self, raw):
        with pytest.raises(UnknownStatusError):
            PhaseStatus.parse(raw)

    def test_unknown_status_is_a_value_error(self):
        with pytest.raises(ValueError):
            PhaseStatus.parse("Pending")

    def test_terminal_statuses(self):
        assert PhaseStatus.APPROVED.is_terminal
        assert PhaseStatus.COMPLETED.is_terminal
        assert PhaseStatus.FAILED.is_terminal
        assert not PhaseStatus.REVISION_NEEDED.is_terminal

    def test_str_is_wire_value(self):
        assert str(PhaseStatus.UNDER_REVIEW) == "UnderReview"
        assert PhaseStatus.UNDER_REVIEW.label == "Under Review"


# ═════════════════════════════════════════════════════════════════════════════
# Current status rule
# ═════════════════════════════════════════════════════════════════════════════


class TestCurrentStatus:

    def test_empty_history_is_not_started(self):
        assert current_status([]) is PhaseStatus.NOT_STARTED

    def test_latest_created_at_wins_regardless_of_order(self):
        history = [
            _rec(PhaseStatus.UNDER_REVIEW, minutes=10),
            _rec(PhaseStatus.IN_PROGRESS, minutes=0),
            _rec(PhaseStatus.REVISION_NEEDED, minutes=20),
        ]
        assert current_status(history) is PhaseStatus.REVISION_NEEDED

    def test_tie_goes_to_later_append(self):
        history = [
            _rec(PhaseStatus.IN_PROGRESS, minutes=0),
            _rec(PhaseStatus.UNDER_REVIEW, minutes=5),
            _rec(PhaseStatus.APPROVED, minutes=5),
        ]
        assert current_status(history) is PhaseStatus.APPROVED

        history[1], history[2] = history[2], history[1]
        assert current_status(history) is PhaseStatus.UNDER_REVIEW

    def test_phase_detail_uses_the_same_rule(self):
        detail = PhaseDetail(
            template=None,
            project_id=1,
            history=[_rec(PhaseStatus.UNDER_REVIEW, 3), _rec(PhaseStatus.IN_PROGRESS, 1)],
        )
        assert detail.current_status is PhaseStatus.UNDER_REVIEW


# ═════════════════════════════════════════════════════════════════════════════
# Wire format
# ═════════════════════════════════════════════════════════════════════════════


class TestWireFormat:

    def test_naive_timestamp_is_utc(self):
        parsed = parse_timestamp("2024-03-01 09:00:00")
        assert parsed.tzinfo is not None
        assert parsed == T0

    def test_zulu_timestamp(self):
        assert parse_timestamp("2024-03-01T09:00:00Z") == T0

    def test_status_record_requires_timestamp(self):
        with pytest.raises(ValueError):
            StatusRecord.from_dict({"phase_project_id": 1, "status_name": "InProgress"})

    def test_status_record_parses_legacy_name(self):
        record = StatusRecord.from_dict({
            "phase_project_id": 4,
            "status_name": "Revision Nedded",
            "phase_project_status_created_by": "12",
            "phase_project_status_created_at": "2024-03-01T09:00:00",
        })
        assert record.status is PhaseStatus.REVISION_NEEDED
        assert record.created_by == 12
        assert record.to_dict()["status_name"] == "RevisionNeeded"

    def test_revision_answered_flag(self):
        revision = RevisionRequest.from_dict({
            "revision_id": 9,
            "revision_phase_project_id": 4,
            "revision_feed_back": "Fix the ERD",
            "revision_file": "",
            "revised_file": None,
        })
        assert not revision.is_answered
        assert revision.reference_file is None
        assert revision.to_dict()["is_answered"] is False

    def test_task_done_flag_is_integer_one(self):
        done = Task.from_dict({"project_task_id": 1, "project_project_main_id": 2, "project_task_is_done": 1})
        open_ = Task.from_dict({"project_task_id": 2, "project_project_main_id": 2, "project_task_is_done": 0})
        assert done.done and not open_.done

    def test_phase_detail_without_instance(self):
        detail = PhaseDetail.from_dict({
            "template": {"phase_main_id": 3, "phase_main_name": "Proposal"},
            "project_main_id": 8,
            "phase": None,
        })
        assert detail.instance is None
        assert detail.instance_id is None
        assert detail.current_status is PhaseStatus.NOT_STARTED
        assert detail.to_dict()["status"] == "NotStarted"

    def test_phase_summary_defaults_to_not_started(self):
        summary = PhaseSummary.from_dict({"phase_main_id": 3, "phase_main_name": "Design"})
        assert summary.status is PhaseStatus.NOT_STARTED
        assert summary.instance_id is None
