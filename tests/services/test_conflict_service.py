# -*- coding: utf-8 -*-
"""
Tests for the Conflict Resolution Engine.
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from factories import building, claim, person, unit
from models.conflict import SENIOR_REVIEW_QUEUE, ConflictPriority, ConflictStatus, ResolutionAction
from models.import_package import ImportStatus
from services.conflict_service import queue_order
from services.exceptions import (
    ConflictBlockingError, InvalidStateTransitionError, NotFoundError, ValidationError,
)
from utils.datetime_utils import utc_now


@pytest.fixture
def conflicted(upload, pipeline):
    """A staged package with one within-batch person conflict; returns the conflict."""
    upload("pkg-1", {"persons": [person("p-1", mobile_number="0933111222"), person("p-2", father="احمد")]})
    pipeline.staging.stage("pkg-1")
    result = pipeline.detection.detect("pkg-1")
    assert len(result.new_conflicts) == 1
    return result.new_conflicts[0]


class TestResolve:
    """Test recording decisions."""

    def test_reason_is_required(self, pipeline, conflicted):
        with pytest.raises(ValidationError):
            pipeline.conflicts.resolve(conflicted.id, ResolutionAction.KEEP_BOTH, "  ")
        assert pipeline.conflicts.get(conflicted.id).status == ConflictStatus.PENDING_REVIEW

    def test_keep_both(self, pipeline, conflicted):
        resolved = pipeline.conflicts.resolve(
            conflicted.id, ResolutionAction.KEEP_BOTH, "different people", actor="reviewer")

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolution_action == ResolutionAction.KEEP_BOTH
        assert resolved.resolved_by == "reviewer"
        assert resolved.resolved_at is not None

    def test_ignore(self, pipeline, conflicted):
        resolved = pipeline.conflicts.resolve(conflicted.id, ResolutionAction.IGNORE, "false positive")
        assert resolved.status == ConflictStatus.IGNORED

    def test_ignored_pair_is_not_raised_again(self, pipeline, conflicted):
        pipeline.conflicts.resolve(conflicted.id, ResolutionAction.IGNORE, "false positive")

        rerun = pipeline.detection.detect("pkg-1")

        assert rerun.new_conflicts == []
        assert rerun.pending_conflicts == 0
        assert pipeline.conflicts.get(conflicted.id).status == ConflictStatus.IGNORED
        assert pipeline.packages.get("pkg-1").status == ImportStatus.DUPLICATES_DETECTED

    def test_keep_first_discards_second(self, pipeline, conflicted):
        resolved = pipeline.conflicts.resolve(conflicted.id, ResolutionAction.KEEP_FIRST, "same person")
        assert resolved.survivor_entity_id == conflicted.first_entity_id
        assert resolved.discarded_entity_id == conflicted.second_entity_id

    def test_merge_records_provenance(self, pipeline, conflicted):
        resolved = pipeline.conflicts.resolve(
            conflicted.id, ResolutionAction.MERGE, "same person",
            survivor_id=conflicted.second_entity_id,
            field_choices={"mobile_number": "first"},
        )

        assert resolved.survivor_entity_id == conflicted.second_entity_id
        assert resolved.merge_mapping["mobile_number"] == {"source": "first", "value": "0933111222"}
        assert resolved.merge_mapping["first_name"]["source"] == "second"

    def test_merge_rejects_foreign_survivor(self, pipeline, conflicted):
        with pytest.raises(ValidationError):
            pipeline.conflicts.resolve(conflicted.id, ResolutionAction.MERGE, "x", survivor_id="elsewhere")

    def test_merge_rejects_bad_field_choice(self, pipeline, conflicted):
        with pytest.raises(ValidationError):
            pipeline.conflicts.resolve(conflicted.id, ResolutionAction.MERGE, "x",
                                       field_choices={"gender": "third"})

    def test_cannot_resolve_twice(self, pipeline, conflicted):
        pipeline.conflicts.resolve(conflicted.id, ResolutionAction.KEEP_BOTH, "different")
        with pytest.raises(InvalidStateTransitionError):
            pipeline.conflicts.resolve(conflicted.id, ResolutionAction.IGNORE, "again")

    def test_last_resolution_releases_package(self, pipeline, conflicted):
        assert pipeline.packages.get("pkg-1").status == ImportStatus.AWAITING_RESOLUTION

        pipeline.conflicts.resolve(conflicted.id, ResolutionAction.KEEP_BOTH, "different")

        package = pipeline.packages.get("pkg-1")
        assert package.status == ImportStatus.DUPLICATES_DETECTED
        assert package.resolved_conflict_count == 1
        assert package.pending_conflict_count == 0

    def test_unknown_conflict(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.conflicts.resolve("missing", ResolutionAction.KEEP_BOTH, "x")

    def test_merge_not_offered_for_claims(self, upload, pipeline):
        upload("pkg-1", {
            "buildings": [building()],
            "property_units": [unit()],
            "persons": [person()],
            "claims": [claim("c-1"), claim("c-2")],
        })
        pipeline.staging.stage("pkg-1")
        conflict = pipeline.detection.detect("pkg-1").new_conflicts[0]

        with pytest.raises(ValidationError):
            pipeline.conflicts.resolve(conflict.id, ResolutionAction.MERGE, "combine")

        kept = pipeline.conflicts.resolve(conflict.id, ResolutionAction.KEEP_FIRST, "one claim only")
        assert kept.status == ConflictStatus.RESOLVED


class TestEscalation:
    """Test escalation and the review queue."""

    def test_escalate_moves_to_senior_queue(self, pipeline, conflicted):
        escalated = pipeline.conflicts.escalate(conflicted.id, "needs legal review", actor="reviewer")

        assert escalated.is_escalated
        assert escalated.status == ConflictStatus.PENDING_REVIEW
        assert escalated.review_queue == SENIOR_REVIEW_QUEUE
        assert escalated.priority == ConflictPriority.HIGH
        assert escalated.escalated_by == "reviewer"

    def test_escalate_requires_reason(self, pipeline, conflicted):
        with pytest.raises(ValidationError):
            pipeline.conflicts.escalate(conflicted.id, "")

    def test_escalated_conflict_still_blocks_approval(self, pipeline, conflicted):
        pipeline.conflicts.escalate(conflicted.id, "needs legal review")
        with pytest.raises(ConflictBlockingError):
            pipeline.commits.approve("pkg-1")

    def test_list_by_queue(self, pipeline, conflicted):
        pipeline.conflicts.escalate(conflicted.id, "needs legal review")
        assert [c.id for c in pipeline.conflicts.list(review_queue=SENIOR_REVIEW_QUEUE)] == [conflicted.id]
        assert pipeline.conflicts.list(review_queue="data-manager") == []

    def test_assign(self, pipeline, conflicted):
        assigned = pipeline.conflicts.assign(conflicted.id, "reviewer-2", actor="manager")
        assert assigned.assigned_to == "reviewer-2"
        assert [c.id for c in pipeline.conflicts.list(assigned_to="reviewer-2")] == [conflicted.id]


class TestQueueOrder:
    """Test ordering and overdue derivation."""

    def test_escalated_then_overdue_then_priority(self, conflicted):
        now = utc_now()

        normal = replace(conflicted, id="normal", priority=ConflictPriority.NORMAL, detected_at=now)
        high = replace(conflicted, id="high", priority=ConflictPriority.HIGH, detected_at=now)
        overdue = replace(conflicted, id="overdue", priority=ConflictPriority.LOW,
                          detected_at=now - timedelta(hours=100))
        escalated = replace(conflicted, id="escalated", priority=ConflictPriority.LOW,
                            detected_at=now, is_escalated=True)

        ordered = queue_order([normal, high, overdue, escalated], now)

        assert [c.id for c in ordered] == ["escalated", "overdue", "high", "normal"]

    def test_overdue_filter_and_summary(self, pipeline, conflicted):
        later = utc_now() + timedelta(hours=conflicted.target_resolution_hours + 1)

        assert pipeline.conflicts.list(overdue_only=True) == []
        assert [c.id for c in pipeline.conflicts.list(overdue_only=True, now=later)] == [conflicted.id]

        summary = pipeline.conflicts.summary(now=later)
        assert summary["total"] == 1
        assert summary["overdue"] == 1
        assert summary["by_status"]["PendingReview"] == 1
        assert summary["by_type"]["PersonDuplicate"] == 1

    def test_resolved_conflict_is_never_overdue(self, pipeline, conflicted):
        pipeline.conflicts.resolve(conflicted.id, ResolutionAction.KEEP_BOTH, "different")
        later = utc_now() + timedelta(days=30)
        assert pipeline.conflicts.get(conflicted.id).is_overdue(later) is False
