# -*- coding: utf-8 -*-
"""
Conflict resolution entity model.

One row per detected duplicate pair. ``first_entity_id`` is always a staging
row id; ``second_entity_id`` is either another staging row of the same
package (within-batch) or a production entity id.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from utils.datetime_utils import utc_now, to_isoformat


class ConflictType(Enum):
    """Types of conflicts."""
    PERSON_DUPLICATE = "PersonDuplicate"
    PROPERTY_DUPLICATE = "PropertyDuplicate"
    CLAIM_CONFLICT = "ClaimConflict"


class ConflictStatus(Enum):
    """Status of a conflict."""
    PENDING_REVIEW = "PendingReview"
    RESOLVED = "Resolved"
    IGNORED = "Ignored"


class ConfidenceLevel(Enum):
    """Which matching rule fired."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class ConflictPriority(Enum):
    """Queue priority."""
    HIGH = "High"
    NORMAL = "Normal"
    LOW = "Low"

    @property
    def rank(self) -> int:
        return {"High": 1, "Normal": 2, "Low": 3}[self.value]


class ResolutionAction(Enum):
    """Resolution actions for conflicts."""
    KEEP_BOTH = "KeepBoth"
    MERGE = "Merge"
    KEEP_FIRST = "KeepFirst"
    KEEP_SECOND = "KeepSecond"
    IGNORE = "Ignore"


SENIOR_REVIEW_QUEUE = "senior-review"
DEFAULT_REVIEW_QUEUE = "data-manager"


def make_pair_key(entity_type: str, first_id: str, second_id: str) -> str:
    """Order-independent key for a candidate pair."""
    low, high = sorted([str(first_id), str(second_id)])
    return f"{entity_type}:{low}|{high}"


def determine_priority(confidence: ConfidenceLevel, score: float) -> ConflictPriority:
    if confidence == ConfidenceLevel.HIGH and score >= 90:
        return ConflictPriority.HIGH
    if confidence == ConfidenceLevel.MEDIUM or score >= 70:
        return ConflictPriority.NORMAL
    return ConflictPriority.LOW


@dataclass
class ConflictResolution:
    """A probable duplicate awaiting (or having received) human adjudication."""

    package_id: str
    conflict_type: ConflictType
    entity_type: str
    first_entity_id: str
    second_entity_id: str
    similarity_score: float
    confidence: ConfidenceLevel

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    conflict_number: str = ""
    first_identifier: str = ""
    second_identifier: str = ""
    second_is_production: bool = False
    pair_key: str = ""
    matching_criteria: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    status: ConflictStatus = ConflictStatus.PENDING_REVIEW
    priority: ConflictPriority = ConflictPriority.NORMAL
    review_queue: str = DEFAULT_REVIEW_QUEUE
    assigned_to: Optional[str] = None
    target_resolution_hours: int = 72
    review_attempt_count: int = 0

    resolution_action: Optional[ResolutionAction] = None
    resolution_reason: Optional[str] = None
    resolution_notes: Optional[str] = None
    survivor_entity_id: Optional[str] = None
    discarded_entity_id: Optional[str] = None
    merge_mapping: Dict[str, Any] = field(default_factory=dict)

    is_escalated: bool = False
    escalation_reason: Optional[str] = None
    escalated_by: Optional[str] = None
    escalated_at: Optional[datetime] = None

    detected_at: datetime = field(default_factory=utc_now)
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.pair_key:
            self.pair_key = make_pair_key(self.entity_type, self.first_entity_id, self.second_entity_id)

    @property
    def is_within_batch(self) -> bool:
        return not self.second_is_production

    @property
    def is_blocking(self) -> bool:
        """Unresolved conflicts (escalated or not) block approval."""
        return self.status == ConflictStatus.PENDING_REVIEW

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.status != ConflictStatus.PENDING_REVIEW:
            return False
        now = now or utc_now()
        return now > self.detected_at + timedelta(hours=self.target_resolution_hours)

    def other_side(self, entity_id: str) -> str:
        return self.second_entity_id if entity_id == self.first_entity_id else self.first_entity_id

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            'id': self.id,
            'conflict_number': self.conflict_number,
            'package_id': self.package_id,
            'conflict_type': self.conflict_type.value,
            'entity_type': self.entity_type,
            'first_entity_id': self.first_entity_id,
            'first_identifier': self.first_identifier,
            'second_entity_id': self.second_entity_id,
            'second_identifier': self.second_identifier,
            'second_is_production': self.second_is_production,
            'is_within_batch': self.is_within_batch,
            'similarity_score': self.similarity_score,
            'confidence': self.confidence.value,
            'matching_criteria': self.matching_criteria,
            'description': self.description,
            'status': self.status.value,
            'priority': self.priority.value,
            'review_queue': self.review_queue,
            'assigned_to': self.assigned_to,
            'is_overdue': self.is_overdue(now),
            'resolution_action': self.resolution_action.value if self.resolution_action else None,
            'resolution_reason': self.resolution_reason,
            'resolution_notes': self.resolution_notes,
            'survivor_entity_id': self.survivor_entity_id,
            'discarded_entity_id': self.discarded_entity_id,
            'merge_mapping': self.merge_mapping,
            'is_escalated': self.is_escalated,
            'escalation_reason': self.escalation_reason,
            'escalated_at': to_isoformat(self.escalated_at),
            'detected_at': to_isoformat(self.detected_at),
            'resolved_by': self.resolved_by,
            'resolved_at': to_isoformat(self.resolved_at),
        }
