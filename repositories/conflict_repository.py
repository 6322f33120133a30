# -*- coding: utf-8 -*-
"""
Conflict resolution repository.
"""

import json
from typing import Any, List, Optional

from models.conflict import (
    ConfidenceLevel, ConflictPriority, ConflictResolution, ConflictStatus,
    ConflictType, ResolutionAction,
)
from utils.datetime_utils import parse_datetime, to_isoformat, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


class ConflictRepository:
    """Repository for ConflictResolution rows."""

    def __init__(self, db):
        self.db = db

    def next_conflict_number(self, year: Optional[int] = None) -> str:
        year = year or utc_now().year
        value = self.db.next_sequence_value("conflict_number")
        return f"CNF-{year}-{value:04d}"

    def pair_exists(self, pair_key: str) -> bool:
        row = self.db.fetch_one(
            "SELECT 1 AS found FROM conflict_resolutions WHERE pair_key = ?", (pair_key,))
        return row is not None

    def insert(self, conflict: ConflictResolution) -> bool:
        """Insert unless the pair was already raised. Returns True if inserted."""
        query = """
            INSERT INTO conflict_resolutions (
                id, conflict_number, package_id, conflict_type, entity_type,
                first_entity_id, first_identifier, second_entity_id, second_identifier,
                second_is_production, pair_key, similarity_score, confidence,
                matching_criteria, description, status, priority, review_queue,
                assigned_to, target_resolution_hours, review_attempt_count,
                is_escalated, detected_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (pair_key) DO NOTHING
        """
        params = (
            conflict.id, conflict.conflict_number, conflict.package_id,
            conflict.conflict_type.value, conflict.entity_type,
            conflict.first_entity_id, conflict.first_identifier,
            conflict.second_entity_id, conflict.second_identifier,
            1 if conflict.second_is_production else 0, conflict.pair_key,
            conflict.similarity_score, conflict.confidence.value,
            json.dumps(conflict.matching_criteria, ensure_ascii=False),
            conflict.description, conflict.status.value, conflict.priority.value,
            conflict.review_queue, conflict.assigned_to,
            conflict.target_resolution_hours, conflict.review_attempt_count,
            1 if conflict.is_escalated else 0, to_isoformat(conflict.detected_at),
        )
        return self.db.execute_update(query, params) == 1

    def get(self, conflict_id: str) -> Optional[ConflictResolution]:
        row = self.db.fetch_one("SELECT * FROM conflict_resolutions WHERE id = ?", (conflict_id,))
        return self._row_to_conflict(row) if row else None

    def list(self, package_id: Optional[str] = None,
             status: Optional[ConflictStatus] = None,
             conflict_type: Optional[ConflictType] = None,
             review_queue: Optional[str] = None,
             assigned_to: Optional[str] = None) -> List[ConflictResolution]:
        """Unordered fetch; queue ordering is applied by the service."""
        conditions = []
        params: List[Any] = []
        if package_id:
            conditions.append("package_id = ?")
            params.append(package_id)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        if conflict_type:
            conditions.append("conflict_type = ?")
            params.append(conflict_type.value)
        if review_queue:
            conditions.append("review_queue = ?")
            params.append(review_queue)
        if assigned_to:
            conditions.append("assigned_to = ?")
            params.append(assigned_to)

        query = "SELECT * FROM conflict_resolutions"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        return [self._row_to_conflict(row) for row in self.db.fetch_all(query, tuple(params))]

    def count_pending(self, package_id: str) -> int:
        row = self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM conflict_resolutions WHERE package_id = ? AND status = ?",
            (package_id, ConflictStatus.PENDING_REVIEW.value)
        )
        return int(row['n'])

    def save_resolution(self, conflict: ConflictResolution) -> bool:
        """
        Persist a decision. Only a PendingReview row can be decided, so a
        concurrent second decision updates nothing and returns False.
        """
        query = """
            UPDATE conflict_resolutions SET
                status = ?, resolution_action = ?, resolution_reason = ?,
                resolution_notes = ?, survivor_entity_id = ?, discarded_entity_id = ?,
                merge_mapping = ?, resolved_by = ?, resolved_at = ?,
                review_attempt_count = review_attempt_count + 1
            WHERE id = ? AND status = ?
        """
        params = (
            conflict.status.value,
            conflict.resolution_action.value if conflict.resolution_action else None,
            conflict.resolution_reason, conflict.resolution_notes,
            conflict.survivor_entity_id, conflict.discarded_entity_id,
            json.dumps(conflict.merge_mapping, ensure_ascii=False),
            conflict.resolved_by, to_isoformat(conflict.resolved_at),
            conflict.id, ConflictStatus.PENDING_REVIEW.value,
        )
        return self.db.execute_update(query, params) == 1

    def save_escalation(self, conflict: ConflictResolution) -> bool:
        query = """
            UPDATE conflict_resolutions SET
                is_escalated = 1, escalation_reason = ?, escalated_by = ?, escalated_at = ?,
                priority = ?, review_queue = ?
            WHERE id = ? AND status = ?
        """
        params = (
            conflict.escalation_reason, conflict.escalated_by,
            to_isoformat(conflict.escalated_at), conflict.priority.value,
            conflict.review_queue, conflict.id, ConflictStatus.PENDING_REVIEW.value,
        )
        return self.db.execute_update(query, params) == 1

    def assign(self, conflict_id: str, assigned_to: Optional[str]) -> bool:
        return self.db.execute_update(
            "UPDATE conflict_resolutions SET assigned_to = ? WHERE id = ?",
            (assigned_to, conflict_id)
        ) == 1

    def decided_for_package(self, package_id: str) -> List[ConflictResolution]:
        """Resolved conflicts that carry a survivor (commit-time redirects)."""
        rows = self.db.fetch_all(
            "SELECT * FROM conflict_resolutions WHERE package_id = ? AND status = ? "
            "AND resolution_action IS NOT NULL ORDER BY resolved_at",
            (package_id, ConflictStatus.RESOLVED.value)
        )
        return [self._row_to_conflict(row) for row in rows]

    def _row_to_conflict(self, row) -> ConflictResolution:
        return ConflictResolution(
            id=row['id'],
            conflict_number=row['conflict_number'],
            package_id=row['package_id'],
            conflict_type=ConflictType(row['conflict_type']),
            entity_type=row['entity_type'],
            first_entity_id=row['first_entity_id'],
            first_identifier=row['first_identifier'] or "",
            second_entity_id=row['second_entity_id'],
            second_identifier=row['second_identifier'] or "",
            second_is_production=bool(row['second_is_production']),
            pair_key=row['pair_key'],
            similarity_score=float(row['similarity_score'] or 0),
            confidence=ConfidenceLevel(row['confidence']),
            matching_criteria=json.loads(row['matching_criteria']) if row['matching_criteria'] else {},
            description=row['description'] or "",
            status=ConflictStatus(row['status']),
            priority=ConflictPriority(row['priority']),
            review_queue=row['review_queue'],
            assigned_to=row['assigned_to'],
            target_resolution_hours=int(row['target_resolution_hours'] or 72),
            review_attempt_count=int(row['review_attempt_count'] or 0),
            resolution_action=ResolutionAction(row['resolution_action']) if row['resolution_action'] else None,
            resolution_reason=row['resolution_reason'],
            resolution_notes=row['resolution_notes'],
            survivor_entity_id=row['survivor_entity_id'],
            discarded_entity_id=row['discarded_entity_id'],
            merge_mapping=json.loads(row['merge_mapping']) if row['merge_mapping'] else {},
            is_escalated=bool(row['is_escalated']),
            escalation_reason=row['escalation_reason'],
            escalated_by=row['escalated_by'],
            escalated_at=parse_datetime(row['escalated_at']),
            detected_at=parse_datetime(row['detected_at']) or utc_now(),
            resolved_by=row['resolved_by'],
            resolved_at=parse_datetime(row['resolved_at']),
        )
