# -*- coding: utf-8 -*-
"""
Conflict Resolution Engine.

Per conflict: PendingReview -> Resolved | Ignored. Escalation is a flag on a
pending conflict; it moves the conflict to the senior review queue without
changing its status. Overdue is derived on read from the detection time and
the SLA target.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from models.conflict import (
    SENIOR_REVIEW_QUEUE, ConflictPriority, ConflictResolution, ConflictStatus,
    ConflictType, ResolutionAction,
)
from models.import_package import ImportStatus
from models.staging import StagingEntityType
from repositories.audit_repository import AuditRepository
from repositories.conflict_repository import ConflictRepository
from repositories.package_repository import PackageRepository
from repositories.production_repository import PAYLOAD_COLUMNS, ProductionRepository
from repositories.staging_repository import StagingRepository
from services.conflict_handlers import ResolveRequest, handler_for
from services.exceptions import InvalidStateTransitionError, NotFoundError
from services.package_service import ensure_status, load_package, require_reason, transition
from utils.datetime_utils import utc_now
from utils.logger import get_logger

logger = get_logger(__name__)

AUDIT_ENTITY = "ConflictResolution"


def queue_order(conflicts: List[ConflictResolution], now: Optional[datetime] = None) -> List[ConflictResolution]:
    """Escalated first, then overdue, then priority, then oldest."""
    now = now or utc_now()
    return sorted(conflicts, key=lambda c: (
        not c.is_escalated,
        not c.is_overdue(now),
        c.priority.rank,
        c.detected_at,
    ))


class ConflictService:
    """Review, resolve and escalate detected conflicts."""

    def __init__(self, db):
        self.db = db

    # ==================== Queries ====================

    def get(self, conflict_id: str) -> ConflictResolution:
        conflict = ConflictRepository(self.db).get(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict not found: {conflict_id}",
                                entity_type=AUDIT_ENTITY, entity_id=conflict_id)
        return conflict

    def list(self, package_id: Optional[str] = None,
             status: Optional[ConflictStatus] = None,
             conflict_type: Optional[ConflictType] = None,
             review_queue: Optional[str] = None,
             assigned_to: Optional[str] = None,
             overdue_only: bool = False,
             now: Optional[datetime] = None) -> List[ConflictResolution]:
        now = now or utc_now()
        conflicts = ConflictRepository(self.db).list(
            package_id=package_id, status=status, conflict_type=conflict_type,
            review_queue=review_queue, assigned_to=assigned_to,
        )
        if overdue_only:
            conflicts = [c for c in conflicts if c.is_overdue(now)]
        return queue_order(conflicts, now)

    def summary(self, package_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        conflicts = ConflictRepository(self.db).list(package_id=package_id)
        result: Dict[str, Any] = {
            'total': len(conflicts),
            'by_status': {s.value: 0 for s in ConflictStatus},
            'by_type': {t.value: 0 for t in ConflictType},
            'by_confidence': {},
            'by_priority': {p.value: 0 for p in ConflictPriority},
            'escalated': 0,
            'overdue': 0,
        }
        for c in conflicts:
            result['by_status'][c.status.value] += 1
            result['by_type'][c.conflict_type.value] += 1
            result['by_confidence'][c.confidence.value] = result['by_confidence'].get(c.confidence.value, 0) + 1
            if c.status == ConflictStatus.PENDING_REVIEW:
                result['by_priority'][c.priority.value] += 1
                if c.is_escalated:
                    result['escalated'] += 1
                if c.is_overdue(now):
                    result['overdue'] += 1
        return result

    # ==================== Commands ====================

    def resolve(self, conflict_id: str, action: ResolutionAction, reason: str,
                actor: Optional[str] = None, survivor_id: Optional[str] = None,
                field_choices: Optional[Dict[str, str]] = None,
                notes: Optional[str] = None) -> ConflictResolution:
        """
        Record a decision on a pending conflict.

        Data changes implied by the decision (discarding, re-pointing,
        merged field values) are applied when the package is committed.
        """
        reason = require_reason(reason, "resolve a conflict")
        request = ResolveRequest(action=action, reason=reason, survivor_id=survivor_id,
                                 field_choices=dict(field_choices or {}), notes=notes)

        with self.db.transaction() as tx:
            conflicts = ConflictRepository(tx)
            conflict = conflicts.get(conflict_id)
            if conflict is None:
                raise NotFoundError(f"Conflict not found: {conflict_id}",
                                    entity_type=AUDIT_ENTITY, entity_id=conflict_id)
            self._require_pending(conflict, "resolve")
            package = load_package(tx, conflict.package_id)
            ensure_status(package, (ImportStatus.DUPLICATES_DETECTED, ImportStatus.AWAITING_RESOLUTION),
                          "resolve conflicts of")

            first = self._load_side(tx, conflict, conflict.first_entity_id)
            second = self._load_side(tx, conflict, conflict.second_entity_id)
            handler_for(conflict.conflict_type, action).decide(conflict, request, first, second)
            conflict.resolved_by = actor
            conflict.resolved_at = utc_now()

            if not conflicts.save_resolution(conflict):
                raise InvalidStateTransitionError(
                    f"Conflict {conflict.conflict_number} was decided concurrently",
                    current_status=ConflictStatus.RESOLVED.value,
                    target_status=conflict.status.value,
                )

            packages = PackageRepository(tx)
            packages.refresh_conflict_counts(conflict.package_id)
            if conflicts.count_pending(conflict.package_id) == 0 and \
                    package.status == ImportStatus.AWAITING_RESOLUTION:
                transition(tx, package, ImportStatus.DUPLICATES_DETECTED)

            AuditRepository(tx).record(AUDIT_ENTITY, conflict.id, action.value.lower(), actor, {
                'conflict_number': conflict.conflict_number,
                'package_id': conflict.package_id,
                'reason': reason,
                'survivor': conflict.survivor_entity_id,
                'discarded': conflict.discarded_entity_id,
                'merge_mapping': conflict.merge_mapping,
            })

        logger.info(f"Conflict {conflict.conflict_number} {conflict.status.value} via {action.value} by {actor}")
        return self.get(conflict_id)

    def escalate(self, conflict_id: str, reason: str, actor: Optional[str] = None) -> ConflictResolution:
        reason = require_reason(reason, "escalate a conflict")
        with self.db.transaction() as tx:
            conflicts = ConflictRepository(tx)
            conflict = conflicts.get(conflict_id)
            if conflict is None:
                raise NotFoundError(f"Conflict not found: {conflict_id}",
                                    entity_type=AUDIT_ENTITY, entity_id=conflict_id)
            self._require_pending(conflict, "escalate")
            conflict.is_escalated = True
            conflict.escalation_reason = reason
            conflict.escalated_by = actor
            conflict.escalated_at = utc_now()
            conflict.priority = ConflictPriority.HIGH
            conflict.review_queue = SENIOR_REVIEW_QUEUE
            if not conflicts.save_escalation(conflict):
                raise InvalidStateTransitionError(
                    f"Conflict {conflict.conflict_number} is no longer pending",
                    current_status=None, target_status=ConflictStatus.PENDING_REVIEW.value)
            AuditRepository(tx).record(AUDIT_ENTITY, conflict.id, "escalate", actor, {
                'conflict_number': conflict.conflict_number,
                'reason': reason,
            })
        logger.info(f"Conflict {conflict.conflict_number} escalated by {actor}: {reason}")
        return self.get(conflict_id)

    def assign(self, conflict_id: str, assignee: Optional[str], actor: Optional[str] = None) -> ConflictResolution:
        conflict = self.get(conflict_id)
        self._require_pending(conflict, "assign")
        with self.db.transaction() as tx:
            ConflictRepository(tx).assign(conflict_id, assignee)
            AuditRepository(tx).record(AUDIT_ENTITY, conflict_id, "assign", actor, {
                'assigned_to': assignee,
            })
        return self.get(conflict_id)

    # ==================== Helpers ====================

    @staticmethod
    def _require_pending(conflict: ConflictResolution, action: str) -> None:
        if conflict.status != ConflictStatus.PENDING_REVIEW:
            raise InvalidStateTransitionError(
                f"Cannot {action} conflict {conflict.conflict_number}: already {conflict.status.value}",
                current_status=conflict.status.value,
                target_status=ConflictStatus.PENDING_REVIEW.value,
            )

    @staticmethod
    def _load_side(db, conflict: ConflictResolution, entity_id: str) -> Dict[str, Any]:
        """Field values of one side, for merge provenance."""
        entity_type = StagingEntityType(conflict.entity_type)
        if entity_id == conflict.second_entity_id and conflict.second_is_production:
            row = ProductionRepository(db).get(entity_type, entity_id)
            if row is None:
                raise NotFoundError(f"{entity_type.value} not found: {entity_id}",
                                    entity_type=entity_type.value, entity_id=entity_id)
            values = dict(row.get('data') or {})
            values.update({k: row[k] for k in PAYLOAD_COLUMNS[entity_type] if row.get(k) is not None})
            return values
        record = StagingRepository(db).get(entity_type, entity_id)
        if record is None:
            raise NotFoundError(f"Staging row not found: {entity_id}",
                                entity_type=entity_type.value, entity_id=entity_id)
        return dict(record.payload)
