# -*- coding: utf-8 -*-
"""
Device sync protocol.

Four steps, each safe to retry:
1. open a session scoped to one field collector and device
2. upload packages (delegates to Package Intake)
3. fetch assignments plus the vocabulary snapshot or delta
4. acknowledge received assignments
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Dict, Iterable, List, Optional

from models.import_package import ImportStatus, PackageManifest
from models.staging import StagingEntityType
from models.sync import BuildingAssignment, SyncSession, SyncSessionStatus
from repositories.audit_repository import AuditRepository
from repositories.production_repository import ProductionRepository
from repositories.sync_repository import SyncRepository
from services.exceptions import (
    AuthorizationError, IncompleteUploadError, InvalidStateTransitionError,
    NotFoundError, UploadTooLargeError, ValidationError,
)
from services.package_intake import PackageIntakeService
from services.vocabulary_service import VocabularyService
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AcknowledgeResult:
    acknowledged: List[str] = field(default_factory=list)
    already_transferred: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'acknowledged': self.acknowledged,
            'already_transferred': self.already_transferred,
            'failed': self.failed,
        }


class SyncService:
    """Server side of the device handshake."""

    def __init__(self, db, intake: Optional[PackageIntakeService] = None,
                 vocabulary: Optional[VocabularyService] = None):
        self.db = db
        self.repo = SyncRepository(db)
        self.intake = intake or PackageIntakeService(db)
        self.vocabulary = vocabulary or VocabularyService(db)

    # ==================== Step 1: session ====================

    def open_session(self, user_id: str, device_id: str,
                     server_address: Optional[str] = None) -> SyncSession:
        if not user_id:
            raise AuthorizationError("A sync session needs an authenticated user")
        if not device_id:
            raise ValidationError("device_id is required", field="device_id")
        session = self.repo.create_session(SyncSession(
            field_collector_id=user_id,
            device_id=device_id,
            server_address=server_address,
        ))
        AuditRepository(self.db).record("SyncSession", session.id, "open", user_id, {'device_id': device_id})
        logger.info(f"Sync session {session.id} opened for {user_id} on device {device_id}")
        return session

    def get_session(self, session_id: str, user_id: str) -> SyncSession:
        session = self.repo.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Sync session {session_id} not found",
                                entity_type="SyncSession", entity_id=session_id)
        if session.field_collector_id != user_id:
            logger.warning(f"User {user_id} tried to use session {session_id} of {session.field_collector_id}")
            raise AuthorizationError(f"Session {session_id} belongs to another user")
        return session

    def _active_session(self, session_id: str, user_id: str) -> SyncSession:
        session = self.get_session(session_id, user_id)
        if not session.is_active:
            raise InvalidStateTransitionError(
                f"Sync session {session_id} is {session.status.value}",
                current_status=session.status.value,
                target_status=SyncSessionStatus.IN_PROGRESS.value,
            )
        return session

    # ==================== Step 2: upload ====================

    def upload(self, session_id: str, user_id: str, stream: BinaryIO,
               manifest: PackageManifest, length: Optional[int] = None) -> Dict[str, Any]:
        """
        Hand a package to intake.

        A duplicate returns ``accepted=False, duplicate=True`` and changes no
        counters. Quarantined, oversized and truncated packages count as failed uploads.
        """
        session = self._active_session(session_id, user_id)
        if not manifest.device_id:
            manifest.device_id = session.device_id
        if not manifest.collector_id:
            manifest.collector_id = user_id

        try:
            result = self.intake.receive(stream, manifest, uploaded_by=user_id, length=length)
        except (UploadTooLargeError, IncompleteUploadError):
            self.repo.increment(session.id, "packages_failed")
            raise

        if not result.duplicate:
            if result.package.status == ImportStatus.QUARANTINED:
                self.repo.increment(session.id, "packages_failed")
            else:
                self.repo.increment(session.id, "packages_uploaded")

        return {
            'session_id': session.id,
            'accepted': result.accepted,
            'duplicate': result.duplicate,
            'package_id': result.package.package_id,
            'package_number': result.package.package_number,
            'status': result.package.status.value,
            'message': result.package.error_message,
        }

    # ==================== Step 3: fetch ====================

    def fetch_assignments(self, session_id: str, user_id: str,
                          since: Optional[datetime] = None) -> Dict[str, Any]:
        """Pending/Failed assignments of the collector, with vocabularies (full or delta)."""
        session = self._active_session(session_id, user_id)
        production = ProductionRepository(self.db)

        assignments = []
        for assignment in self.repo.pending_for_collector(user_id):
            entry = assignment.to_dict()
            entry['building'] = production.get(StagingEntityType.BUILDING, assignment.building_id)
            assignments.append(entry)

        vocabularies = self.vocabulary.payload(since)
        self.repo.increment(session.id, "assignments_downloaded", len(assignments))
        self.repo.set_vocabulary_versions(session.id, vocabularies['versions'])
        logger.info(f"Session {session.id}: sent {len(assignments)} assignment(s), vocabularies {vocabularies['mode']}")
        return {
            'session_id': session.id,
            'assignments': assignments,
            'vocabularies': vocabularies,
        }

    # ==================== Step 4: acknowledge ====================

    def acknowledge(self, session_id: str, user_id: str,
                    assignment_ids: Iterable[str]) -> AcknowledgeResult:
        """Mark assignments Transferred. Repeating an acknowledgement is a no-op success."""
        session = self._active_session(session_id, user_id)
        result = AcknowledgeResult()
        for assignment_id in assignment_ids:
            assignment = self.repo.get_assignment(assignment_id)
            if assignment is None:
                result.failed.append({'id': assignment_id, 'error': "Assignment not found"})
                continue
            if assignment.field_collector_id != user_id:
                result.failed.append({'id': assignment_id, 'error': "Assignment belongs to another collector"})
                continue
            if self.repo.mark_transferred(assignment_id):
                result.acknowledged.append(assignment_id)
            else:
                result.already_transferred.append(assignment_id)

        if result.acknowledged:
            self.repo.increment(session.id, "assignments_acknowledged", len(result.acknowledged))
        return result

    def close_session(self, session_id: str, user_id: str) -> SyncSession:
        session = self.get_session(session_id, user_id)
        if not session.is_active:
            return session
        status = (SyncSessionStatus.PARTIALLY_COMPLETED if session.packages_failed
                  else SyncSessionStatus.COMPLETED)
        self.repo.close_session(session.id, status)
        AuditRepository(self.db).record("SyncSession", session.id, "close", user_id, {'status': status.value})
        logger.info(f"Sync session {session.id} closed as {status.value}")
        return self.repo.get_session(session.id)

    # ==================== Assignment distribution ====================

    def create_assignment(self, building_id: str, field_collector_id: str,
                          assigned_by: Optional[str] = None, **kwargs) -> BuildingAssignment:
        production = ProductionRepository(self.db)
        current = production.resolve_current(StagingEntityType.BUILDING, building_id)
        if current is None:
            raise NotFoundError(f"Building {building_id} not found",
                                entity_type="Building", entity_id=building_id)
        assignment = self.repo.create_assignment(BuildingAssignment(
            building_id=current,
            field_collector_id=field_collector_id,
            assigned_by=assigned_by,
            **kwargs
        ))
        AuditRepository(self.db).record("BuildingAssignment", assignment.id, "assign", assigned_by, {
            'building_id': current,
            'field_collector_id': field_collector_id,
        })
        return assignment
