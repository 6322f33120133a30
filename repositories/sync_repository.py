# -*- coding: utf-8 -*-
"""
Sync session and building assignment repository.
"""

import json
from typing import List, Optional

from models.sync import BuildingAssignment, SyncSession, SyncSessionStatus, TransferStatus
from utils.datetime_utils import parse_datetime, to_isoformat, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


class SyncRepository:
    """Repository for SyncSession and BuildingAssignment rows."""

    def __init__(self, db):
        self.db = db

    # ==================== Sessions ====================

    def create_session(self, session: SyncSession) -> SyncSession:
        self.db.execute_update("""
            INSERT INTO sync_sessions (
                id, field_collector_id, device_id, server_address, status,
                packages_uploaded, packages_failed, assignments_downloaded,
                assignments_acknowledged, vocabulary_versions_sent, error_message,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            session.id, session.field_collector_id, session.device_id,
            session.server_address, session.status.value,
            session.packages_uploaded, session.packages_failed,
            session.assignments_downloaded, session.assignments_acknowledged,
            json.dumps(session.vocabulary_versions_sent), session.error_message,
            to_isoformat(session.started_at), to_isoformat(session.completed_at),
        ))
        logger.debug(f"Created sync session {session.id} for {session.field_collector_id}")
        return session

    def get_session(self, session_id: str) -> Optional[SyncSession]:
        row = self.db.fetch_one("SELECT * FROM sync_sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    def increment(self, session_id: str, column: str, amount: int = 1) -> None:
        if column not in ("packages_uploaded", "packages_failed",
                          "assignments_downloaded", "assignments_acknowledged"):
            raise ValueError(f"Not a session counter: {column}")
        self.db.execute_update(
            f"UPDATE sync_sessions SET {column} = {column} + ? WHERE id = ?",
            (amount, session_id)
        )

    def set_vocabulary_versions(self, session_id: str, versions: dict) -> None:
        self.db.execute_update(
            "UPDATE sync_sessions SET vocabulary_versions_sent = ? WHERE id = ?",
            (json.dumps(versions), session_id)
        )

    def close_session(self, session_id: str, status: SyncSessionStatus,
                      error_message: Optional[str] = None) -> bool:
        return self.db.execute_update("""
            UPDATE sync_sessions SET status = ?, error_message = ?, completed_at = ?
            WHERE id = ? AND status = ?
        """, (status.value, error_message, to_isoformat(utc_now()),
              session_id, SyncSessionStatus.IN_PROGRESS.value)) == 1

    # ==================== Assignments ====================

    def create_assignment(self, assignment: BuildingAssignment) -> BuildingAssignment:
        self.db.execute_update("""
            INSERT INTO building_assignments (
                id, building_id, field_collector_id, assigned_by, assigned_date,
                target_completion_date, transfer_status, transferred_at, transfer_error,
                priority, notes, is_revisit, units_for_revisit, is_active, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            assignment.id, assignment.building_id, assignment.field_collector_id,
            assignment.assigned_by, to_isoformat(assignment.assigned_date),
            to_isoformat(assignment.target_completion_date),
            assignment.transfer_status.value, to_isoformat(assignment.transferred_at),
            assignment.transfer_error, assignment.priority, assignment.notes,
            1 if assignment.is_revisit else 0, json.dumps(assignment.units_for_revisit),
            1 if assignment.is_active else 0, to_isoformat(assignment.updated_at),
        ))
        return assignment

    def get_assignment(self, assignment_id: str) -> Optional[BuildingAssignment]:
        row = self.db.fetch_one("SELECT * FROM building_assignments WHERE id = ?", (assignment_id,))
        return self._row_to_assignment(row) if row else None

    def pending_for_collector(self, field_collector_id: str) -> List[BuildingAssignment]:
        """Active assignments not yet confirmed by the device."""
        rows = self.db.fetch_all("""
            SELECT * FROM building_assignments
            WHERE field_collector_id = ? AND is_active = 1 AND transfer_status IN (?, ?)
            ORDER BY assigned_date
        """, (field_collector_id, TransferStatus.PENDING.value, TransferStatus.FAILED.value))
        return [self._row_to_assignment(row) for row in rows]

    def mark_transferred(self, assignment_id: str) -> bool:
        """Returns True only on the first transition to Transferred."""
        now = to_isoformat(utc_now())
        return self.db.execute_update(
            "UPDATE building_assignments SET transfer_status = ?, transferred_at = ?, "
            "transfer_error = NULL, updated_at = ? WHERE id = ? AND transfer_status != ?",
            (TransferStatus.TRANSFERRED.value, now, now, assignment_id,
             TransferStatus.TRANSFERRED.value)
        ) == 1

    def _row_to_session(self, row) -> SyncSession:
        return SyncSession(
            id=row['id'],
            field_collector_id=row['field_collector_id'],
            device_id=row['device_id'],
            server_address=row['server_address'],
            status=SyncSessionStatus(row['status']),
            packages_uploaded=int(row['packages_uploaded'] or 0),
            packages_failed=int(row['packages_failed'] or 0),
            assignments_downloaded=int(row['assignments_downloaded'] or 0),
            assignments_acknowledged=int(row['assignments_acknowledged'] or 0),
            vocabulary_versions_sent=json.loads(row['vocabulary_versions_sent'] or "{}"),
            error_message=row['error_message'],
            started_at=parse_datetime(row['started_at']) or utc_now(),
            completed_at=parse_datetime(row['completed_at']),
        )

    def _row_to_assignment(self, row) -> BuildingAssignment:
        return BuildingAssignment(
            id=row['id'],
            building_id=row['building_id'],
            field_collector_id=row['field_collector_id'],
            assigned_by=row['assigned_by'],
            assigned_date=parse_datetime(row['assigned_date']) or utc_now(),
            target_completion_date=parse_datetime(row['target_completion_date']),
            transfer_status=TransferStatus(row['transfer_status']),
            transferred_at=parse_datetime(row['transferred_at']),
            transfer_error=row['transfer_error'],
            priority=row['priority'] or "Normal",
            notes=row['notes'],
            is_revisit=bool(row['is_revisit']),
            units_for_revisit=json.loads(row['units_for_revisit'] or "[]"),
            is_active=bool(row['is_active']),
            updated_at=parse_datetime(row['updated_at']) or utc_now(),
        )
