# -*- coding: utf-8 -*-
"""
Staging repository.

One table per entity type, all with the same shape. Rows are unique per
(package_id, original_id), which makes re-staging a package idempotent.
"""

import json
from typing import Iterable, List, Optional

from models.staging import (
    CommitStatus, StagingEntityType, StagingRecord, StagingSummary, ValidationStatus,
)
from utils.datetime_utils import parse_datetime, to_isoformat, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


class StagingRepository:
    """Repository for staged entity rows."""

    def __init__(self, db):
        self.db = db

    def insert(self, record: StagingRecord) -> bool:
        """Insert a staged row. Returns False when the row already exists."""
        table = record.entity_type.staging_table
        query = f"""
            INSERT INTO {table} (
                id, package_id, original_id, payload, validation_status,
                errors, warnings, is_approved, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (package_id, original_id) DO NOTHING
        """
        params = (
            record.id, record.package_id, record.original_id,
            json.dumps(record.payload, ensure_ascii=False),
            record.validation_status.value,
            json.dumps(record.errors, ensure_ascii=False),
            json.dumps(record.warnings, ensure_ascii=False),
            1 if record.is_approved else 0,
            to_isoformat(record.created_at), to_isoformat(record.updated_at),
        )
        return self.db.execute_update(query, params) == 1

    def get(self, entity_type: StagingEntityType, staging_id: str) -> Optional[StagingRecord]:
        row = self.db.fetch_one(
            f"SELECT * FROM {entity_type.staging_table} WHERE id = ?", (staging_id,))
        return self._row_to_record(entity_type, row) if row else None

    def get_by_original_id(self, package_id: str, entity_type: StagingEntityType,
                           original_id: str) -> Optional[StagingRecord]:
        row = self.db.fetch_one(
            f"SELECT * FROM {entity_type.staging_table} WHERE package_id = ? AND original_id = ?",
            (package_id, original_id)
        )
        return self._row_to_record(entity_type, row) if row else None

    def list_for_package(self, package_id: str, entity_type: StagingEntityType,
                         statuses: Optional[Iterable[ValidationStatus]] = None,
                         approved_only: bool = False) -> List[StagingRecord]:
        query = f"SELECT * FROM {entity_type.staging_table} WHERE package_id = ?"
        params: list = [package_id]
        if statuses is not None:
            statuses = list(statuses)
            query += f" AND validation_status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        if approved_only:
            query += " AND is_approved = 1"
        query += " ORDER BY created_at, original_id"
        rows = self.db.fetch_all(query, tuple(params))
        return [self._row_to_record(entity_type, row) for row in rows]

    def count(self, package_id: str) -> int:
        total = 0
        for entity_type in StagingEntityType:
            row = self.db.fetch_one(
                f"SELECT COUNT(*) AS n FROM {entity_type.staging_table} WHERE package_id = ?",
                (package_id,)
            )
            total += int(row['n'])
        return total

    def summarize(self, package_id: str) -> StagingSummary:
        summary = StagingSummary(package_id=package_id)
        for entity_type in StagingEntityType:
            rows = self.db.fetch_all(
                f"SELECT validation_status, COUNT(*) AS n FROM {entity_type.staging_table} "
                f"WHERE package_id = ? GROUP BY validation_status",
                (package_id,)
            )
            for row in rows:
                summary.add(entity_type, ValidationStatus(row['validation_status']), int(row['n']))
        return summary

    def approve_committable(self, package_id: str) -> int:
        """Flag all Valid and Warning rows as approved."""
        approved = 0
        for entity_type in StagingEntityType:
            approved += self.db.execute_update(
                f"UPDATE {entity_type.staging_table} SET is_approved = 1, updated_at = ? "
                f"WHERE package_id = ? AND validation_status IN ('Valid', 'Warning')",
                (to_isoformat(utc_now()), package_id)
            )
        return approved

    def set_commit_outcome(self, record: StagingRecord, status: CommitStatus,
                           committed_entity_id: Optional[str] = None,
                           error: Optional[str] = None) -> None:
        record.commit_status = status
        record.committed_entity_id = committed_entity_id
        record.commit_error = error
        self.db.execute_update(
            f"UPDATE {record.entity_type.staging_table} SET commit_status = ?, "
            f"committed_entity_id = ?, commit_error = ?, updated_at = ? WHERE id = ?",
            (status.value, committed_entity_id, error, to_isoformat(utc_now()), record.id)
        )

    def _row_to_record(self, entity_type: StagingEntityType, row) -> StagingRecord:
        return StagingRecord(
            id=row['id'],
            package_id=row['package_id'],
            entity_type=entity_type,
            original_id=row['original_id'],
            payload=json.loads(row['payload']) if row['payload'] else {},
            validation_status=ValidationStatus(row['validation_status']),
            errors=json.loads(row['errors']) if row['errors'] else [],
            warnings=json.loads(row['warnings']) if row['warnings'] else [],
            is_approved=bool(row['is_approved']),
            committed_entity_id=row['committed_entity_id'],
            commit_status=CommitStatus(row['commit_status']) if row['commit_status'] else None,
            commit_error=row['commit_error'],
            created_at=parse_datetime(row['created_at']) or utc_now(),
            updated_at=parse_datetime(row['updated_at']) or utc_now(),
        )
