# -*- coding: utf-8 -*-
"""
Import package repository.

Status changes go through ``update_status``, a compare-and-set on the
current status, so two workers acting on the same package cannot both win.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.import_package import ImportPackage, ImportStatus
from utils.datetime_utils import parse_datetime, to_isoformat, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)

_JSON_FIELDS = ("vocab_versions", "record_counts", "validation_summary", "commit_report")


class PackageRepository:
    """Repository for ImportPackage rows."""

    def __init__(self, db):
        self.db = db

    def next_package_number(self, year: Optional[int] = None) -> str:
        """Allocate PKG-YYYY-NNNN from the database sequence."""
        year = year or utc_now().year
        value = self.db.next_sequence_value("package_number")
        return f"PKG-{year}-{value:04d}"

    def create(self, package: ImportPackage) -> bool:
        """Insert the package. Returns False if the package id already exists."""
        query = """
            INSERT INTO import_packages (
                package_id, package_number, file_name, file_size,
                declared_checksum, actual_checksum, is_signature_valid, storage_path,
                status, device_id, collector_id, exported_at, schema_version,
                vocab_versions, record_counts, validation_summary,
                conflict_count, resolved_conflict_count, commit_report, archive_path,
                processing_notes, error_message, uploaded_by, uploaded_at,
                approved_by, approved_at, committed_by, committed_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (package_id) DO NOTHING
        """
        params = (
            package.package_id, package.package_number, package.file_name, package.file_size,
            package.declared_checksum, package.actual_checksum,
            None if package.is_signature_valid is None else (1 if package.is_signature_valid else 0),
            package.storage_path,
            package.status.value, package.device_id, package.collector_id,
            package.exported_at, package.schema_version,
            json.dumps(package.vocab_versions), json.dumps(package.record_counts),
            json.dumps(package.validation_summary),
            package.conflict_count, package.resolved_conflict_count,
            json.dumps(package.commit_report) if package.commit_report is not None else None,
            package.archive_path, package.processing_notes, package.error_message,
            package.uploaded_by, to_isoformat(package.uploaded_at),
            package.approved_by, to_isoformat(package.approved_at),
            package.committed_by, to_isoformat(package.committed_at),
            to_isoformat(package.updated_at),
        )
        created = self.db.execute_update(query, params) == 1
        if created:
            logger.debug(f"Created import package: {package.package_id} ({package.package_number})")
        return created

    def get_by_id(self, package_id: str) -> Optional[ImportPackage]:
        row = self.db.fetch_one("SELECT * FROM import_packages WHERE package_id = ?", (package_id,))
        if row:
            return self._row_to_package(row)
        return None

    def list(self, status: Optional[ImportStatus] = None,
             limit: int = 100, offset: int = 0) -> List[ImportPackage]:
        query = "SELECT * FROM import_packages"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY uploaded_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [self._row_to_package(row) for row in self.db.fetch_all(query, tuple(params))]

    def update_status(self, package_id: str, expected: ImportStatus,
                      target: ImportStatus, **fields) -> bool:
        """
        Move the package from ``expected`` to ``target``.

        Extra keyword fields are written in the same statement. Returns False
        when the stored status no longer equals ``expected``.
        """
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [target.value, to_isoformat(utc_now())]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(self._to_column(name, value))
        params.extend([package_id, expected.value])

        query = f"UPDATE import_packages SET {', '.join(assignments)} WHERE package_id = ? AND status = ?"
        changed = self.db.execute_update(query, tuple(params)) == 1
        if changed:
            logger.debug(f"Package {package_id}: {expected.value} -> {target.value}")
        return changed

    def update_fields(self, package_id: str, **fields) -> None:
        """Write non-status columns."""
        if not fields:
            return
        assignments = ["updated_at = ?"]
        params: List[Any] = [to_isoformat(utc_now())]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(self._to_column(name, value))
        params.append(package_id)
        self.db.execute_update(
            f"UPDATE import_packages SET {', '.join(assignments)} WHERE package_id = ?",
            tuple(params)
        )

    def append_note(self, package_id: str, note: str) -> None:
        """Append a timestamped line to processing_notes."""
        row = self.db.fetch_one(
            "SELECT processing_notes FROM import_packages WHERE package_id = ?", (package_id,))
        if not row:
            return
        line = f"[{to_isoformat(utc_now())}] {note}"
        notes = f"{row['processing_notes']}\n{line}" if row['processing_notes'] else line
        self.db.execute_update(
            "UPDATE import_packages SET processing_notes = ? WHERE package_id = ?",
            (notes, package_id)
        )

    def refresh_conflict_counts(self, package_id: str) -> None:
        """Recompute conflict_count/resolved_conflict_count from the conflict table."""
        row = self.db.fetch_one("""
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status != 'PendingReview' THEN 1 ELSE 0 END) AS resolved
            FROM conflict_resolutions WHERE package_id = ?
        """, (package_id,))
        self.db.execute_update(
            "UPDATE import_packages SET conflict_count = ?, resolved_conflict_count = ? WHERE package_id = ?",
            (int(row['total'] or 0), int(row['resolved'] or 0), package_id)
        )

    @staticmethod
    def _to_column(name: str, value: Any) -> Any:
        if isinstance(value, ImportStatus):
            return value.value
        if isinstance(value, datetime):
            return to_isoformat(value)
        if isinstance(value, bool):
            return 1 if value else 0
        if name in _JSON_FIELDS and value is not None:
            return json.dumps(value)
        return value

    def _row_to_package(self, row) -> ImportPackage:
        data = row.to_dict() if hasattr(row, "to_dict") else dict(row)

        def _json(name: str, default):
            raw = data.get(name)
            return json.loads(raw) if raw else default

        signature = data.get('is_signature_valid')
        return ImportPackage(
            package_id=data['package_id'],
            package_number=data['package_number'],
            file_name=data.get('file_name') or "",
            file_size=data.get('file_size') or 0,
            declared_checksum=data.get('declared_checksum') or "",
            actual_checksum=data.get('actual_checksum') or "",
            is_signature_valid=None if signature is None else bool(signature),
            storage_path=data.get('storage_path'),
            status=ImportStatus(data['status']),
            device_id=data.get('device_id'),
            collector_id=data.get('collector_id'),
            exported_at=data.get('exported_at'),
            schema_version=data.get('schema_version'),
            vocab_versions=_json('vocab_versions', {}),
            record_counts=_json('record_counts', {}),
            validation_summary=_json('validation_summary', {}),
            conflict_count=data.get('conflict_count') or 0,
            resolved_conflict_count=data.get('resolved_conflict_count') or 0,
            commit_report=_json('commit_report', None),
            archive_path=data.get('archive_path'),
            processing_notes=data.get('processing_notes') or "",
            error_message=data.get('error_message'),
            uploaded_by=data.get('uploaded_by'),
            uploaded_at=parse_datetime(data.get('uploaded_at')) or utc_now(),
            approved_by=data.get('approved_by'),
            approved_at=parse_datetime(data.get('approved_at')),
            committed_by=data.get('committed_by'),
            committed_at=parse_datetime(data.get('committed_at')),
            updated_at=parse_datetime(data.get('updated_at')) or utc_now(),
        )
