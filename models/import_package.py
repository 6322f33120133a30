# -*- coding: utf-8 -*-
"""
Import package entity model.

One row per uploaded container. The status field is an explicit finite-state
machine: every command checks ``can_transition_to`` before acting.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from utils.datetime_utils import utc_now, to_isoformat


class ImportStatus(Enum):
    """Lifecycle of an import package."""
    UPLOADED = "Uploaded"
    VALIDATING = "Validating"
    VALIDATED = "Validated"
    DUPLICATES_DETECTED = "DuplicatesDetected"
    AWAITING_RESOLUTION = "AwaitingResolution"
    APPROVED = "Approved"
    COMMITTING = "Committing"
    COMMITTED = "Committed"
    PARTIALLY_COMMITTED = "PartiallyCommitted"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    QUARANTINED = "Quarantined"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[ImportStatus] = frozenset({
    ImportStatus.COMMITTED,
    ImportStatus.CANCELLED,
    ImportStatus.QUARANTINED,
})

_S = ImportStatus
_ABORTABLE = {_S.CANCELLED, _S.QUARANTINED}

# Permitted transitions. Cancel/Quarantine are reachable from every
# non-terminal state.
ALLOWED_TRANSITIONS: Dict[ImportStatus, FrozenSet[ImportStatus]] = {
    _S.UPLOADED: frozenset({_S.VALIDATING, _S.FAILED} | _ABORTABLE),
    _S.VALIDATING: frozenset({_S.VALIDATING, _S.VALIDATED, _S.FAILED} | _ABORTABLE),
    _S.VALIDATED: frozenset({_S.DUPLICATES_DETECTED, _S.AWAITING_RESOLUTION} | _ABORTABLE),
    _S.DUPLICATES_DETECTED: frozenset({
        _S.DUPLICATES_DETECTED, _S.AWAITING_RESOLUTION, _S.APPROVED} | _ABORTABLE),
    _S.AWAITING_RESOLUTION: frozenset({
        _S.DUPLICATES_DETECTED, _S.AWAITING_RESOLUTION, _S.APPROVED} | _ABORTABLE),
    _S.APPROVED: frozenset({_S.APPROVED, _S.COMMITTING} | _ABORTABLE),
    _S.COMMITTING: frozenset({
        _S.COMMITTED, _S.PARTIALLY_COMMITTED, _S.FAILED, _S.APPROVED} | _ABORTABLE),
    _S.PARTIALLY_COMMITTED: frozenset({_S.COMMITTING} | _ABORTABLE),
    _S.FAILED: frozenset({_S.APPROVED} | _ABORTABLE),
    _S.COMMITTED: frozenset(),
    _S.CANCELLED: frozenset(),
    _S.QUARANTINED: frozenset(),
}


@dataclass
class PackageManifest:
    """
    Upload manifest supplied alongside the byte stream.

    ``checksum`` is the device-declared SHA-256 of the package bytes.
    """
    package_id: str
    file_name: str
    checksum: str
    signature: Optional[str] = None
    device_id: Optional[str] = None
    collector_id: Optional[str] = None
    exported_at: Optional[str] = None
    schema_version: Optional[str] = None
    vocab_versions: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.checksum = (self.checksum or "").strip().lower()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PackageManifest':
        return cls(
            package_id=str(data.get('package_id') or '').strip(),
            file_name=data.get('file_name') or f"{data.get('package_id')}.uhc",
            checksum=str(data.get('checksum') or ''),
            signature=data.get('signature'),
            device_id=data.get('device_id'),
            collector_id=data.get('collector_id'),
            exported_at=data.get('exported_at'),
            schema_version=data.get('schema_version'),
            vocab_versions=data.get('vocab_versions') or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ImportPackage:
    """An uploaded package and its progress through the pipeline."""

    package_id: str
    package_number: str
    file_name: str
    file_size: int = 0
    declared_checksum: str = ""
    actual_checksum: str = ""
    is_signature_valid: Optional[bool] = None
    storage_path: Optional[str] = None

    status: ImportStatus = ImportStatus.UPLOADED

    device_id: Optional[str] = None
    collector_id: Optional[str] = None
    exported_at: Optional[str] = None
    schema_version: Optional[str] = None
    vocab_versions: Dict[str, str] = field(default_factory=dict)

    # Per-entity-type staged row counts and validation breakdown
    record_counts: Dict[str, int] = field(default_factory=dict)
    validation_summary: Dict[str, Any] = field(default_factory=dict)

    conflict_count: int = 0
    resolved_conflict_count: int = 0

    commit_report: Optional[Dict[str, Any]] = None
    archive_path: Optional[str] = None
    processing_notes: str = ""
    error_message: Optional[str] = None

    uploaded_by: Optional[str] = None
    uploaded_at: datetime = field(default_factory=utc_now)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    committed_by: Optional[str] = None
    committed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def checksum_matches(self) -> bool:
        return bool(self.actual_checksum) and self.actual_checksum == self.declared_checksum

    @property
    def pending_conflict_count(self) -> int:
        return max(0, self.conflict_count - self.resolved_conflict_count)

    def can_transition_to(self, target: ImportStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'package_id': self.package_id,
            'package_number': self.package_number,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'declared_checksum': self.declared_checksum,
            'actual_checksum': self.actual_checksum,
            'is_signature_valid': self.is_signature_valid,
            'status': self.status.value,
            'device_id': self.device_id,
            'collector_id': self.collector_id,
            'exported_at': self.exported_at,
            'schema_version': self.schema_version,
            'vocab_versions': self.vocab_versions,
            'record_counts': self.record_counts,
            'validation_summary': self.validation_summary,
            'conflict_count': self.conflict_count,
            'resolved_conflict_count': self.resolved_conflict_count,
            'archive_path': self.archive_path,
            'processing_notes': self.processing_notes,
            'error_message': self.error_message,
            'uploaded_by': self.uploaded_by,
            'uploaded_at': to_isoformat(self.uploaded_at),
            'approved_by': self.approved_by,
            'approved_at': to_isoformat(self.approved_at),
            'committed_by': self.committed_by,
            'committed_at': to_isoformat(self.committed_at),
            'updated_at': to_isoformat(self.updated_at),
        }
