# -*- coding: utf-8 -*-
"""
Commit report model.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from utils.datetime_utils import to_isoformat


@dataclass
class EntityCommitSummary:
    """Per-entity-type commit counters."""
    entity_type: str
    approved: int = 0
    committed: int = 0
    failed: int = 0
    skipped: int = 0
    id_mappings: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_type': self.entity_type,
            'approved': self.approved,
            'committed': self.committed,
            'failed': self.failed,
            'skipped': self.skipped,
            'id_mappings': self.id_mappings,
        }


@dataclass
class CommitError:
    entity_type: str
    original_id: Optional[str]
    staging_id: Optional[str]
    message: str
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_type': self.entity_type,
            'original_id': self.original_id,
            'staging_id': self.staging_id,
            'message': self.message,
            'skipped': self.skipped,
        }


@dataclass
class CommitReport:
    """Outcome of committing one package."""
    package_id: str
    package_number: str
    status: str = ""
    committed_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    entities: Dict[str, EntityCommitSummary] = field(default_factory=dict)
    duplicate_attachments_found: int = 0
    deduplication_bytes_saved: int = 0
    conflict_resolutions_applied: int = 0
    merges_performed: int = 0
    archive_path: Optional[str] = None
    errors: List[CommitError] = field(default_factory=list)

    def summary_for(self, entity_type: str) -> EntityCommitSummary:
        if entity_type not in self.entities:
            self.entities[entity_type] = EntityCommitSummary(entity_type=entity_type)
        return self.entities[entity_type]

    @property
    def total_approved(self) -> int:
        return sum(s.approved for s in self.entities.values())

    @property
    def total_committed(self) -> int:
        return sum(s.committed for s in self.entities.values())

    @property
    def total_failed(self) -> int:
        return sum(s.failed for s in self.entities.values())

    @property
    def total_skipped(self) -> int:
        return sum(s.skipped for s in self.entities.values())

    @property
    def is_fully_successful(self) -> bool:
        return self.total_failed == 0 and self.total_skipped == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'package_id': self.package_id,
            'package_number': self.package_number,
            'status': self.status,
            'committed_by': self.committed_by,
            'started_at': to_isoformat(self.started_at),
            'completed_at': to_isoformat(self.completed_at),
            'total_approved': self.total_approved,
            'total_committed': self.total_committed,
            'total_failed': self.total_failed,
            'total_skipped': self.total_skipped,
            'entities': {k: v.to_dict() for k, v in self.entities.items()},
            'duplicate_attachments_found': self.duplicate_attachments_found,
            'deduplication_bytes_saved': self.deduplication_bytes_saved,
            'conflict_resolutions_applied': self.conflict_resolutions_applied,
            'merges_performed': self.merges_performed,
            'archive_path': self.archive_path,
            'errors': [e.to_dict() for e in self.errors],
        }
