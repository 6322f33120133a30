# -*- coding: utf-8 -*-
"""
Sync session and building assignment models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from utils.datetime_utils import utc_now, to_isoformat


class SyncSessionStatus(Enum):
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    PARTIALLY_COMPLETED = "PartiallyCompleted"
    FAILED = "Failed"


class TransferStatus(Enum):
    """Transfer state of an assignment towards the field device."""
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    TRANSFERRED = "Transferred"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass
class SyncSession:
    """One device handshake, scoped to a single field collector."""

    field_collector_id: str
    device_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    server_address: Optional[str] = None
    status: SyncSessionStatus = SyncSessionStatus.IN_PROGRESS
    packages_uploaded: int = 0
    packages_failed: int = 0
    assignments_downloaded: int = 0
    assignments_acknowledged: int = 0
    vocabulary_versions_sent: Dict[str, str] = field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SyncSessionStatus.IN_PROGRESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'field_collector_id': self.field_collector_id,
            'device_id': self.device_id,
            'server_address': self.server_address,
            'status': self.status.value,
            'packages_uploaded': self.packages_uploaded,
            'packages_failed': self.packages_failed,
            'assignments_downloaded': self.assignments_downloaded,
            'assignments_acknowledged': self.assignments_acknowledged,
            'vocabulary_versions_sent': self.vocabulary_versions_sent,
            'error_message': self.error_message,
            'started_at': to_isoformat(self.started_at),
            'completed_at': to_isoformat(self.completed_at),
        }


@dataclass
class BuildingAssignment:
    """Work assignment of a production building to a field collector."""

    building_id: str
    field_collector_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    assigned_by: Optional[str] = None
    assigned_date: datetime = field(default_factory=utc_now)
    target_completion_date: Optional[datetime] = None
    transfer_status: TransferStatus = TransferStatus.PENDING
    transferred_at: Optional[datetime] = None
    transfer_error: Optional[str] = None
    priority: str = "Normal"
    notes: Optional[str] = None
    is_revisit: bool = False
    units_for_revisit: List[str] = field(default_factory=list)
    is_active: bool = True
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'building_id': self.building_id,
            'field_collector_id': self.field_collector_id,
            'assigned_by': self.assigned_by,
            'assigned_date': to_isoformat(self.assigned_date),
            'target_completion_date': to_isoformat(self.target_completion_date),
            'transfer_status': self.transfer_status.value,
            'transferred_at': to_isoformat(self.transferred_at),
            'priority': self.priority,
            'notes': self.notes,
            'is_revisit': self.is_revisit,
            'units_for_revisit': self.units_for_revisit,
        }
