# -*- coding: utf-8 -*-
"""
TRRCMS Data Models
"""

from .import_package import ImportPackage, ImportStatus, PackageManifest
from .staging import (
    StagingEntityType, StagingRecord, ValidationStatus, CommitStatus,
    ReferenceField, StagingSummary, COMMIT_ORDER,
)
from .conflict import (
    ConflictResolution, ConflictType, ConflictStatus, ConfidenceLevel,
    ConflictPriority, ResolutionAction,
)
from .commit import CommitReport, EntityCommitSummary, CommitError
from .sync import SyncSession, SyncSessionStatus, BuildingAssignment, TransferStatus
from .vocabulary import Vocabulary, VocabularySnapshot

__all__ = [
    "ImportPackage", "ImportStatus", "PackageManifest",
    "StagingEntityType", "StagingRecord", "ValidationStatus", "CommitStatus",
    "ReferenceField", "StagingSummary", "COMMIT_ORDER",
    "ConflictResolution", "ConflictType", "ConflictStatus", "ConfidenceLevel",
    "ConflictPriority", "ResolutionAction",
    "CommitReport", "EntityCommitSummary", "CommitError",
    "SyncSession", "SyncSessionStatus", "BuildingAssignment", "TransferStatus",
    "Vocabulary", "VocabularySnapshot",
]
