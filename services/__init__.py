# -*- coding: utf-8 -*-
"""
TRRCMS Service Layer
"""

# Lazy imports to avoid circular dependencies
__all__ = [
    "PackageIntakeService",
    "PackageService",
    "StagingService",
    "DuplicateDetectionService",
    "ConflictService",
    "CommitService",
    "VocabularyService",
    "SyncService",
    "LocalSyncServer",
    "ImportPipeline",
]

_LAZY = {
    "PackageIntakeService": ".package_intake",
    "PackageService": ".package_service",
    "StagingService": ".staging_service",
    "DuplicateDetectionService": ".duplicate_detection",
    "ConflictService": ".conflict_service",
    "CommitService": ".commit_service",
    "VocabularyService": ".vocabulary_service",
    "SyncService": ".sync_service",
    "LocalSyncServer": ".sync_server",
    "ImportPipeline": ".pipeline",
}


def __getattr__(name):
    """Lazy import to avoid circular dependencies."""
    if name in _LAZY:
        import importlib
        module = importlib.import_module(_LAZY[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
