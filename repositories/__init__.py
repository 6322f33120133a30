# -*- coding: utf-8 -*-
"""
TRRCMS Repository Layer
"""

# Lazy imports to avoid circular dependencies
__all__ = [
    "DatabaseFactory",
    "get_database",
    "PackageRepository",
    "StagingRepository",
    "ConflictRepository",
    "ProductionRepository",
    "SyncRepository",
    "VocabularyRepository",
    "AuditRepository",
]

_LAZY = {
    "DatabaseFactory": (".db_adapter", "DatabaseFactory"),
    "get_database": (".db_adapter", "get_database"),
    "PackageRepository": (".package_repository", "PackageRepository"),
    "StagingRepository": (".staging_repository", "StagingRepository"),
    "ConflictRepository": (".conflict_repository", "ConflictRepository"),
    "ProductionRepository": (".production_repository", "ProductionRepository"),
    "SyncRepository": (".sync_repository", "SyncRepository"),
    "VocabularyRepository": (".vocabulary_repository", "VocabularyRepository"),
    "AuditRepository": (".audit_repository", "AuditRepository"),
}


def __getattr__(name):
    """Lazy import to avoid circular dependencies."""
    if name in _LAZY:
        import importlib
        module_name, attr = _LAZY[name]
        return getattr(importlib.import_module(module_name, __name__), attr)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
