# -*- coding: utf-8 -*-
"""
One object wiring every pipeline service to a database.

Used by the operator CLI and the integration tests.
"""

from pathlib import Path
from typing import Optional

from models.import_package import PackageManifest
from services.commit_service import CommitService
from services.conflict_service import ConflictService
from services.duplicate_detection import DuplicateDetectionService
from services.package_intake import IntakeResult, PackageIntakeService
from services.package_service import PackageService
from services.staging_service import StagingService
from services.sync_service import SyncService
from services.vocabulary_service import VocabularyService


class ImportPipeline:
    """Facade over the import and reconciliation services."""

    def __init__(self, db):
        self.db = db
        self.vocabulary = VocabularyService(db)
        self.intake = PackageIntakeService(db)
        self.packages = PackageService(db)
        self.staging = StagingService(db, self.vocabulary)
        self.detection = DuplicateDetectionService(db)
        self.conflicts = ConflictService(db)
        self.commits = CommitService(db)
        self.sync = SyncService(db, self.intake, self.vocabulary)

    def upload_file(self, path: Path, manifest: PackageManifest,
                    uploaded_by: Optional[str] = None) -> IntakeResult:
        path = Path(path)
        with path.open("rb") as stream:
            return self.intake.receive(stream, manifest, uploaded_by=uploaded_by,
                                       length=path.stat().st_size)
