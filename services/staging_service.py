# -*- coding: utf-8 -*-
"""
Staging Loader - unpacks a received package into staging rows.

Rows are keyed by (package, original id), so running the loader again adds
nothing. Validation is per row; invalid rows are kept with their messages.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from models.import_package import ImportStatus
from models.staging import COMMIT_ORDER, StagingRecord, StagingSummary, ValidationStatus
from repositories.audit_repository import AuditRepository
from repositories.package_repository import PackageRepository
from repositories.production_repository import ProductionRepository
from repositories.staging_repository import StagingRepository
from services.exceptions import IntegrityError, InvalidStateTransitionError, PackageFormatError
from services.package_reader import PackageReader
from services.package_service import load_package, transition
from services.validation import PackageArena, RecordValidator
from services.vocabulary_service import VocabularyService, compare_versions
from utils.logger import get_logger

logger = get_logger(__name__)

# Statuses after which staging has already completed
_STAGED = {
    ImportStatus.VALIDATED,
    ImportStatus.DUPLICATES_DETECTED,
    ImportStatus.AWAITING_RESOLUTION,
    ImportStatus.APPROVED,
    ImportStatus.COMMITTING,
    ImportStatus.COMMITTED,
    ImportStatus.PARTIALLY_COMMITTED,
}


class StagingService:
    """Loads and validates package contents."""

    def __init__(self, db, vocabulary_service: Optional[VocabularyService] = None):
        self.db = db
        self.vocabulary = vocabulary_service or VocabularyService(db)

    def stage(self, package_id: str, actor: Optional[str] = None) -> StagingSummary:
        """
        Decode, validate and stage a package.

        Returns the staging summary. Calling it on a package that is already
        staged returns the stored summary without touching any row.
        """
        package = load_package(self.db, package_id)
        if package.status in _STAGED:
            logger.info(f"Package {package_id} already staged ({package.status.value})")
            return self._summary_with_warnings(package)
        if package.status == ImportStatus.QUARANTINED:
            raise IntegrityError(
                f"Package {package_id} is quarantined and cannot be staged: {package.error_message}",
                package_id=package_id,
                expected=package.declared_checksum,
                actual=package.actual_checksum,
            )
        if package.status == ImportStatus.UPLOADED:
            package = transition(self.db, package, ImportStatus.VALIDATING)
        elif package.status != ImportStatus.VALIDATING:
            raise InvalidStateTransitionError(
                f"Package {package_id} cannot be staged from status {package.status.value}",
                current_status=package.status.value,
                target_status=ImportStatus.VALIDATING.value,
            )

        snapshot = self.vocabulary.snapshot()
        try:
            with PackageReader(Path(package.storage_path)) as reader:
                reader.check_package_id(package_id)
                package_warnings = compare_versions(
                    reader.manifest.get("vocab_versions") or package.vocab_versions, snapshot)
                package_warnings.extend(
                    f"Unknown record file ignored: {name}" for name in reader.unknown_members())
                records = self._decode(package_id, reader, package_warnings)

                production = ProductionRepository(self.db)
                arena = PackageArena(production.exists)
                for record in records:
                    arena.add(record.entity_type, record.original_id)
                validator = RecordValidator(snapshot, arena, reader.has_attachment)

                # Parents first, so children see their parents' outcome
                for record in records:
                    validator.validate(record)
                    arena.add(record.entity_type, record.original_id, record.validation_status)
        except PackageFormatError as e:
            self._fail(package_id, str(e), actor)
            raise

        with self.db.transaction() as tx:
            staging = StagingRepository(tx)
            inserted = sum(1 for record in records if staging.insert(record))
            summary = staging.summarize(package_id)
            summary.package_warnings = package_warnings
            package = load_package(tx, package_id)
            transition(
                tx, package, ImportStatus.VALIDATED,
                record_counts=summary.record_counts(),
                validation_summary=summary.to_dict(),
            )
            AuditRepository(tx).record("ImportPackage", package_id, "stage", actor, {
                'inserted': inserted,
                'totals': summary.to_dict()['totals'],
            })

        logger.info(
            f"Staged package {package_id}: {inserted} rows inserted, "
            f"{summary.total(ValidationStatus.INVALID)} invalid, "
            f"{summary.total(ValidationStatus.WARNING)} with warnings"
        )
        return summary

    def validation_report(self, package_id: str) -> Dict[str, Any]:
        """Read-only report: summary plus every row carrying errors or warnings."""
        package = load_package(self.db, package_id)
        staging = StagingRepository(self.db)
        rows: List[Dict[str, Any]] = []
        for entity_type in COMMIT_ORDER:
            for record in staging.list_for_package(
                    package_id, entity_type, (ValidationStatus.INVALID, ValidationStatus.WARNING)):
                rows.append({
                    'entity_type': entity_type.value,
                    'original_id': record.original_id,
                    'status': record.validation_status.value,
                    'errors': record.errors,
                    'warnings': record.warnings,
                })
        return {
            'package_id': package_id,
            'status': package.status.value,
            'summary': self._summary_with_warnings(package).to_dict(),
            'rows': rows,
        }

    def _summary_with_warnings(self, package) -> StagingSummary:
        summary = StagingRepository(self.db).summarize(package.package_id)
        summary.package_warnings = list(package.validation_summary.get('package_warnings', []))
        return summary

    def _decode(self, package_id: str, reader: PackageReader,
                package_warnings: List[str]) -> List[StagingRecord]:
        records: List[StagingRecord] = []
        for entity_type in COMMIT_ORDER:
            seen = set()
            for index, item in enumerate(reader.records(entity_type)):
                original_id = item.get("original_id")
                if original_id is None or str(original_id).strip() == "":
                    package_warnings.append(
                        f"{entity_type.package_key}[{index}] has no original_id and was skipped")
                    continue
                original_id = str(original_id)
                if original_id in seen:
                    package_warnings.append(
                        f"Duplicate original_id {original_id} in {entity_type.package_key}; first kept")
                    continue
                seen.add(original_id)
                payload = {k: v for k, v in item.items() if k != "original_id"}
                records.append(StagingRecord(
                    package_id=package_id,
                    entity_type=entity_type,
                    original_id=original_id,
                    payload=payload,
                ))
        return records

    def _fail(self, package_id: str, message: str, actor: Optional[str]) -> None:
        logger.error(f"Package {package_id} is structurally invalid: {message}")
        with self.db.transaction() as tx:
            package = load_package(tx, package_id)
            if package.status != ImportStatus.VALIDATING:
                return
            transition(tx, package, ImportStatus.FAILED, error_message=message)
            PackageRepository(tx).append_note(package_id, f"[Failed]: {message}")
            AuditRepository(tx).record("ImportPackage", package_id, "stage_failed", actor, {
                'error': message,
            })
