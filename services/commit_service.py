# -*- coding: utf-8 -*-
"""
Approval Gate and Commit Engine.

Approval is refused while any conflict of the package is pending. Commit
materializes approved staging rows into production inside one transaction:

1. entity types are processed parent-first (``COMMIT_ORDER``);
2. each row gets a new production id, recorded in ``id_mappings``;
3. a row's references are translated through the mapping before insert;
4. evidence bodies are stored once per content hash;
5. claim numbers come from a database sequence at commit time;
6. a failing row is rolled back to its savepoint and its dependants are
   skipped, while siblings carry on.
"""

import hashlib
import mimetypes
import uuid
from contextlib import ExitStack
from pathlib import Path
from typing import Dict, Optional

from models.commit import CommitError, CommitReport, EntityCommitSummary
from models.import_package import ImportPackage, ImportStatus
from models.staging import COMMIT_ORDER, CommitStatus, StagingEntityType, StagingRecord
from repositories.audit_repository import AuditRepository
from repositories.conflict_repository import ConflictRepository
from repositories.package_repository import PackageRepository
from repositories.production_repository import ProductionRepository
from repositories.staging_repository import StagingRepository
from services.conflict_handlers import PRODUCTION, STAGING, CommitPlan, SideRef, handler_for
from services.exceptions import ConflictBlockingError, ReferentialCommitError, ValidationError
from services.name_matching import normalize_arabic
from services.package_reader import PackageReader
from services.package_service import ensure_status, load_package, transition
from services.storage_service import ContentStore, archive_package, evidence_store
from utils.datetime_utils import parse_datetime, utc_now
from utils.logger import get_logger, package_context

logger = get_logger(__name__)

AUDIT_ENTITY = "ImportPackage"


class _CommitRun:
    """State of one commit pass over a package (lives inside the transaction)."""

    def __init__(self, tx, package: ImportPackage, plan: CommitPlan, report: CommitReport,
                 evidence: ContentStore, reader_stack: ExitStack):
        self.tx = tx
        self.package = package
        self.plan = plan
        self.report = report
        self.evidence = evidence
        self.production = ProductionRepository(tx)
        self.staging = StagingRepository(tx)
        self.mappings = self.production.get_mappings(package.package_id)
        # staging row id -> production id, for rows committed in this or earlier passes
        self.by_staging_id: Dict[str, str] = {}
        self._reader_stack = reader_stack
        self._reader: Optional[PackageReader] = None

    @property
    def reader(self) -> PackageReader:
        if self._reader is None:
            self._reader = self._reader_stack.enter_context(PackageReader(Path(self.package.storage_path)))
        return self._reader

    def resolve_reference(self, target: StagingEntityType, value: str) -> str:
        if value in self.mappings[target]:
            return self.mappings[target][value]
        if self.production.exists(target, value):
            return self.production.resolve_current(target, value)
        raise ReferentialCommitError(
            f"{target.value} {value} was not committed",
            entity_type=target.value, original_id=value)

    def production_id_for(self, side: SideRef) -> Optional[str]:
        kind, entity_id = side
        if kind == PRODUCTION:
            return entity_id
        return self.by_staging_id.get(entity_id)


class CommitService:
    """Approves and commits packages."""

    def __init__(self, db, evidence: Optional[ContentStore] = None):
        self.db = db
        self._evidence = evidence

    @property
    def evidence(self) -> ContentStore:
        if self._evidence is None:
            self._evidence = evidence_store()
        return self._evidence

    # ==================== Approval gate ====================

    def approve(self, package_id: str, actor: Optional[str] = None) -> ImportPackage:
        """
        Flag all Valid/Warning rows approved and move the package to Approved.

        Raises ConflictBlockingError, changing nothing, while any conflict of
        the package is still PendingReview (escalated or not).
        """
        with self.db.transaction() as tx:
            package = load_package(tx, package_id)
            if package.status == ImportStatus.APPROVED:
                return package
            ensure_status(package, (ImportStatus.DUPLICATES_DETECTED, ImportStatus.AWAITING_RESOLUTION),
                          "approve")
            pending = ConflictRepository(tx).count_pending(package_id)
            if pending:
                raise ConflictBlockingError(
                    f"Package {package_id} has {pending} unresolved conflict(s)",
                    unresolved_count=pending)
            approved = StagingRepository(tx).approve_committable(package_id)
            transition(tx, package, ImportStatus.APPROVED, approved_by=actor, approved_at=utc_now())
            AuditRepository(tx).record(AUDIT_ENTITY, package_id, "approve", actor, {
                'approved_rows': approved,
            })
        logger.info(f"Package {package_id} approved by {actor} ({approved} rows)")
        return load_package(self.db, package_id)

    # ==================== Commit engine ====================

    def commit(self, package_id: str, actor: Optional[str] = None) -> CommitReport:
        with self.db.transaction() as tx:
            package = load_package(tx, package_id)
            if package.status == ImportStatus.COMMITTED and package.commit_report:
                logger.info(f"Package {package_id} already committed")
                return self._report_from_dict(package.commit_report)
            ensure_status(package, (ImportStatus.APPROVED, ImportStatus.PARTIALLY_COMMITTED), "commit")
            pending = ConflictRepository(tx).count_pending(package_id)
            if pending:
                raise ConflictBlockingError(
                    f"Package {package_id} has {pending} unresolved conflict(s)",
                    unresolved_count=pending)
            transition(tx, package, ImportStatus.COMMITTING)

        logger.info(f"Committing package {package_id}")
        try:
            with package_context(package_id):
                report = self._commit_rows(package_id, actor)
        except Exception as e:
            logger.error(f"Commit of package {package_id} aborted: {e}", exc_info=True)
            self._mark_failed(package_id, str(e), actor)
            raise

        if report.status == ImportStatus.COMMITTED.value:
            self._archive(package_id, report)
        return report

    def get_report(self, package_id: str) -> Optional[CommitReport]:
        package = load_package(self.db, package_id)
        if not package.commit_report:
            return None
        return self._report_from_dict(package.commit_report)

    def _build_plan(self, tx, package_id: str) -> CommitPlan:
        plan = CommitPlan()
        for conflict in ConflictRepository(tx).decided_for_package(package_id):
            handler_for(conflict.conflict_type, conflict.resolution_action).contribute(conflict, plan)
        return plan

    def _commit_rows(self, package_id: str, actor: Optional[str]) -> CommitReport:
        with self.db.transaction() as tx, ExitStack() as readers:
            package = load_package(tx, package_id)
            report = CommitReport(package_id=package_id, package_number=package.package_number,
                                  committed_by=actor, started_at=utc_now())
            plan = self._build_plan(tx, package_id)
            run = _CommitRun(tx, package, plan, report, self.evidence, readers)

            for entity_type in COMMIT_ORDER:
                rows = run.staging.list_for_package(package_id, entity_type, approved_only=True)
                summary = report.summary_for(entity_type.value)
                discarded = []
                for record in rows:
                    summary.approved += 1
                    if record.commit_status in (CommitStatus.COMMITTED, CommitStatus.DISCARDED):
                        run.by_staging_id[record.id] = record.committed_entity_id
                        if record.commit_status == CommitStatus.COMMITTED:
                            summary.committed += 1
                        continue
                    if record.id in plan.redirects:
                        discarded.append(record)
                        continue
                    self._commit_one(run, record)

                # Losing rows resolve to their survivor once the survivors exist
                for record in discarded:
                    self._discard_one(run, record)

                summary.id_mappings = dict(run.mappings[entity_type])

            self._apply_production_effects(run)
            report.conflict_resolutions_applied = plan.resolutions_applied
            report.merges_performed = plan.merges
            report.completed_at = utc_now()

            if report.total_committed == 0 and (report.total_failed or report.total_skipped):
                final = ImportStatus.FAILED
            elif report.is_fully_successful:
                final = ImportStatus.COMMITTED
            else:
                final = ImportStatus.PARTIALLY_COMMITTED
            report.status = final.value

            # Fails (and rolls everything back) if the package was cancelled meanwhile
            transition(tx, package, final, committed_by=actor, committed_at=report.completed_at,
                       commit_report=report.to_dict(),
                       error_message=None if final == ImportStatus.COMMITTED else
                       f"{report.total_failed} failed, {report.total_skipped} skipped")
            AuditRepository(tx).record(AUDIT_ENTITY, package_id, "commit", actor, {
                'status': final.value,
                'committed': report.total_committed,
                'failed': report.total_failed,
                'skipped': report.total_skipped,
            })

        logger.info(
            f"Package {package_id} {report.status}: {report.total_committed} committed, "
            f"{report.total_failed} failed, {report.total_skipped} skipped"
        )
        return report

    def _commit_one(self, run: _CommitRun, record: StagingRecord) -> None:
        entity_type = record.entity_type
        summary = run.report.summary_for(entity_type.value)
        try:
            with run.tx.savepoint():
                production_id = self._insert(run, record)
        except ReferentialCommitError as e:
            summary.skipped += 1
            run.staging.set_commit_outcome(record, CommitStatus.SKIPPED, error=e.message)
            run.report.errors.append(CommitError(
                entity_type.value, record.original_id, record.id, e.message, skipped=True))
            logger.warning(f"Skipped {entity_type.value} {record.original_id}: {e.message}")
            return
        except Exception as e:
            summary.failed += 1
            run.staging.set_commit_outcome(record, CommitStatus.FAILED, error=str(e))
            run.report.errors.append(CommitError(entity_type.value, record.original_id, record.id, str(e)))
            logger.warning(f"Failed to commit {entity_type.value} {record.original_id}: {e}")
            return

        summary.committed += 1
        run.mappings[entity_type][record.original_id] = production_id
        run.by_staging_id[record.id] = production_id

    def _insert(self, run: _CommitRun, record: StagingRecord) -> str:
        entity_type = record.entity_type
        references = {}
        for ref in record.references:
            value = record.ref(ref.name)
            references[ref.name] = run.resolve_reference(ref.target, value) if value else None

        payload = dict(record.payload)
        payload.update(run.plan.overrides_for((STAGING, record.id)))
        payload.update(references)

        derived = {}
        if entity_type == StagingEntityType.PERSON:
            derived['family_name_norm'] = normalize_arabic(payload.get('family_name'))
        elif entity_type == StagingEntityType.CLAIM:
            payload.pop('claim_number', None)
            value = run.tx.next_sequence_value("claim_number")
            derived['claim_number'] = f"CLM-{utc_now().year}-{value:06d}"
        elif entity_type == StagingEntityType.EVIDENCE:
            payload['content_hash'] = self._store_evidence(run, payload)

        production_id = str(uuid.uuid4())
        run.production.insert(entity_type, production_id, payload, references,
                              run.package.package_id, derived)
        run.production.save_mapping(run.package.package_id, entity_type, record.original_id, production_id)
        run.staging.set_commit_outcome(record, CommitStatus.COMMITTED, committed_entity_id=production_id)
        return production_id

    def _store_evidence(self, run: _CommitRun, payload: Dict) -> str:
        """Link to stored content with the same hash, or store the attachment."""
        content_hash = str(payload.get('content_hash') or '').lower()
        existing = run.production.get_evidence_content(content_hash)
        if existing:
            run.report.duplicate_attachments_found += 1
            run.report.deduplication_bytes_saved += int(existing.get('size_bytes') or 0)
            return content_hash

        data = run.reader.read_attachment(str(payload.get('file_name')))
        actual = hashlib.sha256(data).hexdigest()
        if actual != content_hash:
            raise ValidationError(
                f"Attachment hash {actual} does not match declared {content_hash}",
                field="content_hash")
        stored = run.evidence.store_bytes(data)
        mime_type, _ = mimetypes.guess_type(str(payload.get('file_name')))
        run.production.insert_evidence_content(
            content_hash, str(stored.path), stored.size, mime_type, run.package.package_id)
        return content_hash

    def _discard_one(self, run: _CommitRun, record: StagingRecord) -> None:
        entity_type = record.entity_type
        survivor = run.plan.resolve_staging(record.id)
        survivor_id = run.production_id_for(survivor)
        if survivor_id is None:
            summary = run.report.summary_for(entity_type.value)
            summary.skipped += 1
            message = f"Survivor {survivor[1]} of discarded row was not committed"
            run.staging.set_commit_outcome(record, CommitStatus.SKIPPED, error=message)
            run.report.errors.append(CommitError(
                entity_type.value, record.original_id, record.id, message, skipped=True))
            return
        survivor_id = run.production.resolve_current(entity_type, survivor_id) or survivor_id
        run.production.save_mapping(run.package.package_id, entity_type, record.original_id, survivor_id)
        run.staging.set_commit_outcome(record, CommitStatus.DISCARDED, committed_entity_id=survivor_id)
        run.mappings[entity_type][record.original_id] = survivor_id
        run.by_staging_id[record.id] = survivor_id

    def _apply_production_effects(self, run: _CommitRun) -> None:
        """Supersede losing production entities and apply merged values to production survivors."""
        for entity_type, loser_id, survivor in run.plan.supersessions:
            survivor_id = run.production_id_for(survivor)
            if survivor_id is None:
                run.report.errors.append(CommitError(
                    entity_type.value, None, survivor[1],
                    f"Cannot supersede {loser_id}: survivor was not committed", skipped=True))
                continue
            survivor_id = run.production.resolve_current(entity_type, survivor_id) or survivor_id
            run.production.supersede(entity_type, loser_id, survivor_id)

        for side, overrides in run.plan.overrides.items():
            if side[0] == PRODUCTION:
                entity_type = run.plan.production_types[side[1]]
                current = run.production.resolve_current(entity_type, side[1]) or side[1]
                run.production.apply_overrides(entity_type, current, overrides)

    # ==================== After commit ====================

    def _archive(self, package_id: str, report: CommitReport) -> None:
        package = load_package(self.db, package_id)
        try:
            target = archive_package(Path(package.storage_path), package_id, utc_now())
        except OSError as e:
            logger.error(f"Could not archive package {package_id}: {e}", exc_info=True)
            PackageRepository(self.db).append_note(package_id, f"[Archive failed]: {e}")
            return
        report.archive_path = str(target)
        PackageRepository(self.db).update_fields(
            package_id, archive_path=str(target), commit_report=report.to_dict())

    def _mark_failed(self, package_id: str, message: str, actor: Optional[str]) -> None:
        with self.db.transaction() as tx:
            package = load_package(tx, package_id)
            if package.status != ImportStatus.COMMITTING:
                return
            transition(tx, package, ImportStatus.FAILED, error_message=message)
            PackageRepository(tx).append_note(package_id, f"[Commit failed]: {message}")
            AuditRepository(tx).record(AUDIT_ENTITY, package_id, "commit_failed", actor, {'error': message})

    @staticmethod
    def _report_from_dict(data: Dict) -> CommitReport:
        report = CommitReport(
            package_id=data['package_id'],
            package_number=data['package_number'],
            status=data.get('status', ''),
            committed_by=data.get('committed_by'),
            started_at=parse_datetime(data.get('started_at')),
            completed_at=parse_datetime(data.get('completed_at')),
            duplicate_attachments_found=data.get('duplicate_attachments_found', 0),
            deduplication_bytes_saved=data.get('deduplication_bytes_saved', 0),
            conflict_resolutions_applied=data.get('conflict_resolutions_applied', 0),
            merges_performed=data.get('merges_performed', 0),
            archive_path=data.get('archive_path'),
        )
        for name, entry in (data.get('entities') or {}).items():
            report.entities[name] = EntityCommitSummary(
                entity_type=name,
                approved=entry.get('approved', 0),
                committed=entry.get('committed', 0),
                failed=entry.get('failed', 0),
                skipped=entry.get('skipped', 0),
                id_mappings=entry.get('id_mappings', {}),
            )
        report.errors = [CommitError(**e) for e in data.get('errors', [])]
        return report
