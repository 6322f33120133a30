# -*- coding: utf-8 -*-
"""
Package workflow service.

Every command re-reads the stored package, checks the transition table and
moves the status with a compare-and-set update. Nothing about a package's
state is cached between calls.
"""

from typing import Iterable, List, Optional

from models.import_package import ImportPackage, ImportStatus
from repositories.audit_repository import AuditRepository
from repositories.package_repository import PackageRepository
from services.exceptions import InvalidStateTransitionError, NotFoundError, ValidationError
from utils.datetime_utils import utc_now
from utils.logger import get_logger

logger = get_logger(__name__)

AUDIT_ENTITY = "ImportPackage"


def require_reason(reason: Optional[str], action: str) -> str:
    """Irreversible actions need a caller-supplied reason."""
    if reason is None or not str(reason).strip():
        raise ValidationError(f"A reason is required to {action}", field="reason")
    return str(reason).strip()


def load_package(db, package_id: str) -> ImportPackage:
    package = PackageRepository(db).get_by_id(package_id)
    if package is None:
        raise NotFoundError(f"Package not found: {package_id}",
                            entity_type=AUDIT_ENTITY, entity_id=package_id)
    return package


def ensure_status(package: ImportPackage, allowed: Iterable[ImportStatus], action: str) -> None:
    allowed = list(allowed)
    if package.status not in allowed:
        raise InvalidStateTransitionError(
            f"Cannot {action} package {package.package_id} in status {package.status.value}",
            current_status=package.status.value,
            target_status=", ".join(s.value for s in allowed),
        )


def transition(db, package: ImportPackage, target: ImportStatus, **fields) -> ImportPackage:
    """
    Move ``package`` to ``target`` if the table allows it and nobody changed
    the status in the meantime. Returns the re-read package.
    """
    if not package.can_transition_to(target):
        raise InvalidStateTransitionError(
            f"Transition {package.status.value} -> {target.value} is not permitted",
            current_status=package.status.value,
            target_status=target.value,
        )
    repo = PackageRepository(db)
    if not repo.update_status(package.package_id, package.status, target, **fields):
        current = repo.get_by_id(package.package_id)
        raise InvalidStateTransitionError(
            f"Package {package.package_id} changed concurrently "
            f"(expected {package.status.value}, found {current.status.value if current else 'nothing'})",
            current_status=current.status.value if current else None,
            target_status=target.value,
        )
    return repo.get_by_id(package.package_id)


class PackageService:
    """Read and administrative commands on import packages."""

    def __init__(self, db):
        self.db = db

    def get(self, package_id: str) -> ImportPackage:
        return load_package(self.db, package_id)

    def list(self, status: Optional[ImportStatus] = None,
             limit: int = 100, offset: int = 0) -> List[ImportPackage]:
        return PackageRepository(self.db).list(status=status, limit=limit, offset=offset)

    def cancel(self, package_id: str, reason: str, actor: Optional[str] = None) -> ImportPackage:
        """Operator abort. Staging data is retained for audit."""
        return self._abort(package_id, ImportStatus.CANCELLED, reason, actor, "cancel")

    def quarantine(self, package_id: str, reason: str, actor: Optional[str] = None) -> ImportPackage:
        return self._abort(package_id, ImportStatus.QUARANTINED, reason, actor, "quarantine")

    def reset_commit(self, package_id: str, reason: str, actor: Optional[str] = None) -> ImportPackage:
        """
        Return a package stuck in Committing, or Failed after approval, to
        Approved so the commit can be retried.
        """
        reason = require_reason(reason, "reset a commit")
        with self.db.transaction() as tx:
            package = load_package(tx, package_id)
            ensure_status(package, (ImportStatus.COMMITTING, ImportStatus.FAILED), "reset")
            if package.status == ImportStatus.FAILED and package.approved_at is None:
                raise InvalidStateTransitionError(
                    f"Package {package_id} failed before approval and cannot be reset",
                    current_status=package.status.value,
                    target_status=ImportStatus.APPROVED.value,
                )
            previous = package.status
            package = transition(tx, package, ImportStatus.APPROVED, error_message=None)
            PackageRepository(tx).append_note(package_id, f"[Reset]: {reason}")
            AuditRepository(tx).record(AUDIT_ENTITY, package_id, "reset_commit", actor, {
                'from': previous.value, 'reason': reason,
            })
        logger.info(f"Package {package_id} reset from {previous.value} to Approved by {actor}")
        return self.get(package_id)

    def _abort(self, package_id: str, target: ImportStatus, reason: str,
               actor: Optional[str], action: str) -> ImportPackage:
        reason = require_reason(reason, f"{action} a package")
        with self.db.transaction() as tx:
            package = load_package(tx, package_id)
            if package.status == target:
                return package
            previous = package.status
            transition(tx, package, target, error_message=reason)
            PackageRepository(tx).append_note(package_id, f"[{target.value}]: {reason}")
            AuditRepository(tx).record(AUDIT_ENTITY, package_id, action, actor, {
                'from': previous.value, 'reason': reason, 'at': utc_now().isoformat(),
            })
        logger.info(f"Package {package_id} {target.value.lower()} by {actor}: {reason}")
        return self.get(package_id)
