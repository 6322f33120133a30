# -*- coding: utf-8 -*-
"""
Package Intake - receives uploaded packages.

Implements:
- Streaming, size-bounded upload into content-addressed storage
- Server-side SHA-256 verification against the declared checksum
- Optional HMAC-SHA256 signature verification
- Vocabulary compatibility (major version mismatch quarantines)
- Idempotency on the client-generated package id
"""

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Optional

from app.config import Config
from models.import_package import ImportPackage, ImportStatus, PackageManifest
from repositories.audit_repository import AuditRepository
from repositories.package_repository import PackageRepository
from services.exceptions import DuplicateUploadError, ValidationError
from services.storage_service import ContentStore, package_store
from services.vocabulary_service import VocabularyService, major_mismatches
from utils.logger import get_logger

logger = get_logger(__name__)

_SHA256_HEX = re.compile(r'^[0-9a-f]{64}$')


@dataclass
class IntakeResult:
    """Outcome of one upload."""
    package: ImportPackage
    duplicate: bool = False

    @property
    def accepted(self) -> bool:
        return not self.duplicate and self.package.status != ImportStatus.QUARANTINED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accepted': self.accepted,
            'duplicate': self.duplicate,
            'package': self.package.to_dict(),
        }


def sign_checksum(checksum: str, key: str) -> str:
    """Signature a device is expected to send: HMAC-SHA256(key, checksum)."""
    return hmac.new(key.encode("utf-8"), checksum.encode("utf-8"), hashlib.sha256).hexdigest()


class PackageIntakeService:
    """Entry point for every uploaded package (operator upload or device sync)."""

    def __init__(self, db, store: Optional[ContentStore] = None):
        self.db = db
        self.store = store or package_store()

    def receive(self, stream: BinaryIO, manifest: PackageManifest,
                uploaded_by: Optional[str] = None,
                length: Optional[int] = None) -> IntakeResult:
        """
        Store and register an uploaded package.

        A package id seen before returns the existing package with
        ``duplicate=True`` and the stream is left unread. A checksum or
        signature failure, or a vocabulary major version mismatch, persists
        the package as Quarantined.
        """
        self._check_manifest(manifest)
        try:
            return self._receive(stream, manifest, uploaded_by, length)
        except DuplicateUploadError as e:
            logger.info(f"Duplicate upload of package {manifest.package_id} ignored")
            return IntakeResult(e.package, duplicate=True)

    def _receive(self, stream: BinaryIO, manifest: PackageManifest,
                 uploaded_by: Optional[str], length: Optional[int]) -> IntakeResult:
        packages = PackageRepository(self.db)
        existing = packages.get_by_id(manifest.package_id)
        if existing:
            raise DuplicateUploadError(f"Package {manifest.package_id} already received", package=existing)

        stored = self.store.store_stream(stream, max_bytes=Config.MAX_UPLOAD_BYTES, length=length)
        signature_valid = self._verify_signature(stored.checksum, manifest.signature)

        problems = []
        if stored.checksum != manifest.checksum:
            problems.append(
                f"Checksum mismatch: declared {manifest.checksum}, actual {stored.checksum}")
        if signature_valid is False:
            problems.append("Package signature is invalid")
        problems.extend(major_mismatches(manifest.vocab_versions, VocabularyService(self.db).snapshot()))
        status = ImportStatus.QUARANTINED if problems else ImportStatus.UPLOADED

        with self.db.transaction() as tx:
            repo = PackageRepository(tx)
            package = ImportPackage(
                package_id=manifest.package_id,
                package_number=repo.next_package_number(),
                file_name=manifest.file_name,
                file_size=stored.size,
                declared_checksum=manifest.checksum,
                actual_checksum=stored.checksum,
                is_signature_valid=signature_valid,
                storage_path=str(stored.path),
                status=status,
                device_id=manifest.device_id,
                collector_id=manifest.collector_id or uploaded_by,
                exported_at=manifest.exported_at,
                schema_version=manifest.schema_version,
                vocab_versions=manifest.vocab_versions,
                error_message="; ".join(problems) or None,
                uploaded_by=uploaded_by,
            )
            if not repo.create(package):
                # Lost a race with a concurrent upload of the same id
                raise DuplicateUploadError(f"Package {manifest.package_id} already received",
                                           package=repo.get_by_id(manifest.package_id))
            if problems:
                repo.append_note(package.package_id, f"[Quarantined]: {'; '.join(problems)}")
            AuditRepository(tx).record("ImportPackage", package.package_id, "upload", uploaded_by, {
                'package_number': package.package_number,
                'status': status.value,
                'size': stored.size,
                'checksum': stored.checksum,
                'content_reused': stored.already_present,
            })

        if problems:
            logger.warning(f"Package {package.package_id} quarantined: {'; '.join(problems)}")
        else:
            logger.info(f"Received package {package.package_id} as {package.package_number} ({stored.size} bytes)")
        return IntakeResult(packages.get_by_id(manifest.package_id))

    def _check_manifest(self, manifest: PackageManifest) -> None:
        errors = []
        if not manifest.package_id:
            errors.append("package_id is required")
        if not _SHA256_HEX.match(manifest.checksum or ""):
            errors.append("checksum must be a hex SHA-256 digest")
        if errors:
            raise ValidationError("Invalid upload manifest", field="manifest", errors=errors)

    def _verify_signature(self, checksum: str, signature: Optional[str]) -> Optional[bool]:
        """None when there is nothing to verify."""
        key = Config.PACKAGE_SIGNING_KEY
        if not key or not signature:
            return None
        return hmac.compare_digest(sign_checksum(checksum, key), signature.strip().lower())
