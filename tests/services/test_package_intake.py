# -*- coding: utf-8 -*-
"""
Tests for Package Intake.

Tests cover:
- Registration and package numbering
- Idempotent re-upload
- Checksum, signature and vocabulary verification (quarantine)
- Size bound and truncated streams
"""

import io

import pytest

from factories import building
from models.import_package import ImportStatus, PackageManifest
from repositories.audit_repository import AuditRepository
from services.exceptions import (
    IncompleteUploadError, IntegrityError, UploadTooLargeError, ValidationError,
)
from services.package_intake import sign_checksum


class _ExplodingStream(io.BytesIO):
    def read(self, *args):
        raise AssertionError("duplicate upload must not read the stream")


class TestReceive:
    """Test package registration."""

    def test_new_package_is_uploaded(self, upload):
        result = upload("pkg-1", {"buildings": [building()]})

        assert result.accepted is True
        assert result.duplicate is False
        package = result.package
        assert package.status == ImportStatus.UPLOADED
        assert package.package_number.startswith("PKG-")
        assert package.checksum_matches
        assert package.collector_id == "collector-1"

    def test_raw_bytes_stored_by_checksum(self, upload, isolated_config):
        package = upload("pkg-1").package
        stored = isolated_config.STORAGE_DIR / package.actual_checksum[:2] / package.actual_checksum
        assert str(stored) == package.storage_path
        assert stored.exists()

    def test_package_numbers_are_distinct(self, upload):
        first = upload("pkg-1").package.package_number
        second = upload("pkg-2").package.package_number
        assert first != second

    def test_upload_is_audited(self, upload, db):
        upload("pkg-1")
        history = AuditRepository(db).history("ImportPackage", "pkg-1")
        assert [h['action'] for h in history] == ["upload"]


class TestIdempotency:
    """Test re-upload of the same package id."""

    def test_reupload_returns_duplicate(self, upload, pipeline, packages):
        first = upload("pkg-1", {"buildings": [building()]})
        data = packages.build("pkg-1", {"buildings": [building()]})
        manifest = packages.manifest_for("pkg-1", data)

        second = pipeline.intake.receive(_ExplodingStream(data), manifest, uploaded_by="operator")

        assert second.duplicate is True
        assert second.accepted is False
        assert second.package.package_number == first.package.package_number

    def test_reupload_leaves_staging_untouched(self, upload, pipeline, packages, db):
        upload("pkg-1", {"buildings": [building()]})
        pipeline.staging.stage("pkg-1")
        before = db.fetch_all("SELECT id, validation_status FROM staging_buildings")

        data = packages.build("pkg-1", {"buildings": [building(), building("b-2", "01-01-01-001-001-00002")]})
        result = pipeline.intake.receive(io.BytesIO(data), packages.manifest_for("pkg-1", data))

        assert result.duplicate is True
        assert result.package.status == ImportStatus.VALIDATED
        after = db.fetch_all("SELECT id, validation_status FROM staging_buildings")
        assert [r.to_dict() for r in after] == [r.to_dict() for r in before]

    def test_identical_bytes_stored_once(self, pipeline, packages, isolated_config):
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data)
        pipeline.intake.receive(io.BytesIO(data), manifest)
        # Same bytes under a new id (a device re-export)
        manifest.package_id = "pkg-1-copy"
        result = pipeline.intake.receive(io.BytesIO(data), manifest)

        assert result.duplicate is False
        files = [p for p in isolated_config.STORAGE_DIR.rglob("*") if p.is_file()]
        assert len(files) == 1


class TestIntegrity:
    """Test checksum and signature checks."""

    def test_checksum_mismatch_quarantines(self, pipeline, packages):
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data, checksum="0" * 64)

        result = pipeline.intake.receive(io.BytesIO(data), manifest)

        assert result.package.status == ImportStatus.QUARANTINED
        assert result.accepted is False
        assert "Checksum mismatch" in result.package.error_message
        assert "[Quarantined]" in result.package.processing_notes

    def test_quarantined_package_cannot_be_staged(self, pipeline, packages):
        data = packages.build("pkg-1")
        pipeline.intake.receive(io.BytesIO(data), packages.manifest_for("pkg-1", data, checksum="0" * 64))
        with pytest.raises(IntegrityError):
            pipeline.staging.stage("pkg-1")

    def test_valid_signature(self, pipeline, packages, monkeypatch, isolated_config):
        monkeypatch.setattr(isolated_config, "PACKAGE_SIGNING_KEY", "secret")
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data)
        manifest.signature = sign_checksum(manifest.checksum, "secret")

        result = pipeline.intake.receive(io.BytesIO(data), manifest)

        assert result.package.is_signature_valid is True
        assert result.package.status == ImportStatus.UPLOADED

    def test_invalid_signature_quarantines(self, pipeline, packages, monkeypatch, isolated_config):
        monkeypatch.setattr(isolated_config, "PACKAGE_SIGNING_KEY", "secret")
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data, signature="bad")

        result = pipeline.intake.receive(io.BytesIO(data), manifest)

        assert result.package.is_signature_valid is False
        assert result.package.status == ImportStatus.QUARANTINED

    def test_signature_not_checked_without_key(self, pipeline, packages):
        data = packages.build("pkg-1")
        result = pipeline.intake.receive(io.BytesIO(data), packages.manifest_for("pkg-1", data, signature="x"))
        assert result.package.is_signature_valid is None


class TestVocabularyCompatibility:
    """Test vocabulary version checks at intake."""

    def test_major_mismatch_quarantines(self, pipeline, packages):
        data = packages.build("pkg-1", manifest={"vocab_versions": {"gender": "2.0"}})
        manifest = packages.manifest_for("pkg-1", data, vocab_versions={"gender": "2.0"})

        result = pipeline.intake.receive(io.BytesIO(data), manifest)

        assert result.accepted is False
        assert result.package.status == ImportStatus.QUARANTINED
        assert "major version mismatch" in result.package.error_message
        assert "[Quarantined]" in result.package.processing_notes

    def test_minor_difference_is_a_staging_warning(self, pipeline, packages):
        data = packages.build("pkg-1", {"buildings": [building()]},
                              manifest={"vocab_versions": {"gender": "1.1"}})
        manifest = packages.manifest_for("pkg-1", data, vocab_versions={"gender": "1.1"})

        result = pipeline.intake.receive(io.BytesIO(data), manifest)
        assert result.accepted is True
        assert result.package.status == ImportStatus.UPLOADED

        summary = pipeline.staging.stage("pkg-1")
        assert any("minor version difference" in w for w in summary.package_warnings)
        assert pipeline.packages.get("pkg-1").status == ImportStatus.VALIDATED

    def test_unknown_vocabulary_does_not_quarantine(self, pipeline, packages):
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data, vocab_versions={"hair_colour": "3.0"})

        result = pipeline.intake.receive(io.BytesIO(data), manifest)

        assert result.package.status == ImportStatus.UPLOADED


class TestManifestAndLimits:
    """Test manifest validation and the upload size bound."""

    @pytest.mark.parametrize("overrides", [{"package_id": ""}, {"checksum": "abc"}])
    def test_invalid_manifest(self, pipeline, packages, overrides):
        data = packages.build("pkg-1")
        with pytest.raises(ValidationError):
            pipeline.intake.receive(io.BytesIO(data), packages.manifest_for("pkg-1", data, **overrides))

    def test_too_large(self, pipeline, packages, monkeypatch, isolated_config):
        monkeypatch.setattr(isolated_config, "MAX_UPLOAD_BYTES", 10)
        data = packages.build("pkg-1")
        with pytest.raises(UploadTooLargeError):
            pipeline.intake.receive(io.BytesIO(data), packages.manifest_for("pkg-1", data))
        assert pipeline.packages.list() == []
        leftovers = [p for p in isolated_config.UPLOAD_TMP_DIR.rglob("*") if p.is_file()]
        assert leftovers == []

    def test_truncated_stream_is_rejected(self, pipeline, packages, isolated_config):
        data = packages.build("pkg-1", {"buildings": [building()]})
        manifest = packages.manifest_for("pkg-1", data)

        with pytest.raises(IncompleteUploadError) as exc_info:
            pipeline.intake.receive(io.BytesIO(data[:50]), manifest, length=len(data))

        assert exc_info.value.expected == len(data)
        assert exc_info.value.received == 50
        assert pipeline.packages.list() == []
        leftovers = [p for p in isolated_config.UPLOAD_TMP_DIR.rglob("*") if p.is_file()]
        assert leftovers == []

    def test_retry_after_truncation_is_accepted(self, pipeline, packages):
        data = packages.build("pkg-1", {"buildings": [building()]})
        manifest = packages.manifest_for("pkg-1", data)
        with pytest.raises(IncompleteUploadError):
            pipeline.intake.receive(io.BytesIO(data[:50]), manifest, length=len(data))

        result = pipeline.intake.receive(io.BytesIO(data), manifest, length=len(data))

        assert result.accepted is True
        assert result.package.status == ImportStatus.UPLOADED

    def test_uppercase_checksum_is_accepted(self, pipeline, packages):
        data = packages.build("pkg-1")
        digest = packages.manifest_for("pkg-1", data).checksum
        manifest = PackageManifest(package_id="pkg-1", file_name="pkg-1.uhc", checksum=f" {digest.upper()} ")

        result = pipeline.intake.receive(io.BytesIO(data), manifest)

        assert manifest.checksum == digest
        assert result.accepted is True
        assert result.package.status == ImportStatus.UPLOADED
        assert result.package.checksum_matches
