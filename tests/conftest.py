# -*- coding: utf-8 -*-
"""
Shared fixtures.

Every test gets its own SQLite database and storage directories under
``tmp_path``; packages are built as real zip containers.
"""

import hashlib
import io
import json
import zipfile
from pathlib import Path

import pytest

from app.config import Config
from models.import_package import PackageManifest
from repositories.db_adapter import SQLiteAdapter
from services.pipeline import ImportPipeline
from services.vocabulary_service import VocabularyService


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every data directory at the test's temporary directory."""
    data = tmp_path / "data"
    monkeypatch.setattr(Config, "DATA_DIR", data)
    monkeypatch.setattr(Config, "STORAGE_DIR", data / "packages")
    monkeypatch.setattr(Config, "EVIDENCE_DIR", data / "evidence")
    monkeypatch.setattr(Config, "ARCHIVE_DIR", data / "archives")
    monkeypatch.setattr(Config, "UPLOAD_TMP_DIR", data / "incoming")
    monkeypatch.setattr(Config, "DB_PATH", data / "test.db")
    monkeypatch.setattr(Config, "PACKAGE_SIGNING_KEY", "")
    monkeypatch.setattr(Config, "MAX_UPLOAD_BYTES", 5 * 1024 * 1024)
    Config.ensure_directories()
    return Config


@pytest.fixture
def db(tmp_path):
    """Initialized SQLite database with default vocabularies."""
    adapter = SQLiteAdapter(tmp_path / "data" / "test.db")
    adapter.connect()
    adapter.initialize()
    VocabularyService(adapter).install_defaults()
    yield adapter
    adapter.close()


@pytest.fixture
def pipeline(db):
    return ImportPipeline(db)


class PackageBuilder:
    """Builds ``.uhc`` zip containers for tests."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def build(self, package_id, records=None, attachments=None, manifest=None,
              extra_members=None) -> bytes:
        contents = {
            "package_id": package_id,
            "schema_version": "1.0",
            "device_id": "tablet-01",
            "collector_id": "collector-1",
            "exported_at": "2026-01-10T08:00:00Z",
            "vocab_versions": {"gender": "1.0"},
        }
        contents.update(manifest or {})

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("manifest.json", json.dumps(contents, ensure_ascii=False))
            for key, items in (records or {}).items():
                zf.writestr(f"records/{key}.json", json.dumps(items, ensure_ascii=False))
            for name, data in (attachments or {}).items():
                zf.writestr(f"attachments/{name}", data)
            for name, data in (extra_members or {}).items():
                zf.writestr(name, data)
        return buffer.getvalue()

    def manifest_for(self, package_id, data: bytes, /, **overrides) -> PackageManifest:
        values = {
            "package_id": package_id,
            "file_name": f"{package_id}.uhc",
            "checksum": hashlib.sha256(data).hexdigest(),
            "device_id": "tablet-01",
            "collector_id": "collector-1",
        }
        values.update(overrides)
        return PackageManifest.from_dict(values)


@pytest.fixture
def packages(tmp_path):
    return PackageBuilder(tmp_path / "built")


@pytest.fixture
def upload(pipeline, packages):
    """Build and upload a package; returns the IntakeResult."""

    def _upload(package_id, records=None, attachments=None, uploaded_by="operator", **kwargs):
        data = packages.build(package_id, records, attachments, **kwargs)
        manifest = packages.manifest_for(package_id, data)
        return pipeline.intake.receive(io.BytesIO(data), manifest, uploaded_by=uploaded_by,
                                       length=len(data))

    return _upload


@pytest.fixture
def process(upload, pipeline):
    """Upload, stage, detect, approve and commit a package with no conflicts."""

    def _process(package_id, records=None, attachments=None, actor="manager"):
        upload(package_id, records, attachments)
        pipeline.staging.stage(package_id, actor)
        pipeline.detection.detect(package_id, actor)
        pipeline.commits.approve(package_id, actor)
        return pipeline.commits.commit(package_id, actor)

    return _process

