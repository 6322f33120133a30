# -*- coding: utf-8 -*-
"""
Reader for .uhc package containers.

A container is a zip archive with:
    manifest.json                 package metadata
    records/<entity>.json         one JSON array per entity type
    attachments/<file name>       evidence file bodies
"""

import json
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from models.staging import StagingEntityType
from services.exceptions import PackageFormatError
from utils.logger import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"
RECORDS_DIR = "records/"
ATTACHMENTS_DIR = "attachments/"


class PackageReader:
    """Decodes one stored package. Use as a context manager."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._zip: Optional[zipfile.ZipFile] = None
        self._manifest: Optional[Dict[str, Any]] = None

    def __enter__(self) -> 'PackageReader':
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self) -> None:
        if not self.path.exists():
            raise PackageFormatError(f"Package file not found: {self.path}")
        try:
            self._zip = zipfile.ZipFile(self.path, 'r')
        except zipfile.BadZipFile as e:
            raise PackageFormatError(f"Unreadable package container: {e}") from e

    def close(self) -> None:
        if self._zip:
            self._zip.close()
            self._zip = None

    @property
    def manifest(self) -> Dict[str, Any]:
        if self._manifest is None:
            self._manifest = self._read_json(MANIFEST_NAME)
            if not isinstance(self._manifest, dict):
                raise PackageFormatError("manifest.json must be a JSON object")
            if not self._manifest.get("package_id"):
                raise PackageFormatError("manifest.json has no package_id")
        return self._manifest

    def check_package_id(self, expected: str) -> None:
        actual = str(self.manifest.get("package_id"))
        if actual != expected:
            raise PackageFormatError(
                f"Manifest package_id {actual} does not match uploaded package {expected}")

    def records(self, entity_type: StagingEntityType) -> List[Dict[str, Any]]:
        """Record array for one entity type (empty if the member is absent)."""
        name = f"{RECORDS_DIR}{entity_type.package_key}.json"
        if name not in self._names():
            return []
        data = self._read_json(name)
        if not isinstance(data, list):
            raise PackageFormatError(f"{name} must contain a JSON array")
        for item in data:
            if not isinstance(item, dict):
                raise PackageFormatError(f"{name} contains a non-object record")
        return data

    def unknown_members(self) -> List[str]:
        """Record files that do not correspond to a known entity type."""
        unknown = []
        for name in self._names():
            if name.startswith(RECORDS_DIR) and name.endswith(".json"):
                key = name[len(RECORDS_DIR):-len(".json")]
                if StagingEntityType.from_package_key(key) is None:
                    unknown.append(name)
        return unknown

    def has_attachment(self, file_name: str) -> bool:
        return f"{ATTACHMENTS_DIR}{file_name}" in self._names()

    def read_attachment(self, file_name: str) -> bytes:
        name = f"{ATTACHMENTS_DIR}{file_name}"
        if name not in self._names():
            raise PackageFormatError(f"Attachment not found in package: {file_name}")
        return self._require_zip().read(name)

    def _names(self) -> List[str]:
        return self._require_zip().namelist()

    def _require_zip(self) -> zipfile.ZipFile:
        if self._zip is None:
            self.open()
        return self._zip

    def _read_json(self, name: str) -> Any:
        zf = self._require_zip()
        if name not in zf.namelist():
            raise PackageFormatError(f"Missing {name} in package container")
        try:
            return json.loads(zf.read(name).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise PackageFormatError(f"Corrupt {name}: {e}") from e
        except zipfile.BadZipFile as e:
            raise PackageFormatError(f"Corrupt member {name}: {e}") from e
