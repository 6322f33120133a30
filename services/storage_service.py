# -*- coding: utf-8 -*-
"""
Content-addressed file storage.

Raw packages and evidence bodies are stored once per SHA-256 digest under
``<root>/<hh>/<digest>``. Uploads are streamed to a temporary file while
hashing, so nothing is fully buffered in memory.
"""

import hashlib
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from app.config import Config
from services.exceptions import IncompleteUploadError, UploadTooLargeError
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class StoredFile:
    """Result of storing a byte stream."""
    checksum: str
    size: int
    path: Path
    already_present: bool = False


class ContentStore:
    """A directory of files keyed by SHA-256."""

    def __init__(self, root: Path, tmp_dir: Optional[Path] = None,
                 chunk_size: Optional[int] = None):
        self.root = Path(root)
        self.tmp_dir = Path(tmp_dir) if tmp_dir else self.root / ".incoming"
        self.chunk_size = chunk_size or Config.UPLOAD_CHUNK_SIZE
        self.root.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, checksum: str) -> Path:
        return self.root / checksum[:2] / checksum

    def exists(self, checksum: str) -> bool:
        return self.path_for(checksum).exists()

    def store_stream(self, stream: BinaryIO, max_bytes: Optional[int] = None,
                     length: Optional[int] = None) -> StoredFile:
        """
        Copy ``stream`` into the store.

        Args:
            stream: Readable binary stream
            max_bytes: Upper bound; exceeding it raises UploadTooLargeError
            length: Exact number of bytes to read (e.g. Content-Length);
                    None reads to EOF; a shorter stream raises
                    IncompleteUploadError
        """
        sha256 = hashlib.sha256()
        size = 0
        remaining = length

        with tempfile.NamedTemporaryFile(dir=self.tmp_dir, delete=False) as tmp:
            tmp_path = Path(tmp.name)
            try:
                while remaining is None or remaining > 0:
                    to_read = self.chunk_size if remaining is None else min(self.chunk_size, remaining)
                    chunk = stream.read(to_read)
                    if not chunk:
                        break
                    size += len(chunk)
                    if max_bytes is not None and size > max_bytes:
                        raise UploadTooLargeError(
                            f"Upload exceeds {max_bytes} bytes", limit=max_bytes)
                    sha256.update(chunk)
                    tmp.write(chunk)
                    if remaining is not None:
                        remaining -= len(chunk)
                if length is not None and size < length:
                    raise IncompleteUploadError(
                        f"Upload truncated: received {size} of {length} bytes",
                        expected=length, received=size)
            except Exception:
                tmp.close()
                tmp_path.unlink(missing_ok=True)
                raise

        checksum = sha256.hexdigest()
        return self._place(tmp_path, checksum, size)

    def store_bytes(self, data: bytes) -> StoredFile:
        checksum = hashlib.sha256(data).hexdigest()
        target = self.path_for(checksum)
        if target.exists():
            return StoredFile(checksum, len(data), target, already_present=True)
        with tempfile.NamedTemporaryFile(dir=self.tmp_dir, delete=False) as tmp:
            tmp.write(data)
        return self._place(Path(tmp.name), checksum, len(data))

    def _place(self, tmp_path: Path, checksum: str, size: int) -> StoredFile:
        target = self.path_for(checksum)
        if target.exists():
            tmp_path.unlink(missing_ok=True)
            logger.debug(f"Content {checksum[:16]}... already stored")
            return StoredFile(checksum, size, target, already_present=True)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(tmp_path), str(target))
        logger.debug(f"Stored {size} bytes as {checksum[:16]}...")
        return StoredFile(checksum, size, target)


def package_store() -> ContentStore:
    return ContentStore(Config.STORAGE_DIR, Config.UPLOAD_TMP_DIR)


def evidence_store() -> ContentStore:
    return ContentStore(Config.EVIDENCE_DIR, Config.UPLOAD_TMP_DIR)


def archive_package(source: Path, package_id: str, when) -> Path:
    """Copy a raw package to ``ARCHIVE_DIR/YYYY/MM/<package_id>.uhc``."""
    target_dir = Path(Config.ARCHIVE_DIR) / f"{when.year:04d}" / f"{when.month:02d}"
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{package_id}.uhc"
    shutil.copy2(str(source), str(target))
    logger.info(f"Archived package {package_id} to {target}")
    return target
