# -*- coding: utf-8 -*-


from pathlib import Path
from dataclasses import dataclass
from typing import Dict
import os

from dotenv import load_dotenv

# ============================================================================
# Load .env file for local environment configuration
# ============================================================================
load_dotenv()

# ============================================================================
# Read settings from environment variables (from .env or system)
# ============================================================================
_PROJECT_ROOT = Path(__file__).parent.parent
_DATA_DIR = Path(os.getenv("TRRCMS_DATA_DIR", str(_PROJECT_ROOT / "data")))
_LOGS_DIR = Path(os.getenv("TRRCMS_LOGS_DIR", str(_PROJECT_ROOT / "logs")))
_LOG_LEVEL = os.getenv("TRRCMS_LOG_LEVEL", "INFO")

# Upload limits
_MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))
_UPLOAD_CHUNK_SIZE = int(os.getenv("UPLOAD_CHUNK_SIZE", str(64 * 1024)))

# Package signature (HMAC-SHA256 over the checksum); empty disables verification
_PACKAGE_SIGNING_KEY = os.getenv("PACKAGE_SIGNING_KEY", "")

# Duplicate detection
_NAME_SIMILARITY_MEDIUM = float(os.getenv("NAME_SIMILARITY_MEDIUM", "85"))
_NAME_SIMILARITY_LOW = float(os.getenv("NAME_SIMILARITY_LOW", "70"))
_AREA_OVERLAP_THRESHOLD = float(os.getenv("AREA_OVERLAP_THRESHOLD", "0.5"))

# Conflict SLA
_CONFLICT_TARGET_HOURS = int(os.getenv("CONFLICT_TARGET_HOURS", "72"))

# Local network sync server
_SYNC_HOST = os.getenv("SYNC_HOST", "0.0.0.0")
_SYNC_PORT = int(os.getenv("SYNC_PORT", "8443"))
_SYNC_API_TOKENS = os.getenv("SYNC_API_TOKENS", "")
_SYNC_ENABLE_MDNS = os.getenv("SYNC_ENABLE_MDNS", "true").lower() in ("true", "1", "yes")

# Vocabulary backend (optional)
_VOCABULARY_API_URL = os.getenv("VOCABULARY_API_URL", "")
_VOCABULARY_API_TIMEOUT = int(os.getenv("VOCABULARY_API_TIMEOUT", "10"))


@dataclass
class Config:
    """Application configuration."""

    # Application Info
    APP_NAME: str = "UN-Habitat Syria"
    APP_TITLE: str = "TRRCMS Import & Reconciliation Pipeline"
    VERSION: str = "1.0.0"
    ORGANIZATION: str = "UN-Habitat"

    # Paths
    PROJECT_ROOT: Path = _PROJECT_ROOT
    DATA_DIR: Path = _DATA_DIR
    LOGS_DIR: Path = _LOGS_DIR
    STORAGE_DIR: Path = DATA_DIR / "packages"
    EVIDENCE_DIR: Path = DATA_DIR / "evidence"
    ARCHIVE_DIR: Path = DATA_DIR / "archives"
    UPLOAD_TMP_DIR: Path = DATA_DIR / "incoming"

    # Database Configuration
    # SQLite (development/fallback)
    DB_NAME: str = "trrcms.db"
    DB_PATH: Path = DATA_DIR / DB_NAME

    # Package intake
    MAX_UPLOAD_BYTES: int = _MAX_UPLOAD_BYTES
    UPLOAD_CHUNK_SIZE: int = _UPLOAD_CHUNK_SIZE
    PACKAGE_SIGNING_KEY: str = _PACKAGE_SIGNING_KEY

    # Duplicate detection (scores are 0-100)
    NAME_SIMILARITY_MEDIUM: float = _NAME_SIMILARITY_MEDIUM
    NAME_SIMILARITY_LOW: float = _NAME_SIMILARITY_LOW
    AREA_OVERLAP_THRESHOLD: float = _AREA_OVERLAP_THRESHOLD

    # Conflict resolution
    CONFLICT_TARGET_HOURS: int = _CONFLICT_TARGET_HOURS

    # Sync server
    SYNC_HOST: str = _SYNC_HOST
    SYNC_PORT: int = _SYNC_PORT
    SYNC_API_TOKENS: str = _SYNC_API_TOKENS
    SYNC_ENABLE_MDNS: bool = _SYNC_ENABLE_MDNS

    # Vocabularies
    VOCABULARY_API_URL: str = _VOCABULARY_API_URL
    VOCABULARY_API_TIMEOUT: int = _VOCABULARY_API_TIMEOUT

    # Logging
    LOG_LEVEL: str = _LOG_LEVEL
    LOG_FILE: str = "app.log"
    LOG_PATH: Path = LOGS_DIR / LOG_FILE
    LOG_MAX_BYTES: int = 5 * 1024 * 1024  # 5MB
    LOG_BACKUP_COUNT: int = 3

    @classmethod
    def sync_tokens(cls) -> Dict[str, str]:
        """Parse SYNC_API_TOKENS ("token:user_id,token2:user_id2") into a map."""
        tokens = {}
        for entry in cls.SYNC_API_TOKENS.split(","):
            entry = entry.strip()
            if not entry or ":" not in entry:
                continue
            token, user_id = entry.split(":", 1)
            tokens[token.strip()] = user_id.strip()
        return tokens

    @classmethod
    def ensure_directories(cls) -> None:
        """Create data directories."""
        for path in (cls.DATA_DIR, cls.STORAGE_DIR, cls.EVIDENCE_DIR,
                     cls.ARCHIVE_DIR, cls.UPLOAD_TMP_DIR, cls.LOGS_DIR):
            path.mkdir(parents=True, exist_ok=True)
