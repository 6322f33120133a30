# -*- coding: utf-8 -*-
"""
Vocabulary Service - controlled code lists used by staging validation.

The database is the source of truth. An optional backend endpoint
(GET <VOCABULARY_API_URL>) can refresh it. Validation never reads the
database directly: it receives a ``VocabularySnapshot`` loaded once per run.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from app.config import Config
from models.vocabulary import Vocabulary, VocabularySnapshot
from repositories.vocabulary_repository import VocabularyRepository
from utils.datetime_utils import utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


def _values(*pairs) -> List[Dict[str, Any]]:
    return [{"code": code, "label_ar": ar, "label_en": en} for code, ar, en in pairs]


# Baseline code lists installed by ``init-db``
DEFAULT_VOCABULARIES: Dict[str, List[Dict[str, Any]]] = {
    "building_type": _values(
        ("residential", "سكني", "Residential"),
        ("commercial", "تجاري", "Commercial"),
        ("mixed_use", "مختلط", "Mixed use"),
        ("industrial", "صناعي", "Industrial"),
        ("public", "عام", "Public"),
    ),
    "unit_type": _values(
        ("apartment", "شقة", "Apartment"),
        ("house", "منزل", "House"),
        ("shop", "محل", "Shop"),
        ("office", "مكتب", "Office"),
        ("warehouse", "مستودع", "Warehouse"),
        ("other", "أخرى", "Other"),
    ),
    "gender": _values(
        ("male", "ذكر", "Male"),
        ("female", "أنثى", "Female"),
    ),
    "relation_type": _values(
        ("owner", "مالك", "Owner"),
        ("co_owner", "شريك في الملكية", "Co-owner"),
        ("tenant", "مستأجر", "Tenant"),
        ("occupant", "شاغل", "Occupant"),
        ("heir", "وريث", "Heir"),
        ("other", "أخرى", "Other"),
    ),
    "claim_type": _values(
        ("ownership", "ملكية", "Ownership"),
        ("occupancy", "إشغال", "Occupancy"),
        ("tenancy", "إيجار", "Tenancy"),
        ("inheritance", "إرث", "Inheritance"),
    ),
    "evidence_type": _values(
        ("title_deed", "سند ملكية", "Title deed"),
        ("rental_contract", "عقد إيجار", "Rental contract"),
        ("court_ruling", "حكم قضائي", "Court ruling"),
        ("utility_bill", "فاتورة خدمات", "Utility bill"),
        ("photo", "صورة", "Photo"),
        ("id_document", "وثيقة هوية", "ID document"),
        ("other", "أخرى", "Other"),
    ),
    "survey_type": _values(
        ("field", "ميداني", "Field"),
        ("office", "مكتبي", "Office"),
    ),
}


class VocabularyService:
    """Loads, stores and distributes vocabularies."""

    def __init__(self, db):
        self.db = db
        self.repo = VocabularyRepository(db)

    def snapshot(self) -> VocabularySnapshot:
        """Read-only copy of the active vocabularies."""
        return VocabularySnapshot(self.repo.get_active())

    def install_defaults(self, version: str = "1.0") -> int:
        """Insert baseline vocabularies that do not exist yet."""
        installed = 0
        for name, values in DEFAULT_VOCABULARIES.items():
            if self.repo.get(name) is None:
                self.repo.upsert(Vocabulary(name=name, version=version, values=values))
                installed += 1
        if installed:
            logger.info(f"Installed {installed} default vocabularies")
        return installed

    def update(self, name: str, version: str, values: List[Dict[str, Any]]) -> bool:
        """
        Store a vocabulary version. ``updated_at`` only moves when the
        version or the values actually change, so deltas stay small.
        """
        current = self.repo.get(name)
        if current and current.version == version and current.values == values:
            return False
        self.repo.upsert(Vocabulary(name=name, version=version, values=values, updated_at=utc_now()))
        logger.info(f"Vocabulary {name} updated to v{version}")
        return True

    def refresh_from_api(self, url: Optional[str] = None) -> int:
        """
        Fetch vocabularies from the backend and store changed ones.

        Expects a JSON array of objects with ``vocabularyName``, ``version``
        and ``values`` (``code``, ``labelArabic``, ``labelEnglish``).
        """
        url = url or Config.VOCABULARY_API_URL
        if not url:
            logger.debug("No vocabulary endpoint configured")
            return 0

        logger.info(f"Fetching vocabularies from: {url}")
        response = requests.get(url, timeout=Config.VOCABULARY_API_TIMEOUT)
        response.raise_for_status()

        changed = 0
        for item in response.json():
            name = item.get("vocabularyName")
            if not name:
                continue
            values = [
                {
                    "code": str(v.get("code")),
                    "label_ar": v.get("labelArabic", ""),
                    "label_en": v.get("labelEnglish", ""),
                }
                for v in item.get("values", [])
            ]
            if self.update(name, str(item.get("version", "1.0")), values):
                changed += 1
        logger.info(f"Vocabulary refresh complete: {changed} changed")
        return changed

    def payload(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Vocabulary block for a device sync response.

        Full snapshot when ``since`` is None, otherwise only the
        vocabularies updated after it.
        """
        if since is None:
            vocabularies = self.repo.get_active()
            mode = "full"
        else:
            vocabularies = self.repo.updated_since(since)
            mode = "delta"
        return {
            "mode": mode,
            "since": since.isoformat() if since else None,
            "versions": {v.name: v.version for v in vocabularies},
            "vocabularies": [v.to_dict() for v in vocabularies],
        }


def check_versions(package_versions: Dict[str, str],
                   snapshot: VocabularySnapshot) -> List[Tuple[str, str]]:
    """
    Compare package vocabulary versions with the active ones.

    Returns (level, message) pairs where level is one of
    ``major``, ``minor``, ``unknown`` or ``unparseable``.
    """
    issues = []
    for name, version in (package_versions or {}).items():
        active = snapshot.version_of(name)
        if active is None:
            issues.append(("unknown", f"Package references unknown vocabulary '{name}' (v{version})"))
            continue
        try:
            package_major = int(str(version).split('.')[0])
            active_major = int(str(active).split('.')[0])
        except ValueError:
            issues.append(("unparseable", f"Unparseable version for vocabulary '{name}': {version}"))
            continue
        if package_major != active_major:
            issues.append(("major",
                           f"Vocabulary '{name}' major version mismatch: package v{version}, server v{active}"))
        elif str(version) != str(active):
            issues.append(("minor",
                           f"Vocabulary '{name}' minor version difference: package v{version}, server v{active}"))
    return issues


def compare_versions(package_versions: Dict[str, str], snapshot: VocabularySnapshot) -> List[str]:
    """Warnings for every vocabulary version that differs from the active one."""
    return [message for _, message in check_versions(package_versions, snapshot)]


def major_mismatches(package_versions: Dict[str, str], snapshot: VocabularySnapshot) -> List[str]:
    """Vocabularies whose major version differs; such packages are quarantined."""
    return [message for level, message in check_versions(package_versions, snapshot)
            if level == "major"]
