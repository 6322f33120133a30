# -*- coding: utf-8 -*-
"""
Vocabulary repository for controlled code lists.
"""

import json
from datetime import datetime
from typing import List, Optional

from models.vocabulary import Vocabulary
from utils.datetime_utils import parse_datetime, to_isoformat, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


class VocabularyRepository:
    """Repository for Vocabulary rows (one row per code list)."""

    # Display names for the code lists the pipeline validates against
    VOCABULARY_TYPES = {
        "building_type": ("أنواع المباني", "Building Types"),
        "unit_type": ("أنواع الوحدات", "Unit Types"),
        "gender": ("الجنس", "Gender"),
        "relation_type": ("أنواع العلاقات", "Relation Types"),
        "claim_type": ("أنواع المطالبات", "Claim Types"),
        "evidence_type": ("أنواع الأدلة", "Evidence Types"),
        "survey_type": ("أنواع المسوح", "Survey Types"),
    }

    def __init__(self, db):
        self.db = db

    def upsert(self, vocabulary: Vocabulary) -> Vocabulary:
        display_ar, display_en = self.VOCABULARY_TYPES.get(vocabulary.name, (None, None))
        self.db.execute_update("""
            INSERT INTO vocabularies (
                name, version, display_name_ar, display_name_en, values_json, is_active, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (name) DO UPDATE SET
                version = excluded.version,
                display_name_ar = excluded.display_name_ar,
                display_name_en = excluded.display_name_en,
                values_json = excluded.values_json,
                is_active = excluded.is_active,
                updated_at = excluded.updated_at
        """, (
            vocabulary.name, vocabulary.version,
            vocabulary.display_name_ar or display_ar,
            vocabulary.display_name_en or display_en,
            json.dumps(vocabulary.values, ensure_ascii=False),
            1 if vocabulary.is_active else 0,
            to_isoformat(vocabulary.updated_at),
        ))
        logger.debug(f"Stored vocabulary {vocabulary.name} v{vocabulary.version}")
        return vocabulary

    def get(self, name: str) -> Optional[Vocabulary]:
        row = self.db.fetch_one("SELECT * FROM vocabularies WHERE name = ?", (name,))
        return self._row_to_vocabulary(row) if row else None

    def get_active(self) -> List[Vocabulary]:
        rows = self.db.fetch_all("SELECT * FROM vocabularies WHERE is_active = 1 ORDER BY name")
        return [self._row_to_vocabulary(row) for row in rows]

    def updated_since(self, since: datetime) -> List[Vocabulary]:
        rows = self.db.fetch_all(
            "SELECT * FROM vocabularies WHERE is_active = 1 AND updated_at > ? ORDER BY name",
            (to_isoformat(since),)
        )
        return [self._row_to_vocabulary(row) for row in rows]

    def _row_to_vocabulary(self, row) -> Vocabulary:
        return Vocabulary(
            name=row['name'],
            version=row['version'],
            values=json.loads(row['values_json'] or "[]"),
            display_name_ar=row['display_name_ar'],
            display_name_en=row['display_name_en'],
            is_active=bool(row['is_active']),
            updated_at=parse_datetime(row['updated_at']) or utc_now(),
        )
