# -*- coding: utf-8 -*-
"""
Production entity repository.

Generic read/write access to the eight production tables, plus the
supporting tables the commit engine needs: content-addressed evidence
bodies and the per-package original-id mapping.
"""

import json
from typing import Any, Dict, List, Optional

from models.staging import ENTITY_REFERENCES, StagingEntityType
from utils.datetime_utils import to_isoformat, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)

# Payload fields copied into typed columns (everything is also kept in ``data``)
PAYLOAD_COLUMNS: Dict[StagingEntityType, List[str]] = {
    StagingEntityType.BUILDING: [
        "building_code", "governorate_code", "district_code", "subdistrict_code",
        "community_code", "neighborhood_code", "building_number", "building_type",
        "latitude", "longitude", "geometry",
    ],
    StagingEntityType.PROPERTY_UNIT: ["unit_identifier", "unit_type", "floor_number", "area_sqm"],
    StagingEntityType.HOUSEHOLD: ["household_size"],
    StagingEntityType.PERSON: [
        "first_name", "father_name", "mother_name", "family_name",
        "national_id", "gender", "year_of_birth", "mobile_number",
    ],
    StagingEntityType.PERSON_PROPERTY_RELATION: ["relation_type", "ownership_share"],
    StagingEntityType.CLAIM: ["claim_type", "case_status"],
    StagingEntityType.EVIDENCE: ["content_hash", "file_name", "evidence_type"],
    StagingEntityType.SURVEY: ["survey_date", "survey_type"],
}

# Columns computed by the commit engine rather than read from the payload
DERIVED_COLUMNS: Dict[StagingEntityType, List[str]] = {
    StagingEntityType.PERSON: ["family_name_norm"],
    StagingEntityType.CLAIM: ["claim_number"],
}

# Tables outside the staged set that point at production entities
_EXTRA_REFERRERS: Dict[StagingEntityType, List[tuple]] = {
    StagingEntityType.BUILDING: [("building_assignments", "building_id")],
}

# Tables whose rows also carry a ``data`` JSON copy of their references
_PRODUCTION_TABLES = frozenset(t.production_table for t in StagingEntityType)


def referrers_of(entity_type: StagingEntityType) -> List[tuple]:
    """(table, column) pairs holding a foreign key to ``entity_type``."""
    result = []
    for child_type, fields in ENTITY_REFERENCES.items():
        for ref in fields:
            if ref.target == entity_type:
                result.append((child_type.production_table, ref.name))
    result.extend(_EXTRA_REFERRERS.get(entity_type, []))
    return result


class ProductionRepository:
    """Repository for committed (production) entities."""

    def __init__(self, db):
        self.db = db

    # ==================== Write ====================

    def insert(self, entity_type: StagingEntityType, entity_id: str,
               payload: Dict[str, Any], references: Dict[str, Optional[str]],
               package_id: str, derived: Optional[Dict[str, Any]] = None) -> str:
        """Insert one production row and return its id."""
        now = to_isoformat(utc_now())
        columns = ["id"]
        values: List[Any] = [entity_id]

        for name, value in references.items():
            columns.append(name)
            values.append(value)
        for name in PAYLOAD_COLUMNS[entity_type]:
            columns.append(name)
            values.append(self._column_value(payload.get(name)))
        for name, value in (derived or {}).items():
            columns.append(name)
            values.append(value)

        columns.extend(["data", "source_package_id", "created_at", "updated_at"])
        values.extend([json.dumps(payload, ensure_ascii=False), package_id, now, now])

        query = (
            f"INSERT INTO {entity_type.production_table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        self.db.execute_update(query, tuple(values))
        return entity_id

    def apply_overrides(self, entity_type: StagingEntityType, entity_id: str,
                        overrides: Dict[str, Any]) -> None:
        """Write merged field values onto an existing production row."""
        row = self.get(entity_type, entity_id)
        if not row or not overrides:
            return
        data = row.get("data") or {}
        data.update(overrides)

        assignments = ["data = ?", "updated_at = ?"]
        params: List[Any] = [json.dumps(data, ensure_ascii=False), to_isoformat(utc_now())]
        for name in PAYLOAD_COLUMNS[entity_type]:
            if name in overrides:
                assignments.append(f"{name} = ?")
                params.append(self._column_value(overrides[name]))
        params.append(entity_id)
        self.db.execute_update(
            f"UPDATE {entity_type.production_table} SET {', '.join(assignments)} WHERE id = ?",
            tuple(params)
        )

    def supersede(self, entity_type: StagingEntityType, loser_id: str, survivor_id: str) -> int:
        """
        Retire ``loser_id`` in favour of ``survivor_id``.

        Every production foreign key pointing at the loser is rewritten, in
        the typed column and in the ``data`` copy, and earlier supersessions
        that targeted the loser are forwarded. Returns the number of
        re-pointed references.
        """
        if loser_id == survivor_id:
            return 0
        table = entity_type.production_table
        now = to_isoformat(utc_now())
        self.db.execute_update(
            f"UPDATE {table} SET superseded_by = ?, updated_at = ? WHERE id = ?",
            (survivor_id, now, loser_id)
        )
        self.db.execute_update(
            f"UPDATE {table} SET superseded_by = ? WHERE superseded_by = ?",
            (survivor_id, loser_id)
        )
        repointed = 0
        for ref_table, column in referrers_of(entity_type):
            if ref_table in _PRODUCTION_TABLES:
                self._repoint_data(ref_table, column, loser_id, survivor_id)
            repointed += self.db.execute_update(
                f"UPDATE {ref_table} SET {column} = ? WHERE {column} = ?",
                (survivor_id, loser_id)
            )
        logger.info(f"{entity_type.value} {loser_id} superseded by {survivor_id} ({repointed} references)")
        return repointed

    def _repoint_data(self, table: str, column: str, loser_id: str, survivor_id: str) -> None:
        rows = self.db.fetch_all(f"SELECT id, data FROM {table} WHERE {column} = ?", (loser_id,))
        for row in rows:
            data = json.loads(row["data"]) if row["data"] else {}
            if data.get(column) != loser_id:
                continue
            data[column] = survivor_id
            self.db.execute_update(
                f"UPDATE {table} SET data = ? WHERE id = ?",
                (json.dumps(data, ensure_ascii=False), row["id"])
            )

    # ==================== Read ====================

    def get(self, entity_type: StagingEntityType, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.fetch_one(
            f"SELECT * FROM {entity_type.production_table} WHERE id = ?", (entity_id,))
        return self._row_to_dict(row) if row else None

    def exists(self, entity_type: StagingEntityType, entity_id: str) -> bool:
        row = self.db.fetch_one(
            f"SELECT 1 AS found FROM {entity_type.production_table} WHERE id = ?", (entity_id,))
        return row is not None

    def resolve_current(self, entity_type: StagingEntityType, entity_id: str) -> Optional[str]:
        """Follow superseded_by to the live entity."""
        seen = set()
        current = entity_id
        while current and current not in seen:
            seen.add(current)
            row = self.db.fetch_one(
                f"SELECT superseded_by FROM {entity_type.production_table} WHERE id = ?", (current,))
            if row is None:
                return None
            if not row['superseded_by']:
                return current
            current = row['superseded_by']
        return current

    def count(self, entity_type: StagingEntityType, active_only: bool = True) -> int:
        query = f"SELECT COUNT(*) AS n FROM {entity_type.production_table}"
        if active_only:
            query += " WHERE superseded_by IS NULL"
        return int(self.db.fetch_one(query)['n'])

    def find_persons_by_national_id(self, national_id: str) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all(
            "SELECT * FROM persons WHERE national_id = ? AND superseded_by IS NULL",
            (national_id,)
        )
        return [self._row_to_dict(r) for r in rows]

    def find_persons_by_family_name(self, family_name_norm: str) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all(
            "SELECT * FROM persons WHERE family_name_norm = ? AND superseded_by IS NULL",
            (family_name_norm,)
        )
        return [self._row_to_dict(r) for r in rows]

    def find_building_by_code(self, building_code: str) -> Optional[Dict[str, Any]]:
        row = self.db.fetch_one(
            "SELECT * FROM buildings WHERE building_code = ? AND superseded_by IS NULL",
            (building_code,)
        )
        return self._row_to_dict(row) if row else None

    def find_buildings_with_geometry(self, neighborhood_code: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM buildings WHERE geometry IS NOT NULL AND superseded_by IS NULL"
        params: tuple = ()
        if neighborhood_code:
            query += " AND neighborhood_code = ?"
            params = (neighborhood_code,)
        return [self._row_to_dict(r) for r in self.db.fetch_all(query, params)]

    def find_units(self, building_id: str, unit_identifier: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM property_units WHERE building_id = ? AND superseded_by IS NULL"
        params: List[Any] = [building_id]
        if unit_identifier is not None:
            query += " AND unit_identifier = ?"
            params.append(unit_identifier)
        return [self._row_to_dict(r) for r in self.db.fetch_all(query, tuple(params))]

    def find_units_in_neighborhood(self, neighborhood_code: str, unit_identifier: str) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all("""
            SELECT u.*, b.building_code AS building_code, b.neighborhood_code AS neighborhood_code
            FROM property_units u JOIN buildings b ON b.id = u.building_id
            WHERE b.neighborhood_code = ? AND u.unit_identifier = ? AND u.superseded_by IS NULL
        """, (neighborhood_code, unit_identifier))
        return [self._row_to_dict(r) for r in rows]

    def find_claims(self, property_unit_id: str, claimant_person_id: str) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all(
            "SELECT * FROM claims WHERE property_unit_id = ? AND claimant_person_id = ? "
            "AND superseded_by IS NULL",
            (property_unit_id, claimant_person_id)
        )
        return [self._row_to_dict(r) for r in rows]

    # ==================== Evidence contents ====================

    def get_evidence_content(self, content_hash: str) -> Optional[Dict[str, Any]]:
        row = self.db.fetch_one(
            "SELECT * FROM evidence_contents WHERE content_hash = ?", (content_hash,))
        return row.to_dict() if row else None

    def insert_evidence_content(self, content_hash: str, storage_path: str, size_bytes: int,
                                mime_type: Optional[str], package_id: str) -> None:
        self.db.execute_update("""
            INSERT INTO evidence_contents (
                content_hash, storage_path, size_bytes, mime_type, first_package_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
        """, (content_hash, storage_path, size_bytes, mime_type, package_id, to_isoformat(utc_now())))

    def count_evidence_for_hash(self, content_hash: str) -> int:
        row = self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM evidence WHERE content_hash = ?", (content_hash,))
        return int(row['n'])

    # ==================== ID mappings ====================

    def save_mapping(self, package_id: str, entity_type: StagingEntityType,
                     original_id: str, production_id: str) -> None:
        self.db.execute_update("""
            INSERT INTO id_mappings (package_id, entity_type, original_id, production_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (package_id, entity_type, original_id) DO UPDATE SET production_id = excluded.production_id
        """, (package_id, entity_type.value, original_id, production_id, to_isoformat(utc_now())))

    def get_mappings(self, package_id: str) -> Dict[StagingEntityType, Dict[str, str]]:
        rows = self.db.fetch_all(
            "SELECT entity_type, original_id, production_id FROM id_mappings WHERE package_id = ?",
            (package_id,)
        )
        mappings: Dict[StagingEntityType, Dict[str, str]] = {t: {} for t in StagingEntityType}
        for row in rows:
            mappings[StagingEntityType(row['entity_type'])][row['original_id']] = row['production_id']
        return mappings

    @staticmethod
    def _column_value(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        if isinstance(value, bool):
            return 1 if value else 0
        return value

    @staticmethod
    def _row_to_dict(row) -> Dict[str, Any]:
        data = row.to_dict()
        raw = data.get("data")
        data["data"] = json.loads(raw) if raw else {}
        geometry = data.get("geometry")
        if isinstance(geometry, str) and geometry:
            data["geometry"] = json.loads(geometry)
        return data
