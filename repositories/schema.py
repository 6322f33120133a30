# -*- coding: utf-8 -*-
"""
Database schema for the import pipeline.

Statements are written once and rendered per backend: ``{serial_pk}`` and
``{real}`` differ between SQLite and PostgreSQL. Timestamps are stored as
ISO-8601 UTC text and flags as 0/1 integers on both backends.
"""

from typing import Dict, List

from models.staging import StagingEntityType

# Database-level serial generators
SEQUENCES = ("package_number", "conflict_number", "claim_number")

DIALECT_TYPES: Dict[str, Dict[str, str]] = {
    "sqlite": {
        "serial_pk": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "real": "REAL",
    },
    "postgresql": {
        "serial_pk": "SERIAL PRIMARY KEY",
        "real": "DOUBLE PRECISION",
    },
}

_PACKAGES = """
    CREATE TABLE IF NOT EXISTS import_packages (
        package_id TEXT PRIMARY KEY,
        package_number TEXT UNIQUE NOT NULL,
        file_name TEXT,
        file_size INTEGER DEFAULT 0,
        declared_checksum TEXT,
        actual_checksum TEXT,
        is_signature_valid INTEGER,
        storage_path TEXT,
        status TEXT NOT NULL,
        device_id TEXT,
        collector_id TEXT,
        exported_at TEXT,
        schema_version TEXT,
        vocab_versions TEXT,
        record_counts TEXT,
        validation_summary TEXT,
        conflict_count INTEGER DEFAULT 0,
        resolved_conflict_count INTEGER DEFAULT 0,
        commit_report TEXT,
        archive_path TEXT,
        processing_notes TEXT DEFAULT '',
        error_message TEXT,
        uploaded_by TEXT,
        uploaded_at TEXT,
        approved_by TEXT,
        approved_at TEXT,
        committed_by TEXT,
        committed_at TEXT,
        updated_at TEXT
    )
"""

_STAGING_TEMPLATE = """
    CREATE TABLE IF NOT EXISTS {table} (
        id TEXT PRIMARY KEY,
        package_id TEXT NOT NULL REFERENCES import_packages(package_id),
        original_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        validation_status TEXT NOT NULL DEFAULT 'Pending',
        errors TEXT,
        warnings TEXT,
        is_approved INTEGER DEFAULT 0,
        committed_entity_id TEXT,
        commit_status TEXT,
        commit_error TEXT,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (package_id, original_id)
    )
"""

_PRODUCTION = [
    """
    CREATE TABLE IF NOT EXISTS buildings (
        id TEXT PRIMARY KEY,
        building_code TEXT,
        governorate_code TEXT,
        district_code TEXT,
        subdistrict_code TEXT,
        community_code TEXT,
        neighborhood_code TEXT,
        building_number TEXT,
        building_type TEXT,
        latitude {real},
        longitude {real},
        geometry TEXT,
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS property_units (
        id TEXT PRIMARY KEY,
        building_id TEXT NOT NULL REFERENCES buildings(id),
        unit_identifier TEXT,
        unit_type TEXT,
        floor_number INTEGER,
        area_sqm {real},
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS households (
        id TEXT PRIMARY KEY,
        property_unit_id TEXT NOT NULL REFERENCES property_units(id),
        household_size INTEGER,
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS persons (
        id TEXT PRIMARY KEY,
        household_id TEXT REFERENCES households(id),
        first_name TEXT,
        father_name TEXT,
        mother_name TEXT,
        family_name TEXT,
        family_name_norm TEXT,
        national_id TEXT,
        gender TEXT,
        year_of_birth INTEGER,
        mobile_number TEXT,
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS person_property_relations (
        id TEXT PRIMARY KEY,
        person_id TEXT NOT NULL REFERENCES persons(id),
        property_unit_id TEXT NOT NULL REFERENCES property_units(id),
        relation_type TEXT,
        ownership_share {real},
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS claims (
        id TEXT PRIMARY KEY,
        claim_number TEXT UNIQUE NOT NULL,
        property_unit_id TEXT NOT NULL REFERENCES property_units(id),
        claimant_person_id TEXT NOT NULL REFERENCES persons(id),
        claim_type TEXT,
        case_status TEXT,
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evidence_contents (
        content_hash TEXT PRIMARY KEY,
        storage_path TEXT NOT NULL,
        size_bytes INTEGER,
        mime_type TEXT,
        first_package_id TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evidence (
        id TEXT PRIMARY KEY,
        content_hash TEXT NOT NULL REFERENCES evidence_contents(content_hash),
        file_name TEXT,
        evidence_type TEXT,
        relation_id TEXT REFERENCES person_property_relations(id),
        person_id TEXT REFERENCES persons(id),
        claim_id TEXT REFERENCES claims(id),
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS surveys (
        id TEXT PRIMARY KEY,
        building_id TEXT NOT NULL REFERENCES buildings(id),
        property_unit_id TEXT REFERENCES property_units(id),
        survey_date TEXT,
        survey_type TEXT,
        data TEXT,
        source_package_id TEXT,
        superseded_by TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
]

_PIPELINE = [
    """
    CREATE TABLE IF NOT EXISTS id_mappings (
        package_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        original_id TEXT NOT NULL,
        production_id TEXT NOT NULL,
        created_at TEXT,
        PRIMARY KEY (package_id, entity_type, original_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conflict_resolutions (
        id TEXT PRIMARY KEY,
        conflict_number TEXT UNIQUE NOT NULL,
        package_id TEXT NOT NULL REFERENCES import_packages(package_id),
        conflict_type TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        first_entity_id TEXT NOT NULL,
        first_identifier TEXT,
        second_entity_id TEXT NOT NULL,
        second_identifier TEXT,
        second_is_production INTEGER DEFAULT 0,
        pair_key TEXT UNIQUE NOT NULL,
        similarity_score {real},
        confidence TEXT,
        matching_criteria TEXT,
        description TEXT,
        status TEXT NOT NULL,
        priority TEXT,
        review_queue TEXT,
        assigned_to TEXT,
        target_resolution_hours INTEGER,
        review_attempt_count INTEGER DEFAULT 0,
        resolution_action TEXT,
        resolution_reason TEXT,
        resolution_notes TEXT,
        survivor_entity_id TEXT,
        discarded_entity_id TEXT,
        merge_mapping TEXT,
        is_escalated INTEGER DEFAULT 0,
        escalation_reason TEXT,
        escalated_by TEXT,
        escalated_at TEXT,
        detected_at TEXT,
        resolved_by TEXT,
        resolved_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vocabularies (
        name TEXT PRIMARY KEY,
        version TEXT NOT NULL,
        display_name_ar TEXT,
        display_name_en TEXT,
        values_json TEXT,
        is_active INTEGER DEFAULT 1,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_sessions (
        id TEXT PRIMARY KEY,
        field_collector_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        server_address TEXT,
        status TEXT NOT NULL,
        packages_uploaded INTEGER DEFAULT 0,
        packages_failed INTEGER DEFAULT 0,
        assignments_downloaded INTEGER DEFAULT 0,
        assignments_acknowledged INTEGER DEFAULT 0,
        vocabulary_versions_sent TEXT,
        error_message TEXT,
        started_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS building_assignments (
        id TEXT PRIMARY KEY,
        building_id TEXT NOT NULL REFERENCES buildings(id),
        field_collector_id TEXT NOT NULL,
        assigned_by TEXT,
        assigned_date TEXT,
        target_completion_date TEXT,
        transfer_status TEXT NOT NULL,
        transferred_at TEXT,
        transfer_error TEXT,
        priority TEXT,
        notes TEXT,
        is_revisit INTEGER DEFAULT 0,
        units_for_revisit TEXT,
        is_active INTEGER DEFAULT 1,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id {serial_pk},
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        action TEXT NOT NULL,
        performed_by TEXT,
        details TEXT,
        performed_at TEXT
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_packages_status ON import_packages(status)",
    "CREATE INDEX IF NOT EXISTS idx_persons_national_id ON persons(national_id)",
    "CREATE INDEX IF NOT EXISTS idx_persons_family_norm ON persons(family_name_norm)",
    "CREATE INDEX IF NOT EXISTS idx_units_building ON property_units(building_id)",
    "CREATE INDEX IF NOT EXISTS idx_buildings_code ON buildings(building_code)",
    "CREATE INDEX IF NOT EXISTS idx_buildings_neighborhood ON buildings(neighborhood_code)",
    "CREATE INDEX IF NOT EXISTS idx_evidence_hash ON evidence(content_hash)",
    "CREATE INDEX IF NOT EXISTS idx_conflicts_package ON conflict_resolutions(package_id)",
    "CREATE INDEX IF NOT EXISTS idx_conflicts_status ON conflict_resolutions(status)",
    "CREATE INDEX IF NOT EXISTS idx_assignments_collector ON building_assignments(field_collector_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id)",
]


def schema_statements(dialect: str) -> List[str]:
    """All DDL statements for the given backend, in creation order."""
    types = DIALECT_TYPES[dialect]
    statements = [_PACKAGES]
    for entity_type in StagingEntityType:
        statements.append(_STAGING_TEMPLATE.format(table=entity_type.staging_table))
        statements.append(
            f"CREATE INDEX IF NOT EXISTS idx_{entity_type.staging_table}_package "
            f"ON {entity_type.staging_table}(package_id)"
        )
    statements.extend(_PRODUCTION)
    statements.extend(_PIPELINE)
    statements.extend(_INDEXES)
    return [s.format(**types) if "{" in s else s for s in statements]
