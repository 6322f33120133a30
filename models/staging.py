# -*- coding: utf-8 -*-
"""
Staging models.

A staging row is the package-local working copy of one entity instance.
References between rows hold the device-generated original identifiers of
the target rows; they are only translated into production identifiers inside
the commit transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from utils.datetime_utils import utc_now


class StagingEntityType(Enum):
    """Entity types carried in a package."""
    BUILDING = "Building"
    PROPERTY_UNIT = "PropertyUnit"
    HOUSEHOLD = "Household"
    PERSON = "Person"
    PERSON_PROPERTY_RELATION = "PersonPropertyRelation"
    CLAIM = "Claim"
    EVIDENCE = "Evidence"
    SURVEY = "Survey"

    @property
    def staging_table(self) -> str:
        return _STAGING_TABLES[self]

    @property
    def production_table(self) -> str:
        return _PRODUCTION_TABLES[self]

    @property
    def package_key(self) -> str:
        """Name of the record array inside the package container."""
        return _PACKAGE_KEYS[self]

    @classmethod
    def from_package_key(cls, key: str) -> Optional['StagingEntityType']:
        for entity_type, name in _PACKAGE_KEYS.items():
            if name == key:
                return entity_type
        return None


_STAGING_TABLES = {
    StagingEntityType.BUILDING: "staging_buildings",
    StagingEntityType.PROPERTY_UNIT: "staging_property_units",
    StagingEntityType.HOUSEHOLD: "staging_households",
    StagingEntityType.PERSON: "staging_persons",
    StagingEntityType.PERSON_PROPERTY_RELATION: "staging_person_property_relations",
    StagingEntityType.CLAIM: "staging_claims",
    StagingEntityType.EVIDENCE: "staging_evidence",
    StagingEntityType.SURVEY: "staging_surveys",
}

_PRODUCTION_TABLES = {
    StagingEntityType.BUILDING: "buildings",
    StagingEntityType.PROPERTY_UNIT: "property_units",
    StagingEntityType.HOUSEHOLD: "households",
    StagingEntityType.PERSON: "persons",
    StagingEntityType.PERSON_PROPERTY_RELATION: "person_property_relations",
    StagingEntityType.CLAIM: "claims",
    StagingEntityType.EVIDENCE: "evidence",
    StagingEntityType.SURVEY: "surveys",
}

_PACKAGE_KEYS = {
    StagingEntityType.BUILDING: "buildings",
    StagingEntityType.PROPERTY_UNIT: "property_units",
    StagingEntityType.HOUSEHOLD: "households",
    StagingEntityType.PERSON: "persons",
    StagingEntityType.PERSON_PROPERTY_RELATION: "person_property_relations",
    StagingEntityType.CLAIM: "claims",
    StagingEntityType.EVIDENCE: "evidence",
    StagingEntityType.SURVEY: "surveys",
}

# Parent before child
COMMIT_ORDER: List[StagingEntityType] = [
    StagingEntityType.BUILDING,
    StagingEntityType.PROPERTY_UNIT,
    StagingEntityType.HOUSEHOLD,
    StagingEntityType.PERSON,
    StagingEntityType.PERSON_PROPERTY_RELATION,
    StagingEntityType.CLAIM,
    StagingEntityType.EVIDENCE,
    StagingEntityType.SURVEY,
]


@dataclass(frozen=True)
class ReferenceField:
    """A payload field holding the original id of another staged entity."""
    name: str
    target: StagingEntityType
    required: bool = True


ENTITY_REFERENCES: Dict[StagingEntityType, List[ReferenceField]] = {
    StagingEntityType.BUILDING: [],
    StagingEntityType.PROPERTY_UNIT: [
        ReferenceField("building_id", StagingEntityType.BUILDING),
    ],
    StagingEntityType.HOUSEHOLD: [
        ReferenceField("property_unit_id", StagingEntityType.PROPERTY_UNIT),
    ],
    StagingEntityType.PERSON: [
        ReferenceField("household_id", StagingEntityType.HOUSEHOLD, required=False),
    ],
    StagingEntityType.PERSON_PROPERTY_RELATION: [
        ReferenceField("person_id", StagingEntityType.PERSON),
        ReferenceField("property_unit_id", StagingEntityType.PROPERTY_UNIT),
    ],
    StagingEntityType.CLAIM: [
        ReferenceField("property_unit_id", StagingEntityType.PROPERTY_UNIT),
        ReferenceField("claimant_person_id", StagingEntityType.PERSON),
    ],
    StagingEntityType.EVIDENCE: [
        ReferenceField("relation_id", StagingEntityType.PERSON_PROPERTY_RELATION, required=False),
        ReferenceField("person_id", StagingEntityType.PERSON, required=False),
        ReferenceField("claim_id", StagingEntityType.CLAIM, required=False),
    ],
    StagingEntityType.SURVEY: [
        ReferenceField("building_id", StagingEntityType.BUILDING),
        ReferenceField("property_unit_id", StagingEntityType.PROPERTY_UNIT, required=False),
    ],
}


class ValidationStatus(Enum):
    """Row-level validation outcome."""
    PENDING = "Pending"
    VALID = "Valid"
    WARNING = "Warning"
    INVALID = "Invalid"

    @property
    def is_committable(self) -> bool:
        return self in (ValidationStatus.VALID, ValidationStatus.WARNING)


class CommitStatus(Enum):
    """Row-level commit outcome."""
    COMMITTED = "Committed"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    DISCARDED = "Discarded"


@dataclass
class StagingRecord:
    """One staged entity instance."""

    package_id: str
    entity_type: StagingEntityType
    original_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    validation_status: ValidationStatus = ValidationStatus.PENDING
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    is_approved: bool = False
    committed_entity_id: Optional[str] = None
    commit_status: Optional[CommitStatus] = None
    commit_error: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def references(self) -> List[ReferenceField]:
        return ENTITY_REFERENCES[self.entity_type]

    def ref(self, name: str) -> Optional[str]:
        value = self.payload.get(name)
        if value is None or value == "":
            return None
        return str(value)

    def apply_validation(self, errors: List[str], warnings: List[str]) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings)
        if errors:
            self.validation_status = ValidationStatus.INVALID
        elif warnings:
            self.validation_status = ValidationStatus.WARNING
        else:
            self.validation_status = ValidationStatus.VALID

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'package_id': self.package_id,
            'entity_type': self.entity_type.value,
            'original_id': self.original_id,
            'payload': self.payload,
            'validation_status': self.validation_status.value,
            'errors': self.errors,
            'warnings': self.warnings,
            'is_approved': self.is_approved,
            'committed_entity_id': self.committed_entity_id,
            'commit_status': self.commit_status.value if self.commit_status else None,
            'commit_error': self.commit_error,
        }


@dataclass
class StagingSummary:
    """Counts per entity type and per validation status."""
    package_id: str
    counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    package_warnings: List[str] = field(default_factory=list)

    def add(self, entity_type: StagingEntityType, status: ValidationStatus, count: int = 1) -> None:
        bucket = self.counts.setdefault(entity_type.value, {s.value: 0 for s in ValidationStatus})
        bucket[status.value] = bucket.get(status.value, 0) + count

    def total(self, status: Optional[ValidationStatus] = None) -> int:
        if status is None:
            return sum(sum(b.values()) for b in self.counts.values())
        return sum(b.get(status.value, 0) for b in self.counts.values())

    def record_counts(self) -> Dict[str, int]:
        return {name: sum(bucket.values()) for name, bucket in self.counts.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'package_id': self.package_id,
            'counts': self.counts,
            'totals': {s.value: self.total(s) for s in ValidationStatus},
            'total': self.total(),
            'package_warnings': self.package_warnings,
        }
