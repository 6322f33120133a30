# -*- coding: utf-8 -*-
"""
Row-level validation of staged records.

Each row is checked on its own: required fields, value ranges, vocabulary
codes and cross-field rules, plus resolution of its references inside the
package (or against production). A failing row never affects its siblings.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from models.staging import StagingEntityType, StagingRecord, ValidationStatus
from models.vocabulary import VocabularySnapshot
from services.spatial import parse_ring
from utils.datetime_utils import parse_datetime, utc_now

# Building code format: GG-DD-SS-CCC-NNN-BBBBB
BUILDING_CODE_PATTERN = re.compile(r'^\d{2}-\d{2}-\d{2}-\d{3}-\d{3}-\d{5}$')
NATIONAL_ID_PATTERN = re.compile(r'^\d{11}$')
CONTENT_HASH_PATTERN = re.compile(r'^[0-9a-f]{64}$')
PHONE_PATTERN = re.compile(r'^\+?[\d\s-]{7,15}$')

# Approximate bounds of Syria
SYRIA_LAT = (32.0, 38.0)
SYRIA_LNG = (35.0, 43.0)

MIN_FLOOR, MAX_FLOOR = -5, 200
MIN_BIRTH_YEAR = 1900


@dataclass
class RowValidation:
    """Collects issues for one row."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, field_name: str, message: str):
        self.errors.append(f"{field_name}: {message}")

    def add_warning(self, field_name: str, message: str):
        self.warnings.append(f"{field_name}: {message}")


class PackageArena:
    """
    Original ids staged in one package, keyed by entity type, with each
    row's validation status once known. References are resolved here first
    and then against production.
    """

    def __init__(self, production_lookup: Callable[[StagingEntityType, str], bool]):
        self._rows: Dict[StagingEntityType, Dict[str, ValidationStatus]] = {t: {} for t in StagingEntityType}
        self._production_lookup = production_lookup

    def add(self, entity_type: StagingEntityType, original_id: str,
            status: ValidationStatus = ValidationStatus.PENDING) -> None:
        self._rows[entity_type][original_id] = status

    def status_of(self, entity_type: StagingEntityType, original_id: str) -> Optional[ValidationStatus]:
        return self._rows[entity_type].get(original_id)

    def in_production(self, entity_type: StagingEntityType, entity_id: str) -> bool:
        return self._production_lookup(entity_type, entity_id)


class RecordValidator:
    """
    Validates staged rows against a fixed vocabulary snapshot.

    Args:
        snapshot: Active vocabularies, loaded once for the staging run
        arena: Package-local reference index
        has_attachment: Callable telling whether the package carries a file
    """

    def __init__(self, snapshot: VocabularySnapshot, arena: PackageArena,
                 has_attachment: Callable[[str], bool]):
        self.snapshot = snapshot
        self.arena = arena
        self.has_attachment = has_attachment
        self._validators = {
            StagingEntityType.BUILDING: self._validate_building,
            StagingEntityType.PROPERTY_UNIT: self._validate_property_unit,
            StagingEntityType.HOUSEHOLD: self._validate_household,
            StagingEntityType.PERSON: self._validate_person,
            StagingEntityType.PERSON_PROPERTY_RELATION: self._validate_relation,
            StagingEntityType.CLAIM: self._validate_claim,
            StagingEntityType.EVIDENCE: self._validate_evidence,
            StagingEntityType.SURVEY: self._validate_survey,
        }

    def validate(self, record: StagingRecord) -> StagingRecord:
        """Validate ``record`` in place and return it."""
        result = RowValidation()
        self._validators[record.entity_type](record.payload, result)
        self._check_references(record, result)
        record.apply_validation(result.errors, result.warnings)
        return record

    # ==================== Shared checks ====================

    def _check_references(self, record: StagingRecord, result: RowValidation) -> None:
        for ref in record.references:
            value = record.ref(ref.name)
            if value is None:
                if ref.required:
                    result.add_error(ref.name, f"Missing required reference to {ref.target.value}")
                continue
            status = self.arena.status_of(ref.target, value)
            if status is not None:
                if status == ValidationStatus.INVALID:
                    result.add_warning(ref.name, f"References {ref.target.value} {value}, which is invalid")
                continue
            if not self.arena.in_production(ref.target, value):
                result.add_error(ref.name, f"Unresolved reference to {ref.target.value} {value}")

    def _check_code(self, data: Dict[str, Any], field_name: str, vocabulary: str,
                    result: RowValidation, required: bool = True) -> None:
        value = data.get(field_name)
        if value is None or value == "":
            if required:
                result.add_error(field_name, "Missing required field")
            return
        if not self.snapshot.has_vocabulary(vocabulary):
            result.add_warning(field_name, f"Vocabulary '{vocabulary}' is not loaded; code not checked")
            return
        if not self.snapshot.is_valid_code(vocabulary, value):
            result.add_error(field_name, f"Unknown {vocabulary} code: {value}")

    @staticmethod
    def _require(data: Dict[str, Any], field_name: str, result: RowValidation) -> bool:
        value = data.get(field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            result.add_error(field_name, "Missing required field")
            return False
        return True

    @staticmethod
    def _number(data: Dict[str, Any], field_name: str, result: RowValidation,
                integer: bool = False) -> Optional[float]:
        value = data.get(field_name)
        if value is None or value == "":
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            result.add_error(field_name, f"Not a number: {value}")
            return None
        if not math.isfinite(number):
            result.add_error(field_name, f"Not a finite number: {value}")
            return None
        if integer and number != int(number):
            result.add_error(field_name, f"Not an integer: {value}")
            return None
        return number

    # ==================== Entity validators ====================

    def _validate_building(self, data: Dict[str, Any], result: RowValidation) -> None:
        if self._require(data, 'building_code', result):
            code = str(data['building_code'])
            if not BUILDING_CODE_PATTERN.match(code):
                result.add_error('building_code', f"Invalid format {code} (expected GG-DD-SS-CCC-NNN-BBBBB)")
        self._check_code(data, 'building_type', 'building_type', result)

        lat = self._number(data, 'latitude', result)
        lng = self._number(data, 'longitude', result)
        if lat is not None:
            if not -90 <= lat <= 90:
                result.add_error('latitude', f"Out of range: {lat}")
            elif not SYRIA_LAT[0] <= lat <= SYRIA_LAT[1]:
                result.add_warning('latitude', f"{lat} outside Syria bounds {SYRIA_LAT}")
        if lng is not None:
            if not -180 <= lng <= 180:
                result.add_error('longitude', f"Out of range: {lng}")
            elif not SYRIA_LNG[0] <= lng <= SYRIA_LNG[1]:
                result.add_warning('longitude', f"{lng} outside Syria bounds {SYRIA_LNG}")
        if (lat is None) != (lng is None):
            result.add_error('latitude', "Latitude and longitude must be supplied together")

        geometry = data.get('geometry')
        if geometry not in (None, "") and parse_ring(geometry) is None:
            result.add_error('geometry', "Not a valid polygon")

    def _validate_property_unit(self, data: Dict[str, Any], result: RowValidation) -> None:
        self._require(data, 'unit_identifier', result)
        self._check_code(data, 'unit_type', 'unit_type', result)
        floor = self._number(data, 'floor_number', result, integer=True)
        if floor is not None and not MIN_FLOOR <= floor <= MAX_FLOOR:
            result.add_error('floor_number', f"Out of range {MIN_FLOOR}..{MAX_FLOOR}: {int(floor)}")
        area = self._number(data, 'area_sqm', result)
        if area is not None and area <= 0:
            result.add_error('area_sqm', f"Must be positive: {area}")

    def _validate_household(self, data: Dict[str, Any], result: RowValidation) -> None:
        size = self._number(data, 'household_size', result, integer=True)
        if size is not None and size < 1:
            result.add_error('household_size', f"Must be at least 1: {int(size)}")
        males = self._number(data, 'male_count', result, integer=True) or 0
        females = self._number(data, 'female_count', result, integer=True) or 0
        if size is not None and (males + females) > 0 and (males + females) != size:
            result.add_warning(
                'household_size',
                f"Size ({int(size)}) does not match gender counts ({int(males + females)})")

    def _validate_person(self, data: Dict[str, Any], result: RowValidation) -> None:
        self._require(data, 'first_name', result)
        self._require(data, 'family_name', result)
        self._check_code(data, 'gender', 'gender', result, required=False)

        national_id = data.get('national_id')
        if national_id:
            clean = str(national_id).strip().replace('-', '').replace(' ', '')
            if not NATIONAL_ID_PATTERN.match(clean):
                result.add_warning('national_id', f"Format may be invalid: {national_id} (expected 11 digits)")

        year = self._number(data, 'year_of_birth', result, integer=True)
        if year is not None and not MIN_BIRTH_YEAR <= year <= datetime.now().year:
            result.add_error('year_of_birth', f"Out of range {MIN_BIRTH_YEAR}..{datetime.now().year}: {int(year)}")

        phone = data.get('mobile_number')
        if phone and not PHONE_PATTERN.match(str(phone)):
            result.add_warning('mobile_number', f"Unusual phone number: {phone}")

    def _validate_relation(self, data: Dict[str, Any], result: RowValidation) -> None:
        self._check_code(data, 'relation_type', 'relation_type', result)
        share = self._number(data, 'ownership_share', result)
        if share is not None and not 0 <= share <= 100:
            result.add_error('ownership_share', f"Must lie in 0..100: {share}")
        if share is None and str(data.get('relation_type') or '').lower() in ('owner', 'co_owner'):
            result.add_warning('ownership_share', "Owner relation without an ownership share")

    def _validate_claim(self, data: Dict[str, Any], result: RowValidation) -> None:
        self._check_code(data, 'claim_type', 'claim_type', result)
        if data.get('claim_number'):
            result.add_warning('claim_number', "Pre-assigned claim number ignored; numbers are assigned at commit")

    def _validate_evidence(self, data: Dict[str, Any], result: RowValidation) -> None:
        self._check_code(data, 'evidence_type', 'evidence_type', result)
        if self._require(data, 'content_hash', result):
            if not CONTENT_HASH_PATTERN.match(str(data['content_hash']).lower()):
                result.add_error('content_hash', "Must be a hex SHA-256 digest")
        if self._require(data, 'file_name', result):
            if not self.has_attachment(str(data['file_name'])):
                result.add_error('file_name', f"Attachment missing from package: {data['file_name']}")
        if not any(data.get(name) for name in ('relation_id', 'person_id', 'claim_id')):
            result.add_error('relation_id', "Evidence must be linked to a relation, person or claim")

    def _validate_survey(self, data: Dict[str, Any], result: RowValidation) -> None:
        self._check_code(data, 'survey_type', 'survey_type', result, required=False)
        survey_date = data.get('survey_date')
        if survey_date:
            try:
                parsed = parse_datetime(survey_date)
            except ValueError:
                result.add_error('survey_date', f"Not a valid date: {survey_date}")
                return
            if parsed and parsed > utc_now():
                result.add_warning('survey_date', f"Date is in the future: {survey_date}")
