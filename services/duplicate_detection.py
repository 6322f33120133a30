# -*- coding: utf-8 -*-
"""
Duplicate Detector.

Compares staged rows of one package with each other and with production:

    Person        High   national id equal on both sides
                  Medium full-name similarity >= NAME_SIMILARITY_MEDIUM
                         with equal birth year and gender
                  Low    full-name similarity >= NAME_SIMILARITY_LOW
    PropertyUnit  High   same building code and unit identifier
                  Medium footprint overlap >= AREA_OVERLAP_THRESHOLD and
                         same unit identifier
                  Low    same neighborhood code and unit identifier
    Building      High   same building code
                  Low    footprint overlap >= AREA_OVERLAP_THRESHOLD
    Claim         High   same unit and claimant (ClaimConflict)

Each pair is recorded once, whatever order it is found in, so re-running
detection (or running it on another package) never re-raises a pair.
"""

from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, List, Optional, Tuple

from app.config import Config
from models.conflict import (
    ConfidenceLevel, ConflictResolution, ConflictType, determine_priority, make_pair_key,
)
from models.import_package import ImportStatus
from models.staging import StagingEntityType, StagingRecord, ValidationStatus
from repositories.audit_repository import AuditRepository
from repositories.conflict_repository import ConflictRepository
from repositories.package_repository import PackageRepository
from repositories.production_repository import ProductionRepository
from repositories.staging_repository import StagingRepository
from services.name_matching import display_name, full_name_similarity, normalize_arabic, score_persons
from services.package_service import ensure_status, load_package, transition
from services.spatial import overlap_ratio, parse_ring
from utils.logger import get_logger

logger = get_logger(__name__)

_COMMITTABLE = (ValidationStatus.VALID, ValidationStatus.WARNING)
_TIER_RANK = {ConfidenceLevel.LOW: 1, ConfidenceLevel.MEDIUM: 2, ConfidenceLevel.HIGH: 3}


@dataclass
class Candidate:
    """A detected pair before it is persisted."""
    conflict_type: ConflictType
    entity_type: StagingEntityType
    first: StagingRecord
    second_id: str
    second_identifier: str
    second_is_production: bool
    confidence: ConfidenceLevel
    score: float
    criteria: Dict[str, Any] = field(default_factory=dict)

    @property
    def pair_key(self) -> str:
        return make_pair_key(self.entity_type.value, self.first.id, self.second_id)


@dataclass
class DetectionResult:
    package_id: str
    new_conflicts: List[ConflictResolution] = field(default_factory=list)
    total_conflicts: int = 0
    pending_conflicts: int = 0
    status: str = ""

    def to_dict(self) -> Dict[str, Any]:
        by_confidence: Dict[str, int] = {}
        for conflict in self.new_conflicts:
            by_confidence[conflict.confidence.value] = by_confidence.get(conflict.confidence.value, 0) + 1
        return {
            'package_id': self.package_id,
            'new_conflicts': len(self.new_conflicts),
            'by_confidence': by_confidence,
            'total_conflicts': self.total_conflicts,
            'pending_conflicts': self.pending_conflicts,
            'status': self.status,
            'conflicts': [c.to_dict() for c in self.new_conflicts],
        }


class _BuildingContext:
    """Location facts about the building a staged unit belongs to."""

    def __init__(self, building_id: Optional[str], code: Optional[str],
                 neighborhood: Optional[str], ring, production_id: Optional[str] = None):
        self.building_id = building_id
        self.code = code
        self.neighborhood = neighborhood
        self.ring = ring
        self.production_id = production_id


class DuplicateDetectionService:
    """Raises ConflictResolution rows for probable duplicates."""

    def __init__(self, db):
        self.db = db

    def detect(self, package_id: str, actor: Optional[str] = None) -> DetectionResult:
        package = load_package(self.db, package_id)
        ensure_status(package, (
            ImportStatus.VALIDATED,
            ImportStatus.DUPLICATES_DETECTED,
            ImportStatus.AWAITING_RESOLUTION,
        ), "run duplicate detection on")

        staging = StagingRepository(self.db)
        production = ProductionRepository(self.db)
        rows = {
            t: staging.list_for_package(package_id, t, _COMMITTABLE)
            for t in (StagingEntityType.BUILDING, StagingEntityType.PROPERTY_UNIT,
                      StagingEntityType.PERSON, StagingEntityType.CLAIM)
        }

        candidates: Dict[str, Candidate] = {}
        for candidate in (
            self._person_candidates(rows[StagingEntityType.PERSON], production)
            + self._building_candidates(rows[StagingEntityType.BUILDING], production)
            + self._unit_candidates(rows[StagingEntityType.PROPERTY_UNIT],
                                    rows[StagingEntityType.BUILDING], production)
            + self._claim_candidates(rows[StagingEntityType.CLAIM], production)
        ):
            best = candidates.get(candidate.pair_key)
            if best is None or (_TIER_RANK[candidate.confidence], candidate.score) > \
                    (_TIER_RANK[best.confidence], best.score):
                candidates[candidate.pair_key] = candidate

        result = DetectionResult(package_id=package_id)
        with self.db.transaction() as tx:
            conflicts = ConflictRepository(tx)
            for candidate in candidates.values():
                if conflicts.pair_exists(candidate.pair_key):
                    continue
                conflict = self._to_conflict(package_id, candidate)
                conflict.conflict_number = conflicts.next_conflict_number()
                if conflicts.insert(conflict):
                    result.new_conflicts.append(conflict)

            packages = PackageRepository(tx)
            packages.refresh_conflict_counts(package_id)
            result.pending_conflicts = conflicts.count_pending(package_id)
            current = load_package(tx, package_id)
            result.total_conflicts = current.conflict_count
            target = (ImportStatus.AWAITING_RESOLUTION if result.pending_conflicts
                      else ImportStatus.DUPLICATES_DETECTED)
            transition(tx, current, target)
            result.status = target.value
            AuditRepository(tx).record("ImportPackage", package_id, "detect_duplicates", actor, {
                'new_conflicts': len(result.new_conflicts),
                'pending': result.pending_conflicts,
            })

        logger.info(
            f"Duplicate detection for {package_id}: {len(result.new_conflicts)} new, "
            f"{result.pending_conflicts} pending"
        )
        return result

    # ==================== Persons ====================

    def _classify_persons(self, a: Dict[str, Any], b: Dict[str, Any]
                          ) -> Optional[Tuple[ConfidenceLevel, float, Dict[str, Any]]]:
        nid_a = str(a.get('national_id') or '').strip()
        nid_b = str(b.get('national_id') or '').strip()
        score, criteria = score_persons(a, b)
        if nid_a and nid_b:
            if nid_a == nid_b:
                return ConfidenceLevel.HIGH, score, criteria
            # Distinct national ids identify distinct people
            return None

        name_score = full_name_similarity(a, b)
        same_year = criteria.get("year_of_birth", False)
        same_gender = criteria.get("gender", False)
        if name_score >= Config.NAME_SIMILARITY_MEDIUM and same_year and same_gender:
            return ConfidenceLevel.MEDIUM, score, criteria
        if name_score >= Config.NAME_SIMILARITY_LOW:
            return ConfidenceLevel.LOW, score, criteria
        return None

    def _person_candidates(self, persons: List[StagingRecord],
                           production: ProductionRepository) -> List[Candidate]:
        found = []
        for a, b in combinations(persons, 2):
            match = self._classify_persons(a.payload, b.payload)
            if match:
                found.append(Candidate(
                    ConflictType.PERSON_DUPLICATE, StagingEntityType.PERSON, a, b.id,
                    f"{display_name(b.payload)} ({b.original_id})", False, *match))

        for person in persons:
            existing: Dict[str, Dict[str, Any]] = {}
            national_id = str(person.payload.get('national_id') or '').strip()
            if national_id:
                for row in production.find_persons_by_national_id(national_id):
                    existing[row['id']] = row
            family = normalize_arabic(person.payload.get('family_name'))
            if family:
                for row in production.find_persons_by_family_name(family):
                    existing[row['id']] = row
            for row in existing.values():
                match = self._classify_persons(person.payload, row)
                if match:
                    found.append(Candidate(
                        ConflictType.PERSON_DUPLICATE, StagingEntityType.PERSON, person, row['id'],
                        display_name(row), True, *match))
        return found

    # ==================== Buildings ====================

    def _building_candidates(self, buildings: List[StagingRecord],
                             production: ProductionRepository) -> List[Candidate]:
        found = []
        threshold = Config.AREA_OVERLAP_THRESHOLD

        for a, b in combinations(buildings, 2):
            code_a, code_b = a.payload.get('building_code'), b.payload.get('building_code')
            if code_a and code_a == code_b:
                found.append(Candidate(
                    ConflictType.PROPERTY_DUPLICATE, StagingEntityType.BUILDING, a, b.id,
                    f"{code_b} ({b.original_id})", False, ConfidenceLevel.HIGH, 100.0,
                    {'building_code': True}))
                continue
            ratio = self._overlap(a.payload.get('geometry'), b.payload.get('geometry'))
            if ratio >= threshold:
                found.append(Candidate(
                    ConflictType.PROPERTY_DUPLICATE, StagingEntityType.BUILDING, a, b.id,
                    f"{code_b} ({b.original_id})", False, ConfidenceLevel.LOW,
                    round(ratio * 100, 2), {'overlap_ratio': ratio}))

        for building in buildings:
            code = building.payload.get('building_code')
            matched = set()
            if code:
                row = production.find_building_by_code(code)
                if row:
                    matched.add(row['id'])
                    found.append(Candidate(
                        ConflictType.PROPERTY_DUPLICATE, StagingEntityType.BUILDING, building, row['id'],
                        row.get('building_code') or row['id'], True, ConfidenceLevel.HIGH, 100.0,
                        {'building_code': True}))
            ring = parse_ring(building.payload.get('geometry'))
            if ring is None:
                continue
            for row in production.find_buildings_with_geometry(building.payload.get('neighborhood_code')):
                if row['id'] in matched:
                    continue
                ratio = self._overlap(ring, row.get('geometry'))
                if ratio >= threshold:
                    found.append(Candidate(
                        ConflictType.PROPERTY_DUPLICATE, StagingEntityType.BUILDING, building, row['id'],
                        row.get('building_code') or row['id'], True, ConfidenceLevel.LOW,
                        round(ratio * 100, 2), {'overlap_ratio': ratio}))
        return found

    @staticmethod
    def _overlap(first, second) -> float:
        ring_a = parse_ring(first)
        ring_b = parse_ring(second)
        if not ring_a or not ring_b:
            return 0.0
        return overlap_ratio(ring_a, ring_b)

    # ==================== Property units ====================

    def _unit_context(self, unit: StagingRecord, staged_buildings: Dict[str, StagingRecord],
                      production: ProductionRepository) -> _BuildingContext:
        ref = unit.ref('building_id')
        if ref in staged_buildings:
            payload = staged_buildings[ref].payload
            return _BuildingContext(ref, payload.get('building_code'), payload.get('neighborhood_code'),
                                    parse_ring(payload.get('geometry')))
        row = production.get(StagingEntityType.BUILDING, ref) if ref else None
        if row:
            return _BuildingContext(ref, row.get('building_code'), row.get('neighborhood_code'),
                                    parse_ring(row.get('geometry')), production_id=row['id'])
        return _BuildingContext(ref, None, None, None)

    def _unit_candidates(self, units: List[StagingRecord], buildings: List[StagingRecord],
                         production: ProductionRepository) -> List[Candidate]:
        found = []
        staged_buildings = {b.original_id: b for b in buildings}
        contexts = {u.id: self._unit_context(u, staged_buildings, production) for u in units}

        for a, b in combinations(units, 2):
            ident = a.payload.get('unit_identifier')
            if not ident or ident != b.payload.get('unit_identifier'):
                continue
            ctx_a, ctx_b = contexts[a.id], contexts[b.id]
            label = f"{ident} ({b.original_id})"
            if ctx_a.building_id == ctx_b.building_id or (ctx_a.code and ctx_a.code == ctx_b.code):
                found.append(Candidate(
                    ConflictType.PROPERTY_DUPLICATE, StagingEntityType.PROPERTY_UNIT, a, b.id, label,
                    False, ConfidenceLevel.HIGH, 100.0, {'building': True, 'unit_identifier': True}))
            elif ctx_a.neighborhood and ctx_a.neighborhood == ctx_b.neighborhood:
                found.append(Candidate(
                    ConflictType.PROPERTY_DUPLICATE, StagingEntityType.PROPERTY_UNIT, a, b.id, label,
                    False, ConfidenceLevel.LOW, 60.0, {'neighborhood_code': True, 'unit_identifier': True}))

        threshold = Config.AREA_OVERLAP_THRESHOLD
        for unit in units:
            ident = unit.payload.get('unit_identifier')
            if not ident:
                continue
            ctx = contexts[unit.id]
            seen = set()

            same_building = []
            if ctx.production_id:
                same_building = production.find_units(ctx.production_id, ident)
            elif ctx.code:
                building = production.find_building_by_code(ctx.code)
                if building:
                    same_building = production.find_units(building['id'], ident)
            for row in same_building:
                seen.add(row['id'])
                found.append(Candidate(
                    ConflictType.PROPERTY_DUPLICATE, StagingEntityType.PROPERTY_UNIT, unit, row['id'],
                    ident, True, ConfidenceLevel.HIGH, 100.0,
                    {'building_code': True, 'unit_identifier': True}))

            if ctx.ring:
                for building in production.find_buildings_with_geometry(ctx.neighborhood):
                    ratio = self._overlap(ctx.ring, building.get('geometry'))
                    if ratio < threshold:
                        continue
                    for row in production.find_units(building['id'], ident):
                        if row['id'] in seen:
                            continue
                        seen.add(row['id'])
                        found.append(Candidate(
                            ConflictType.PROPERTY_DUPLICATE, StagingEntityType.PROPERTY_UNIT, unit,
                            row['id'], ident, True, ConfidenceLevel.MEDIUM,
                            round(70 + 30 * ratio, 2), {'overlap_ratio': ratio, 'unit_identifier': True}))

            if ctx.neighborhood:
                for row in production.find_units_in_neighborhood(ctx.neighborhood, ident):
                    if row['id'] in seen:
                        continue
                    seen.add(row['id'])
                    found.append(Candidate(
                        ConflictType.PROPERTY_DUPLICATE, StagingEntityType.PROPERTY_UNIT, unit, row['id'],
                        ident, True, ConfidenceLevel.LOW, 60.0,
                        {'neighborhood_code': True, 'unit_identifier': True}))
        return found

    # ==================== Claims ====================

    def _claim_candidates(self, claims: List[StagingRecord],
                          production: ProductionRepository) -> List[Candidate]:
        found = []
        for a, b in combinations(claims, 2):
            unit, claimant = a.ref('property_unit_id'), a.ref('claimant_person_id')
            if unit and unit == b.ref('property_unit_id') and claimant == b.ref('claimant_person_id'):
                found.append(Candidate(
                    ConflictType.CLAIM_CONFLICT, StagingEntityType.CLAIM, a, b.id, b.original_id,
                    False, ConfidenceLevel.HIGH, 100.0, {'property_unit': True, 'claimant': True}))

        for claim in claims:
            unit, claimant = claim.ref('property_unit_id'), claim.ref('claimant_person_id')
            if not (unit and claimant):
                continue
            for row in production.find_claims(unit, claimant):
                found.append(Candidate(
                    ConflictType.CLAIM_CONFLICT, StagingEntityType.CLAIM, claim, row['id'],
                    row['claim_number'], True, ConfidenceLevel.HIGH, 100.0,
                    {'property_unit': True, 'claimant': True}))
        return found

    # ==================== Persistence ====================

    def _to_conflict(self, package_id: str, candidate: Candidate) -> ConflictResolution:
        first = candidate.first
        if first.entity_type == StagingEntityType.PERSON:
            first_label = f"{display_name(first.payload)} ({first.original_id})"
        elif first.entity_type == StagingEntityType.BUILDING:
            first_label = f"{first.payload.get('building_code')} ({first.original_id})"
        elif first.entity_type == StagingEntityType.PROPERTY_UNIT:
            first_label = f"{first.payload.get('unit_identifier')} ({first.original_id})"
        else:
            first_label = first.original_id

        scope = "existing record" if candidate.second_is_production else "another row of this package"
        description = (
            f"{candidate.entity_type.value} {first_label} matches {scope} "
            f"{candidate.second_identifier} ({candidate.confidence.value} confidence, "
            f"score {candidate.score:g})"
        )
        return ConflictResolution(
            package_id=package_id,
            conflict_type=candidate.conflict_type,
            entity_type=candidate.entity_type.value,
            first_entity_id=first.id,
            second_entity_id=candidate.second_id,
            similarity_score=max(0.0, min(100.0, candidate.score)),
            confidence=candidate.confidence,
            first_identifier=first_label,
            second_identifier=candidate.second_identifier,
            second_is_production=candidate.second_is_production,
            matching_criteria=candidate.criteria,
            description=description,
            priority=determine_priority(candidate.confidence, candidate.score),
            target_resolution_hours=Config.CONFLICT_TARGET_HOURS,
        )
