# -*- coding: utf-8 -*-
"""
Tests for the Duplicate Detector.

Tests cover:
- Within-batch and against-production person matching
- Building and property unit matching (code, identifier, footprint)
- Claim conflicts
- Pair uniqueness across runs
"""

import pytest

from factories import DEED, building, claim, full_records, person, square, unit
from models.conflict import ConfidenceLevel, ConflictType
from models.import_package import ImportStatus
from services.exceptions import InvalidStateTransitionError


def _detect(upload, pipeline, package_id, records):
    upload(package_id, records)
    pipeline.staging.stage(package_id)
    return pipeline.detection.detect(package_id, "manager")


def _of_type(result, entity_type):
    return [c for c in result.new_conflicts if c.entity_type == entity_type]


class TestPersons:
    """Test person duplicate tiers."""

    def test_same_national_id_is_high(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"persons": [
            person("p-1", national_id="01234567890"),
            person("p-2", first="أحمد", national_id="01234567890"),
        ]})

        conflicts = _of_type(result, "Person")
        assert len(conflicts) == 1
        assert conflicts[0].confidence == ConfidenceLevel.HIGH
        assert conflicts[0].conflict_type == ConflictType.PERSON_DUPLICATE
        assert conflicts[0].is_within_batch

    def test_similar_names_same_birth_year_is_medium(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"persons": [
            person("p-1"), person("p-2", family="الحلبى"),
        ]})

        conflicts = _of_type(result, "Person")
        assert [c.confidence for c in conflicts] == [ConfidenceLevel.MEDIUM]

    def test_similar_names_different_birth_year_is_low(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"persons": [
            person("p-1"), person("p-2", year_of_birth=1950),
        ]})

        assert [c.confidence for c in _of_type(result, "Person")] == [ConfidenceLevel.LOW]

    def test_distinct_national_ids_never_match(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"persons": [
            person("p-1", national_id="01234567890"),
            person("p-2", national_id="09876543210"),
        ]})
        assert _of_type(result, "Person") == []

    def test_different_people(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"persons": [
            person("p-1"), person("p-2", first="سامر", father="يوسف", family="العلي", year_of_birth=1990),
        ]})
        assert result.new_conflicts == []
        assert result.status == ImportStatus.DUPLICATES_DETECTED.value

    def test_match_against_production(self, process, upload, pipeline):
        process("pkg-1", full_records(), DEED)

        result = _detect(upload, pipeline, "pkg-2", {"persons": [
            person("p-9", first="أحمد", national_id="01234567890"),
        ]})

        conflicts = _of_type(result, "Person")
        assert len(conflicts) == 1
        assert conflicts[0].second_is_production is True
        assert conflicts[0].confidence == ConfidenceLevel.HIGH
        assert result.status == ImportStatus.AWAITING_RESOLUTION.value


class TestProperties:
    """Test building and property unit matching."""

    def test_same_building_code_within_batch(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"buildings": [building("b-1"), building("b-2")]})

        conflicts = _of_type(result, "Building")
        assert len(conflicts) == 1
        assert conflicts[0].confidence == ConfidenceLevel.HIGH
        assert conflicts[0].conflict_type == ConflictType.PROPERTY_DUPLICATE

    def test_overlapping_footprints_are_low(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"buildings": [
            building("b-1", geometry=square(37.1343, 36.2021)),
            building("b-2", "01-01-01-001-001-00002", geometry=square(37.1343, 36.2021)),
        ]})

        conflicts = _of_type(result, "Building")
        assert [c.confidence for c in conflicts] == [ConfidenceLevel.LOW]
        assert conflicts[0].matching_criteria["overlap_ratio"] == pytest.approx(1.0)

    def test_disjoint_footprints_do_not_match(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {"buildings": [
            building("b-1", geometry=square(37.1343, 36.2021)),
            building("b-2", "01-01-01-001-001-00002", geometry=square(37.2, 36.3)),
        ]})
        assert _of_type(result, "Building") == []

    def test_building_code_in_production(self, process, upload, pipeline):
        process("pkg-1", {"buildings": [building()]})

        result = _detect(upload, pipeline, "pkg-2", {"buildings": [building("b-new")]})

        conflicts = _of_type(result, "Building")
        assert len(conflicts) == 1
        assert conflicts[0].second_is_production
        assert conflicts[0].confidence == ConfidenceLevel.HIGH

    def test_same_unit_in_same_building(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {
            "buildings": [building()],
            "property_units": [unit("u-1"), unit("u-2")],
        })

        conflicts = _of_type(result, "PropertyUnit")
        assert [c.confidence for c in conflicts] == [ConfidenceLevel.HIGH]

    def test_unit_of_known_building_matches_production_unit(self, process, upload, pipeline):
        process("pkg-1", {"buildings": [building()], "property_units": [unit()]})

        result = _detect(upload, pipeline, "pkg-2", {
            "buildings": [building("b-2")],
            "property_units": [unit("u-2", building_id="b-2")],
        })

        units = _of_type(result, "PropertyUnit")
        assert len(units) == 1
        assert units[0].second_is_production
        assert units[0].confidence == ConfidenceLevel.HIGH


class TestClaims:
    """Test claim conflicts."""

    def test_same_unit_and_claimant(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {
            "buildings": [building()],
            "property_units": [unit()],
            "persons": [person()],
            "claims": [claim("c-1"), claim("c-2", claim_type="occupancy")],
        })

        conflicts = _of_type(result, "Claim")
        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.CLAIM_CONFLICT


class TestRerun:
    """Test that detection is repeatable."""

    def test_second_run_raises_nothing_new(self, upload, pipeline):
        first = _detect(upload, pipeline, "pkg-1", {"buildings": [building("b-1"), building("b-2")]})
        second = pipeline.detection.detect("pkg-1")

        assert len(first.new_conflicts) == 1
        assert second.new_conflicts == []
        assert second.total_conflicts == 1
        assert pipeline.packages.get("pkg-1").conflict_count == 1

    def test_conflict_numbers_are_unique(self, upload, pipeline):
        result = _detect(upload, pipeline, "pkg-1", {
            "buildings": [building("b-1"), building("b-2")],
            "persons": [person("p-1"), person("p-2")],
        })
        numbers = [c.conflict_number for c in result.new_conflicts]
        assert len(numbers) == 2
        assert len(set(numbers)) == 2
        assert all(n.startswith("CNF-") for n in numbers)

    def test_requires_staged_package(self, upload, pipeline):
        upload("pkg-1", {"buildings": [building()]})
        with pytest.raises(InvalidStateTransitionError):
            pipeline.detection.detect("pkg-1")

    def test_rejected_after_approval(self, upload, pipeline):
        _detect(upload, pipeline, "pkg-1", {"buildings": [building()]})
        pipeline.commits.approve("pkg-1", "manager")
        with pytest.raises(InvalidStateTransitionError):
            pipeline.detection.detect("pkg-1")
