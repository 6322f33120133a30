# -*- coding: utf-8 -*-
"""
Tests for the Staging Loader.
"""

import io

import pytest

from factories import building, unit, person, relation, evidence
from models.import_package import ImportStatus
from models.staging import StagingEntityType, ValidationStatus
from repositories.staging_repository import StagingRepository
from services.exceptions import PackageFormatError


def _buildings(count):
    return [building(f"b-{i}", f"01-01-01-001-001-{i:05d}") for i in range(1, count + 1)]


class TestStage:
    """Test decoding and row validation."""

    def test_one_invalid_row_does_not_block_siblings(self, upload, pipeline):
        rows = _buildings(9) + [building("b-bad", "not-a-code")]
        upload("pkg-1", {"buildings": rows})

        summary = pipeline.staging.stage("pkg-1")

        assert summary.total(ValidationStatus.VALID) == 9
        assert summary.total(ValidationStatus.INVALID) == 1
        assert pipeline.packages.get("pkg-1").status == ImportStatus.VALIDATED

    @pytest.mark.parametrize("value", ["nan", "inf", "-Infinity"])
    def test_non_finite_number_is_a_row_error(self, upload, pipeline, db, value):
        persons = [person(f"p-{i}", first=f"شخص{i}", year_of_birth=1950 + i) for i in range(9)]
        persons.append(person("p-bad", year_of_birth=value))
        upload("pkg-1", {"persons": persons, "property_units": [unit(floor_number=value)]})

        summary = pipeline.staging.stage("pkg-1")

        assert summary.counts["Person"]["Valid"] == 9
        assert summary.counts["Person"]["Invalid"] == 1
        assert pipeline.packages.get("pkg-1").status == ImportStatus.VALIDATED
        record = StagingRepository(db).get_by_original_id("pkg-1", StagingEntityType.PERSON, "p-bad")
        assert any(e.startswith("year_of_birth") for e in record.errors)
        unit_row = StagingRepository(db).get_by_original_id("pkg-1", StagingEntityType.PROPERTY_UNIT, "u-1")
        assert any(e.startswith("floor_number") for e in unit_row.errors)

    def test_invalid_row_keeps_its_messages(self, upload, pipeline, db):
        upload("pkg-1", {"buildings": [building("b-bad", "not-a-code", building_type="castle")]})
        pipeline.staging.stage("pkg-1")

        record = StagingRepository(db).get_by_original_id("pkg-1", StagingEntityType.BUILDING, "b-bad")
        assert record.validation_status == ValidationStatus.INVALID
        assert any(e.startswith("building_code") for e in record.errors)
        assert any("Unknown building_type code" in e for e in record.errors)

    def test_record_counts_stored_on_package(self, upload, pipeline):
        upload("pkg-1", {
            "buildings": [building()],
            "property_units": [unit()],
            "persons": [person()],
        })
        pipeline.staging.stage("pkg-1")

        counts = pipeline.packages.get("pkg-1").record_counts
        assert counts == {"Building": 1, "PropertyUnit": 1, "Person": 1}

    def test_restage_is_a_no_op(self, upload, pipeline, db):
        upload("pkg-1", {"buildings": _buildings(3)})
        pipeline.staging.stage("pkg-1")
        before = StagingRepository(db).count("pkg-1")

        summary = pipeline.staging.stage("pkg-1")

        assert StagingRepository(db).count("pkg-1") == before == 3
        assert summary.total() == 3

    def test_duplicate_original_id_keeps_first(self, upload, pipeline):
        upload("pkg-1", {"buildings": [building(), building(building_type="commercial")]})
        summary = pipeline.staging.stage("pkg-1")

        assert summary.total() == 1
        assert any("Duplicate original_id b-1" in w for w in summary.package_warnings)


class TestReferences:
    """Test reference resolution within the package."""

    def test_unresolved_reference_is_an_error(self, upload, pipeline, db):
        upload("pkg-1", {"property_units": [unit(building_id="nowhere")]})
        pipeline.staging.stage("pkg-1")

        record = StagingRepository(db).get_by_original_id("pkg-1", StagingEntityType.PROPERTY_UNIT, "u-1")
        assert record.validation_status == ValidationStatus.INVALID
        assert any("Unresolved reference" in e for e in record.errors)

    def test_child_of_invalid_parent_is_flagged(self, upload, pipeline, db):
        upload("pkg-1", {
            "buildings": [building(code="bad")],
            "property_units": [unit()],
        })
        pipeline.staging.stage("pkg-1")

        record = StagingRepository(db).get_by_original_id("pkg-1", StagingEntityType.PROPERTY_UNIT, "u-1")
        assert record.validation_status == ValidationStatus.WARNING
        assert any("which is invalid" in w for w in record.warnings)

    def test_evidence_attachment_must_be_present(self, upload, pipeline, db):
        upload("pkg-1", {
            "buildings": [building()],
            "property_units": [unit()],
            "persons": [person()],
            "person_property_relations": [relation()],
            "evidence": [evidence()],
        })
        pipeline.staging.stage("pkg-1")

        record = StagingRepository(db).get_by_original_id("pkg-1", StagingEntityType.EVIDENCE, "e-1")
        assert record.validation_status == ValidationStatus.INVALID
        assert any("Attachment missing" in e for e in record.errors)


class TestPackageLevel:
    """Test structural failures and package-level warnings."""

    def test_corrupt_container_fails_package(self, pipeline, packages):
        data = b"this is not a zip archive"
        pipeline.intake.receive(io.BytesIO(data), packages.manifest_for("pkg-1", data))

        with pytest.raises(PackageFormatError):
            pipeline.staging.stage("pkg-1")

        package = pipeline.packages.get("pkg-1")
        assert package.status == ImportStatus.FAILED
        assert "Unreadable package container" in package.error_message

    def test_package_id_mismatch_fails(self, upload, pipeline):
        upload("pkg-1", manifest={"package_id": "pkg-other"})

        with pytest.raises(PackageFormatError):
            pipeline.staging.stage("pkg-1")
        assert pipeline.packages.get("pkg-1").status == ImportStatus.FAILED

    def test_unknown_record_file_warns(self, upload, pipeline):
        upload("pkg-1", {"buildings": [building()]}, extra_members={"records/gadgets.json": "[]"})
        summary = pipeline.staging.stage("pkg-1")
        assert "Unknown record file ignored: records/gadgets.json" in summary.package_warnings

    def test_vocabulary_major_version_mismatch_warns(self, upload, pipeline):
        upload("pkg-1", {"buildings": [building()]}, manifest={"vocab_versions": {"gender": "2.0"}})
        summary = pipeline.staging.stage("pkg-1")

        assert any("major version mismatch" in w for w in summary.package_warnings)
        assert summary.total(ValidationStatus.VALID) == 1

    def test_validation_report_lists_problem_rows(self, upload, pipeline):
        upload("pkg-1", {"buildings": [building(), building("b-2", "bad")]})
        pipeline.staging.stage("pkg-1")

        report = pipeline.staging.validation_report("pkg-1")

        assert report["status"] == "Validated"
        assert [r["original_id"] for r in report["rows"]] == ["b-2"]
        assert report["rows"][0]["status"] == "Invalid"
