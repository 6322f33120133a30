# -*- coding: utf-8 -*-
"""
Tests for the device sync protocol.
"""

import io
from datetime import timedelta

import pytest

from factories import building
from models.staging import StagingEntityType
from models.sync import SyncSessionStatus, TransferStatus
from repositories.production_repository import ProductionRepository
from repositories.sync_repository import SyncRepository
from services.exceptions import (
    AuthorizationError, IncompleteUploadError, InvalidStateTransitionError,
    NotFoundError, UploadTooLargeError, ValidationError,
)
from utils.datetime_utils import utc_now


@pytest.fixture
def building_id(process):
    report = process("pkg-seed", {"buildings": [building()]})
    return report.entities["Building"].id_mappings["b-1"]


@pytest.fixture
def session(pipeline):
    return pipeline.sync.open_session("collector-1", "tablet-01", "192.168.1.10:8443")


class TestSession:
    """Test session scoping."""

    def test_open(self, session):
        assert session.status == SyncSessionStatus.IN_PROGRESS
        assert session.field_collector_id == "collector-1"

    def test_open_requires_user_and_device(self, pipeline):
        with pytest.raises(AuthorizationError):
            pipeline.sync.open_session("", "tablet-01")
        with pytest.raises(ValidationError):
            pipeline.sync.open_session("collector-1", "")

    def test_other_user_cannot_use_session(self, pipeline, session):
        with pytest.raises(AuthorizationError):
            pipeline.sync.fetch_assignments(session.id, "collector-2")

    def test_unknown_session(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.sync.get_session("missing", "collector-1")

    def test_close(self, pipeline, session):
        closed = pipeline.sync.close_session(session.id, "collector-1")
        assert closed.status == SyncSessionStatus.COMPLETED
        assert closed.completed_at is not None
        assert pipeline.sync.close_session(session.id, "collector-1").status == SyncSessionStatus.COMPLETED

    def test_closed_session_rejects_work(self, pipeline, session):
        pipeline.sync.close_session(session.id, "collector-1")
        with pytest.raises(InvalidStateTransitionError):
            pipeline.sync.fetch_assignments(session.id, "collector-1")


class TestUpload:
    """Test uploads through a session."""

    def test_upload_counts(self, pipeline, packages, session):
        data = packages.build("pkg-1", {"buildings": [building()]})
        manifest = packages.manifest_for("pkg-1", data, device_id=None, collector_id=None)

        response = pipeline.sync.upload(session.id, "collector-1", io.BytesIO(data), manifest)

        assert response["accepted"] is True
        assert response["status"] == "Uploaded"
        package = pipeline.packages.get("pkg-1")
        assert package.device_id == "tablet-01"
        assert package.collector_id == "collector-1"
        assert pipeline.sync.get_session(session.id, "collector-1").packages_uploaded == 1

    def test_duplicate_changes_no_counters(self, pipeline, packages, session):
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data)
        pipeline.sync.upload(session.id, "collector-1", io.BytesIO(data), manifest)

        response = pipeline.sync.upload(session.id, "collector-1", io.BytesIO(data), manifest)

        assert response["duplicate"] is True
        assert response["accepted"] is False
        current = pipeline.sync.get_session(session.id, "collector-1")
        assert current.packages_uploaded == 1
        assert current.packages_failed == 0

    def test_quarantined_counts_as_failed(self, pipeline, packages, session):
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data, checksum="f" * 64)

        response = pipeline.sync.upload(session.id, "collector-1", io.BytesIO(data), manifest)

        assert response["status"] == "Quarantined"
        assert "Checksum mismatch" in response["message"]
        closed = pipeline.sync.close_session(session.id, "collector-1")
        assert closed.packages_failed == 1
        assert closed.status == SyncSessionStatus.PARTIALLY_COMPLETED

    def test_too_large_counts_as_failed(self, pipeline, packages, session, monkeypatch, isolated_config):
        monkeypatch.setattr(isolated_config, "MAX_UPLOAD_BYTES", 10)
        data = packages.build("pkg-1")
        with pytest.raises(UploadTooLargeError):
            pipeline.sync.upload(session.id, "collector-1", io.BytesIO(data), packages.manifest_for("pkg-1", data))
        assert pipeline.sync.get_session(session.id, "collector-1").packages_failed == 1

    def test_truncated_upload_counts_as_failed(self, pipeline, packages, session):
        data = packages.build("pkg-1")
        manifest = packages.manifest_for("pkg-1", data)
        with pytest.raises(IncompleteUploadError):
            pipeline.sync.upload(session.id, "collector-1", io.BytesIO(data[:40]), manifest,
                                 length=len(data))
        assert pipeline.sync.get_session(session.id, "collector-1").packages_failed == 1


class TestAssignments:
    """Test fetching and acknowledging assignments."""

    def test_fetch_includes_building_and_full_vocabularies(self, pipeline, session, building_id):
        assignment = pipeline.sync.create_assignment(building_id, "collector-1", assigned_by="manager")

        payload = pipeline.sync.fetch_assignments(session.id, "collector-1")

        assert [a["id"] for a in payload["assignments"]] == [assignment.id]
        assert payload["assignments"][0]["building"]["building_code"] == "01-01-01-001-001-00001"
        assert payload["vocabularies"]["mode"] == "full"
        assert "gender" in payload["vocabularies"]["versions"]
        current = pipeline.sync.get_session(session.id, "collector-1")
        assert current.assignments_downloaded == 1
        assert current.vocabulary_versions_sent["gender"] == "1.0"

    def test_vocabulary_delta(self, pipeline, session):
        since = utc_now() + timedelta(seconds=1)
        assert pipeline.sync.fetch_assignments(session.id, "collector-1", since)["vocabularies"]["vocabularies"] == []

        before_update = utc_now()
        pipeline.vocabulary.update("gender", "1.1", [{"code": "male"}, {"code": "female"}])
        delta = pipeline.sync.fetch_assignments(session.id, "collector-1", before_update)

        assert delta["vocabularies"]["mode"] == "delta"
        assert delta["vocabularies"]["versions"] == {"gender": "1.1"}

    def test_only_own_assignments(self, pipeline, session, building_id):
        pipeline.sync.create_assignment(building_id, "collector-2")
        assert pipeline.sync.fetch_assignments(session.id, "collector-1")["assignments"] == []

    def test_acknowledge_twice_is_a_no_op(self, pipeline, session, building_id, db):
        assignment = pipeline.sync.create_assignment(building_id, "collector-1")

        first = pipeline.sync.acknowledge(session.id, "collector-1", [assignment.id])
        second = pipeline.sync.acknowledge(session.id, "collector-1", [assignment.id])

        assert first.acknowledged == [assignment.id]
        assert second.acknowledged == []
        assert second.already_transferred == [assignment.id]
        stored = SyncRepository(db).get_assignment(assignment.id)
        assert stored.transfer_status == TransferStatus.TRANSFERRED
        assert pipeline.sync.get_session(session.id, "collector-1").assignments_acknowledged == 1
        assert pipeline.sync.fetch_assignments(session.id, "collector-1")["assignments"] == []

    def test_acknowledge_rejects_foreign_and_unknown(self, pipeline, session, building_id):
        foreign = pipeline.sync.create_assignment(building_id, "collector-2")

        result = pipeline.sync.acknowledge(session.id, "collector-1", [foreign.id, "missing"])

        assert result.acknowledged == []
        assert [f["id"] for f in result.failed] == [foreign.id, "missing"]

    def test_assignment_follows_superseded_building(self, pipeline, building_id, db):
        production = ProductionRepository(db)
        production.insert(StagingEntityType.BUILDING, "b-new", {"building_code": "01-01-01-001-001-00009"},
                          {}, "manual")
        production.supersede(StagingEntityType.BUILDING, building_id, "b-new")

        assignment = pipeline.sync.create_assignment(building_id, "collector-1")
        assert assignment.building_id == "b-new"

    def test_assignment_for_unknown_building(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.sync.create_assignment("nowhere", "collector-1")
