# -*- coding: utf-8 -*-
"""
Tests for the sync HTTP endpoint.

The server runs on an ephemeral port with mDNS disabled; requests go
through the ``requests`` library as a device client would.
"""

import json

import pytest
import requests

from factories import building
from models.import_package import ImportStatus
from services.exceptions import (
    AuthorizationError, ConflictBlockingError, IncompleteUploadError,
    InvalidStateTransitionError, NotFoundError, UploadTooLargeError, ValidationError,
)
from services.sync_server import LocalSyncServer, status_for

TOKEN = "device-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def server(pipeline):
    sync_server = LocalSyncServer(pipeline.sync, host="127.0.0.1", port=0,
                                  tokens={TOKEN: "collector-1"}, enable_mdns=False)
    sync_server.start()
    yield sync_server
    sync_server.stop()


@pytest.fixture
def base_url(server):
    host, port = server.address
    return f"http://{host}:{port}"


@pytest.fixture
def session_id(base_url):
    response = requests.post(f"{base_url}/api/sync/sessions", json={"device_id": "tablet-01"},
                             headers=AUTH, timeout=5)
    assert response.status_code == 201
    return response.json()["id"]


def _upload_headers(packages, package_id, data, **overrides):
    manifest = packages.manifest_for(package_id, data)
    headers = dict(AUTH)
    headers.update({
        "Content-Type": "application/octet-stream",
        "X-Package-Id": manifest.package_id,
        "X-Package-File-Name": manifest.file_name,
        "X-Package-Checksum": manifest.checksum,
        "X-Device-Id": "tablet-01",
        "X-Package-Vocab-Versions": json.dumps({"gender": "1.0"}),
    })
    headers.update(overrides)
    return headers


class TestStatusMapping:
    """Test error to HTTP status mapping."""

    @pytest.mark.parametrize("error, status", [
        (ValidationError("bad"), 400),
        (IncompleteUploadError("short"), 400),
        (AuthorizationError("no"), 403),
        (NotFoundError("gone"), 404),
        (InvalidStateTransitionError("closed"), 409),
        (UploadTooLargeError("big"), 413),
        (ConflictBlockingError("pending"), 500),
    ])
    def test_status_for(self, error, status):
        assert status_for(error) == status


class TestEndpoints:
    """Test the HTTP surface."""

    def test_health_needs_no_token(self, base_url):
        response = requests.get(f"{base_url}/api/health", timeout=5)
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_token(self, base_url):
        response = requests.post(f"{base_url}/api/sync/sessions", json={"device_id": "x"}, timeout=5)
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_wrong_token(self, base_url):
        response = requests.post(f"{base_url}/api/sync/sessions", json={"device_id": "x"},
                                 headers={"Authorization": "Bearer nope"}, timeout=5)
        assert response.status_code == 401

    def test_open_session(self, base_url, session_id, pipeline):
        session = pipeline.sync.get_session(session_id, "collector-1")
        assert session.device_id == "tablet-01"

    def test_open_session_without_device(self, base_url):
        response = requests.post(f"{base_url}/api/sync/sessions", json={}, headers=AUTH, timeout=5)
        assert response.status_code == 400

    def test_unknown_endpoint(self, base_url):
        response = requests.get(f"{base_url}/api/unknown", headers=AUTH, timeout=5)
        assert response.status_code == 404

    def test_upload_and_duplicate(self, base_url, session_id, packages, pipeline):
        data = packages.build("pkg-1", {"buildings": [building()]})
        headers = _upload_headers(packages, "pkg-1", data)
        url = f"{base_url}/api/sync/sessions/{session_id}/packages"

        first = requests.post(url, data=data, headers=headers, timeout=5)
        second = requests.post(url, data=data, headers=headers, timeout=5)

        assert first.status_code == 201
        assert first.json()["accepted"] is True
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        package = pipeline.packages.get("pkg-1")
        assert package.status == ImportStatus.UPLOADED
        assert package.vocab_versions == {"gender": "1.0"}

    def test_upload_too_large(self, base_url, session_id, packages, monkeypatch, isolated_config):
        monkeypatch.setattr(isolated_config, "MAX_UPLOAD_BYTES", 10)
        data = packages.build("pkg-1")
        response = requests.post(f"{base_url}/api/sync/sessions/{session_id}/packages",
                                 data=data, headers=_upload_headers(packages, "pkg-1", data), timeout=5)
        assert response.status_code == 413

    def test_assignments_and_acknowledge(self, base_url, session_id, process, pipeline):
        report = process("pkg-seed", {"buildings": [building()]})
        building_id = report.entities["Building"].id_mappings["b-1"]
        assignment = pipeline.sync.create_assignment(building_id, "collector-1")

        fetched = requests.get(f"{base_url}/api/sync/sessions/{session_id}/assignments",
                               headers=AUTH, timeout=5)
        assert fetched.status_code == 200
        assert [a["id"] for a in fetched.json()["assignments"]] == [assignment.id]

        ack_url = f"{base_url}/api/sync/sessions/{session_id}/acknowledge"
        first = requests.post(ack_url, json={"assignment_ids": [assignment.id]}, headers=AUTH, timeout=5)
        second = requests.post(ack_url, json={"assignment_ids": [assignment.id]}, headers=AUTH, timeout=5)

        assert first.json()["acknowledged"] == [assignment.id]
        assert second.json()["already_transferred"] == [assignment.id]

    def test_bad_since(self, base_url, session_id):
        response = requests.get(f"{base_url}/api/sync/sessions/{session_id}/assignments",
                                params={"since": "yesterday"}, headers=AUTH, timeout=5)
        assert response.status_code == 400

    def test_complete(self, base_url, session_id):
        url = f"{base_url}/api/sync/sessions/{session_id}/complete"
        response = requests.post(url, headers=AUTH, timeout=5)
        assert response.status_code == 200
        assert response.json()["status"] == "Completed"

        closed = requests.get(f"{base_url}/api/sync/sessions/{session_id}/assignments",
                              headers=AUTH, timeout=5)
        assert closed.status_code == 409

    def test_session_of_another_collector(self, server, base_url, pipeline):
        other = pipeline.sync.open_session("collector-2", "tablet-02")
        response = requests.get(f"{base_url}/api/sync/sessions/{other.id}/assignments",
                                headers=AUTH, timeout=5)
        assert response.status_code == 403
