"""Tests for the audit API endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from filz_audit.api import create_app
from filz_audit.api.config import Settings
from filz_audit.audit.exceptions import StorageFailure

ADMIN_TOKEN = "test-admin-token"


def make_client(tmp_path, **overrides) -> TestClient:
    settings = Settings(
        storage_path=str(tmp_path),
        verification_enabled=False,
        **overrides,
    )
    return TestClient(create_app(settings))


@pytest.fixture
def client(tmp_path):
    """Test client with a started audit chain in a temp directory."""
    with make_client(tmp_path, admin_token=ADMIN_TOKEN) as client:
        yield client


def record(client: TestClient, action="CREATE_FOLDER", resource_id="folder-1", **extra):
    body = {
        "action": action,
        "resourceType": "FILE" if "DOCUMENT" in action or "FILE" in action else "FOLDER",
        "resourceId": resource_id,
        "userPrincipal": "alice@example.com",
        **extra,
    }
    return client.post("/audit/record", json=body)


class TestHealthEndpoint:
    """Test health endpoint."""

    def test_health_returns_ok(self, client: TestClient) -> None:
        """Health check returns OK status."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["chainLength"] == 1

    def test_chain_length_grows(self, client: TestClient) -> None:
        record(client)

        assert client.get("/health").json()["chainLength"] == 2


class TestRecordEndpoint:
    """Test collaborator ingress."""

    def test_record_appends_entry(self, client: TestClient) -> None:
        response = record(client, metadata={"name": "Reports"})

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "appended"
        entry = data["entry"]
        assert entry["id"] == 2
        assert entry["action"] == "CREATE_FOLDER"
        assert entry["resourceType"] == "FOLDER"
        assert entry["userPrincipal"] == "alice@example.com"
        assert entry["metadata"] == {"name": "Reports"}
        assert len(entry["hash"]) == 64
        assert len(entry["previousHash"]) == 64

    def test_entries_link(self, client: TestClient) -> None:
        first = record(client).json()["entry"]
        second = record(client, resource_id="folder-2").json()["entry"]

        assert second["previousHash"] == first["hash"]

    def test_unknown_action_rejected(self, client: TestClient) -> None:
        response = record(client, action="FORMAT_DISK")

        assert response.status_code == 422

    def test_principal_required(self, client: TestClient) -> None:
        response = client.post("/audit/record", json={"action": "CREATE_FOLDER"})

        assert response.status_code == 422

    def test_excluded_action_skipped(self, client: TestClient) -> None:
        client.put(
            "/audit/exclusions",
            json={"actions": ["DOWNLOAD_DOCUMENT"]},
            headers={"Authorization": f"Bearer {ADMIN_TOKEN}"},
        )

        response = record(client, action="DOWNLOAD_DOCUMENT", resource_id="doc-1")

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        assert client.get("/health").json()["chainLength"] == 1

    def test_storage_failure_is_503(self, client: TestClient, monkeypatch) -> None:
        async def failing_append(entry):
            raise StorageFailure("disk unavailable")

        service = client.app.state.audit_service
        monkeypatch.setattr(service.storage, "append", failing_append)

        response = record(client)

        assert response.status_code == 503
        assert response.json()["detail"] == "disk unavailable"

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity", "1e400"])
    def test_non_finite_metadata_rejected(self, client: TestClient, literal) -> None:
        """Numbers JSON cannot round-trip never reach the chain."""
        body = (
            '{"action": "CREATE_FOLDER", "resourceId": "folder-1", '
            '"userPrincipal": "alice@example.com", "metadata": {"ratio": %s}}' % literal
        )

        response = client.post(
            "/audit/record",
            content=body,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 422
        assert client.get("/health").json()["chainLength"] == 1
        assert client.get("/audit/verify").json()["status"] == "VALID"

    def test_delimiter_in_resource_id_rejected(self, client: TestClient) -> None:
        response = record(client, resource_id='folder-1|{"a":1}')

        assert response.status_code == 422
        assert client.get("/health").json()["chainLength"] == 1


class TestEntryEndpoint:
    """Test single entry lookup."""

    def test_get_entry_by_id(self, client: TestClient) -> None:
        recorded = record(client, metadata={"name": "Reports"}).json()["entry"]

        response = client.get("/audit/entries/2")

        assert response.status_code == 200
        assert response.json()["id"] == 2
        assert response.json()["hash"] == recorded["hash"]
        assert response.json()["metadata"] == {"name": "Reports"}

    def test_genesis_entry(self, client: TestClient) -> None:
        response = client.get("/audit/entries/1")

        assert response.json()["action"] == "CHAIN_GENESIS"

    def test_missing_entry(self, client: TestClient) -> None:
        response = client.get("/audit/entries/42")

        assert response.status_code == 404

    def test_non_numeric_id(self, client: TestClient) -> None:
        assert client.get("/audit/entries/latest").status_code == 422


class TestTrailEndpoint:
    """Test per-resource audit trails."""

    def test_trail_defaults_to_newest_first(self, client: TestClient) -> None:
        record(client, action="UPLOAD_DOCUMENT", resource_id="doc-1")
        record(client, action="RENAME_FILE", resource_id="doc-1")
        record(client, resource_id="folder-1")

        response = client.get("/audit/doc-1")

        assert response.status_code == 200
        assert [e["id"] for e in response.json()] == [3, 2]

    def test_trail_ascending(self, client: TestClient) -> None:
        record(client, action="UPLOAD_DOCUMENT", resource_id="doc-1")
        record(client, action="RENAME_FILE", resource_id="doc-1")

        response = client.get("/audit/doc-1", params={"sortOrder": "asc"})

        assert [e["action"] for e in response.json()] == ["UPLOAD_DOCUMENT", "RENAME_FILE"]

    def test_invalid_sort_order(self, client: TestClient) -> None:
        response = client.get("/audit/doc-1", params={"sortOrder": "SIDEWAYS"})

        assert response.status_code == 422

    def test_unknown_resource_is_empty(self, client: TestClient) -> None:
        response = client.get("/audit/nothing-here")

        assert response.status_code == 200
        assert response.json() == []


class TestSearchEndpoint:
    """Test audit search."""

    def test_search_by_action(self, client: TestClient) -> None:
        record(client, action="UPLOAD_DOCUMENT", resource_id="doc-1")
        record(client, resource_id="folder-1")

        response = client.post("/audit/search", json={"action": "UPLOAD_DOCUMENT"})

        assert response.status_code == 200
        assert [e["resourceId"] for e in response.json()] == ["doc-1"]

    def test_search_by_metadata(self, client: TestClient) -> None:
        record(client, action="UPLOAD_DOCUMENT", resource_id="doc-1", metadata={"filename": "a.pdf"})
        record(client, action="UPLOAD_DOCUMENT", resource_id="doc-2", metadata={"filename": "b.pdf"})

        response = client.post("/audit/search", json={"metadata": {"filename": "b.pdf"}})

        assert [e["resourceId"] for e in response.json()] == ["doc-2"]

    def test_search_pagination(self, client: TestClient) -> None:
        for i in range(3):
            record(client, resource_id=f"folder-{i}")

        response = client.post("/audit/search", json={"limit": 2, "offset": 1})

        assert [e["id"] for e in response.json()] == [2, 3]

    def test_search_limit_bounds(self, client: TestClient) -> None:
        assert client.post("/audit/search", json={"limit": 0}).status_code == 422
        assert client.post("/audit/search", json={"limit": 1001}).status_code == 422


class TestVerifyEndpoint:
    """Test chain verification over HTTP."""

    def test_verify_valid_chain(self, client: TestClient) -> None:
        record(client)

        response = client.get("/audit/verify")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "VALID"
        assert data["totalEntries"] == 2
        assert data["verifiedEntries"] == 2
        assert "verifiedAt" in data
        assert "brokenLink" not in data

    def test_verify_reports_tampering(self, client: TestClient, tmp_path) -> None:
        record(client)
        record(client, resource_id="folder-2")

        log_file = tmp_path / "audit_log.jsonl"
        lines = log_file.read_text(encoding="utf-8").splitlines()
        tampered = json.loads(lines[1])
        tampered["user_principal"] = "mallory@example.com"
        lines[1] = json.dumps(tampered)
        log_file.write_text("\n".join(lines) + "\n", encoding="utf-8")

        response = client.get("/audit/verify")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "BROKEN"
        assert data["brokenLink"]["entryId"] == 2
        assert data["verifiedEntries"] == 1

    def test_unreadable_log_is_503(self, client: TestClient, tmp_path) -> None:
        with open(tmp_path / "audit_log.jsonl", "ab") as f:
            f.write(b'{"bad": "\xff\xfe"}\n')

        assert client.get("/audit/verify").status_code == 503
        assert client.get("/audit/folder-1").status_code == 503
        assert client.post("/audit/search", json={}).status_code == 503


class TestExclusionsEndpoint:
    """Test the operator exclusion setting."""

    def test_initially_empty(self, client: TestClient) -> None:
        response = client.get("/audit/exclusions")

        assert response.status_code == 200
        assert response.json() == {"actions": []}

    def test_update_requires_credentials(self, client: TestClient) -> None:
        response = client.put("/audit/exclusions", json={"actions": ["COMMENT_UPDATE"]})

        assert response.status_code == 401

    def test_update_rejects_wrong_token(self, client: TestClient) -> None:
        response = client.put(
            "/audit/exclusions",
            json={"actions": ["COMMENT_UPDATE"]},
            headers={"Authorization": "Bearer wrong-token"},
        )

        assert response.status_code == 403
        assert client.get("/audit/exclusions").json() == {"actions": []}

    def test_update_replaces_set(self, client: TestClient) -> None:
        headers = {"Authorization": f"Bearer {ADMIN_TOKEN}"}
        client.put("/audit/exclusions", json={"actions": ["DOWNLOAD_DOCUMENT"]}, headers=headers)

        response = client.put(
            "/audit/exclusions",
            json={"actions": ["COMMENT_UPDATE", "COMMENT_CREATE"]},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json() == {"actions": ["COMMENT_CREATE", "COMMENT_UPDATE"]}
        assert client.get("/audit/exclusions").json() == response.json()

    def test_genesis_cannot_be_excluded(self, client: TestClient) -> None:
        response = client.put(
            "/audit/exclusions",
            json={"actions": ["CHAIN_GENESIS"]},
            headers={"Authorization": f"Bearer {ADMIN_TOKEN}"},
        )

        assert response.status_code == 400

    def test_disabled_without_admin_token(self, tmp_path) -> None:
        with make_client(tmp_path) as client:
            response = client.put(
                "/audit/exclusions",
                json={"actions": []},
                headers={"Authorization": "Bearer anything"},
            )

        assert response.status_code == 403


class TestMiscEndpoints:
    """Test action listing and response headers."""

    def test_list_actions(self, client: TestClient) -> None:
        response = client.get("/audit/actions")

        assert response.status_code == 200
        actions = response.json()
        assert "CREATE_FOLDER" in actions
        assert "CHAIN_GENESIS" in actions

    def test_audit_responses_not_cached(self, client: TestClient) -> None:
        response = client.get("/audit/actions")

        assert response.headers["Cache-Control"] == "no-store, max-age=0"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
