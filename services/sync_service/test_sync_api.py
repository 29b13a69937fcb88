"""Tests for the Sync Service HTTP surface."""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from services.chat_extractor.dom import ActiveDocumentSlot
from services.chat_extractor.registry import AdapterRegistry
from services.sync_service import main
from services.sync_service.checkpoints import SyncStateStore
from services.sync_service.notifications import NotificationService
from services.sync_service.orchestrator import SyncOrchestrator
from test_sync_service import FakeAdapter, thread
from shared.encryption import CredentialVault, EncryptionService
from shared.errors import AuthError
from shared.kv_store import InMemoryKeyValueStore
from shared.models import FailureRecord


@pytest.fixture
def components(monkeypatch, fake_clock):
    """Install in-memory service components in place of the lifespan-created ones."""
    state = SyncStateStore(InMemoryKeyValueStore())
    registry = AdapterRegistry(
        [FakeAdapter("claude", [thread("A", 10), thread("B", 20)]), FakeAdapter("grok", [], list_error=AuthError(platform="grok"))],
        clock=fake_clock
    )
    writer = Mock()
    writer.export_thread = AsyncMock(return_value={"page_id": "page123", "url": "u", "blocks": 3})
    orchestrator = SyncOrchestrator(
        registry=registry,
        writer=writer,
        state=state,
        clock=fake_clock,
        notification_service=NotificationService(enabled=False),
    )
    db_ops = Mock()
    db_ops.ping.return_value = True

    monkeypatch.setattr(main, "state", state)
    monkeypatch.setattr(main, "registry", registry)
    monkeypatch.setattr(main, "orchestrator", orchestrator)
    monkeypatch.setattr(main, "db_ops", db_ops)
    monkeypatch.setattr(main, "scheduler", None)
    monkeypatch.setattr(main, "document_slot", ActiveDocumentSlot())
    monkeypatch.setattr(main, "vault", CredentialVault(InMemoryKeyValueStore(), EncryptionService([EncryptionService.generate_key()])))
    monkeypatch.setattr(main, "dispatch_queue", None)
    return {"state": state, "registry": registry, "orchestrator": orchestrator, "writer": writer}


@pytest.fixture
def client(components):
    return TestClient(main.app)


class TestHealth:
    """Liveness and health endpoints."""

    def test_ping(self, client):
        response = client.get("/ping")
        assert response.status_code == 200
        assert response.json()["healthy"] is True

    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["dependencies"]["database"] == "up"
        assert body["dependencies"]["notion_writer"] == "configured"

    def test_health_degraded_when_database_down(self, client, components):
        main.db_ops.ping.side_effect = RuntimeError("no database")
        assert client.get("/health").json()["status"] == "degraded"


class TestSyncEndpoints:
    """Trigger, status, failures, retry and checkpoint reset."""

    def test_trigger_selected_platform(self, client, components):
        response = client.post("/internal/sync/trigger", json={"platforms": ["claude"]})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["exported"] == 2
        assert [s["platform"] for s in body["sources"]] == ["claude"]

    def test_trigger_all_platforms(self, client):
        body = client.post("/internal/sync/trigger").json()
        assert [s["status"] for s in body["sources"]] == ["completed", "failed"]

    def test_trigger_unknown_platform(self, client):
        response = client.post("/internal/sync/trigger", json={"platforms": ["myspace"]})
        assert response.status_code == 400

    def test_trigger_without_notion(self, client, monkeypatch):
        monkeypatch.setattr(main, "orchestrator", None)
        assert client.post("/internal/sync/trigger").status_code == 503

    def test_status(self, client):
        client.post("/internal/sync/trigger", json={"platforms": ["claude"]})

        body = client.get("/internal/sync/status").json()

        assert body["stage"] == "idle"
        assert body["in_progress"] is False
        assert "claude" in body["checkpoints"]
        assert body["next_run"] is None

    def test_failures_and_retry(self, client, components):
        components["state"].record_failure(FailureRecord("A", "claude", "boom", 1.0, "transport_error"))

        failures = client.get("/internal/sync/failures", params={"platform": "claude"}).json()
        assert failures["count"] == 1

        result = client.post("/internal/sync/retry/claude/A").json()
        assert result["status"] == "exported"
        assert client.get("/internal/sync/failures").json()["count"] == 0

    def test_retry_unknown_platform(self, client):
        assert client.post("/internal/sync/retry/myspace/A").status_code == 404

    def test_checkpoint_reset(self, client, components):
        components["state"].advance_checkpoint("claude", 500.0, "A")

        response = client.post("/internal/sync/checkpoints/claude/reset")

        assert response.json() == {"platform": "claude", "reset": True}
        assert components["state"].get_checkpoint("claude").last_sync_time == 0.0


class TestSourceEndpoints:
    """Listing, identify and the active document."""

    def test_sources(self, client):
        body = client.get("/internal/sources").json()
        assert body["platforms"] == ["claude", "grok"]
        assert body["active_document"] is None

    def test_threads(self, client):
        body = client.get("/internal/sources/claude/threads", params={"offset": 1, "limit": 5}).json()

        assert [t["id"] for t in body["threads"]] == ["B"]
        assert body["total"] == 2

    def test_threads_auth_error(self, client):
        assert client.get("/internal/sources/grok/threads").status_code == 401

    def test_threads_unknown_platform(self, client):
        assert client.get("/internal/sources/myspace/threads").status_code == 404

    def test_threads_invalid_limit(self, client):
        assert client.get("/internal/sources/claude/threads", params={"limit": 0}).status_code == 422

    def test_collections(self, client):
        assert client.get("/internal/sources/claude/collections").json() == {"platform": "claude", "collections": []}

    def test_identify(self, client):
        body = client.get("/internal/sources/identify", params={"locator": "https://example.com/grok/xyz"}).json()
        assert body == {"platform": "grok", "thread_id": "xyz"}

        response = client.get("/internal/sources/identify", params={"locator": "https://nowhere.test/"})
        assert response.status_code == 404

    def test_active_document(self, client):
        response = client.post("/internal/extract/active-document", json={
            "url": "https://example.com/claude/A",
            "html": "<html><title>Chat - Claude</title></html>",
        })

        assert response.json() == {"url": "https://example.com/claude/A", "platform": "claude", "thread_id": "A"}
        assert main.document_slot().url == "https://example.com/claude/A"
        assert client.get("/internal/sources").json()["active_document"] == "https://example.com/claude/A"


class TestCredentialEndpoints:
    """Storing and rotating the Notion token."""

    def test_store_token_configures_sync(self, client, components, monkeypatch):
        monkeypatch.setenv("NOTION_DATABASE_ID", "2fb86a4c5fbf806dbeb6f3f2c1b23d10")
        monkeypatch.delenv("AUTO_SYNC_ENABLED", raising=False)

        response = client.put("/internal/credentials/notion", json={"api_token": " secret_abc "})

        assert response.json() == {"stored": True, "configured": True}
        assert main.vault.load("notion_api_token") == "secret_abc"
        assert main.orchestrator is not components["orchestrator"]
        assert main.orchestrator.lock is components["orchestrator"].lock
        assert main.orchestrator.writer.database_id == "2fb86a4c5fbf806dbeb6f3f2c1b23d10"

    def test_store_token_without_database(self, client, components, monkeypatch):
        monkeypatch.delenv("NOTION_DATABASE_ID", raising=False)

        response = client.put("/internal/credentials/notion", json={"api_token": "secret_abc"})

        assert response.json() == {"stored": True, "configured": False}
        assert main.orchestrator is components["orchestrator"]

    def test_empty_token_rejected(self, client):
        assert client.put("/internal/credentials/notion", json={"api_token": "  "}).status_code == 400

    def test_token_loaded_from_vault(self, client, monkeypatch):
        monkeypatch.delenv("NOTION_API_TOKEN", raising=False)
        main.vault.save("notion_api_token", "secret_xyz")

        assert main._load_notion_token() == "secret_xyz"

    def test_rotate(self, client):
        assert client.post("/internal/credentials/rotate").json() == {"rotated": 0}

        main.vault.save("notion_api_token", "secret_xyz")

        assert client.post("/internal/credentials/rotate").json() == {"rotated": 1}
        assert main.vault.load("notion_api_token") == "secret_xyz"
