"""Integration tests for /sync routes."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from conftest import KINDS
from fieldsync.api.main import create_app
from fieldsync.models.sync import SyncLog
from fieldsync.service import OfflineDataService
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.network import NetworkMonitor


def _client_for(store, remote, tokens, *, online: bool) -> TestClient:
    monitor = NetworkMonitor(initially_online=online)
    service = OfflineDataService(SyncEngine(store, remote, tokens, monitor, kinds=KINDS))
    return TestClient(create_app(service))


@pytest.fixture(name="client")
def client_fixture(store, remote, tokens):
    with _client_for(store, remote, tokens, online=True) as c:
        yield c


@pytest.fixture(name="offline_client")
def offline_client_fixture(store, remote, tokens):
    with _client_for(store, remote, tokens, online=False) as c:
        yield c


class TestTrigger:
    def test_trigger_returns_200(self, client):
        # Patch _do_sync so the background task doesn't run a real pass
        with patch("fieldsync.api.routes.sync._do_sync", new=AsyncMock()):
            resp = client.post("/sync/trigger")
        assert resp.status_code == 200
        assert "started" in resp.json()["message"].lower()

    def test_trigger_offline_409(self, offline_client):
        resp = offline_client.post("/sync/trigger")
        assert resp.status_code == 409

    def test_trigger_runs_pass(self, client, store, remote):
        store.put("participants", {"name": "A"}, record_id="srv-1")
        assert client.post("/sync/trigger").status_code == 200
        remote.update_record.assert_awaited_once()
        assert store.pending_count() == 0


class TestStatus:
    def test_status_never_run(self, offline_client, store):
        store.put("participants", {"name": "A"})
        resp = offline_client.get("/sync/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["lastSync"]["status"] == "never_run"
        assert body["isOnline"] is False
        assert body["isSyncing"] is False
        assert body["pendingCount"] == 1
        assert body["hasPendingChanges"] is True

    def test_status_after_log_created(self, client, engine):
        with Session(engine) as s:
            s.add(SyncLog(
                started_at=datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc),
                finished_at=datetime(2026, 3, 1, 3, 1, tzinfo=timezone.utc),
                status="partial",
                records_downloaded=12,
                mutations_uploaded=3,
                mutations_failed=1,
            ))
            s.commit()

        last = client.get("/sync/status").json()["lastSync"]
        assert last["status"] == "partial"
        assert last["records_downloaded"] == 12
        assert last["mutations_failed"] == 1

    def test_stats(self, offline_client, store):
        store.put("participants", {"name": "A"})
        stats = offline_client.get("/sync/stats").json()
        assert stats["pendingCount"] == 1
        assert stats["pendingItems"][0]["type"] == "ENTITY_SAVE"


class TestQueue:
    def _park_one(self, store):
        store.put("participants", {"name": "A"}, record_id="srv-1")
        entry = store.get_pending_mutations()[0]
        for _ in range(3):
            store.mark_mutation_failed(entry.id, "HTTP 500: boom")
        return entry

    def test_list_filtered_by_status(self, offline_client, store):
        entry = self._park_one(store)
        store.put("participants", {"name": "B"}, record_id="srv-2")

        failed = offline_client.get("/sync/queue", params={"status": "failed"}).json()
        assert [m["id"] for m in failed] == [entry.id]
        assert failed[0]["lastError"] == "HTTP 500: boom"
        assert len(offline_client.get("/sync/queue").json()) == 2

    def test_retry_rearms_entry(self, offline_client, store):
        entry = self._park_one(store)
        resp = offline_client.post(f"/sync/queue/{entry.id}/retry")
        assert resp.status_code == 200
        assert store.get_mutation(entry.id).status == "pending"

    def test_retry_unknown_404(self, offline_client):
        assert offline_client.post("/sync/queue/999/retry").status_code == 404
