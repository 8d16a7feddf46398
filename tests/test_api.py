"""
Tests for the HTTP API.

Dependencies are overridden with in-memory stores so no database or object
storage is needed.

Run with: pytest tests/test_api.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from journal_sync.api.deps import get_entity_store, get_file_service, get_sync_monitor
from journal_sync.db.models import EntityType, TripRole
from journal_sync.main import app
from journal_sync.sync.files import FileSyncService
from journal_sync.sync.monitoring import AlertSeverity, AlertType

from .fakes import InMemoryStore

HEADERS = {"X-User-Id": "u1"}


@pytest.fixture
def api(monitor):
    store = InMemoryStore()
    recent = datetime.now(timezone.utc) - timedelta(minutes=1)
    store.put(EntityType.TRIP, id="t1", name="Lisbon")
    store.add_member("t1", "u1", TripRole.EDITOR)
    store.put(EntityType.MEMORY, id="m1", title="A", trip_id="t1", creator_id="u1", updated_at=recent)

    storage = MagicMock()
    storage.generate_presigned_get_url = AsyncMock(return_value="https://get")
    storage.generate_presigned_put_url = AsyncMock(return_value="https://put")

    app.dependency_overrides[get_entity_store] = lambda: store
    app.dependency_overrides[get_sync_monitor] = lambda: monitor
    app.dependency_overrides[get_file_service] = lambda: FileSyncService(store, storage)
    yield TestClient(app), store, recent
    app.dependency_overrides.clear()


def conflicting_edit(recent, op_id="op-1"):
    return {
        "id": op_id,
        "type": "UPDATE",
        "entityType": "Memory",
        "data": {"id": "m1", "title": "B", "updatedAt": (recent + timedelta(seconds=30)).isoformat()},
    }


class TestServiceEndpoints:
    """Test health and root endpoints."""

    def test_health(self, api):
        client, _, _ = api
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, api):
        client, _, _ = api
        assert client.get("/").json()["docs"] == "/docs"


class TestSyncRoutes:
    """Test push and pull routes."""

    def test_caller_id_is_required(self, api):
        client, _, _ = api
        response = client.get("/api/v1/sync/delta")
        assert response.status_code == 401
        assert response.json()["detail"] == "You must be logged in to sync."

    def test_batch_sync_isolates_malformed_operation(self, api):
        client, _, _ = api
        body = {"operations": [
            {"id": "a", "type": "CREATE", "entityType": "Memory", "data": {"id": "x1", "title": "1", "tripId": "t1"}},
            {"id": "b", "type": "CREATE", "entityType": "Memory", "data": "{broken"},
            {"id": "c", "type": "CREATE", "entityType": "Memory", "data": {"id": "x3", "title": "3", "tripId": "t1"}},
        ]}
        response = client.post("/api/v1/sync/batch", json=body, headers=HEADERS)
        assert response.status_code == 200
        payload = response.json()
        assert len(payload["successful"]) == 2
        assert [f["id"] for f in payload["failed"]] == ["b"]
        assert payload["processed"] == 3

    def test_conflict_aware_sync(self, api):
        client, store, recent = api
        body = {"operations": [conflicting_edit(recent)], "device_id": "phone", "strategy": "lastWriteWins"}
        response = client.post("/api/v1/sync/conflict-aware", json=body, headers=HEADERS)
        assert response.status_code == 200
        payload = response.json()
        assert payload["conflicts"][0]["resolution"]["winner"] == "remote"
        assert store.get(EntityType.MEMORY, "m1")["title"] == "B"

    def test_conflict_aware_sync_rejects_unknown_strategy(self, api):
        client, _, recent = api
        body = {"operations": [conflicting_edit(recent)], "device_id": "phone", "strategy": "coinFlip"}
        assert client.post("/api/v1/sync/conflict-aware", json=body, headers=HEADERS).status_code == 422

    def test_delta_sync(self, api):
        client, _, _ = api
        response = client.get("/api/v1/sync/delta", headers=HEADERS)
        assert response.status_code == 200
        payload = response.json()
        assert [t["id"] for t in payload["trips"]] == ["t1"]
        assert payload["deleted"]["memories"] == []
        assert "server_timestamp" in payload


class TestConflictRoutes:
    """Test the conflict log routes."""

    def create_pending(self, client, recent):
        body = {"operations": [conflicting_edit(recent)], "device_id": "phone", "strategy": "userChoice"}
        return client.post("/api/v1/sync/conflict-aware", json=body, headers=HEADERS).json()["conflicts"][0]

    def test_list_get_and_resolve(self, api):
        client, store, recent = api
        conflict = self.create_pending(client, recent)
        conflict_id = conflict["conflict_id"]

        listed = client.get("/api/v1/sync/conflicts", headers=HEADERS).json()
        assert [c["id"] for c in listed] == [conflict_id]

        entry = client.get(f"/api/v1/sync/conflicts/{conflict_id}", headers=HEADERS).json()
        assert entry["status"] == "pending_user_choice"

        resolved = client.post(
            f"/api/v1/sync/conflicts/{conflict_id}/resolve", params={"choice": "local"}, headers=HEADERS
        )
        assert resolved.status_code == 200
        assert store.get(EntityType.MEMORY, "m1")["title"] == "A"

        again = client.post(
            f"/api/v1/sync/conflicts/{conflict_id}/resolve", params={"choice": "local"}, headers=HEADERS
        )
        assert again.status_code == 409

    def test_other_users_conflicts_are_hidden(self, api):
        client, _, recent = api
        conflict_id = self.create_pending(client, recent)["conflict_id"]
        response = client.get(f"/api/v1/sync/conflicts/{conflict_id}", headers={"X-User-Id": "u2"})
        assert response.status_code == 404

    def test_unknown_conflict(self, api):
        client, _, _ = api
        assert client.get("/api/v1/sync/conflicts/nope", headers=HEADERS).status_code == 404
        response = client.post("/api/v1/sync/conflicts/nope/resolve", params={"choice": "remote"}, headers=HEADERS)
        assert response.status_code == 404

    def test_metrics(self, api):
        client, _, recent = api
        self.create_pending(client, recent)
        metrics = client.get("/api/v1/sync/conflicts/metrics", params={"timeframe": "7d"}, headers=HEADERS).json()
        assert metrics["total_conflicts"] == 1
        assert metrics["pending_conflicts"] == 1
        assert metrics["timeframe"] == "7d"

    def test_metrics_only_count_the_callers_conflicts(self, api):
        client, _, recent = api
        self.create_pending(client, recent)
        metrics = client.get("/api/v1/sync/conflicts/metrics", headers={"X-User-Id": "u2"}).json()
        assert metrics["total_conflicts"] == 0
        assert metrics["resolution_rate"] == 0.0


class TestDeviceRoutes:
    """Test the device registry routes."""

    def test_register_list_and_update(self, api):
        client, _, _ = api
        created = client.post("/api/v1/devices", json={"name": "ipad", "type": "ios", "priority": 8}, headers=HEADERS)
        assert created.status_code == 200
        assert created.json()["device_id"] == "ipad"

        devices = client.get("/api/v1/devices", headers=HEADERS).json()
        assert [d["device_id"] for d in devices] == ["ipad"]

        updated = client.patch("/api/v1/devices/ipad/priority", json={"priority": 2}, headers=HEADERS)
        assert updated.json()["priority"] == 2

    def test_update_unknown_device(self, api):
        client, _, _ = api
        response = client.patch("/api/v1/devices/ghost/priority", json={"priority": 2}, headers=HEADERS)
        assert response.status_code == 404

    def test_invalid_priority(self, api):
        client, _, _ = api
        response = client.post("/api/v1/devices", json={"name": "x", "type": "ios", "priority": 500}, headers=HEADERS)
        assert response.status_code == 422


class TestFileRoutes:
    """Test the file URL routes."""

    def test_upload_urls(self, api):
        client, _, _ = api
        body = {"upload_requests": [
            {"entity_id": "p1", "entity_type": "MediaItem", "object_name": "p1.jpg", "mime_type": "image/jpeg"}
        ]}
        response = client.post("/api/v1/files/upload-urls", json=body, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["urls"][0]["url"] == "https://put"

    def test_upload_complete_errors(self, api):
        client, _, _ = api
        body = {"entity_id": "nope", "entity_type": "MediaItem", "object_name": "x.jpg"}
        assert client.post("/api/v1/files/upload-complete", json=body, headers=HEADERS).status_code == 404
        body = {"entity_id": "t1", "entity_type": "Trip", "object_name": "x.jpg"}
        assert client.post("/api/v1/files/upload-complete", json=body, headers=HEADERS).status_code == 400

    def test_download_urls(self, api):
        client, store, _ = api
        store.put(EntityType.GPX_TRACK, id="g1", trip_id="t1", gpx_file_object_name="g1.gpx")
        body = {"gpx_track_ids": ["g1"]}
        urls = client.post("/api/v1/files/download-urls", json=body, headers=HEADERS).json()["urls"]
        assert [(u["entity_id"], u["entity_type"]) for u in urls] == [("g1", "GPXTrack")]


class TestMonitoringRoutes:
    """Test the monitoring routes."""

    def test_health_and_performance(self, api):
        client, _, _ = api
        assert client.get("/api/v1/monitoring/health", headers=HEADERS).json()["status"] == "healthy"
        assert client.get("/api/v1/monitoring/performance", params={"window": "day"}).json()["window"] == "day"

    def test_export_after_sync(self, api):
        client, _, _ = api
        client.get("/api/v1/sync/delta", headers=HEADERS)
        exported = client.get("/api/v1/monitoring/metrics/export")
        assert exported.headers["content-type"].startswith("application/json")
        assert [m["operation"] for m in exported.json()] == ["delta_sync"]

    def test_alerts_acknowledge(self, api, monitor):
        client, _, _ = api
        alert = monitor.trigger_alert(AlertType.ERROR, AlertSeverity.WARNING, "boom")
        assert [a["id"] for a in client.get("/api/v1/monitoring/alerts").json()] == [alert.id]
        acknowledged = client.post(f"/api/v1/monitoring/alerts/{alert.id}/acknowledge")
        assert acknowledged.json()["acknowledged"] is True
        assert client.get("/api/v1/monitoring/alerts").json() == []
        assert client.post("/api/v1/monitoring/alerts/missing/acknowledge").status_code == 404

    def test_jobs(self, api):
        client, _, _ = api
        payload = client.get("/api/v1/monitoring/jobs").json()
        assert payload["scheduler_running"] is False
        assert "anomalies_found" in payload["stats"]
