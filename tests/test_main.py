"""Tests for the HTTP endpoints in main.py"""

import pytest
from fastapi.testclient import TestClient

from omnisync.core.storage import get_db
from omnisync.core.sync_job import SyncStatus, get_sync_store
from omnisync.core.sync_state import SyncState
from omnisync.main import app

from conftest import utc


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("SYNC_INTERVAL_MINUTES", "0")
    monkeypatch.delenv("JOPLIN_TOKEN", raising=False)
    with TestClient(app) as c:
        yield c


class TestPages:
    def test_home(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert "omnisync" in resp.text
        assert "never" in resp.text


class TestSyncEndpoints:
    def test_start_creates_pending_job(self, client):
        data = client.post("/api/sync/start").json()

        job = get_sync_store().get(data["job_id"])
        assert job.status == SyncStatus.PENDING
        assert client.get(f"/api/sync/{job.id}/status").json()["status"] == "pending"

    def test_start_refused_while_running(self, client):
        store = get_sync_store()
        job = store.create()
        job.status = SyncStatus.RUNNING
        store.update(job)

        data = client.post("/api/sync/start").json()

        assert "error" in data
        assert data["job_id"] == job.id

    def test_unknown_job(self, client):
        assert client.get("/api/sync/nope/status").json() == {"error": "Job not found"}
        assert client.get("/api/sync/nope/stream").json() == {"error": "Job not found"}

    def test_jobs_list(self, client):
        client.post("/api/sync/start")
        jobs = client.get("/api/sync/jobs").json()["jobs"]
        assert len(jobs) == 1
        assert jobs[0]["trigger"] == "manual"


class TestResetEndpoint:
    def _seed_state(self):
        state = SyncState()
        state.advance_watermark(utc(2024, 1, 5))
        state.record_highlight_synced("2024-01-05", "h1")
        get_db().save_sync_state(state)
        return state

    def test_reset_requires_confirmation(self, client):
        state = self._seed_state()

        data = client.post("/api/sync/reset").json()

        assert "error" in data
        assert get_db().load_sync_state() == state

    def test_reset_with_confirmation(self, client):
        self._seed_state()

        data = client.post("/api/sync/reset", params={"confirm": "true"}).json()

        assert data["status"] == "reset"
        assert get_db().load_sync_state() == SyncState()


class TestConsolidateEndpoint:
    def test_missing_token_reports_error(self, client):
        data = client.post("/api/sync/consolidate").json()
        assert "token" in data["error"]
