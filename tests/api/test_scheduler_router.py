"""
Tests for the scheduler admin router.

The service is a real SchedulerService on a temporary job store; the
lifespan hooks are mocked so the app doesn't build one from the env.
"""

import importlib
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from dilemma.api._scheduler_state import set_scheduler_service
from dilemma.infra.cache import MemoryCache
from dilemma.infra.config import SchedulerSettings
from dilemma.infra.repository import SqliteItemRepository
from dilemma.scheduler import SchedulerService


TEST_API_KEY = "test-secret-key-12345"


def future_publish_time() -> datetime:
    """23:00 UTC two days ahead, midnight or 1am in Paris."""
    now = datetime.now(timezone.utc)
    return (now + timedelta(days=2)).replace(hour=23, minute=0, second=0, microsecond=0)


@pytest.fixture
def repository():
    repository = SqliteItemRepository(":memory:")
    yield repository
    repository.close()


@pytest.fixture
def service(tmp_path, repository):
    settings = SchedulerSettings(
        db_path=str(tmp_path / "scheduler.sqlite"),
        worker_count=1,
        poll_interval=0.05,
        shutdown_grace=5.0,
    )
    service = SchedulerService.create(settings=settings, cache=MemoryCache(), repository=repository)
    set_scheduler_service(service)
    yield service
    set_scheduler_service(None)
    service.close()


def build_app(monkeypatch, auth_enabled: bool):
    """Set the auth env vars and build a fresh app."""
    monkeypatch.setenv("API_AUTH_ENABLED", "true" if auth_enabled else "false")
    monkeypatch.setenv("API_KEY", TEST_API_KEY)

    import dilemma.api.main as main_module
    importlib.reload(main_module)

    return main_module


@pytest.fixture
def client(monkeypatch, service):
    main_module = build_app(monkeypatch, auth_enabled=False)

    with patch.object(main_module, "startup_scheduler", new_callable=AsyncMock), \
            patch.object(main_module, "shutdown_scheduler", new_callable=AsyncMock):
        with TestClient(main_module.app) as client:
            yield client


@pytest.fixture
def auth_client(monkeypatch, service):
    main_module = build_app(monkeypatch, auth_enabled=True)

    with patch.object(main_module, "startup_scheduler", new_callable=AsyncMock), \
            patch.object(main_module, "shutdown_scheduler", new_callable=AsyncMock):
        with TestClient(main_module.app) as client:
            yield client


# =============================================================================
# Health & Control
# =============================================================================


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestControl:

    def test_status_when_stopped(self, client):
        response = client.get("/scheduler/status")

        assert response.status_code == 200
        data = response.json()
        assert data["scheduler_running"] is False
        assert data["worker_count"] == 1
        assert data["current_job_ids"] == []
        assert data["queue"]["total"] == 0

    def test_start_and_stop_are_idempotent(self, client, service):
        response = client.post("/scheduler/start", json={"run_recovery": True})
        assert response.status_code == 200
        assert response.json()["message"] == "Scheduler started successfully"
        assert response.json()["recovery_stats"]["errors"] == []
        assert service.is_running

        response = client.post("/scheduler/start")
        assert response.json()["message"] == "Scheduler is already running"

        response = client.post("/scheduler/stop", json={"timeout": 5})
        assert response.status_code == 200
        assert response.json()["message"] == "Scheduler stopped successfully"
        assert not service.is_running

        response = client.post("/scheduler/stop")
        assert response.json()["message"] == "Scheduler is already stopped"

    def test_start_failure_returns_500(self, client):
        broken = MagicMock()
        broken.is_running = False
        broken.start.side_effect = RuntimeError("job store unreachable")
        set_scheduler_service(broken)

        response = client.post("/scheduler/start")

        assert response.status_code == 500
        assert "job store unreachable" in response.json()["detail"]

    def test_start_arms_daily_reconcile(self, client):
        client.post("/scheduler/start", json={"run_recovery": False})
        try:
            response = client.get("/scheduler/jobs/upcoming")
        finally:
            client.post("/scheduler/stop")

        types = [job["type"] for job in response.json()["jobs"]]
        assert types == ["daily-reconcile"]


# =============================================================================
# Items & Jobs
# =============================================================================


class TestItems:

    def test_schedule_with_default_reveal(self, client):
        publish_at = future_publish_time()

        response = client.put(
            "/scheduler/items/abc",
            json={"publish_at": publish_at.isoformat()},
        )

        assert response.status_code == 200
        data = response.json()
        assert [job["job_id"] for job in data["jobs"]] == ["publish-abc", "reveal-abc"]

        reveal_at = datetime.fromisoformat(data["reveal_at"].replace("Z", "+00:00"))
        assert reveal_at.astimezone(timezone.utc).hour in (18, 19)

    def test_reschedule_replaces_jobs(self, client, service):
        publish_at = future_publish_time()
        client.put("/scheduler/items/abc", json={"publish_at": publish_at.isoformat()})

        later = publish_at + timedelta(days=1)
        client.put(
            "/scheduler/items/abc",
            json={"publish_at": later.isoformat(), "reveal_at": (later + timedelta(hours=20)).isoformat()},
        )

        assert abs(service.get_job("publish-abc").not_before - later) < timedelta(seconds=1)
        assert service.get_queue_stats()["total"] == 2

    def test_reveal_before_publish_rejected(self, client):
        publish_at = future_publish_time()

        response = client.put(
            "/scheduler/items/abc",
            json={
                "publish_at": publish_at.isoformat(),
                "reveal_at": (publish_at - timedelta(hours=1)).isoformat(),
            },
        )

        assert response.status_code == 422

    def test_past_dates_schedule_nothing(self, client):
        response = client.put(
            "/scheduler/items/old",
            json={"publish_at": "2020-01-01T00:00:00Z", "reveal_at": "2020-01-01T19:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json()["jobs"] == []

    def test_unschedule(self, client):
        client.put(
            "/scheduler/items/abc",
            json={"publish_at": future_publish_time().isoformat()},
        )

        assert client.delete("/scheduler/items/abc").json() == {"item_id": "abc", "removed": 2}
        assert client.delete("/scheduler/items/abc").json() == {"item_id": "abc", "removed": 0}


class TestJobs:

    def test_get_job(self, client):
        client.put(
            "/scheduler/items/abc",
            json={"publish_at": future_publish_time().isoformat()},
        )

        response = client.get("/scheduler/jobs/publish-abc")

        assert response.status_code == 200
        data = response.json()
        assert data["type"] == "publish"
        assert data["state"] == "PENDING"
        assert data["item_id"] == "abc"
        assert data["attempts"] == 0

    def test_get_unknown_job(self, client):
        response = client.get("/scheduler/jobs/publish-nope")

        assert response.status_code == 404

    def test_upcoming_limit(self, client):
        publish_at = future_publish_time()
        for item_id in ("a", "b"):
            client.put(f"/scheduler/items/{item_id}", json={"publish_at": publish_at.isoformat()})

        response = client.get("/scheduler/jobs/upcoming", params={"limit": 3})

        assert response.json()["total"] == 3

    def test_failed_jobs_empty(self, client):
        response = client.get("/scheduler/jobs/failed")

        assert response.status_code == 200
        assert response.json() == {"jobs": [], "total": 0}


class TestMaintenance:

    def test_cleanup(self, client):
        response = client.post("/scheduler/cleanup", json={"completed_retention_days": 0})

        assert response.status_code == 200
        assert response.json() == {"completed_removed": 0, "failed_removed": 0}

    def test_reconcile_reads_repository(self, client, repository, service):
        publish_at = future_publish_time()
        repository.upsert_item("abc", publish_at, publish_at + timedelta(hours=20))

        response = client.post("/scheduler/reconcile")

        assert response.json() == {"items_scheduled": 1}
        assert service.get_job("reveal-abc") is not None


# =============================================================================
# Authentication
# =============================================================================


class TestAuthEnabled:

    def test_health_needs_no_key(self, auth_client):
        assert auth_client.get("/health").status_code == 200

    def test_missing_key(self, auth_client):
        response = auth_client.get("/scheduler/status")

        assert response.status_code == 401
        assert "Missing API key" in response.json()["detail"]

    def test_wrong_key(self, auth_client):
        response = auth_client.get("/scheduler/status", headers={"X-API-Key": "wrong"})

        assert response.status_code == 401

    def test_valid_key(self, auth_client):
        response = auth_client.get("/scheduler/status", headers={"X-API-Key": TEST_API_KEY})

        assert response.status_code == 200


class TestAuthFromEnvironment:

    def test_env_file_enables_auth(self, monkeypatch, tmp_path, service):
        env_file = tmp_path / ".env"
        env_file.write_text(f"API_AUTH_ENABLED=true\nAPI_KEY={TEST_API_KEY}\n")
        monkeypatch.delenv("API_AUTH_ENABLED")
        monkeypatch.delenv("API_KEY", raising=False)

        import dotenv
        real_load_dotenv = dotenv.load_dotenv

        import dilemma.api.main as main_module
        with patch("dotenv.load_dotenv", side_effect=lambda *args, **kwargs: real_load_dotenv(env_file)):
            importlib.reload(main_module)

        with patch.object(main_module, "startup_scheduler", new_callable=AsyncMock), \
                patch.object(main_module, "shutdown_scheduler", new_callable=AsyncMock):
            with TestClient(main_module.app) as client:
                assert client.get("/scheduler/status").status_code == 401
                response = client.get("/scheduler/status", headers={"X-API-Key": TEST_API_KEY})
                assert response.status_code == 200

    def test_auth_setting_applies_without_restart(self, client, monkeypatch):
        assert client.get("/scheduler/status").status_code == 200

        monkeypatch.setenv("API_AUTH_ENABLED", "true")

        assert client.get("/scheduler/status").status_code == 401
