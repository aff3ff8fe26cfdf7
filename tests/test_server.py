"""
Tests for the Cross-Seed HTTP API
"""

import pytest
from fastapi.testclient import TestClient

from cross_seeder.server import Settings, create_app

USER = {"X-User-Id": "1"}
OTHER_USER = {"X-User-Id": "2"}


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory with the scheduler off."""
    return Settings(
        _env_file=None,
        data_path=str(tmp_path / "data"),
        scheduler_enabled=False,
        log_level="WARNING",
    )


@pytest.fixture
def client(settings, mock_qbit, mock_indexer):
    """Create test client with mocked torrent client and indexer."""
    app = create_app(
        settings,
        client_factory=lambda instance: mock_qbit,
        indexer_factory=lambda integration: mock_indexer,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def instance_id(client):
    """An instance of user 1 wired to an integration."""
    response = client.post(
        "/api/instances",
        json={"label": "seedbox", "url": "http://qbit:8080", "username": "u", "password": "p"},
        headers=USER,
    )
    instance_id = response.json()["id"]
    response = client.post(
        "/api/integrations",
        json={"label": "prowlarr", "url": "http://prowlarr:9696", "apiKey": "k"},
        headers=USER,
    )
    integration_id = response.json()["id"]
    response = client.put(
        f"/api/cross-seed/config/{instance_id}",
        json={"integrationId": integration_id},
        headers=USER,
    )
    assert response.status_code == 200
    return instance_id


class TestAuthentication:
    """Test caller identification."""

    def test_missing_user_header(self, client):
        response = client.get("/api/instances")
        assert response.status_code == 401

    def test_api_key_enforced(self, tmp_path):
        settings = Settings(
            _env_file=None,
            data_path=str(tmp_path / "keyed"),
            scheduler_enabled=False,
            api_key="sekret",
        )
        with TestClient(create_app(settings)) as client:
            response = client.get("/api/instances", headers=USER)
            assert response.status_code == 401
            assert response.json()["detail"] == "Invalid API key"

            response = client.get("/api/instances", headers={**USER, "X-Api-Key": "sekret"})
            assert response.status_code == 200


class TestInstances:
    """Test instance registration."""

    def test_instances_listed_without_credentials(self, client, instance_id):
        response = client.get("/api/instances", headers=USER)
        instances = response.json()["instances"]
        assert instances == [{"id": instance_id, "label": "seedbox", "url": "http://qbit:8080"}]

    def test_instances_scoped_to_caller(self, client, instance_id):
        response = client.get("/api/instances", headers=OTHER_USER)
        assert response.json()["instances"] == []


class TestConfig:
    """Test configuration endpoints."""

    def test_defaults_before_save(self, client):
        created = client.post(
            "/api/instances", json={"label": "bare", "url": "http://q"}, headers=USER
        ).json()
        response = client.get(f"/api/cross-seed/config/{created['id']}", headers=USER)
        assert response.status_code == 200
        data = response.json()
        assert data["enabled"] is False
        assert data["intervalHours"] == 24
        assert data["dryRun"] is True
        assert data["categorySuffix"] == "_cross-seed"

    def test_partial_update_keeps_other_fields(self, client, instance_id):
        response = client.put(
            f"/api/cross-seed/config/{instance_id}",
            json={"intervalHours": 6, "tag": "xs"},
            headers=USER,
        )
        data = response.json()
        assert data["intervalHours"] == 6
        assert data["tag"] == "xs"
        assert data["dryRun"] is True
        assert data["integrationId"] is not None

    def test_integration_can_be_cleared(self, client, instance_id):
        response = client.put(
            f"/api/cross-seed/config/{instance_id}",
            json={"integrationId": None},
            headers=USER,
        )
        assert response.json()["integrationId"] is None

    def test_enable_persists_next_run(self, client, instance_id):
        client.put(f"/api/cross-seed/config/{instance_id}", json={"enabled": True}, headers=USER)
        status = client.get(f"/api/cross-seed/status/{instance_id}", headers=USER).json()
        assert status["enabled"] is True

        client.put(f"/api/cross-seed/config/{instance_id}", json={"enabled": False}, headers=USER)
        status = client.get(f"/api/cross-seed/status/{instance_id}", headers=USER).json()
        assert status["enabled"] is False
        assert status["nextRun"] is None

    def test_interval_zero_rejected(self, client, instance_id):
        response = client.put(
            f"/api/cross-seed/config/{instance_id}",
            json={"intervalHours": 0},
            headers=USER,
        )
        assert response.status_code == 400

    def test_foreign_integration_rejected(self, client, instance_id):
        foreign = client.post(
            "/api/integrations",
            json={"label": "theirs", "url": "http://p", "apiKey": "x"},
            headers=OTHER_USER,
        ).json()["id"]
        response = client.put(
            f"/api/cross-seed/config/{instance_id}",
            json={"integrationId": foreign},
            headers=USER,
        )
        assert response.status_code == 404

    def test_foreign_instance_not_found(self, client, instance_id):
        response = client.get(f"/api/cross-seed/config/{instance_id}", headers=OTHER_USER)
        assert response.status_code == 404
        assert response.json()["detail"] == "Instance not found"


class TestScan:
    """Test manual scans and their side effects."""

    def test_dry_run_scan(self, client, instance_id, mock_qbit):
        response = client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER)
        assert response.status_code == 200
        result = response.json()
        assert result["dryRun"] is True
        assert result["scanned"] == 1
        assert result["matchesFound"] == 1
        assert result["added"] == 0
        assert result["errors"] == []
        mock_qbit.add_torrent.assert_not_called()

        stats = client.get(f"/api/cross-seed/cache/{instance_id}/stats", headers=USER).json()
        assert stats["cache"]["count"] == 1
        assert stats["output"]["count"] == 1

    def test_live_scan_override(self, client, instance_id, mock_qbit):
        response = client.post(
            f"/api/cross-seed/scan/{instance_id}", json={"dryRun": False}, headers=USER
        )
        result = response.json()
        assert result["dryRun"] is False
        assert result["added"] == 1
        mock_qbit.add_torrent.assert_awaited_once()

    def test_second_scan_skips_searched(self, client, instance_id):
        client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER)
        result = client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER).json()
        assert result["skipped"] == 1
        assert result["scanned"] == 0

        forced = client.post(
            f"/api/cross-seed/scan/{instance_id}", json={"force": True}, headers=USER
        ).json()
        assert forced["scanned"] == 1

    def test_scan_in_progress_conflict(self, client, instance_id):
        client.app.state.scheduler._running.add(instance_id)
        response = client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER)
        assert response.status_code == 409
        assert response.json()["detail"] == "Scan already in progress"

    def test_scan_foreign_instance(self, client, instance_id):
        response = client.post(f"/api/cross-seed/scan/{instance_id}", headers=OTHER_USER)
        assert response.status_code == 404

    def test_scan_without_integration(self, client, instance_id):
        client.put(
            f"/api/cross-seed/config/{instance_id}", json={"integrationId": None}, headers=USER
        )
        result = client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER).json()
        assert result["errors"] == ["No indexer integration configured"]


class TestStatus:
    """Test status endpoints."""

    def test_status_after_scan(self, client, instance_id):
        client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER)
        status = client.get(f"/api/cross-seed/status/{instance_id}", headers=USER).json()
        assert status["instanceLabel"] == "seedbox"
        assert status["running"] is False
        assert status["lastRun"] is not None
        assert status["lastResult"]["matchesFound"] == 1

    def test_status_all_scoped(self, client, instance_id):
        mine = client.get("/api/cross-seed/status", headers=USER).json()["instances"]
        theirs = client.get("/api/cross-seed/status", headers=OTHER_USER).json()["instances"]
        assert [s["instanceId"] for s in mine] == [instance_id]
        assert theirs == []

    def test_status_unconfigured(self, client):
        created = client.post(
            "/api/instances", json={"label": "bare", "url": "http://q"}, headers=USER
        ).json()
        response = client.get(f"/api/cross-seed/status/{created['id']}", headers=USER)
        assert response.status_code == 404


class TestHistoryAndCache:
    """Test history browsing and cache housekeeping."""

    def test_history_and_decisions(self, client, instance_id):
        client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER)

        history = client.get(f"/api/cross-seed/history/{instance_id}", headers=USER).json()
        assert history["total"] == 1
        searchee = history["searchees"][0]
        assert searchee["name"] == "Show.S01E01.1080p.WEB"
        assert searchee["fileSizes"] == [20, 1000]
        assert searchee["decisionCount"] == 1

        response = client.get(
            f"/api/cross-seed/history/{instance_id}/{searchee['id']}/decisions", headers=USER
        )
        decisions = response.json()["decisions"]
        assert len(decisions) == 1
        assert decisions[0]["decision"] == "MATCH_SIZE_ONLY"
        assert decisions[0]["guid"] == "guid-1"

    def test_decisions_unknown_searchee(self, client, instance_id):
        response = client.get(
            f"/api/cross-seed/history/{instance_id}/9999/decisions", headers=USER
        )
        assert response.status_code == 404

    def test_clear_history(self, client, instance_id):
        client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER)
        response = client.delete(f"/api/cross-seed/history/{instance_id}", headers=USER)
        assert response.json() == {"deleted": 1}
        history = client.get(f"/api/cross-seed/history/{instance_id}", headers=USER).json()
        assert history["total"] == 0

    def test_clear_cache(self, client, instance_id):
        client.post(f"/api/cross-seed/scan/{instance_id}", headers=USER)
        response = client.post(f"/api/cross-seed/cache/{instance_id}/clear", headers=USER)
        assert response.json() == {"cacheCleared": 1, "outputCleared": 1}
        stats = client.get(f"/api/cross-seed/cache/{instance_id}/stats", headers=USER).json()
        assert stats["cache"]["count"] == 0
        assert stats["output"] == {"count": 0, "files": []}


class TestHealthCheck:
    """Test health check endpoint."""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "instances" in data["database"]
