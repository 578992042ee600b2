"""Tests for the health and recovery HTTP endpoints."""

import asyncio
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from fakes import FakeClock, FakeConnection, fake_psutil_process
from relay_agent.config import AgentConfig, HealthServerConfig
from relay_agent.health_system import HealthSystem
from relay_agent.web import create_app


def make_system(connection=None, recovery_endpoints=False, timeout_ms=10000, clock=None):
    config = AgentConfig(
        health_server=HealthServerConfig(enable_recovery_endpoints=recovery_endpoints, timeout_ms=timeout_ms)
    )
    system = HealthSystem(
        config,
        connection or FakeConnection(),
        switcher=None,
        scheduler=MagicMock(),
        clock=clock or FakeClock(),
        terminate=MagicMock(),
        process=fake_psutil_process(),
    )
    system.recovery.memory_probe = lambda: 0
    return system


@pytest.fixture
def system():
    return make_system()


@pytest.fixture
def client(system):
    with TestClient(create_app(system)) as test_client:
        yield test_client


@pytest.fixture
def recovery_system():
    return make_system(recovery_endpoints=True)


@pytest.fixture
def recovery_client(recovery_system):
    with TestClient(create_app(recovery_system)) as test_client:
        yield test_client


class TestHealthEndpoints:
    """Tests for the probe endpoints."""

    def test_health_degraded_without_encoder(self, client):
        """Test a connected agent with no encoder reports degraded with 200."""
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["connection"]["status"] == "pass"
        assert body["checks"]["encoder"]["status"] == "warn"
        assert response.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"

    def test_health_unhealthy_returns_503(self):
        """Test a failed connection check yields 503."""
        system = make_system(connection=FakeConnection(connected=False))

        with TestClient(create_app(system)) as client:
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_health_does_not_record_history(self, client, system):
        """Test probe requests do not feed the recovery policy."""
        client.get("/health")

        assert system.health_monitor.check_history() == []

    @pytest.mark.parametrize("path", ["/health/live", "/healthz"])
    def test_liveness(self, client, system, path):
        """Test liveness is ok once the connection has been sampled."""
        system.health_monitor.collect_metrics()

        response = client.get(path)

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_liveness_fails_when_disconnected(self, client, system):
        """Test liveness fails after a disconnect."""
        system.health_monitor.collect_metrics()
        system.health_monitor._metrics.connection_connected = False

        assert client.get("/healthz").status_code == 503

    @pytest.mark.parametrize("path", ["/health/ready", "/readyz"])
    def test_readiness(self, client, system, path):
        """Test readiness flips once the connection is reported ready."""
        response = client.get(path)
        assert response.status_code == 503
        assert response.json()["reason"] == "Connection not established"

        system.health_monitor.collect_metrics()
        response = client.get(path)
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_startup_probe(self):
        """Test the startup probe waits for ten seconds of uptime."""
        clock = FakeClock()
        system = make_system(clock=clock)
        with TestClient(create_app(system)) as client:
            system.health_monitor.collect_metrics()
            assert client.get("/startupz").json()["status"] == "starting"

            clock.advance(11)
            system.health_monitor.collect_metrics()
            response = client.get("/health/startup")

        assert response.status_code == 200
        assert response.json()["status"] == "started"

    def test_detailed(self, client, system):
        """Test the detailed report includes every section."""
        system.health_monitor.collect_metrics()

        response = client.get("/health/detailed")

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"system", "health", "metrics", "stream", "recovery"}
        assert body["stream"]["phase"] == "idle"
        assert body["system"]["components"]["connection"] is True
        assert body["recovery"]["grace_period"]["is_active"] is False

    def test_unknown_path_lists_endpoints(self, client):
        """Test unknown paths return 404 with the available endpoints."""
        response = client.get("/nope")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "Endpoint not found"
        assert "GET /health - General health check" in body["available_endpoints"]
        assert not any("recovery" in endpoint for endpoint in body["available_endpoints"])


class TestRecoveryEndpoints:
    """Tests for /recovery/status and /recovery/trigger."""

    def test_disabled_by_default(self, client):
        """Test recovery endpoints are hidden unless enabled."""
        assert client.get("/recovery/status").status_code == 404
        response = client.post("/recovery/trigger", json={"actions": ["memory-cleanup"]})
        assert response.status_code == 404
        assert response.json() == {"error": "Recovery endpoints disabled"}

    def test_status(self, recovery_client):
        """Test the recovery status lists actions and stats."""
        response = recovery_client.get("/recovery/status")

        assert response.status_code == 200
        body = response.json()
        assert "restart-encoder" in body["available_actions"]
        assert body["stats"]["total_attempts"] == 0
        assert body["recent_history"] == []

    def test_trigger_runs_actions(self, recovery_client, recovery_system):
        """Test a valid trigger runs the actions and returns their results."""
        response = recovery_client.post("/recovery/trigger", json={"actions": ["memory-cleanup"]})

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["action_name"] for r in results] == ["memory-cleanup"]
        assert results[0]["success"] is True
        assert recovery_system.recovery.recovery_stats()["total_attempts"] == 1

    @pytest.mark.parametrize(
        "body",
        [{"actions": []}, {"actions": "memory-cleanup"}, {"other": 1}, ["memory-cleanup"]],
    )
    def test_trigger_bad_body(self, recovery_client, body):
        """Test malformed bodies are rejected with 400."""
        response = recovery_client.post("/recovery/trigger", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_trigger_invalid_json(self, recovery_client):
        """Test a non-JSON body is rejected with 400."""
        response = recovery_client.post(
            "/recovery/trigger", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_trigger_unknown_action(self, recovery_client):
        """Test unknown action names are reported back."""
        response = recovery_client.post("/recovery/trigger", json={"actions": ["memory-cleanup", "bogus"]})

        assert response.status_code == 400
        assert response.json()["actions"] == ["bogus"]

    def test_trigger_busy(self, recovery_client, recovery_system):
        """Test a trigger during a running batch returns 409."""
        recovery_system.recovery._recovering = True

        response = recovery_client.post("/recovery/trigger", json={"actions": ["memory-cleanup"]})

        assert response.status_code == 409

    def test_trigger_timeout_returns_accepted(self):
        """Test a batch outlasting the request timeout is reported as still running."""
        connection = FakeConnection()

        async def slow_reconnect():
            await asyncio.sleep(0.5)
            return True

        connection.reconnect = slow_reconnect
        system = make_system(connection=connection, recovery_endpoints=True, timeout_ms=20)

        with TestClient(create_app(system)) as client:
            response = client.post("/recovery/trigger", json={"actions": ["reconnect-connection"]})

        assert response.status_code == 202
        assert response.json()["actions"] == ["reconnect-connection"]
