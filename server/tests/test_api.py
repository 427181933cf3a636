import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from panel.core.security import create_access_token, sign_bytes
from panel.main import app
from panel.monitoring.transport import InstanceInfo
from panel.services import Services

from conftest import AGGREGATED_PAYLOAD


@pytest.fixture
def services(settings, engine, store, ledger, orchestrator):
    return Services(settings=settings, engine=engine, store=store, ledger=ledger, orchestrator=orchestrator)


@pytest.fixture
def client(services):
    app.state.services = services
    with TestClient(app) as c:
        yield c
    del app.state.services


@pytest.fixture
def auth(settings):
    token = create_access_token(subject=settings.ui_user, secret=settings.jwt_secret)
    return {"Authorization": f"Bearer {token}"}


def signed(body: dict, psk: str, agent_id: str):
    raw = json.dumps(body).encode()
    return raw, {"X-Agent-Id": agent_id, "X-Signature": sign_bytes(raw, psk), "Content-Type": "application/json"}


class TestAuth:
    def test_health_is_public(self, client):
        assert client.get("/api/health").json()["status"] == "ok"

    def test_login(self, client, settings):
        r = client.post("/api/auth/login", json={"username": "admin", "password": "s3cret"})
        assert r.status_code == 200
        token = r.json()["token"]
        r = client.get("/api/monitoring/online", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 200

    @pytest.mark.parametrize("username, password", [("admin", "wrong"), ("root", "s3cret"), ("admin", "")])
    def test_bad_credentials(self, client, username, password):
        r = client.post("/api/auth/login", json={"username": username, "password": password})
        assert r.status_code == 401
        assert "s3cret" not in r.text

    def test_token_required(self, client):
        assert client.get("/api/analytics", params={"host_id": "i-1"}).status_code == 401

    def test_token_from_other_secret(self, client, settings):
        token = create_access_token(subject=settings.ui_user, secret="another-secret")
        r = client.get("/api/monitoring/online", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 401

    def test_token_query_param(self, client, settings):
        token = create_access_token(subject=settings.ui_user, secret=settings.jwt_secret)
        assert client.get("/api/monitoring/online", params={"token": token}).status_code == 200


class TestAgentRoutes:
    def test_status_and_cache(self, client, auth, checker):
        checker.script = [(True, False)]
        assert client.get("/api/agent/status/cached", params={"host_id": "i-1"}, headers=auth).status_code == 404

        r = client.get("/api/agent/status", params={"host_id": "i-1"}, headers=auth)
        assert r.json() == {
            "hostId": "i-1",
            "isInstalled": True,
            "isRunning": False,
            "installationInProgress": False,
            "installationCommandId": None,
        }
        r = client.get("/api/agent/status/cached", params={"host_id": "i-1"}, headers=auth)
        assert r.json()["isInstalled"] is True

    def test_install_and_list_commands(self, client, auth, control_plane):
        r = client.post("/api/agent/install", json={"hostId": "i-1"}, headers=auth)
        assert r.status_code == 200
        assert r.json()["commandId"] == "cmd-1"
        assert r.json()["status"] == "InProgress"

        r = client.get("/api/agent/commands", params={"host_id": "i-1"}, headers=auth)
        assert [c["action"] for c in r.json()] == ["Install"]

    def test_install_on_stopped_instance(self, client, auth, control_plane):
        control_plane.instances["i-1"] = InstanceInfo(instance_id="i-1", exists=True, state="stopped")
        r = client.post("/api/agent/install", json={"hostId": "i-1"}, headers=auth)
        assert r.status_code == 409
        assert r.json()["code"] == "TARGET_UNREACHABLE"

    def test_poll_command(self, client, auth, control_plane):
        control_plane.next_scripts = [[("Failed", "Downloading...", "ERROR: Failed to download install script")]]
        client.post("/api/agent/stop", json={"hostId": "i-1"}, headers=auth)

        r = client.get("/api/agent/commands/cmd-1", params={"host_id": "i-1"}, headers=auth)
        assert r.json() == {
            "commandId": "cmd-1",
            "status": "Failed",
            "output": "Downloading...",
            "error": "ERROR: Failed to download install script",
        }

    def test_unknown_command(self, client, auth):
        r = client.get("/api/agent/commands/cmd-404", params={"host_id": "i-1"}, headers=auth)
        assert r.status_code == 404
        assert r.json()["code"] == "COMMAND_NOT_FOUND"

    def test_ensure_running_is_accepted(self, client, auth):
        r = client.post("/api/agent/ensure-running", json={"hostId": "i-1"}, headers=auth)
        assert r.status_code == 202

    @pytest.mark.parametrize("route, action", [("uninstall", "Uninstall"), ("start", "Start"), ("stop", "Stop")])
    def test_direct_actions(self, client, auth, control_plane, route, action):
        r = client.post(f"/api/agent/{route}", json={"hostId": "i-1"}, headers=auth)
        assert r.status_code == 200
        assert r.json()["commandId"] == "cmd-1"
        assert control_plane.actions() == [action]

    def test_progress(self, client, auth):
        assert client.get("/api/agent/progress", params={"host_id": "i-1"}, headers=auth).status_code == 404
        client.post("/api/agent/install", json={"hostId": "i-1"}, headers=auth)
        r = client.get("/api/agent/progress", params={"host_id": "i-1"}, headers=auth)
        assert r.status_code == 200
        assert r.json()["hostId"] == "i-1"

    def test_machine_id(self, client, auth):
        r = client.get("/api/agent/machine-id", params={"host_id": "i-1"}, headers=auth)
        assert r.json() == {"machineId": "machine-1"}


class TestAnalyticsRoutes:
    def test_fast_path(self, client, auth, fetcher):
        fetcher.responses["/live/summary"] = AGGREGATED_PAYLOAD
        r = client.get("/api/analytics", params={"host_id": "i-1"}, headers=auth)
        assert r.status_code == 200
        body = r.json()
        assert body["schemaVersion"] == 2
        assert body["stats"]["pageviews"] == 12
        assert {row["country"] for row in body["analyticsData"]} == {"US", "DE"}

    def test_agent_not_running(self, client, auth, checker):
        checker.script = [(True, False)]
        r = client.get("/api/analytics", params={"host_id": "i-1"}, headers=auth)
        assert r.status_code == 503
        assert r.json()["code"] == "AGENT_NOT_RUNNING"

    def test_agent_installing(self, client, auth, checker, control_plane):
        checker.script = [(False, False)]
        r = client.get("/api/analytics", params={"host_id": "i-1"}, headers=auth)
        assert r.status_code == 202
        assert r.json()["code"] == "AGENT_INSTALLING"
        assert r.json()["commandId"] == "cmd-1"

    def test_system_metrics(self, client, auth, fetcher):
        fetcher.responses["/system"] = {"processes": [{"pid": 1}]}
        r = client.get("/api/system-metrics", params={"host_id": "i-1", "top": 3}, headers=auth)
        assert r.json() == {"processes": [{"pid": 1}]}
        assert fetcher.calls[-1] == ("i-1", "/system?top=3")

    def test_system_metrics_bad_top(self, client, auth):
        r = client.get("/api/system-metrics", params={"host_id": "i-1", "top": 0}, headers=auth)
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_PARAMETERS"

    def test_system_metrics_unreachable(self, client, auth):
        r = client.get("/api/system-metrics", params={"host_id": "i-1"}, headers=auth)
        assert r.status_code == 500
        assert r.json() == {"error": "Request to agent HTTP endpoint timed out", "code": "FETCH_ERROR"}


class TestHeartbeatRoutes:
    def test_signed_push_then_read(self, client, auth, settings):
        now = datetime.now(timezone.utc).replace(microsecond=0)
        raw, headers = signed(
            {"hostId": "i-1", "version": "1.2.0", "timestamp": now.isoformat(), "metrics": {"cpuLoad": 0.4}},
            settings.server_psk, "i-1",
        )
        r = client.post("/api/monitoring/heartbeat", content=raw, headers=headers)
        assert r.status_code == 200

        latest = client.get("/api/monitoring/heartbeats/i-1/latest", headers=auth).json()
        assert latest["hostId"] == "i-1"
        assert latest["metrics"]["cpuLoad"] == 0.4

        assert client.get("/api/monitoring/online", headers=auth).json()["hosts"] == ["i-1"]
        history = client.get("/api/monitoring/heartbeats", params={"host_id": "i-1"}, headers=auth).json()
        assert len(history) == 1

    def test_bad_signature(self, client):
        raw, headers = signed({"hostId": "i-1"}, "not-the-psk", "i-1")
        assert client.post("/api/monitoring/heartbeat", content=raw, headers=headers).status_code == 401

    def test_agent_id_mismatch(self, client, settings):
        raw, headers = signed({"hostId": "i-1"}, settings.server_psk, "i-2")
        assert client.post("/api/monitoring/heartbeat", content=raw, headers=headers).status_code == 400

    def test_missing_headers(self, client):
        assert client.post("/api/monitoring/heartbeat", json={"hostId": "i-1"}).status_code == 400

    def test_latest_for_unknown_host(self, client, auth):
        assert client.get("/api/monitoring/heartbeats/i-9/latest", headers=auth).status_code == 404

    def test_pull(self, client, auth, fetcher):
        r = client.post("/api/monitoring/pull/i-1", headers=auth)
        assert r.json() == {"online": False, "heartbeat": None}

        fetcher.responses["/status"] = {"version": "1.2.0", "status": "online"}
        r = client.post("/api/monitoring/pull/i-1", headers=auth)
        assert r.json()["online"] is True
        assert r.json()["heartbeat"]["version"] == "1.2.0"

    def test_metrics_summary(self, client, auth, store):
        now = datetime.now(timezone.utc).replace(microsecond=0)
        store.record_heartbeat("i-1", {"timestamp": now.isoformat(), "metrics": {"cpuLoad": 0.8, "memoryUsedPct": 30.0}})
        window = {"start": (now - timedelta(minutes=5)).isoformat(), "end": (now + timedelta(minutes=5)).isoformat()}

        r = client.get("/api/monitoring/heartbeats/i-1/summary", params=window, headers=auth)
        assert r.status_code == 200
        assert r.json()["maxCpuLoad"] == 0.8
        assert r.json()["samples"] == 1

        assert client.get("/api/monitoring/heartbeats/i-9/summary", params=window, headers=auth).status_code == 404

    def test_metrics_summary_inverted_window(self, client, auth):
        now = datetime.now(timezone.utc)
        window = {"start": now.isoformat(), "end": (now - timedelta(hours=1)).isoformat()}
        r = client.get("/api/monitoring/heartbeats/i-1/summary", params=window, headers=auth)
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_PARAMETERS"

    def test_query_limit_bounds(self, client, auth):
        r = client.get("/api/monitoring/heartbeats", params={"host_id": "i-1", "limit": 1001}, headers=auth)
        assert r.status_code == 422


class TestWebSocket:
    def test_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/ws?token=nope") as ws:
                ws.receive_text()

    def test_accepts_valid_token(self, client, settings):
        token = create_access_token(subject=settings.ui_user, secret=settings.jwt_secret)
        with client.websocket_connect(f"/api/ws?token={token}") as ws:
            ws.send_text("ping")
