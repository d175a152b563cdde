"""Tests for the HTTP and WebSocket API."""

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse

from agent_keeper import web_api
from agent_keeper.config import Settings, StoreCredentials
from agent_keeper.errors import RelayUnavailable
from agent_keeper.sandbox import sync as sync_module
from agent_keeper.sandbox.types import ProcessStatus
from agent_keeper.web_api import create_app

from tests.conftest import MOUNTED, FakeProcess
from tests.test_bridge import FakeGateway

AUTH = {"Authorization": "Bearer admin-token"}
LAST_SYNC = "2026-10-17T12:00:00+00:00"


@pytest.fixture(autouse=True)
def clear_sync_locks():
    sync_module._sync_locks.clear()
    yield
    sync_module._sync_locks.clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        admin_token="admin-token",
        bridge_secret="bridge-secret",
        gateway_token="gw-token",
    )


@pytest.fixture
def client(settings, sandbox):
    with TestClient(create_app(settings, sandbox=sandbox)) as test_client:
        yield test_client


def configure_store(settings: Settings) -> None:
    settings.store = StoreCredentials(
        access_key_id="id", secret_access_key="secret", account_id="acct"
    )


class TestAuth:
    """Tests for admin authentication."""

    def test_health_is_public(self, client):
        """The liveness endpoint needs no token."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_missing_token_is_401(self, client):
        """Admin endpoints reject requests without a bearer token."""
        response = client.post("/api/sync")

        assert response.status_code == 401

    def test_wrong_token_is_401(self, client):
        """Admin endpoints reject a wrong bearer token."""
        response = client.post("/api/sync", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_unconfigured_token_is_503(self, settings, sandbox):
        """Without ADMIN_API_TOKEN the admin API is unavailable."""
        settings.admin_token = None
        with TestClient(create_app(settings, sandbox=sandbox)) as client:
            response = client.post("/api/sync", headers=AUTH)

        assert response.status_code == 503


class TestSyncEndpoint:
    """Tests for POST /api/sync."""

    def test_not_configured_is_503(self, client, sandbox):
        """Missing store credentials are reported as unavailable."""
        response = client.post("/api/sync", headers=AUTH)

        assert response.status_code == 503
        assert response.json()["error"] == "not configured"
        assert sandbox.commands == []

    def test_gate_abort_is_409(self, client, settings, sandbox):
        """A safety gate refusal is a conflict, even when forced."""
        configure_store(settings)
        sandbox.script(MOUNTED, "")

        response = client.post("/api/sync", headers=AUTH, json={"force": True})

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "restore not complete"

    def test_forced_sync_succeeds(self, client, settings, sandbox):
        """A forced sync skips the age and state checks."""
        configure_store(settings)
        sandbox.script(MOUNTED, "ok\n", "", FakeProcess(stdout="SYNC_OK\n"), f"{LAST_SYNC}\n", "")

        response = client.post("/api/sync", headers=AUTH, json={"force": True})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "last_sync": LAST_SYNC,
            "error": None,
            "details": None,
        }

    def test_upload_failure_is_500(self, client, settings, sandbox):
        """A failed upload is a server error."""
        configure_store(settings)
        sandbox.script(MOUNTED, "ok\n", "", FakeProcess(stdout="SYNC_FAIL\n", stderr="disk full"))

        response = client.post("/api/sync", headers=AUTH, json={"force": True})

        assert response.status_code == 500
        assert response.json()["details"] == "disk full"

    def test_workspace_sync_not_configured(self, client):
        """The workspace push needs git credentials."""
        response = client.post("/api/sync/workspace", headers=AUTH)

        assert response.status_code == 503


class TestGatewayEndpoints:
    """Tests for the gateway admin endpoints."""

    def test_status_reports_gateway(self, client, sandbox):
        """The running gateway and all processes are listed."""
        sandbox.processes = [
            FakeProcess(
                command="python -m agent_keeper.sandbox.entrypoint",
                status=ProcessStatus.RUNNING,
                exit_code=None,
                pid=42,
            )
        ]

        response = client.get("/api/gateway", headers=AUTH)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["gateway"]["pid"] == 42
        assert data["gateway"]["status"] == "running"
        assert len(data["processes"]) == 1

    def test_status_redacts_secrets_in_commands(self, client, settings, sandbox):
        """Configured secrets never appear in listed command lines."""
        configure_store(settings)
        sandbox.processes = [
            FakeProcess(
                command="echo id:secret > /etc/passwd-s3fs && agent gateway --token gw-token",
                status=ProcessStatus.RUNNING,
            )
        ]

        response = client.get("/api/gateway", headers=AUTH)

        [listed] = response.json()["data"]["processes"]
        assert listed["command"] == "echo ***:*** > /etc/passwd-s3fs && agent gateway --token ***"
        assert "admin-token" not in response.text

    def test_start_failure_is_502(self, client, sandbox):
        """A gateway that fails to boot is reported with its output."""
        sandbox.script(FakeProcess(stdout='{"event": "boot.failed"}\n'))

        response = client.post("/api/gateway/start", headers=AUTH)

        assert response.status_code == 502
        body = response.json()
        assert body["success"] is False
        assert "boot.failed" in body["output"]

    def test_start_passes_container_env(self, client, settings, sandbox):
        """The gateway is started with the mapped container environment."""
        settings.container_env = {"AGENT_GATEWAY_TOKEN": "gw-token"}
        sandbox.script(FakeProcess(stdout="gateway.ready\n", status=ProcessStatus.RUNNING))

        response = client.post("/api/gateway/start", headers=AUTH)

        assert response.status_code == 200
        assert sandbox.envs == [{"AGENT_GATEWAY_TOKEN": "gw-token"}]


class TestBridgeHttp:
    """Tests for the secret-protected bridge endpoints."""

    def test_bridge_requires_upgrade(self, client):
        """A plain GET on the relay path asks for a WebSocket upgrade."""
        response = client.get("/bridge?secret=bridge-secret")

        assert response.status_code == 426

    def test_wrong_secret_is_401(self, client):
        """The shared secret must match."""
        response = client.get("/bridge?secret=wrong")

        assert response.status_code == 401

    def test_unconfigured_secret_is_503(self, settings, sandbox):
        """Without BRIDGE_SECRET the bridge is unavailable."""
        settings.bridge_secret = None
        with TestClient(create_app(settings, sandbox=sandbox)) as client:
            response = client.get("/bridge/health?secret=anything")

        assert response.status_code == 503

    def test_health(self, client, sandbox):
        """Bridge health reports the gateway pid and the process count."""
        sandbox.processes = [
            FakeProcess(command="agent gateway --port 18789", status=ProcessStatus.RUNNING, pid=42)
        ]

        response = client.get("/bridge/health?secret=bridge-secret")

        assert response.json() == {"gateway": {"status": "running", "pid": 42}, "processes": 1}

    def test_health_without_gateway(self, client):
        """No gateway is reported as not running."""
        response = client.get("/bridge/health?secret=bridge-secret")

        assert response.json() == {"gateway": {"status": "not_running"}, "processes": 0}

    def test_read_file(self, client, sandbox):
        """File contents are returned as plain text."""
        sandbox.script(FakeProcess(stdout='{"a": 1}'))

        response = client.get(
            "/bridge/file", params={"secret": "bridge-secret", "path": "/root/.agent/agent.json"}
        )

        assert response.status_code == 200
        assert response.text == '{"a": 1}'
        assert sandbox.commands == ["cat /root/.agent/agent.json"]

    def test_read_missing_file_is_404(self, client, sandbox):
        """A failed read is reported as not found."""
        sandbox.script(
            FakeProcess(stderr="No such file", exit_code=1, status=ProcessStatus.FAILED)
        )

        response = client.get("/bridge/file", params={"secret": "bridge-secret", "path": "/nope"})

        assert response.status_code == 404
        assert response.json()["exit_code"] == 1

    def test_read_requires_path(self, client):
        """The path parameter is required."""
        response = client.get("/bridge/file?secret=bridge-secret")

        assert response.status_code == 400

    def test_write_file(self, client, sandbox):
        """Uploaded content is written through base64 into the container."""
        response = client.put(
            "/bridge/file",
            params={"secret": "bridge-secret", "path": "/root/notes/today.md"},
            content=b"data",
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "path": "/root/notes/today.md"}
        command = sandbox.commands[0]
        assert command.startswith("mkdir -p /root/notes && ")
        assert "ZGF0YQ==" in command
        assert command.endswith("base64 -d > /root/notes/today.md")


class TestBridgeWebSocket:
    """Tests for the relayed WebSocket endpoint."""

    def test_wrong_secret_is_denied(self, client):
        """A bad secret is rejected before the upgrade."""
        with pytest.raises(WebSocketDenialResponse) as exc_info:
            with client.websocket_connect("/bridge?secret=wrong"):
                pass

        assert exc_info.value.status_code == 401

    def test_unavailable_gateway_is_denied(self, client, monkeypatch):
        """A gateway that cannot be reached is reported as a bad gateway."""

        async def unavailable(*args):
            raise RelayUnavailable("Gateway not ready: boot failed")

        monkeypatch.setattr(web_api, "open_gateway_connection", unavailable)

        with pytest.raises(WebSocketDenialResponse) as exc_info:
            with client.websocket_connect("/bridge?secret=bridge-secret"):
                pass

        assert exc_info.value.status_code == 502
        assert "Gateway not ready" in exc_info.value.json()["error"]

    def test_relays_frames(self, client, monkeypatch):
        """Frames flow both ways and the gateway handshake carries the token."""
        gateway = FakeGateway()
        gateway.push("welcome")
        requests = []

        async def connect(sandbox, request, port, ensure_gateway):
            requests.append((request, port))
            return gateway

        monkeypatch.setattr(web_api, "open_gateway_connection", connect)

        with client.websocket_connect("/bridge?secret=bridge-secret&session=s1") as ws:
            assert ws.receive_text() == "welcome"
            ws.send_text("hi")

        request, port = requests[0]
        assert request.path == "/?session=s1&token=gw-token"
        assert port == 18789
        assert gateway.sent == ["hi"]
        assert gateway.closes[0][0] == 1000
