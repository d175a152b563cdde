"""Tests for the WebSocket relay bridge."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.websockets import WebSocketState
from websockets import State
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response

from agent_keeper.errors import RelayUnavailable
from agent_keeper.sandbox.bridge import (
    GatewayRequest,
    RelaySession,
    open_gateway_connection,
    rewrite_gateway_request,
    secret_matches,
    sendable_close_code,
    truncate_close_reason,
)
from agent_keeper.sandbox.types import RelayState

END = object()


class FakeClient:
    """Starlette-style server WebSocket fed from a queue of ASGI messages."""

    def __init__(self):
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.closes: list[tuple[int, str]] = []

    def push_text(self, text: str) -> None:
        self.inbox.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data: bytes) -> None:
        self.inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnect(self, code: int = 1000, reason: str = "") -> None:
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": code, "reason": reason})

    async def receive(self) -> dict:
        message = await self.inbox.get()
        if isinstance(message, Exception):
            raise message
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, text: str) -> None:
        self.sent.append(text)

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closes.append((code, reason))
        self.application_state = WebSocketState.DISCONNECTED


class FakeGateway:
    """websockets-style client connection fed from a queue of frames."""

    def __init__(self):
        self.state = State.OPEN
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.closes: list[tuple[int, str]] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None

    def push(self, message) -> None:
        self.inbox.put_nowait(message)

    def remote_close(self, code: int, reason: str) -> None:
        self.close_code = code
        self.close_reason = reason
        self.state = State.CLOSED
        self.inbox.put_nowait(END)

    async def send(self, message) -> None:
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closes.append((code, reason))
        self.state = State.CLOSED
        self.inbox.put_nowait(END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.inbox.get()
        if message is END:
            raise StopAsyncIteration
        if isinstance(message, Exception):
            raise message
        return message


async def run_session(client: FakeClient, gateway: FakeGateway) -> RelaySession:
    session = RelaySession(client, gateway, sandbox_id="test")
    await asyncio.wait_for(session.run(), timeout=2.0)
    return session


class TestRewriteGatewayRequest:
    """Tests for the internal handshake rewrite."""

    def test_replaces_secret_with_token(self):
        """The external secret is dropped and the gateway token appended."""
        request = rewrite_gateway_request(
            [("secret", "s3cret"), ("session", "abc")], [], gateway_token="gw"
        )

        assert request.path == "/?session=abc&token=gw"
        assert "s3cret" not in request.path

    def test_client_token_is_not_forwarded(self):
        """A token supplied by the client never reaches the gateway."""
        request = rewrite_gateway_request([("token", "forged")], [], gateway_token="gw")

        assert request.path == "/?token=gw"

    def test_no_token_no_query(self):
        """Pairing mode without params connects to the bare path."""
        request = rewrite_gateway_request([("secret", "x")], [], gateway_token=None)

        assert request.path == "/"

    def test_drops_handshake_headers(self):
        """Hop-by-hop and handshake headers are left to the client library."""
        request = rewrite_gateway_request(
            [],
            [
                ("host", "example.com"),
                ("sec-websocket-key", "abc"),
                ("Upgrade", "websocket"),
                ("user-agent", "test/1.0"),
                ("x-forwarded-for", "1.2.3.4"),
            ],
            gateway_token=None,
        )

        assert request.headers == {"user-agent": "test/1.0", "x-forwarded-for": "1.2.3.4"}


class TestCloseHelpers:
    """Tests for close code and reason handling."""

    def test_short_reason_unchanged(self):
        """Reasons within the limit pass through."""
        assert truncate_close_reason("bye") == "bye"

    def test_long_reason_truncated(self):
        """Reasons over 123 bytes are cut to fit, ending in an ellipsis."""
        reason = truncate_close_reason("x" * 200)

        assert len(reason.encode()) == 123
        assert reason.endswith("...")

    def test_multibyte_reason_fits(self):
        """Truncation never exceeds the byte limit for multibyte text."""
        reason = truncate_close_reason("é" * 100)

        assert len(reason.encode()) <= 123
        assert reason.endswith("...")

    def test_reserved_codes_are_mapped(self):
        """Codes that cannot be sent on the wire are replaced."""
        assert sendable_close_code(None) == 1000
        assert sendable_close_code(1005) == 1000
        assert sendable_close_code(1006) == 1011
        assert sendable_close_code(4001) == 4001

    def test_secret_matches(self):
        """Only the exact secret is accepted."""
        assert secret_matches("abc", "abc")
        assert not secret_matches("abd", "abc")
        assert not secret_matches(None, "abc")
        assert not secret_matches("", "abc")


class TestOpenGatewayConnection:
    """Tests for establishing the internal WebSocket."""

    REQUEST = GatewayRequest(path="/?token=gw", headers={})

    @pytest.mark.asyncio
    async def test_connects_after_ensuring_gateway(self, sandbox):
        """The gateway is ensured before the internal socket is opened."""
        connection = FakeGateway()
        sandbox.ws_connect.return_value = connection
        ensure = AsyncMock()

        result = await open_gateway_connection(sandbox, self.REQUEST, 18789, ensure)

        assert result is connection
        ensure.assert_awaited_once()
        sandbox.ws_connect.assert_awaited_once_with("/?token=gw", 18789, {})

    @pytest.mark.asyncio
    async def test_gateway_not_ready(self, sandbox):
        """A failed start is reported as unavailable without connecting."""
        ensure = AsyncMock(side_effect=RuntimeError("boot failed"))

        with pytest.raises(RelayUnavailable, match="Gateway not ready"):
            await open_gateway_connection(sandbox, self.REQUEST, 18789, ensure)

        sandbox.ws_connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_upgrade_carries_status(self, sandbox):
        """A non-101 answer is reported with its status and body."""
        response = Response(503, "Service Unavailable", Headers(), b"warming up")
        sandbox.ws_connect.side_effect = InvalidStatus(response)

        with pytest.raises(RelayUnavailable) as exc_info:
            await open_gateway_connection(sandbox, self.REQUEST, 18789, AsyncMock())

        assert exc_info.value.status == 503
        assert exc_info.value.body == "warming up"

    @pytest.mark.asyncio
    async def test_connection_refused(self, sandbox):
        """A refused connection is reported as unavailable."""
        sandbox.ws_connect.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(RelayUnavailable, match="Could not connect"):
            await open_gateway_connection(sandbox, self.REQUEST, 18789, AsyncMock())

    @pytest.mark.asyncio
    async def test_no_connection_returned(self, sandbox):
        """A runtime that hands back no socket is reported as unavailable."""
        sandbox.ws_connect.return_value = None

        with pytest.raises(RelayUnavailable):
            await open_gateway_connection(sandbox, self.REQUEST, 18789, AsyncMock())


class TestRelaySession:
    """Tests for bidirectional relaying and close propagation."""

    @pytest.mark.asyncio
    async def test_relays_both_directions(self):
        """Text and binary frames are forwarded verbatim both ways."""
        client, gateway = FakeClient(), FakeGateway()
        client.push_text('{"type": "req"}')
        client.push_bytes(b"\x00\x01")
        gateway.push('{"type": "event"}')
        gateway.push(b"\x02")

        async def finish():
            while len(gateway.sent) < 2 or len(client.sent) < 2:
                await asyncio.sleep(0.01)
            client.disconnect(1000, "done")

        asyncio.create_task(finish())
        await run_session(client, gateway)

        assert gateway.sent == ['{"type": "req"}', b"\x00\x01"]
        assert client.sent == ['{"type": "event"}', b"\x02"]

    @pytest.mark.asyncio
    async def test_client_close_propagates_to_gateway(self):
        """The gateway is closed with the client's code and reason."""
        client, gateway = FakeClient(), FakeGateway()
        client.disconnect(4000, "user left")

        session = await run_session(client, gateway)

        assert gateway.closes == [(4000, "user left")]
        assert client.closes == []
        assert session.state == RelayState.CLOSED

    @pytest.mark.asyncio
    async def test_gateway_close_propagates_to_client(self):
        """The client is closed with the gateway's code and reason."""
        client, gateway = FakeClient(), FakeGateway()
        gateway.remote_close(4001, "gateway restarting")

        await run_session(client, gateway)

        assert client.closes == [(4001, "gateway restarting")]
        assert gateway.closes == []

    @pytest.mark.asyncio
    async def test_long_close_reason_is_truncated(self):
        """Propagated reasons are cut to the protocol limit."""
        client, gateway = FakeClient(), FakeGateway()
        gateway.remote_close(4002, "r" * 300)

        await run_session(client, gateway)

        code, reason = client.closes[0]
        assert code == 4002
        assert len(reason.encode()) == 123

    @pytest.mark.asyncio
    async def test_gateway_error_closes_client_with_1011(self):
        """A gateway connection error closes the client as an internal error."""
        client, gateway = FakeClient(), FakeGateway()
        gateway.push(ConnectionClosedError(None, None))

        await run_session(client, gateway)

        assert client.closes == [(1011, "Container error")]

    @pytest.mark.asyncio
    async def test_gateway_close_frame_in_error_is_propagated(self):
        """A received close frame carried by an error is propagated as-is."""
        client, gateway = FakeClient(), FakeGateway()
        gateway.push(ConnectionClosedError(Close(4003, "policy"), None))

        await run_session(client, gateway)

        assert client.closes == [(4003, "policy")]

    @pytest.mark.asyncio
    async def test_client_error_closes_gateway_with_1011(self):
        """A client receive error closes the gateway as an internal error."""
        client, gateway = FakeClient(), FakeGateway()
        client.inbox.put_nowait(RuntimeError("client socket broke"))

        await run_session(client, gateway)

        assert gateway.closes == [(1011, "Client error")]

    @pytest.mark.asyncio
    async def test_never_sends_to_closing_gateway(self):
        """Messages for a gateway that is no longer open are dropped."""
        client, gateway = FakeClient(), FakeGateway()
        gateway.state = State.CLOSING
        client.push_text("late message")
        client.disconnect(1000, "")

        session = await run_session(client, gateway)

        assert gateway.sent == []
        assert gateway.closes == []
        assert session.dropped == 1

    @pytest.mark.asyncio
    async def test_gateway_send_failure_closes_client(self):
        """A failed forward to the gateway closes the client with 1011."""
        client, gateway = FakeClient(), FakeGateway()
        gateway.send = AsyncMock(side_effect=ConnectionResetError("reset"))
        client.push_text("hello")

        await run_session(client, gateway)

        assert client.closes == [(1011, "Container error")]

    @pytest.mark.asyncio
    async def test_teardown_runs_once(self):
        """Both sides ending only closes the first peer once."""
        client, gateway = FakeClient(), FakeGateway()
        client.disconnect(1000, "bye")
        gateway.remote_close(1000, "bye")

        await run_session(client, gateway)

        assert len(gateway.closes) + len(client.closes) <= 1
