"""
Relay bridge - tunnels an external WebSocket to the gateway inside the sandbox.

This module handles:
- Rewriting the inbound upgrade request into the gateway's own handshake
  (shared secret stripped, internal token substituted)
- Opening the internal WebSocket once the gateway is running
- Relaying frames verbatim in both directions
- Symmetric close and error propagation between the two sockets
"""

import asyncio
import hmac
from collections.abc import Awaitable, Callable, Iterable
from typing import NamedTuple
from urllib.parse import urlencode

import websockets
from fastapi import WebSocket
from fastapi.websockets import WebSocketState
from websockets import ClientConnection, State
from websockets.exceptions import InvalidStatus

from ..errors import RelayUnavailable
from ..log_config import get_logger
from .runtime import Sandbox
from .types import RelayState

# Dropped from the forwarded handshake; the client library writes its own.
HANDSHAKE_HEADERS = frozenset(
    {
        "host",
        "connection",
        "upgrade",
        "keep-alive",
        "proxy-connection",
        "transfer-encoding",
        "te",
        "trailer",
        "content-length",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-accept",
        "sec-websocket-protocol",
    }
)

SECRET_PARAM = "secret"
TOKEN_PARAM = "token"

MAX_CLOSE_REASON_BYTES = 123
INTERNAL_ERROR = 1011

# Codes that may be observed but never sent in a close frame.
UNSENDABLE_CLOSE_CODES = {1005: 1000, 1006: INTERNAL_ERROR, 1015: INTERNAL_ERROR}


def secret_matches(provided: str | None, expected: str) -> bool:
    """Constant-time comparison of the external shared secret."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class GatewayRequest(NamedTuple):
    """Path and headers for the internal WebSocket handshake."""

    path: str
    headers: dict[str, str]


def rewrite_gateway_request(
    query_params: Iterable[tuple[str, str]],
    headers: Iterable[tuple[str, str]],
    gateway_token: str | None,
) -> GatewayRequest:
    """
    Build the internal handshake for the gateway.

    The gateway listens on ``/`` and authenticates with a ``token`` query
    parameter. The external ``secret`` parameter never reaches it.
    """
    params = [(k, v) for k, v in query_params if k not in (SECRET_PARAM, TOKEN_PARAM)]
    if gateway_token:
        params.append((TOKEN_PARAM, gateway_token))
    path = "/" + (f"?{urlencode(params)}" if params else "")

    forwarded = {k: v for k, v in headers if k.lower() not in HANDSHAKE_HEADERS}
    return GatewayRequest(path=path, headers=forwarded)


def truncate_close_reason(reason: str, limit: int = MAX_CLOSE_REASON_BYTES) -> str:
    """Cut a close reason to the protocol's byte limit, marking the cut with '...'."""
    encoded = reason.encode()
    if len(encoded) <= limit:
        return reason
    return encoded[: limit - 3].decode(errors="ignore") + "..."


def sendable_close_code(code: int | None) -> int:
    if code is None:
        return 1000
    return UNSENDABLE_CLOSE_CODES.get(code, code)


async def open_gateway_connection(
    sandbox: Sandbox,
    request: GatewayRequest,
    port: int,
    ensure_gateway: Callable[[], Awaitable[object]],
) -> ClientConnection:
    """
    Make sure the gateway is running, then open the internal WebSocket.

    Raises:
        RelayUnavailable: The gateway could not be started, refused the
            upgrade, or no connection was handed back.
    """
    try:
        await ensure_gateway()
    except Exception as e:
        raise RelayUnavailable(f"Gateway not ready: {e}") from e

    try:
        connection = await sandbox.ws_connect(request.path, port, request.headers)
    except InvalidStatus as e:
        body = e.response.body.decode(errors="replace") if e.response.body else None
        raise RelayUnavailable(
            "Gateway rejected the WebSocket upgrade",
            status=e.response.status_code,
            body=body[:1000] if body else None,
        ) from e
    except (OSError, TimeoutError, websockets.InvalidHandshake) as e:
        raise RelayUnavailable(f"Could not connect to gateway: {e}") from e

    if connection is None:
        raise RelayUnavailable("Gateway did not return a WebSocket connection")
    return connection


class RelaySession:
    """
    One relayed WebSocket session.

    Two pumps copy frames in each direction. Whichever side ends first tears
    the session down: the other socket is closed with the same code and
    reason, or with 1011 when the first side failed. Teardown runs once.
    """

    def __init__(self, client: WebSocket, gateway: ClientConnection, sandbox_id: str = "unknown"):
        self.client = client
        self.gateway = gateway
        self.state = RelayState.OPEN
        self.log = get_logger("relay", sandbox_id=sandbox_id)
        self.forwarded = {"client": 0, "gateway": 0}
        self.dropped = 0

    def _client_open(self) -> bool:
        return (
            self.client.application_state == WebSocketState.CONNECTED
            and self.client.client_state == WebSocketState.CONNECTED
        )

    def _gateway_open(self) -> bool:
        return self.gateway.state == State.OPEN

    async def run(self) -> None:
        self.log.info("relay.open")
        tasks = [
            asyncio.create_task(self._pump_client_to_gateway()),
            asyncio.create_task(self._pump_gateway_to_client()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self.log.info(
            "relay.complete",
            to_gateway=self.forwarded["gateway"],
            to_client=self.forwarded["client"],
            dropped=self.dropped,
        )

    async def _pump_client_to_gateway(self) -> None:
        try:
            while True:
                message = await self.client.receive()
                if message["type"] == "websocket.disconnect":
                    await self._teardown(
                        "gateway", message.get("code", 1000), message.get("reason") or ""
                    )
                    return

                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                if data is None:
                    continue

                if not self._gateway_open():
                    self.dropped += 1
                    self.log.debug(
                        "relay.drop", direction="to_gateway", state=str(self.gateway.state)
                    )
                    continue
                try:
                    await self.gateway.send(data)
                    self.forwarded["gateway"] += 1
                except Exception as e:
                    await self._teardown("client", INTERNAL_ERROR, "Container error", cause=e)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._teardown("gateway", INTERNAL_ERROR, "Client error", cause=e)

    async def _pump_gateway_to_client(self) -> None:
        try:
            async for message in self.gateway:
                if not self._client_open():
                    self.dropped += 1
                    self.log.debug("relay.drop", direction="to_client")
                    continue
                try:
                    if isinstance(message, str):
                        await self.client.send_text(message)
                    else:
                        await self.client.send_bytes(message)
                    self.forwarded["client"] += 1
                except Exception as e:
                    await self._teardown("gateway", INTERNAL_ERROR, "Client error", cause=e)
                    return
        except websockets.ConnectionClosed as e:
            if e.rcvd is None:
                await self._teardown("client", INTERNAL_ERROR, "Container error", cause=e)
            else:
                await self._teardown("client", e.rcvd.code, e.rcvd.reason)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._teardown("client", INTERNAL_ERROR, "Container error", cause=e)
            return

        await self._teardown("client", self.gateway.close_code, self.gateway.close_reason or "")

    async def _teardown(
        self, peer: str, code: int | None, reason: str, cause: Exception | None = None
    ) -> None:
        """Close ``peer`` ("client" or "gateway") once for the whole session."""
        if self.state != RelayState.OPEN:
            return
        self.state = RelayState.CLOSING

        close_code = sendable_close_code(code)
        close_reason = truncate_close_reason(reason)
        if cause is not None:
            self.log.warn("relay.error", close_peer=peer, ws_close_code=close_code, exc=cause)
        else:
            self.log.info(
                "relay.close", close_peer=peer, ws_close_code=close_code, reason=close_reason
            )

        try:
            if peer == "gateway":
                if self._gateway_open():
                    await self.gateway.close(close_code, close_reason)
            elif self._client_open():
                await self.client.close(close_code, close_reason)
        except Exception as e:
            self.log.debug("relay.close_error", close_peer=peer, exc=e)
        finally:
            self.state = RelayState.CLOSED

