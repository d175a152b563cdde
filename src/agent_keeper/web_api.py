"""
HTTP and WebSocket surface for agent-keeper.

Admin endpoints (``/api/...``) require ``Authorization: Bearer <ADMIN_API_TOKEN>``.
Bridge endpoints (``/bridge...``) require ``?secret=<BRIDGE_SECRET>``.

Every request is logged as a single ``http.request`` event with its status,
duration and outcome.
"""

import base64
import hmac
import posixpath
import shlex
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .config import Settings
from .errors import CommandFailure, GatewayStartError, RelayUnavailable
from .log_config import configure_logging, get_logger
from .sandbox.bridge import (
    RelaySession,
    open_gateway_connection,
    rewrite_gateway_request,
    secret_matches,
)
from .sandbox.mount import mount_store
from .sandbox.process import ensure_running, find_running, restart, run_command
from .sandbox.runtime import Sandbox, SandboxProcess, create_sandbox
from .sandbox.sync import sync_to_backup, sync_workspace
from .sandbox.types import SyncError, SyncResult
from .scheduler.backup import BackupScheduler

configure_logging()
log = get_logger("web_api")

FILE_COMMAND_TIMEOUT = 10.0

# Intentional refusals; the caller may retry later or force.
GATE_ABORTS = {
    SyncError.RESTORE_NOT_COMPLETE,
    SyncError.NO_BOOT_TIMESTAMP,
    SyncError.CONTAINER_TOO_YOUNG,
    SyncError.NO_MEANINGFUL_STATE,
}


class SyncRequest(BaseModel):
    force: bool = False


def require_auth(authorization: str | None, settings: Settings) -> None:
    """
    Verify the admin bearer token, raising HTTPException on failure.

    Raises:
        HTTPException: 401 if authentication fails, 503 if no token is configured
    """
    if not settings.admin_token:
        raise HTTPException(
            status_code=503,
            detail="Service unavailable: ADMIN_API_TOKEN is not configured",
        )
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.encode(), settings.admin_token.encode()
    ):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized: Invalid or missing authentication token",
        )


def bridge_auth_error(secret: str | None, settings: Settings) -> JSONResponse | None:
    """Return the rejection response for a bridge request, or None when allowed."""
    if not settings.bridge_secret:
        return JSONResponse(
            {"error": "Bridge endpoint not configured", "hint": "Set BRIDGE_SECRET"},
            status_code=503,
        )
    if not secret_matches(secret, settings.bridge_secret):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return None


async def start_gateway(sandbox: Sandbox, settings: Settings) -> SandboxProcess:
    """Mount the durable store when configured, then start or find the gateway."""
    if settings.store.is_configured:
        mounted = await mount_store(sandbox, settings.store, settings.layout.mount_path)
        if not mounted:
            log.warn("gateway.start_without_store", sandbox_id=sandbox.sandbox_id)
    return await ensure_running(sandbox, env=settings.container_env)


def redact(text: str, secrets: list[str]) -> str:
    for secret in sorted(secrets, key=len, reverse=True):
        text = text.replace(secret, "***")
    return text


def describe_process(process: SandboxProcess, secrets: list[str] | None = None) -> dict:
    return {
        "id": process.id,
        "pid": process.pid,
        "command": redact(process.command, secrets or []),
        "status": str(process.status),
        "exit_code": process.exit_code,
    }


def sync_response(result: SyncResult) -> JSONResponse:
    if result.success:
        status = 200
    elif result.error == SyncError.NOT_CONFIGURED:
        status = 503
    elif result.error in GATE_ABORTS:
        status = 409
    else:
        status = 500
    return JSONResponse(result.model_dump(mode="json"), status_code=status)


def create_app(settings: Settings | None = None, sandbox: Sandbox | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    sandbox = sandbox or create_sandbox(
        settings.sandbox_backend, settings.sandbox_id, settings.sandbox_container
    )
    scheduler = BackupScheduler(sandbox, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()

    app = FastAPI(title="agent-keeper", lifespan=lifespan)
    app.state.settings = settings
    app.state.sandbox = sandbox
    app.state.scheduler = scheduler

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        http_status = 500
        try:
            response = await call_next(request)
            http_status = response.status_code
            return response
        finally:
            log.info(
                "http.request",
                http_method=request.method,
                http_path=request.url.path,
                http_status=http_status,
                duration_ms=int((time.time() - start_time) * 1000),
                outcome="success" if http_status < 400 else "error",
                request_id=request.headers.get("x-request-id"),
            )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/gateway")
    async def api_gateway_status(authorization: str | None = Header(None)) -> dict:
        require_auth(authorization, settings)
        try:
            processes = await sandbox.list_processes()
            gateway = await find_running(sandbox)
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="api_gateway_status")
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)
        secrets = settings.secret_values()
        return {
            "success": True,
            "data": {
                "gateway": describe_process(gateway, secrets) if gateway else None,
                "processes": [describe_process(p, secrets) for p in processes],
            },
        }

    @app.post("/api/gateway/start")
    async def api_gateway_start(authorization: str | None = Header(None)) -> dict:
        require_auth(authorization, settings)
        try:
            process = await start_gateway(sandbox, settings)
        except GatewayStartError as e:
            log.error("api.error", exc=e, endpoint_name="api_gateway_start")
            return JSONResponse(
                {"success": False, "error": str(e), "output": e.output}, status_code=502
            )
        return {"success": True, "data": describe_process(process, settings.secret_values())}

    @app.post("/api/gateway/restart")
    async def api_gateway_restart(authorization: str | None = Header(None)) -> dict:
        require_auth(authorization, settings)
        try:
            process = await restart(sandbox, env=settings.container_env)
        except GatewayStartError as e:
            log.error("api.error", exc=e, endpoint_name="api_gateway_restart")
            return JSONResponse(
                {"success": False, "error": str(e), "output": e.output}, status_code=502
            )
        return {"success": True, "data": describe_process(process, settings.secret_values())}

    @app.post("/api/sync")
    async def api_sync(
        body: SyncRequest | None = None, authorization: str | None = Header(None)
    ) -> JSONResponse:
        require_auth(authorization, settings)
        force = body.force if body else False
        result = await sync_to_backup(sandbox, settings.store, force=force, layout=settings.layout)
        return sync_response(result)

    @app.post("/api/sync/workspace")
    async def api_sync_workspace(authorization: str | None = Header(None)) -> JSONResponse:
        require_auth(authorization, settings)
        result = await sync_workspace(sandbox, settings.git, layout=settings.layout)
        return sync_response(result)

    @app.get("/bridge")
    async def bridge_upgrade_required(secret: str | None = Query(None)) -> JSONResponse:
        if rejection := bridge_auth_error(secret, settings):
            return rejection
        return JSONResponse(
            {
                "error": "WebSocket upgrade required",
                "hint": "Connect via WebSocket: ws://<host>/bridge?secret=<BRIDGE_SECRET>",
            },
            status_code=426,
        )

    @app.websocket("/bridge")
    async def bridge_relay(websocket: WebSocket) -> None:
        async def deny(response: JSONResponse, close_code: int) -> None:
            if "websocket.http.response" in websocket.scope.get("extensions", {}):
                await websocket.send_denial_response(response)
            else:
                await websocket.close(code=close_code)

        if rejection := bridge_auth_error(websocket.query_params.get("secret"), settings):
            await deny(rejection, 1008)
            return

        request = rewrite_gateway_request(
            websocket.query_params.multi_items(),
            websocket.headers.items(),
            settings.gateway_token,
        )
        try:
            gateway = await open_gateway_connection(
                sandbox,
                request,
                settings.layout.gateway_port,
                lambda: start_gateway(sandbox, settings),
            )
        except RelayUnavailable as e:
            log.error("relay.unavailable", exc=e, status=e.status)
            await deny(
                JSONResponse(
                    {"error": str(e), "status": e.status, "body": e.body}, status_code=502
                ),
                1011,
            )
            return

        await websocket.accept()
        await RelaySession(websocket, gateway, sandbox_id=sandbox.sandbox_id).run()

    @app.get("/bridge/health")
    async def bridge_health(secret: str | None = Query(None)) -> JSONResponse:
        if rejection := bridge_auth_error(secret, settings):
            return rejection
        try:
            processes = await sandbox.list_processes()
            gateway = await find_running(sandbox)
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="bridge_health")
            return JSONResponse({"error": "Failed to list processes", "details": str(e)}, 500)
        return JSONResponse(
            {
                "gateway": (
                    {"status": "running", "pid": gateway.pid}
                    if gateway
                    else {"status": "not_running"}
                ),
                "processes": len(processes),
            }
        )

    @app.get("/bridge/file")
    async def bridge_read_file(
        path: str | None = Query(None), secret: str | None = Query(None)
    ):
        if rejection := bridge_auth_error(secret, settings):
            return rejection
        if not path:
            return JSONResponse({"error": "Missing ?path= query parameter"}, status_code=400)
        try:
            _, logs = await run_command(
                sandbox, f"cat {shlex.quote(path)}", timeout=FILE_COMMAND_TIMEOUT, check=True
            )
        except CommandFailure as e:
            return JSONResponse(
                {"error": "File read failed", "stderr": e.output, "exit_code": e.exit_code},
                status_code=404,
            )
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="bridge_read_file")
            return JSONResponse({"error": "Failed to read file", "details": str(e)}, 500)
        return PlainTextResponse(logs.stdout)

    @app.put("/bridge/file")
    async def bridge_write_file(
        request: Request, path: str | None = Query(None), secret: str | None = Query(None)
    ) -> JSONResponse:
        if rejection := bridge_auth_error(secret, settings):
            return rejection
        if not path:
            return JSONResponse({"error": "Missing ?path= query parameter"}, status_code=400)

        encoded = base64.b64encode(await request.body()).decode()
        parent = posixpath.dirname(path) or "."
        command = (
            f"mkdir -p {shlex.quote(parent)} && "
            f"echo {shlex.quote(encoded)} | base64 -d > {shlex.quote(path)}"
        )
        try:
            await run_command(sandbox, command, timeout=FILE_COMMAND_TIMEOUT, check=True)
        except CommandFailure as e:
            return JSONResponse(
                {"error": "File write failed", "stderr": e.output, "exit_code": e.exit_code},
                status_code=500,
            )
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="bridge_write_file")
            return JSONResponse({"error": "Failed to write file", "details": str(e)}, 500)
        return JSONResponse({"ok": True, "path": path})

    return app
