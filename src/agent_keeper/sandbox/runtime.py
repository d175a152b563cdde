"""
Container runtime adapter.

The supervisor, sync engine and relay are written against the ``Sandbox`` and
``SandboxProcess`` protocols. Two shell-backed implementations are provided:

- ``LocalSandbox`` runs commands with ``bash -c`` on the current host (the
  orchestrator and the agent share a machine, or tests run against a temp dir).
- ``DockerSandbox`` runs commands with ``docker exec`` inside a named container.

Started processes are tracked in memory with their output accumulated by
reader tasks; only the most recent finished ones are kept. ``DockerSandbox``
also discovers processes started by someone else (e.g. a previous orchestrator
run) with ``ps`` and reports them as running with empty logs. ``LocalSandbox``
never does, since the host process table is not the agent's to manage.

Secrets reach commands through the environment, never through the command
text, which is visible in ``ps`` and in the process listing.
"""

import asyncio
import os
import secrets
import shlex
from collections.abc import Awaitable, Callable
from typing import Protocol

import websockets
from websockets import ClientConnection

from ..errors import MountError
from ..log_config import get_logger
from .types import ProcessLogs, ProcessStatus


class SandboxProcess(Protocol):
    id: str
    command: str
    pid: int | None

    @property
    def status(self) -> ProcessStatus: ...

    @property
    def exit_code(self) -> int | None: ...

    async def get_logs(self) -> ProcessLogs: ...

    async def kill(self) -> None: ...


class Sandbox(Protocol):
    sandbox_id: str

    async def start_process(
        self, command: str, env: dict[str, str] | None = None
    ) -> SandboxProcess: ...

    async def list_processes(self) -> list[SandboxProcess]: ...

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        *,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
    ) -> None: ...

    async def ws_connect(
        self, path: str, port: int, headers: dict[str, str] | None = None
    ) -> ClientConnection: ...


class ShellProcess:
    """A process started through a shell sandbox, with accumulated output."""

    def __init__(
        self,
        command: str,
        process: asyncio.subprocess.Process,
        on_kill: Callable[["ShellProcess"], Awaitable[None]] | None = None,
    ):
        self.id = f"proc_{secrets.token_hex(6)}"
        self.command = command
        self.pid: int | None = process.pid
        self._process = process
        self._on_kill = on_kill
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._readers = [
            asyncio.create_task(self._drain(process.stdout, self._stdout)),
            asyncio.create_task(self._drain(process.stderr, self._stderr)),
        ]

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
        if stream is None:
            return
        while chunk := await stream.read(4096):
            buffer.extend(chunk)

    @property
    def status(self) -> ProcessStatus:
        returncode = self._process.returncode
        if returncode is None:
            return ProcessStatus.RUNNING
        return ProcessStatus.COMPLETED if returncode == 0 else ProcessStatus.FAILED

    @property
    def exit_code(self) -> int | None:
        return self._process.returncode

    async def get_logs(self) -> ProcessLogs:
        if self._process.returncode is not None:
            # Output still buffered in the pipes belongs to this process.
            await asyncio.gather(*self._readers, return_exceptions=True)
        return ProcessLogs(
            stdout=self._stdout.decode(errors="replace"),
            stderr=self._stderr.decode(errors="replace"),
        )

    async def wait(self) -> int:
        return await self._process.wait()

    async def kill(self) -> None:
        if self._on_kill is not None:
            await self._on_kill(self)
        if self._process.returncode is None:
            self._process.kill()
            await self._process.wait()


class ForeignProcess:
    """A process found in the container's process table but not started by us."""

    def __init__(self, sandbox: "ShellSandbox", pid: int, command: str):
        self.id = f"pid_{pid}"
        self.pid: int | None = pid
        self.command = command
        self._sandbox = sandbox

    @property
    def status(self) -> ProcessStatus:
        return ProcessStatus.RUNNING

    @property
    def exit_code(self) -> int | None:
        return None

    async def get_logs(self) -> ProcessLogs:
        return ProcessLogs()

    async def kill(self) -> None:
        await self._sandbox.exec(f"kill {self.pid} 2>/dev/null || true")


class ShellSandbox:
    """Base for sandboxes that run every command through ``bash -c``."""

    PS_COMMAND = "ps -eo pid=,args="
    WS_OPEN_TIMEOUT = 10.0
    MAX_FINISHED = 20
    DISCOVER_FOREIGN = False

    def __init__(self, sandbox_id: str, host: str = "127.0.0.1"):
        self.sandbox_id = sandbox_id
        self.host = host
        self._processes: list[ShellProcess] = []
        self.log = get_logger("runtime", sandbox_id=sandbox_id)

    def _argv(self, command: str, env: dict[str, str] | None) -> tuple[list[str], dict[str, str]]:
        raise NotImplementedError

    async def _on_kill(self, process: ShellProcess) -> None:
        return None

    def _prune(self) -> None:
        running = [p for p in self._processes if p.status == ProcessStatus.RUNNING]
        finished = [p for p in self._processes if p.status != ProcessStatus.RUNNING]
        self._processes = finished[-self.MAX_FINISHED :] + running

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> ShellProcess:
        self._prune()
        argv, process_env = self._argv(command, env)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=process_env,
        )
        process = ShellProcess(command, proc, on_kill=self._on_kill)
        self._processes.append(process)
        self.log.debug("process.start", process_id=process.id, pid=process.pid)
        return process

    async def exec(
        self, command: str, timeout: float = 30.0, env: dict[str, str] | None = None
    ) -> tuple[int | None, ProcessLogs]:
        """Run a short command to completion and return its exit code and output."""
        process = await self.start_process(command, env=env)
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            await process.kill()
        return process.exit_code, await process.get_logs()

    async def list_processes(self) -> list[SandboxProcess]:
        self._prune()
        tracked: list[SandboxProcess] = list(self._processes)
        if not self.DISCOVER_FOREIGN:
            return tracked

        running_commands = [p.command for p in tracked if p.status == ProcessStatus.RUNNING]
        exit_code, logs = await self.exec(self.PS_COMMAND)
        if exit_code != 0:
            self.log.warn("process.list_failed", exit_code=exit_code, stderr=logs.stderr[:200])
            return tracked

        for line in logs.stdout.splitlines():
            pid_str, _, args = line.strip().partition(" ")
            if not pid_str.isdigit() or not args:
                continue
            if self.PS_COMMAND in args or any(cmd in args for cmd in running_commands):
                continue
            tracked.append(ForeignProcess(self, int(pid_str), args.strip()))
        return tracked

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        *,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
    ) -> None:
        # s3fs reads the key pair from the environment.
        credentials = {
            "AWS_ACCESS_KEY_ID": access_key_id,
            "AWS_SECRET_ACCESS_KEY": secret_access_key,
        }
        command = (
            f"mkdir -p {shlex.quote(mount_path)} && "
            f"s3fs {shlex.quote(bucket)} {shlex.quote(mount_path)}"
            f" -o url={shlex.quote(endpoint)}"
            " -o use_path_request_style"
        )
        exit_code, logs = await self.exec(command, timeout=60.0, env=credentials)
        if exit_code != 0:
            raise MountError(f"s3fs exited with {exit_code}: {(logs.stderr or logs.stdout)[:500]}")

    async def ws_connect(
        self, path: str, port: int, headers: dict[str, str] | None = None
    ) -> ClientConnection:
        url = f"ws://{self.host}:{port}{path}"
        return await websockets.connect(
            url,
            additional_headers=headers or None,
            open_timeout=self.WS_OPEN_TIMEOUT,
            max_size=None,
        )


class LocalSandbox(ShellSandbox):
    """Runs commands on the local host."""

    def _argv(self, command: str, env: dict[str, str] | None) -> tuple[list[str], dict[str, str]]:
        return ["bash", "-c", command], {**os.environ, **(env or {})}


class DockerSandbox(ShellSandbox):
    """Runs commands inside a running Docker container via ``docker exec``."""

    DISCOVER_FOREIGN = True

    def __init__(self, sandbox_id: str, container_name: str, host: str = "127.0.0.1"):
        super().__init__(sandbox_id, host=host)
        self.container_name = container_name

    def _argv(self, command: str, env: dict[str, str] | None) -> tuple[list[str], dict[str, str]]:
        # A bare "-e KEY" makes docker copy the value from the client's environment.
        argv = ["docker", "exec", "-i"]
        for key in env or {}:
            argv.extend(["-e", key])
        argv.extend([self.container_name, "bash", "-c", command])
        return argv, {**os.environ, **(env or {})}

    async def _on_kill(self, process: ShellProcess) -> None:
        # Killing the docker client leaves the in-container process running.
        if process.status == ProcessStatus.RUNNING:
            await self.exec(f"pkill -f -- {shlex.quote(process.command)} || true")


def create_sandbox(backend: str, sandbox_id: str, container_name: str) -> ShellSandbox:
    if backend == "local":
        return LocalSandbox(sandbox_id)
    if backend == "docker":
        return DockerSandbox(sandbox_id, container_name)
    raise ValueError(f"Unknown sandbox backend: {backend}")
