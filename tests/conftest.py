"""Shared fakes for sandbox-facing tests."""

from unittest.mock import AsyncMock

import pytest

from agent_keeper.config import ContainerLayout, StoreCredentials
from agent_keeper.sandbox.types import ProcessLogs, ProcessStatus

MOUNTED = "s3fs on /data/agent-backup type fuse.s3fs (rw,nosuid,nodev)\n"


class FakeProcess:
    """
    A scripted container process.

    ``stdout`` may be a list, in which case each ``get_logs`` call returns the
    next entry (the last one repeats) to simulate output arriving over time.
    """

    _next_pid = 100

    def __init__(
        self,
        stdout: str | list[str] = "",
        stderr: str = "",
        status: ProcessStatus = ProcessStatus.COMPLETED,
        exit_code: int | None = 0,
        command: str = "",
        pid: int | None = None,
    ):
        FakeProcess._next_pid += 1
        self.pid = pid if pid is not None else FakeProcess._next_pid
        self.id = f"proc_{self.pid}"
        self.command = command
        self.status = status
        self.exit_code = exit_code
        self._stdout = stdout if isinstance(stdout, list) else [stdout]
        self._stderr = stderr
        self.log_calls = 0
        self.killed = False

    async def get_logs(self) -> ProcessLogs:
        index = min(self.log_calls, len(self._stdout) - 1)
        self.log_calls += 1
        return ProcessLogs(stdout=self._stdout[index], stderr=self._stderr)

    async def kill(self) -> None:
        self.killed = True
        self.status = ProcessStatus.COMPLETED


class FakeSandbox:
    """Sandbox returning queued processes in order and recording every command."""

    def __init__(self, sandbox_id: str = "test-sandbox"):
        self.sandbox_id = sandbox_id
        self.commands: list[str] = []
        self.envs: list[dict[str, str] | None] = []
        self.queue: list[FakeProcess] = []
        self.processes: list[FakeProcess] = []
        self.mount_bucket = AsyncMock()
        self.ws_connect = AsyncMock()

    def script(self, *processes: FakeProcess | str) -> "FakeSandbox":
        for process in processes:
            self.queue.append(FakeProcess(process) if isinstance(process, str) else process)
        return self

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> FakeProcess:
        self.commands.append(command)
        self.envs.append(env)
        process = self.queue.pop(0) if self.queue else FakeProcess()
        process.command = process.command or command
        return process

    async def list_processes(self) -> list[FakeProcess]:
        return list(self.processes)


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def credentials() -> StoreCredentials:
    return StoreCredentials(
        access_key_id="key-id",
        secret_access_key="secret",
        account_id="account",
        bucket="agent-backup",
    )


@pytest.fixture
def layout() -> ContainerLayout:
    return ContainerLayout()
