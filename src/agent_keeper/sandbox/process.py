"""
Process supervisor for the gateway running inside the sandbox.

The status field reported by the runtime can stay ``running`` after a process
has finished, so completion is detected in two ways:

- ``wait_for_completion`` polls the status with a bounded number of attempts
  and never raises; callers inspect output afterwards.
- ``wait_for_sentinel`` polls accumulated stdout for literal marker strings
  printed by the command itself. This is the reliable signal for long-running
  commands such as the backup upload or gateway startup.
"""

import asyncio
import math

from ..errors import CommandFailure, GatewayStartError
from ..log_config import get_logger
from .runtime import Sandbox, SandboxProcess
from .types import ProcessLogs, ProcessStatus, SentinelResult

log = get_logger("process")

# Substrings identifying the supervised gateway in a process command line.
GATEWAY_SIGNATURES = ("agent_keeper.sandbox.entrypoint", "agent gateway")
GATEWAY_START_COMMAND = "python -m agent_keeper.sandbox.entrypoint"

READY_SENTINELS = ("gateway.ready",)
FAILURE_SENTINELS = ("gateway.startup_crash", "boot.failed")

GATEWAY_STARTUP_TIMEOUT = 180.0
RESTART_SETTLE_SECONDS = 2.0
LIVE_STATUSES = (ProcessStatus.STARTING, ProcessStatus.RUNNING)


def is_gateway_command(command: str, signatures: tuple[str, ...] = GATEWAY_SIGNATURES) -> bool:
    return any(signature in command for signature in signatures)


async def find_running(
    sandbox: Sandbox, signatures: tuple[str, ...] = GATEWAY_SIGNATURES
) -> SandboxProcess | None:
    """Return the first live process whose command matches a gateway signature."""
    try:
        processes = await sandbox.list_processes()
    except Exception as e:
        log.error("process.list_error", sandbox_id=sandbox.sandbox_id, exc=e)
        return None

    for process in processes:
        if process.status in LIVE_STATUSES and is_gateway_command(process.command, signatures):
            return process
    return None


async def wait_for_completion(
    process: SandboxProcess, timeout: float, poll_interval: float = 0.5
) -> None:
    """Poll until the process leaves a live status or the attempts run out."""
    max_attempts = max(1, math.ceil(timeout / poll_interval))
    attempts = 0
    while process.status in LIVE_STATUSES and attempts < max_attempts:
        await asyncio.sleep(poll_interval)
        attempts += 1


async def wait_for_sentinel(
    process: SandboxProcess,
    sentinels: tuple[str, ...] | list[str],
    timeout: float,
    poll_interval: float = 1.0,
) -> SentinelResult:
    """
    Poll the process's stdout until one of ``sentinels`` appears.

    Returns ``found=False`` with the last observed output when the bound is
    reached; the caller decides how to report the timeout.
    """
    max_attempts = max(1, math.ceil(timeout / poll_interval))
    logs = ProcessLogs()
    for attempt in range(max_attempts):
        logs = await process.get_logs()
        for sentinel in sentinels:
            if sentinel in logs.stdout:
                return SentinelResult(
                    found=True, matched=sentinel, stdout=logs.stdout, stderr=logs.stderr
                )
        if attempt < max_attempts - 1:
            await asyncio.sleep(poll_interval)
    return SentinelResult(found=False, stdout=logs.stdout, stderr=logs.stderr)


async def run_command(
    sandbox: Sandbox, command: str, timeout: float = 15.0, *, check: bool = False
) -> tuple[int | None, ProcessLogs]:
    """
    Start a short command, wait for it, and return its exit code and output.

    With ``check`` a non-zero exit raises CommandFailure. An unknown exit code
    (the process never reported one) is not treated as a failure.
    """
    process = await sandbox.start_process(command)
    await wait_for_completion(process, timeout)
    logs = await process.get_logs()
    if check and process.exit_code not in (None, 0):
        raise CommandFailure(command, process.exit_code, (logs.stderr or logs.stdout)[-1000:])
    return process.exit_code, logs


async def _wait_for_startup(
    process: SandboxProcess,
    sentinels: tuple[str, ...],
    timeout: float,
    poll_interval: float,
) -> SentinelResult | None:
    """Like wait_for_sentinel, but returns None once the process has exited silently."""
    max_attempts = max(1, math.ceil(timeout / poll_interval))
    logs = ProcessLogs()
    for attempt in range(max_attempts):
        logs = await process.get_logs()
        for sentinel in sentinels:
            if sentinel in logs.stdout:
                return SentinelResult(
                    found=True, matched=sentinel, stdout=logs.stdout, stderr=logs.stderr
                )
        if process.status not in LIVE_STATUSES:
            return None
        if attempt < max_attempts - 1:
            await asyncio.sleep(poll_interval)
    return SentinelResult(found=False, stdout=logs.stdout, stderr=logs.stderr)


async def ensure_running(
    sandbox: Sandbox,
    env: dict[str, str] | None = None,
    *,
    start_command: str = GATEWAY_START_COMMAND,
    ready_sentinels: tuple[str, ...] = READY_SENTINELS,
    failure_sentinels: tuple[str, ...] = FAILURE_SENTINELS,
    timeout: float = GATEWAY_STARTUP_TIMEOUT,
    poll_interval: float = 1.0,
) -> SandboxProcess:
    """
    Return the running gateway, starting it if needed.

    Raises:
        GatewayStartError: The new process printed a failure sentinel, or no
            sentinel appeared within ``timeout``.
    """
    existing = await find_running(sandbox)
    if existing is not None:
        log.debug("gateway.found", sandbox_id=sandbox.sandbox_id, process_id=existing.id)
        return existing

    log.info("gateway.start", sandbox_id=sandbox.sandbox_id, command=start_command)
    process = await sandbox.start_process(start_command, env=env)

    result = await _wait_for_startup(
        process, (*ready_sentinels, *failure_sentinels), timeout, poll_interval
    )
    if result is None:
        logs = await process.get_logs()
        log.error(
            "gateway.exited",
            sandbox_id=sandbox.sandbox_id,
            status=process.status,
            exit_code=process.exit_code,
        )
        raise GatewayStartError(
            f"Gateway exited before becoming ready (exit code {process.exit_code})",
            output=(logs.stderr or logs.stdout)[-1000:],
        )
    if not result.found:
        log.error("gateway.start_timeout", sandbox_id=sandbox.sandbox_id, timeout_s=timeout)
        raise GatewayStartError(
            f"Gateway did not become ready within {timeout:.0f}s",
            output=(result.stderr or result.stdout)[-1000:],
        )
    if result.matched in failure_sentinels:
        log.error("gateway.start_failed", sandbox_id=sandbox.sandbox_id, sentinel=result.matched)
        raise GatewayStartError(
            f"Gateway failed to start ({result.matched})",
            output=(result.stderr or result.stdout)[-1000:],
        )

    log.info("gateway.started", sandbox_id=sandbox.sandbox_id, process_id=process.id)
    return process


async def restart(sandbox: Sandbox, env: dict[str, str] | None = None, **kwargs) -> SandboxProcess:
    """Kill every live gateway process, then start a fresh one."""
    processes = await sandbox.list_processes()
    killed = 0
    for process in processes:
        if process.status in LIVE_STATUSES and is_gateway_command(process.command):
            try:
                await process.kill()
                killed += 1
            except Exception as e:
                log.warn("gateway.kill_error", process_id=process.id, exc=e)

    log.info("gateway.restart", sandbox_id=sandbox.sandbox_id, killed=killed)
    if killed:
        await asyncio.sleep(RESTART_SETTLE_SECONDS)
    return await ensure_running(sandbox, env, **kwargs)
