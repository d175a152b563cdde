"""
Backup sync from the sandbox to the durable store.

A sync runs strictly in order, each step short-circuiting:

1. Store credentials must be configured.
2. The store is mounted (idempotent).
3. Safety gate, so a fresh or half-restored container can never overwrite a
   good backup:
   a. the restore-complete marker must exist (always enforced, even with force)
   b. the container must be at least MIN_BOOT_AGE_SECONDS old (skipped with force)
   c. the container must show signs of real use (skipped with force)
4. The remote last-sync marker is cleared, so a failed upload can't leave a
   stale timestamp that reads as success.
5. Config, skills and credential stores are archived and copied into the store.
   The pipeline never deletes remote files; completion is detected through
   SYNC_OK / SYNC_FAIL sentinels because the process status is unreliable.
6. The remote last-sync marker is re-read and must be date-shaped.

Syncs for the same sandbox are serialized with a per-sandbox lock.
"""

import asyncio
import re
import shlex
import time

from ..config import GIT_CREDENTIAL_HELPER, ContainerLayout, GitCredentials, StoreCredentials
from ..errors import ConfigurationError, SafetyGateAbort
from ..log_config import get_logger
from .mount import mount_store
from .process import run_command, wait_for_sentinel
from .runtime import Sandbox
from .types import SyncError, SyncResult

log = get_logger("sync")

MIN_BOOT_AGE_SECONDS = 600
MIN_MEANINGFUL_FILE_COUNT = 3
USAGE_MARKER = "lastTouchedAt"

CHECK_TIMEOUT = 5.0
SYNC_TIMEOUT = 180.0
SYNC_POLL_INTERVAL = 1.0
DETAILS_MAX_LENGTH = 1000

SYNC_OK = "SYNC_OK"
SYNC_FAIL = "SYNC_FAIL"
GIT_SYNC_OK = "GIT_SYNC_OK"
GIT_SYNC_FAIL = "GIT_SYNC_FAIL"

# Never copied to the store.
EXCLUDE_PATTERNS = (
    "*.lock",
    "*.log",
    "*.tmp",
    ".boot-timestamp",
    ".restore-complete",
    ".last-sync",
)

TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}")

_sync_locks: dict[str, asyncio.Lock] = {}


def sync_lock(sandbox: Sandbox) -> asyncio.Lock:
    """Return the single-flight lock for a sandbox identity."""
    lock = _sync_locks.get(sandbox.sandbox_id)
    if lock is None:
        lock = _sync_locks[sandbox.sandbox_id] = asyncio.Lock()
    return lock


def _truncate(text: str, limit: int = DETAILS_MAX_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


async def check_restore_complete(sandbox: Sandbox, layout: ContainerLayout) -> None:
    command = f'test -f {shlex.quote(layout.restore_complete_path)} && echo "ok"'
    _, logs = await run_command(sandbox, command, timeout=CHECK_TIMEOUT)
    if "ok" not in logs.stdout:
        raise SafetyGateAbort(
            SyncError.RESTORE_NOT_COMPLETE,
            "The .restore-complete marker is missing. The container may still be booting "
            "or was started by an incompatible boot routine.",
        )


async def check_boot_age(
    sandbox: Sandbox, layout: ContainerLayout, now: float | None = None
) -> int:
    """Return the container age in seconds, aborting when it is below the minimum."""
    _, logs = await run_command(
        sandbox, f"cat {shlex.quote(layout.boot_timestamp_path)} 2>/dev/null", timeout=CHECK_TIMEOUT
    )
    try:
        boot_epoch = int(logs.stdout.strip())
    except ValueError:
        raise SafetyGateAbort(
            SyncError.NO_BOOT_TIMESTAMP,
            "The .boot-timestamp marker is missing. The container may have been started "
            "by an incompatible boot routine.",
        ) from None

    age = int(now if now is not None else time.time()) - boot_epoch
    if age < MIN_BOOT_AGE_SECONDS:
        raise SafetyGateAbort(
            SyncError.CONTAINER_TOO_YOUNG,
            f"Container is {age}s old, minimum is {MIN_BOOT_AGE_SECONDS}s. "
            "This prevents a fresh container from overwriting backup data.",
        )
    return age


def _parse_count(text: str) -> int:
    try:
        return int(text.strip() or "0")
    except ValueError:
        return 0


async def check_meaningful_state(sandbox: Sandbox, layout: ContainerLayout) -> tuple[int, int]:
    """Return (usage marker count, config dir entry count), aborting on an untouched template."""
    q = shlex.quote
    command = (
        f"grep -c {q(USAGE_MARKER)} {q(layout.config_path)} 2>/dev/null; "
        f'echo "---"; ls -1 {q(layout.config_dir)}/ 2>/dev/null | wc -l'
    )
    _, logs = await run_command(sandbox, command, timeout=CHECK_TIMEOUT)
    usage_part, _, files_part = logs.stdout.partition("---")
    usage_count = _parse_count(usage_part)
    file_count = _parse_count(files_part)
    if usage_count == 0 and file_count <= MIN_MEANINGFUL_FILE_COUNT:
        raise SafetyGateAbort(
            SyncError.NO_MEANINGFUL_STATE,
            f"Container has {file_count} file(s) and no usage marker ({USAGE_MARKER}). "
            "This looks like a fresh template; refusing to overwrite the backup.",
        )
    return usage_count, file_count


def build_archive_command(layout: ContainerLayout) -> str:
    """
    Build the archive-and-upload pipeline.

    Produces ``config/config.tar.gz``, ``skills/skills.tar.gz`` and
    ``credentials/credentials.tar.gz`` under the mount path, then writes the
    store's ``.last-sync``. Prints exactly one of SYNC_OK / SYNC_FAIL.
    """
    q = shlex.quote
    mount = layout.mount_path
    excludes = " ".join(f"--exclude={q(pattern)}" for pattern in EXCLUDE_PATTERNS)
    credential_paths = " ".join(
        q(path.lstrip("/")) for path in [*layout.credential_dirs, *layout.credential_files]
    )

    steps = [
        'stage=$(mktemp -d /tmp/agent-keeper-sync.XXXXXX)',
        f'tar -czf "$stage/config.tar.gz" {excludes} -C {q(layout.config_dir)} .',
        f"mkdir -p {q(mount)}/config",
        f'cp "$stage/config.tar.gz" {q(mount)}/config/config.tar.gz',
        f"{{ [ ! -d {q(layout.skills_dir)} ] || {{ "
        f'tar -czf "$stage/skills.tar.gz" {excludes} -C {q(layout.skills_dir)} . '
        f"&& mkdir -p {q(mount)}/skills "
        f'&& cp "$stage/skills.tar.gz" {q(mount)}/skills/skills.tar.gz; }}; }}',
        f'{{ creds=""; for p in {credential_paths}; do '
        '[ -e "/$p" ] && creds="$creds $p"; done; true; }',
        '{ [ -z "$creds" ] || { '
        f'tar -czf "$stage/credentials.tar.gz" {excludes} -C / $creds '
        f"&& mkdir -p {q(mount)}/credentials "
        f'&& cp "$stage/credentials.tar.gz" {q(mount)}/credentials/credentials.tar.gz; }}; }}',
        f"date -Iseconds > {q(layout.remote_last_sync_path)}",
    ]
    return (
        " && ".join(steps)
        + '; status=$?; [ -n "$stage" ] && rm -rf "$stage"; '
        + f'if [ $status -eq 0 ]; then echo "{SYNC_OK}"; else echo "{SYNC_FAIL}"; fi'
    )


async def sync_to_backup(
    sandbox: Sandbox,
    credentials: StoreCredentials,
    *,
    force: bool = False,
    layout: ContainerLayout | None = None,
) -> SyncResult:
    """
    Sync container state to the durable store.

    ``force`` skips the age and meaningful-state checks. The restore-complete
    check and the non-destructive upload always apply.
    """
    layout = layout or ContainerLayout()

    if not credentials.is_configured:
        return SyncResult(
            success=False,
            error=SyncError.NOT_CONFIGURED,
            details="Durable storage credentials are not configured",
        )

    lock = sync_lock(sandbox)
    if lock.locked():
        log.info("sync.waiting", sandbox_id=sandbox.sandbox_id)

    async with lock:
        start_time = time.time()
        result = await _run_sync(sandbox, credentials, layout, force)
        log.info(
            "sync.complete",
            sandbox_id=sandbox.sandbox_id,
            force=force,
            outcome="success" if result.success else "error",
            error=result.error.value if result.error else None,
            last_sync=result.last_sync,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return result


async def _run_sync(
    sandbox: Sandbox, credentials: StoreCredentials, layout: ContainerLayout, force: bool
) -> SyncResult:
    try:
        mounted = await mount_store(sandbox, credentials, layout.mount_path)
    except ConfigurationError as e:
        return SyncResult(success=False, error=SyncError.NOT_CONFIGURED, details=str(e))
    if not mounted:
        return SyncResult(
            success=False,
            error=SyncError.MOUNT_FAILED,
            details=f"Failed to mount the durable store at {layout.mount_path}",
        )

    checks = [("restore_complete", check_restore_complete)]
    if not force:
        checks += [("boot_age", check_boot_age), ("meaningful_state", check_meaningful_state)]

    for name, check in checks:
        try:
            await check(sandbox, layout)
        except SafetyGateAbort as abort:
            log.warn(
                "sync.gate_abort",
                sandbox_id=sandbox.sandbox_id,
                check=name,
                reason=str(abort.reason),
                detail=abort.details,
            )
            return SyncResult(success=False, error=abort.reason, details=abort.details)
        except Exception as e:
            log.error("sync.check_error", sandbox_id=sandbox.sandbox_id, check=name, exc=e)
            return SyncResult(
                success=False,
                error=SyncError.CHECK_FAILED,
                details=f"Failed to run {name.replace('_', ' ')} check: {e}",
            )

    try:
        await run_command(
            sandbox, f"rm -f {shlex.quote(layout.remote_last_sync_path)}", timeout=CHECK_TIMEOUT
        )

        process = await sandbox.start_process(build_archive_command(layout))
        outcome = await wait_for_sentinel(
            process, (SYNC_OK, SYNC_FAIL), SYNC_TIMEOUT, SYNC_POLL_INTERVAL
        )
        if not outcome.found:
            return SyncResult(
                success=False,
                error=SyncError.SYNC_TIMED_OUT,
                details=_truncate(
                    outcome.stderr
                    or outcome.stdout
                    or f"No completion sentinel within {SYNC_TIMEOUT:.0f}s"
                ),
            )
        if outcome.matched == SYNC_FAIL:
            return SyncResult(
                success=False,
                error=SyncError.SYNC_FAILED,
                details=_truncate(outcome.stderr or outcome.stdout),
            )

        _, ts_logs = await run_command(
            sandbox, f"cat {shlex.quote(layout.remote_last_sync_path)}", timeout=CHECK_TIMEOUT
        )
        last_sync = ts_logs.stdout.strip()
        if not TIMESTAMP_PATTERN.match(last_sync):
            return SyncResult(
                success=False,
                error=SyncError.SYNC_FAILED,
                details=_truncate(outcome.stderr or outcome.stdout or "No timestamp file created"),
            )
    except Exception as e:
        log.error("sync.error", sandbox_id=sandbox.sandbox_id, exc=e)
        return SyncResult(success=False, error=SyncError.SYNC_ERROR, details=_truncate(str(e)))

    try:
        await run_command(
            sandbox,
            f"echo {shlex.quote(last_sync)} > {shlex.quote(layout.local_last_sync_path)}",
            timeout=CHECK_TIMEOUT,
        )
    except Exception as e:
        log.warn("sync.local_marker_error", sandbox_id=sandbox.sandbox_id, exc=e)

    return SyncResult(success=True, last_sync=last_sync)


def build_git_sync_command(workspace_dir: str, credentials: GitCredentials) -> str:
    q = shlex.quote
    steps = [
        f"cd {q(workspace_dir)}",
        "export GIT_TERMINAL_PROMPT=0",
        "{ [ -d .git ] || { git init -q && git checkout -q -b main; }; }",
        "{ git remote remove origin 2>/dev/null; true; }",
        f"git remote add origin {q(credentials.remote_url())}",
        "git add -A",
        '{ git diff --cached --quiet || git commit -q -m "Workspace backup $(date -Iseconds)"; }',
        f"timeout 60 git -c {q('credential.helper=' + GIT_CREDENTIAL_HELPER)} "
        "push -q origin HEAD:main 2>&1",
    ]
    return (
        " && ".join(steps)
        + f' && echo "{GIT_SYNC_OK} $(date -Iseconds)" || echo "{GIT_SYNC_FAIL}"'
    )


async def sync_workspace(
    sandbox: Sandbox,
    credentials: GitCredentials,
    *,
    layout: ContainerLayout | None = None,
) -> SyncResult:
    """
    Commit pending workspace changes and push them to the backup repository.

    Uses a plain push, so a diverged remote is reported as a failure rather
    than overwritten. Independent of the durable-store safety gate.
    """
    layout = layout or ContainerLayout()

    if not credentials.is_configured:
        return SyncResult(
            success=False,
            error=SyncError.NOT_CONFIGURED,
            details="GITHUB_PAT and GITHUB_REPO must both be set",
        )

    start_time = time.time()
    try:
        process = await sandbox.start_process(
            build_git_sync_command(layout.workspace_dir, credentials), env=credentials.env()
        )
        outcome = await wait_for_sentinel(
            process, (GIT_SYNC_OK, GIT_SYNC_FAIL), SYNC_TIMEOUT, SYNC_POLL_INTERVAL
        )
    except Exception as e:
        log.error("git.sync_error", sandbox_id=sandbox.sandbox_id, exc=e)
        return SyncResult(success=False, error=SyncError.SYNC_ERROR, details=_truncate(str(e)))

    # Git may echo credentials it was given; keep the token out of results and logs.
    output = (outcome.stderr or outcome.stdout).replace(credentials.token or "", "***")

    if not outcome.found:
        result = SyncResult(
            success=False, error=SyncError.SYNC_TIMED_OUT, details=_truncate(output)
        )
    elif outcome.matched == GIT_SYNC_FAIL:
        result = SyncResult(success=False, error=SyncError.SYNC_FAILED, details=_truncate(output))
    else:
        tail = outcome.stdout.split(GIT_SYNC_OK, 1)[1].strip().split()
        result = SyncResult(success=True, last_sync=tail[0] if tail else None)

    log.info(
        "git.sync_complete",
        sandbox_id=sandbox.sandbox_id,
        repo=credentials.repo,
        outcome="success" if result.success else "error",
        duration_ms=int((time.time() - start_time) * 1000),
    )
    return result
