"""Durable-store mount management for the sandbox."""

import shlex

from ..config import StoreCredentials
from ..errors import ConfigurationError
from ..log_config import get_logger
from .process import run_command
from .runtime import Sandbox

log = get_logger("mount")

MOUNT_CHECK_TIMEOUT = 5.0


async def is_mounted(sandbox: Sandbox, mount_path: str) -> bool:
    """Check the container's mount table for an s3fs mount at ``mount_path``."""
    command = f"mount | grep {shlex.quote(f's3fs on {mount_path} ')}"
    try:
        _, logs = await run_command(sandbox, command, timeout=MOUNT_CHECK_TIMEOUT)
    except Exception as e:
        log.warn("mount.check_error", sandbox_id=sandbox.sandbox_id, exc=e)
        return False
    return "s3fs" in logs.stdout


async def mount_store(sandbox: Sandbox, credentials: StoreCredentials, mount_path: str) -> bool:
    """
    Mount the durable store at ``mount_path`` if it is not mounted already.

    Returns:
        True when the store is mounted afterwards, False if mounting failed.

    Raises:
        ConfigurationError: A required credential is missing.
    """
    if not credentials.is_configured:
        raise ConfigurationError("Durable storage is not configured")

    if await is_mounted(sandbox, mount_path):
        log.debug("mount.already_mounted", sandbox_id=sandbox.sandbox_id, mount_path=mount_path)
        return True

    log.info(
        "mount.start",
        sandbox_id=sandbox.sandbox_id,
        bucket=credentials.bucket,
        mount_path=mount_path,
    )
    try:
        await sandbox.mount_bucket(
            credentials.bucket,
            mount_path,
            endpoint=credentials.endpoint,
            access_key_id=credentials.access_key_id or "",
            secret_access_key=credentials.secret_access_key or "",
        )
    except Exception as e:
        # A concurrent caller may have mounted it between the check and now.
        if await is_mounted(sandbox, mount_path):
            log.info("mount.already_mounted", sandbox_id=sandbox.sandbox_id, detail=str(e))
            return True
        log.error("mount.failed", sandbox_id=sandbox.sandbox_id, exc=e)
        return False

    log.info("mount.complete", sandbox_id=sandbox.sandbox_id, mount_path=mount_path)
    return True
