"""
Scheduled backup of the sandbox to the durable store.

This module handles:
- Periodic sync of container state (every SYNC_INTERVAL_SECONDS, 0 disables)
- Periodic push of the workspace repository when git credentials are set

Scheduled runs never pass force, so the full safety gate always applies.
"""

import asyncio
import time

from ..config import Settings
from ..log_config import get_logger
from ..sandbox.runtime import Sandbox
from ..sandbox.sync import sync_to_backup, sync_workspace

log = get_logger("scheduler")


class BackupScheduler:
    """Runs backup syncs on a fixed interval inside the web app's lifespan."""

    def __init__(self, sandbox: Sandbox, settings: Settings):
        self.sandbox = sandbox
        self.settings = settings
        self.interval = settings.sync_interval_seconds
        self._task: asyncio.Task[None] | None = None
        self.runs = 0
        self.log = log.bind(sandbox_id=sandbox.sandbox_id)

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def start(self) -> None:
        if not self.enabled:
            self.log.info("scheduler.disabled")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            self.log.info("scheduler.start", interval_s=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.log.info("scheduler.stop", runs=self.runs)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    async def run_once(self) -> None:
        """Run one scheduled backup. Failures are logged and never stop the loop."""
        start_time = time.time()
        self.runs += 1

        try:
            result = await sync_to_backup(
                self.sandbox, self.settings.store, layout=self.settings.layout
            )
            self.log.info(
                "scheduler.sync",
                run=self.runs,
                outcome="success" if result.success else "skipped",
                error=result.error.value if result.error else None,
                details=result.details,
            )
        except Exception as e:
            self.log.error("scheduler.sync_error", run=self.runs, exc=e)

        if self.settings.git.is_configured:
            try:
                git_result = await sync_workspace(
                    self.sandbox, self.settings.git, layout=self.settings.layout
                )
                self.log.info(
                    "scheduler.git_sync",
                    run=self.runs,
                    outcome="success" if git_result.success else "error",
                    details=git_result.details,
                )
            except Exception as e:
                self.log.error("scheduler.git_sync_error", run=self.runs, exc=e)

        self.log.debug(
            "scheduler.run_complete", duration_ms=int((time.time() - start_time) * 1000)
        )
