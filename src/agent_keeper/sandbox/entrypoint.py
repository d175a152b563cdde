#!/usr/bin/env python3
"""
Sandbox entrypoint - restores agent state and runs the gateway.

Runs inside the agent container as the supervised process. Responsibilities,
in order:
1. Exit if the gateway is already running (idempotent boot)
2. Write the boot timestamp marker
3. Quarantine a known-corrupt configuration
4. Restore config, skills and credential stores from the durable store when
   the stored copy is newer than the local one
5. Quarantine again (the stored copy may carry the same corruption)
6. Initialize the config from the template if none exists
7. Write the restore-complete marker
8. Restore the workspace repository (best-effort)
9. Apply environment overrides to the config
10. Start the gateway and wait until it answers on its port

The ``gateway.ready`` / ``gateway.startup_crash`` / ``boot.failed`` log events
are the sentinels the orchestrator waits for.
"""

import asyncio
import json
import os
import shutil
import signal
import tarfile
import time
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import GIT_CREDENTIAL_HELPER, GIT_TOKEN_ENV, ContainerLayout, GitCredentials
from ..log_config import configure_logging, get_logger
from .types import BootState

configure_logging()

# Channels allowed to carry a "dm" block. Anywhere else it is the corrupt shape.
DM_CAPABLE_CHANNELS = frozenset({"slack"})

# Markers and transient files never restored over local state.
NEVER_RESTORED = (".boot-timestamp", ".restore-complete", ".last-sync")


class GatewayEnv(BaseModel):
    """Environment overrides applied to the agent configuration at boot."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    gateway_token: str | None = Field(None, alias="AGENT_GATEWAY_TOKEN")
    dev_mode: bool = Field(False, alias="AGENT_DEV_MODE")
    bind_mode: str = Field("lan", alias="AGENT_BIND_MODE")
    trusted_proxies: list[str] = Field(
        default_factory=lambda: ["10.1.0.0"], alias="AGENT_TRUSTED_PROXIES"
    )

    telegram_bot_token: str | None = Field(None, alias="TELEGRAM_BOT_TOKEN")
    telegram_dm_policy: str | None = Field(None, alias="TELEGRAM_DM_POLICY")
    telegram_allow_from: list[str] | None = Field(None, alias="TELEGRAM_ALLOW_FROM")

    discord_bot_token: str | None = Field(None, alias="DISCORD_BOT_TOKEN")
    discord_dm_policy: str | None = Field(None, alias="DISCORD_DM_POLICY")

    slack_bot_token: str | None = Field(None, alias="SLACK_BOT_TOKEN")
    slack_app_token: str | None = Field(None, alias="SLACK_APP_TOKEN")
    slack_dm_policy: str | None = Field(None, alias="SLACK_DM_POLICY")
    slack_allow_from: list[str] | None = Field(None, alias="SLACK_ALLOW_FROM")
    slack_require_mention: bool = Field(True, alias="SLACK_REQUIRE_MENTION")

    primary_model: str | None = Field(None, alias="AGENT_MODEL")
    fallback_models: list[str] | None = Field(None, alias="AGENT_MODEL_FALLBACKS")

    auth_profiles: dict[str, Any] | None = Field(None, alias="AGENT_AUTH_PROFILES")

    @field_validator(
        "trusted_proxies",
        "telegram_allow_from",
        "slack_allow_from",
        "fallback_models",
        mode="before",
    )
    @classmethod
    def split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("auth_profiles", mode="before")
    @classmethod
    def parse_json(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else None
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "GatewayEnv":
        # Empty strings mean "unset", as in a shell.
        return cls.model_validate({k: v for k, v in environ.items() if v != ""})


def has_corrupt_shape(config: dict[str, Any]) -> bool:
    """True when a channel other than slack carries a ``dm`` key."""
    channels = config.get("channels")
    if not isinstance(channels, dict):
        return False
    return any(
        isinstance(settings, dict) and "dm" in settings and name not in DM_CAPABLE_CHANNELS
        for name, settings in channels.items()
    )


def parse_sync_time(value: str | None) -> float:
    """Parse an ISO-8601 last-sync value to epoch seconds; unparsable is 0."""
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.strip()).timestamp()
    except ValueError:
        return 0.0


def apply_overrides(config: dict[str, Any], env: GatewayEnv, layout: ContainerLayout) -> dict:
    """Merge environment overrides into ``config`` and return it."""
    agents = config.setdefault("agents", {})
    defaults = agents.setdefault("defaults", {})
    model = defaults.setdefault("model", {})
    gateway = config.setdefault("gateway", {})
    channels = config.setdefault("channels", {})

    gateway["port"] = layout.gateway_port
    gateway["mode"] = "local"
    gateway["trustedProxies"] = env.trusted_proxies

    if env.gateway_token:
        gateway.setdefault("auth", {})["token"] = env.gateway_token
    if env.dev_mode:
        gateway.setdefault("controlUi", {})["allowInsecureAuth"] = True

    if env.telegram_bot_token:
        telegram = channels.setdefault("telegram", {})
        telegram["botToken"] = env.telegram_bot_token
        telegram["enabled"] = True
        if env.telegram_dm_policy:
            telegram["dmPolicy"] = env.telegram_dm_policy
        if env.telegram_allow_from:
            telegram["allowFrom"] = env.telegram_allow_from

    if env.discord_bot_token:
        discord = channels.setdefault("discord", {})
        discord["token"] = env.discord_bot_token
        discord["enabled"] = True
        if env.discord_dm_policy:
            discord["dmPolicy"] = env.discord_dm_policy

    if env.slack_bot_token and env.slack_app_token:
        slack = channels.setdefault("slack", {})
        slack["botToken"] = env.slack_bot_token
        slack["appToken"] = env.slack_app_token
        slack["enabled"] = True
        slack["groupPolicy"] = "open"
        if not env.slack_require_mention:
            slack.setdefault("channels", {})["*"] = {"requireMention": False}
        if env.slack_dm_policy:
            dm = slack.setdefault("dm", {})
            dm["enabled"] = True
            dm["policy"] = env.slack_dm_policy
            if env.slack_allow_from:
                dm["allowFrom"] = env.slack_allow_from

    if env.primary_model:
        model["primary"] = env.primary_model
    if env.fallback_models:
        model["fallbacks"] = env.fallback_models

    for name, settings in channels.items():
        if name not in DM_CAPABLE_CHANNELS and isinstance(settings, dict):
            settings.pop("dm", None)

    return config


class BootRoutine:
    """
    Boot/restore routine for the agent container.

    Lifecycle markers live in the config directory:
    - ``.boot-timestamp`` (epoch seconds, written first on every boot)
    - ``.restore-complete`` (written once restore/init has finished)
    - ``.last-sync`` (timestamp of the stored copy the local state came from)
    """

    GATEWAY_BINARY = "agent"
    GATEWAY_SIGNATURE = "agent gateway"
    HEALTH_CHECK_TIMEOUT = 60.0
    STARTUP_CHECK_DELAY = 0.5
    GIT_NETWORK_TIMEOUT = 60.0
    STALE_LOCK_FILES = ("/tmp/agent-gateway.lock",)

    def __init__(
        self,
        layout: ContainerLayout | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.layout = layout or ContainerLayout()
        self.environ = dict(os.environ if environ is None else environ)
        self.state = BootState.BOOTING
        self.gateway_process: asyncio.subprocess.Process | None = None
        self.shutdown_event = asyncio.Event()

        self.config_dir = Path(self.layout.config_dir)
        self.config_path = Path(self.layout.config_path)
        self.store = Path(self.layout.mount_path)

        self.log = get_logger(
            "boot",
            service="sandbox",
            sandbox_id=self.environ.get("SANDBOX_ID", "unknown"),
        )

    def _transition(self, state: BootState) -> None:
        self.state = state
        self.log.info("boot.state", state=state.value)

    async def is_gateway_running(self) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                "pgrep",
                "-f",
                self.GATEWAY_SIGNATURE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await proc.wait() == 0
        except FileNotFoundError:
            self.log.warn("boot.pgrep_missing")
            return False

    def write_boot_timestamp(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        Path(self.layout.boot_timestamp_path).write_text(f"{int(time.time())}\n")
        self.log.info("boot.timestamp_written")

    def _read_config(self) -> dict[str, Any] | None:
        try:
            data = json.loads(self.config_path.read_text())
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.log.warn("config.unreadable", path=str(self.config_path), exc=e)
            return None
        return data if isinstance(data, dict) else None

    def quarantine_corrupt_config(self, phase: str) -> bool:
        """Delete the config and the local last-sync marker if the config is corrupt."""
        config = self._read_config()
        if config is None or not has_corrupt_shape(config):
            return False

        self.config_path.unlink(missing_ok=True)
        Path(self.layout.local_last_sync_path).unlink(missing_ok=True)
        self._transition(BootState.QUARANTINED)
        self.log.warn("config.quarantined", phase=phase, path=str(self.config_path))
        return True

    def _local_sync_time(self) -> str | None:
        marker = Path(self.layout.local_last_sync_path)
        return marker.read_text().strip() if marker.is_file() else None

    def should_restore(self, group: str = "config") -> bool:
        """Stored copy wins when its timestamp is newer than the local marker."""
        return self._stored_copy_wins(group, self._local_sync_time())

    def _stored_copy_wins(self, group: str, local_time: str | None) -> bool:
        remote_marker = Path(self.layout.remote_last_sync_path)
        if not remote_marker.is_file():
            self.log.info("restore.skip", group=group, reason="no_remote_timestamp")
            return False
        if local_time is None:
            self.log.info(
                "restore.decision", group=group, restore=True, reason="no_local_timestamp"
            )
            return True

        remote_time = remote_marker.read_text().strip()
        newer = parse_sync_time(remote_time) > parse_sync_time(local_time)
        self.log.info(
            "restore.decision",
            group=group,
            restore=newer,
            remote_last_sync=remote_time,
            local_last_sync=local_time,
        )
        return newer

    @staticmethod
    def _extract(archive: Path, destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(destination, filter="data")

    @staticmethod
    def _has_entries(path: Path) -> bool:
        return path.is_dir() and any(path.iterdir())

    def restore_config(self) -> bool:
        archive = self.store / "config" / "config.tar.gz"
        legacy_dir = self.store / "config"
        flat_config = self.store / self.layout.config_file

        if archive.is_file():
            self._extract(archive, self.config_dir)
            source = "archive"
        elif (legacy_dir / self.layout.config_file).is_file():
            shutil.copytree(
                legacy_dir,
                self.config_dir,
                dirs_exist_ok=True,
                ignore=shutil.ignore_patterns(*NEVER_RESTORED),
            )
            source = "legacy_dir"
        elif flat_config.is_file():
            for entry in self.store.iterdir():
                if entry.is_file() and entry.name not in NEVER_RESTORED:
                    shutil.copy2(entry, self.config_dir / entry.name)
            source = "legacy_flat"
        else:
            self.log.info("restore.config_skip", reason="no_stored_config")
            return False

        shutil.copyfile(self.layout.remote_last_sync_path, self.layout.local_last_sync_path)
        self.log.info("restore.config_complete", source=source)
        return True

    def restore_skills(self) -> bool:
        archive = self.store / "skills" / "skills.tar.gz"
        legacy_dir = self.store / "skills"
        skills_dir = Path(self.layout.skills_dir)

        if archive.is_file():
            self._extract(archive, skills_dir)
        elif self._has_entries(legacy_dir):
            shutil.copytree(legacy_dir, skills_dir, dirs_exist_ok=True)
        else:
            return False
        self.log.info("restore.skills_complete")
        return True

    def restore_credentials(self) -> bool:
        archive = self.store / "credentials" / "credentials.tar.gz"
        if archive.is_file():
            self._extract(archive, Path("/"))
            self.log.info("restore.credentials_complete", source="archive")
            return True

        restored = False
        for directory in self.layout.credential_dirs:
            legacy = self.store / Path(directory).name
            if self._has_entries(legacy):
                shutil.copytree(legacy, directory, dirs_exist_ok=True)
                restored = True
        for file in self.layout.credential_files:
            legacy = self.store / Path(file).name.lstrip(".")
            if legacy.is_file():
                Path(file).parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(legacy, file)
                os.chmod(file, 0o600)
                restored = True
        if restored:
            self.log.info("restore.credentials_complete", source="legacy")
        return restored

    def restore_from_store(self) -> dict[str, bool]:
        """
        Restore config, skills and credentials, each under its own comparison.

        All three compare against the local marker as read up front, so the
        config restore copying the stored marker does not mask the others.
        """
        if not self.store.is_dir():
            self.log.info("restore.skip", reason="store_not_mounted", path=str(self.store))
            return {}

        baseline = self._local_sync_time()
        results: dict[str, bool] = {}
        for name, restore in (
            ("config", self.restore_config),
            ("skills", self.restore_skills),
            ("credentials", self.restore_credentials),
        ):
            if not self._stored_copy_wins(name, baseline):
                continue
            try:
                results[name] = restore()
            except (OSError, tarfile.TarError) as e:
                self.log.error("restore.error", group=name, exc=e)
                results[name] = False

        if any(results.values()):
            self._transition(BootState.RESTORED)
        return results

    def initialize_config(self) -> None:
        if self.config_path.is_file():
            self.log.info("config.existing")
            return

        template = Path(self.layout.template_file)
        if template.is_file():
            shutil.copyfile(template, self.config_path)
            self.log.info("config.initialized", source="template")
            return

        minimal = {
            "agents": {"defaults": {"workspace": self.layout.workspace_dir}},
            "gateway": {"port": self.layout.gateway_port, "mode": "local"},
        }
        self.config_path.write_text(json.dumps(minimal, indent=2))
        self.log.info("config.initialized", source="builtin")

    def mark_restore_complete(self) -> None:
        Path(self.layout.restore_complete_path).touch()
        self._transition(BootState.INITIALIZED)

    async def _git(self, *args: str, timeout: float | None = None) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            "git",
            "-c",
            f"credential.helper={GIT_CREDENTIAL_HELPER}",
            *args,
            cwd=self.layout.workspace_dir,
            env={
                **self.environ,
                "GIT_TERMINAL_PROMPT": "0",
                GIT_TOKEN_ENV: self.environ.get("GITHUB_PAT", ""),
            },
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, "timed out"
        return proc.returncode or 0, stdout.decode(errors="replace")

    async def restore_git_workspace(self) -> bool:
        """Check out the workspace repository. Failures never block the gateway."""
        token = self.environ.get("GITHUB_PAT")
        repo = self.environ.get("GITHUB_REPO")
        if not token or not repo:
            self.log.info("git.skip", reason="not_configured")
            return False

        try:
            Path(self.layout.workspace_dir).mkdir(parents=True, exist_ok=True)
            if not (Path(self.layout.workspace_dir) / ".git").exists():
                await self._git("init", "-q")
                await self._git("checkout", "-q", "-b", "main")
            await self._git("remote", "remove", "origin")
            await self._git("remote", "add", "origin", GitCredentials(repo=repo).remote_url())

            for branch in ("main", "master"):
                code, _ = await self._git(
                    "ls-remote", "--exit-code", "origin", branch, timeout=self.GIT_NETWORK_TIMEOUT
                )
                if code != 0:
                    continue
                code, output = await self._git(
                    "fetch", "origin", branch, timeout=self.GIT_NETWORK_TIMEOUT
                )
                if code != 0:
                    self.log.warn("git.fetch_failed", branch=branch, output=output[-500:])
                    return False
                if branch == "main":
                    await self._git("reset", "--hard", "origin/main")
                else:
                    await self._git("checkout", "-B", "main", "origin/master")
                self.log.info("git.restore_complete", repo=repo, branch=branch)
                return True

            self.log.info("git.remote_empty", repo=repo)
            return False
        except Exception as e:
            self.log.warn("git.restore_error", exc=e)
            return False

    def apply_env_overrides(self, env: GatewayEnv) -> None:
        config = self._read_config() or {}
        apply_overrides(config, env, self.layout)
        self.config_path.write_text(json.dumps(config, indent=2))
        self._transition(BootState.CONFIG_APPLIED)

    def seed_auth_profiles(self, env: GatewayEnv) -> bool:
        """Write auth-profiles.json from the environment unless a restored copy exists."""
        target = self.config_dir / "auth-profiles.json"
        if target.exists():
            self.log.info("auth.seed_skip", reason="exists")
            return False
        if not env.auth_profiles:
            return False
        target.write_text(json.dumps(env.auth_profiles, indent=2))
        os.chmod(target, 0o600)
        self.log.info("auth.seeded", profiles=len(env.auth_profiles))
        return True

    def clean_stale_locks(self) -> None:
        for path in (*self.STALE_LOCK_FILES, str(self.config_dir / "gateway.lock")):
            Path(path).unlink(missing_ok=True)

    def gateway_command(self, env: GatewayEnv) -> list[str]:
        command = [
            self.environ.get("AGENT_GATEWAY_BIN", self.GATEWAY_BINARY),
            "gateway",
            "--port",
            str(self.layout.gateway_port),
            "--allow-unconfigured",
            "--bind",
            env.bind_mode,
        ]
        if env.gateway_token:
            command += ["--token", env.gateway_token]
        return command

    async def _forward_gateway_logs(self) -> None:
        """Forward gateway stdout to supervisor stdout."""
        if not self.gateway_process or not self.gateway_process.stdout:
            return
        try:
            async for line in self.gateway_process.stdout:
                print(f"[gateway] {line.decode(errors='replace').rstrip()}", flush=True)
        except Exception as e:
            self.log.warn("gateway.log_forward_error", exc=e)

    async def _wait_for_health(self) -> None:
        """Poll the gateway port until it answers HTTP."""
        url = f"http://127.0.0.1:{self.layout.gateway_port}/"
        start_time = time.time()

        async with httpx.AsyncClient() as client:
            while time.time() - start_time < self.HEALTH_CHECK_TIMEOUT:
                if self.shutdown_event.is_set():
                    raise RuntimeError("Shutdown requested during startup")
                if self.gateway_process and self.gateway_process.returncode is not None:
                    raise RuntimeError(
                        f"Gateway exited during startup with code {self.gateway_process.returncode}"
                    )
                try:
                    await client.get(url, timeout=2.0)
                    return
                except httpx.ConnectError:
                    pass
                except httpx.HTTPError as e:
                    self.log.debug("gateway.health_check_error", exc=e)
                await asyncio.sleep(0.5)

        raise RuntimeError("Gateway failed to become healthy")

    async def start_gateway(self, env: GatewayEnv) -> int | None:
        """
        Start the gateway and wait for it to answer.

        Returns:
            None once the gateway is ready, or the exit code when it exited
            immediately after start.
        """
        self._transition(BootState.GATEWAY_STARTING)
        self.clean_stale_locks()
        command = self.gateway_command(env)
        self.log.info(
            "gateway.launch",
            port=self.layout.gateway_port,
            bind_mode=env.bind_mode,
            auth="token" if env.gateway_token else "pairing",
            dev_mode=env.dev_mode,
        )

        self.gateway_process = await asyncio.create_subprocess_exec(
            *command,
            cwd=self.layout.workspace_dir if Path(self.layout.workspace_dir).is_dir() else None,
            env=self.environ,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        await asyncio.sleep(self.STARTUP_CHECK_DELAY)
        if self.gateway_process.returncode is not None:
            exit_code = self.gateway_process.returncode
            stdout, _ = await self.gateway_process.communicate()
            if exit_code == 0:
                self.log.warn("gateway.early_exit", exit_code=exit_code)
            else:
                self._transition(BootState.FAILED)
                self.log.error(
                    "gateway.startup_crash",
                    exit_code=exit_code,
                    output=stdout.decode(errors="replace")[-1000:] if stdout else "",
                )
            return exit_code

        asyncio.create_task(self._forward_gateway_logs())
        await self._wait_for_health()
        self._transition(BootState.GATEWAY_RUNNING)
        return None

    async def restore(self) -> GatewayEnv:
        """Run every boot step up to (not including) the gateway start."""
        self.write_boot_timestamp()
        self.quarantine_corrupt_config(phase="pre_restore")
        self.restore_from_store()
        self.quarantine_corrupt_config(phase="post_restore")
        self.initialize_config()
        self.mark_restore_complete()

        await self.restore_git_workspace()

        env = GatewayEnv.from_env(self.environ)
        self.apply_env_overrides(env)
        self.seed_auth_profiles(env)
        return env

    async def run(self) -> int:
        """Boot the container and supervise the gateway. Returns the exit code."""
        startup_start = time.time()
        self.log.info("boot.start", config_dir=str(self.config_dir), store=str(self.store))

        if await self.is_gateway_running():
            self.log.info("boot.skip", reason="gateway_already_running")
            return 0

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self._handle_signal(s)))

        try:
            env = await self.restore()
            exit_code = await self.start_gateway(env)
            if exit_code is not None:
                return exit_code

            self.log.info(
                "gateway.ready",
                port=self.layout.gateway_port,
                duration_ms=int((time.time() - startup_start) * 1000),
                outcome="success",
            )

            process = self.gateway_process
            if process is None:
                raise RuntimeError("Gateway process missing after startup")
            wait_task = asyncio.create_task(process.wait())
            shutdown_task = asyncio.create_task(self.shutdown_event.wait())
            await asyncio.wait({wait_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
            shutdown_task.cancel()

            if wait_task.done():
                exit_code = wait_task.result()
                self.log.info("gateway.exit", exit_code=exit_code)
                return exit_code
            return 0

        except (ValidationError, OSError, RuntimeError) as e:
            self._transition(BootState.FAILED)
            self.log.error(
                "boot.failed",
                exc=e,
                duration_ms=int((time.time() - startup_start) * 1000),
            )
            return 1

        finally:
            await self.shutdown()

    async def _handle_signal(self, sig: signal.Signals) -> None:
        self.log.info("boot.signal", signal_name=sig.name)
        self.shutdown_event.set()

    async def shutdown(self) -> None:
        """Terminate the gateway if it is still running."""
        if self.gateway_process and self.gateway_process.returncode is None:
            self.gateway_process.terminate()
            try:
                await asyncio.wait_for(self.gateway_process.wait(), timeout=10.0)
            except TimeoutError:
                self.gateway_process.kill()
            self.log.info("gateway.stopped")


async def main() -> int:
    """Entry point for the sandbox boot routine."""
    routine = BootRoutine()
    return await routine.run()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
