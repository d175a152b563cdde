"""
Configuration for the orchestrator and the container layout.

Settings are read once from the environment (``Settings.from_env``); the
container layout is a plain model with defaults matching the agent image.
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

from .log_config import get_logger

log = get_logger("config")


class StoreCredentials(BaseModel):
    """Credentials for the S3-compatible durable store."""

    access_key_id: str | None = None
    secret_access_key: str | None = None
    account_id: str | None = None
    bucket: str = "agent-backup"

    @property
    def is_configured(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.account_id)

    @property
    def endpoint(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


# Name of the environment variable carrying the token to git. The helper reads
# it at push time so the token never appears in a command line or .git/config.
GIT_TOKEN_ENV = "GIT_SYNC_TOKEN"
GIT_CREDENTIAL_HELPER = (
    f'!f() {{ echo username=x-access-token; echo "password=${GIT_TOKEN_ENV}"; }}; f'
)


class GitCredentials(BaseModel):
    """Credentials for the workspace repository backup."""

    token: str | None = None
    repo: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.token and self.repo)

    def remote_url(self) -> str:
        return f"https://github.com/{self.repo}.git"

    def env(self) -> dict[str, str]:
        return {GIT_TOKEN_ENV: self.token or ""}


class ContainerLayout(BaseModel):
    """Paths inside the agent container."""

    config_dir: str = "/root/.agent"
    config_file: str = "agent.json"
    template_file: str = "/root/.agent-templates/agent.json.template"
    workspace_dir: str = "/root/workspace"
    skills_dir: str = "/root/workspace/skills"
    credential_dirs: list[str] = Field(default_factory=lambda: ["/root/.config/gogcli"])
    credential_files: list[str] = Field(default_factory=lambda: ["/root/.ms-graph-tokens.json"])
    mount_path: str = "/data/agent-backup"
    gateway_port: int = 18789

    @property
    def config_path(self) -> str:
        return f"{self.config_dir}/{self.config_file}"

    @property
    def boot_timestamp_path(self) -> str:
        return f"{self.config_dir}/.boot-timestamp"

    @property
    def restore_complete_path(self) -> str:
        return f"{self.config_dir}/.restore-complete"

    @property
    def local_last_sync_path(self) -> str:
        return f"{self.config_dir}/.last-sync"

    @property
    def remote_last_sync_path(self) -> str:
        return f"{self.mount_path}/.last-sync"


def _resolve_int(environ: Mapping[str, str], name: str, default: int, min_value: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warn(
            "config.invalid_value", setting=name, detail=f"invalid value '{raw}', using default"
        )
        return default
    if value < min_value:
        log.warn("config.value_clamped", setting=name, detail=f"below min ({min_value}), clamped")
        return min_value
    return value


class Settings(BaseModel):
    """Orchestrator settings."""

    sandbox_id: str = "main"
    sandbox_backend: str = "docker"
    sandbox_container: str = "agent-sandbox"
    store: StoreCredentials = Field(default_factory=StoreCredentials)
    git: GitCredentials = Field(default_factory=GitCredentials)
    gateway_token: str | None = None
    bridge_secret: str | None = None
    admin_token: str | None = None
    sync_interval_seconds: int = 0
    layout: ContainerLayout = Field(default_factory=ContainerLayout)
    container_env: dict[str, str] = Field(default_factory=dict)

    def secret_values(self) -> list[str]:
        """Every configured secret, for redacting text shown to API callers."""
        values = [
            self.store.access_key_id,
            self.store.secret_access_key,
            self.git.token,
            self.gateway_token,
            self.bridge_secret,
            self.admin_token,
        ]
        return [value for value in values if value]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        from .sandbox.env import build_env_vars

        env = os.environ if environ is None else environ
        return cls(
            sandbox_id=env.get("SANDBOX_ID", "main"),
            sandbox_backend=env.get("SANDBOX_BACKEND", "docker"),
            sandbox_container=env.get("SANDBOX_CONTAINER", "agent-sandbox"),
            store=StoreCredentials(
                access_key_id=env.get("R2_ACCESS_KEY_ID") or None,
                secret_access_key=env.get("R2_SECRET_ACCESS_KEY") or None,
                account_id=env.get("CF_ACCOUNT_ID") or None,
                bucket=env.get("R2_BUCKET_NAME") or "agent-backup",
            ),
            git=GitCredentials(
                token=env.get("GITHUB_PAT") or None,
                repo=env.get("GITHUB_REPO") or None,
            ),
            gateway_token=env.get("GATEWAY_TOKEN") or None,
            bridge_secret=env.get("BRIDGE_SECRET") or None,
            admin_token=env.get("ADMIN_API_TOKEN") or None,
            sync_interval_seconds=_resolve_int(env, "SYNC_INTERVAL_SECONDS", 0, 0),
            container_env=build_env_vars(env),
        )
