"""Mapping of orchestrator environment to the gateway container's environment."""

from collections.abc import Mapping

# Forwarded unchanged when set.
PASSTHROUGH_VARS = (
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY",
    "TELEGRAM_ALLOW_FROM",
    "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "SLACK_DM_POLICY",
    "SLACK_ALLOW_FROM",
    "SLACK_REQUIRE_MENTION",
    "AGENT_MODEL",
    "AGENT_MODEL_FALLBACKS",
    "AGENT_TRUSTED_PROXIES",
    "AGENT_AUTH_PROFILES",
    "GITHUB_PAT",
    "GITHUB_REPO",
)

# Orchestrator name -> container name.
RENAMED_VARS = {
    "GATEWAY_TOKEN": "AGENT_GATEWAY_TOKEN",
    "DEV_MODE": "AGENT_DEV_MODE",
    "BIND_MODE": "AGENT_BIND_MODE",
}


def build_env_vars(env: Mapping[str, str]) -> dict[str, str]:
    """
    Build the environment passed to the gateway process.

    An AI gateway key takes precedence over direct provider keys and is mapped
    to the OpenAI or Anthropic variable depending on whether the gateway base
    URL ends in ``/openai``. Trailing slashes are stripped from the base URL.
    """
    env_vars: dict[str, str] = {}

    base_url = (env.get("AI_GATEWAY_BASE_URL") or "").rstrip("/")
    is_openai_gateway = base_url.endswith("/openai")

    gateway_key = env.get("AI_GATEWAY_API_KEY")
    if gateway_key:
        if is_openai_gateway:
            env_vars["OPENAI_API_KEY"] = gateway_key
        else:
            env_vars["ANTHROPIC_API_KEY"] = gateway_key

    for name in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
        if name not in env_vars and env.get(name):
            env_vars[name] = env[name]

    if base_url:
        env_vars["AI_GATEWAY_BASE_URL"] = base_url
        if is_openai_gateway:
            env_vars["OPENAI_BASE_URL"] = base_url
        else:
            env_vars["ANTHROPIC_BASE_URL"] = base_url
    elif env.get("ANTHROPIC_BASE_URL"):
        env_vars["ANTHROPIC_BASE_URL"] = env["ANTHROPIC_BASE_URL"]

    for source, target in RENAMED_VARS.items():
        if env.get(source):
            env_vars[target] = env[source]

    for name in PASSTHROUGH_VARS:
        if env.get(name):
            env_vars[name] = env[name]

    return env_vars
