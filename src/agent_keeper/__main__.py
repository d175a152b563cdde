"""Command-line entry point: serve the agent-keeper API."""

import argparse

import uvicorn

from .config import Settings
from .log_config import configure_logging, get_logger


def run() -> None:
    parser = argparse.ArgumentParser(description="agent-keeper orchestrator API")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8080, help="Bind port")
    parser.add_argument(
        "--backend",
        choices=["docker", "local"],
        help="Sandbox backend (overrides SANDBOX_BACKEND)",
    )
    parser.add_argument("--container", help="Container name (overrides SANDBOX_CONTAINER)")
    parser.add_argument("--log-level", default=None, help="Log level (overrides LOG_LEVEL)")
    args = parser.parse_args()

    configure_logging(args.log_level)
    log = get_logger("main")

    from .web_api import create_app

    settings = Settings.from_env()
    if args.backend:
        settings.sandbox_backend = args.backend
    if args.container:
        settings.sandbox_container = args.container

    log.info(
        "main.start",
        host=args.host,
        port=args.port,
        backend=settings.sandbox_backend,
        store_configured=settings.store.is_configured,
        sync_interval_s=settings.sync_interval_seconds,
    )
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    run()
