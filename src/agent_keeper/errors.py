"""Exception types raised across agent-keeper."""


class AgentKeeperError(Exception):
    """Base class for all agent-keeper errors."""

    pass


class ConfigurationError(AgentKeeperError):
    """Raised when required configuration (credentials, secrets) is missing."""

    pass


class MountError(AgentKeeperError):
    """Raised by a sandbox when the durable store cannot be mounted."""

    pass


class SafetyGateAbort(AgentKeeperError):
    """Raised when a pre-sync safety check refuses to let a sync proceed.

    Carries the short classification (``reason``) and a human-readable
    ``details`` string so callers can turn it into a structured result.
    """

    def __init__(self, reason: str, details: str | None = None):
        super().__init__(details or reason)
        self.reason = reason
        self.details = details


class CommandFailure(AgentKeeperError):
    """Raised when a container command exits unsuccessfully."""

    def __init__(self, command: str, exit_code: int | None, output: str = ""):
        super().__init__(f"Command failed (exit {exit_code}): {command}")
        self.command = command
        self.exit_code = exit_code
        self.output = output


class GatewayStartError(AgentKeeperError):
    """Raised when the gateway process could not be brought to a ready state."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class RelayUnavailable(AgentKeeperError):
    """Raised when the relay cannot reach the in-container endpoint.

    ``status`` and ``body`` carry diagnostics from the failed handshake when
    the container answered with a non-upgrade response.
    """

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body

