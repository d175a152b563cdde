"""Value types shared by the sandbox supervisor, sync engine and relay."""

from enum import Enum, StrEnum

from pydantic import BaseModel


class ProcessStatus(StrEnum):
    """Status reported for a container process. Not reliable for completion."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessLogs(BaseModel):
    """Accumulated output of a container process."""

    stdout: str = ""
    stderr: str = ""


class SentinelResult(BaseModel):
    """Outcome of polling a process's output for marker strings."""

    found: bool
    matched: str | None = None
    stdout: str = ""
    stderr: str = ""


class SyncError(StrEnum):
    """Short, stable classifications for failed or aborted syncs."""

    NOT_CONFIGURED = "not configured"
    MOUNT_FAILED = "mount failed"
    RESTORE_NOT_COMPLETE = "restore not complete"
    NO_BOOT_TIMESTAMP = "no boot timestamp"
    CONTAINER_TOO_YOUNG = "container too young"
    NO_MEANINGFUL_STATE = "no meaningful state"
    CHECK_FAILED = "check failed"
    SYNC_FAILED = "sync failed"
    SYNC_TIMED_OUT = "sync timed out"
    SYNC_ERROR = "sync error"


class SyncResult(BaseModel):
    """Structured result of a sync attempt."""

    success: bool
    last_sync: str | None = None
    error: SyncError | None = None
    details: str | None = None


class BootState(Enum):
    """Progress of the in-container boot routine."""

    BOOTING = "booting"
    QUARANTINED = "quarantined"
    RESTORED = "restored"
    INITIALIZED = "initialized"
    CONFIG_APPLIED = "config_applied"
    GATEWAY_STARTING = "gateway_starting"
    GATEWAY_RUNNING = "gateway_running"
    FAILED = "failed"


class RelayState(StrEnum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
