"""Exception hierarchy for VMBackup.

Fatal conditions are raised as exceptions. Per-target and rotation problems
are reported as values (see ``TargetOutcome`` and ``RotationResult``) and
never raised out of a batch.
"""

from typing import Iterable


class VMBackupError(RuntimeError):
    """Base exception for all VMBackup failures."""


class ConfigurationError(VMBackupError):
    """Raised when the configuration is invalid; aborts before any side effect."""


class UnknownVMError(ConfigurationError):
    """Raised when an explicit selection names VMs the hypervisor does not know."""

    def __init__(self, names: Iterable[str]):
        self.names = list(names)
        super().__init__(f"Unknown VM name(s) in selection: {', '.join(self.names)}")


class EnvironmentCheckError(VMBackupError):
    """Raised when the host environment is unfit for the run."""


class MissingToolError(EnvironmentCheckError):
    """Raised when a required external command is not installed."""

    def __init__(self, tools: Iterable[str]):
        self.tools = list(tools)
        super().__init__(f"Required command(s) not found: {', '.join(self.tools)}")


class MountCheckError(EnvironmentCheckError):
    """Raised when a path is not an acceptable copy-on-write mount."""

    NOT_A_MOUNT = "NotAMount"
    UNKNOWN_FS_TYPE = "UnknownFsType"
    UNSUPPORTED_FS_TYPE = "UnsupportedFsType"
    NO_REFLINK_SUPPORT = "NoReflinkSupport"

    def __init__(self, path: str, reason: str, detail: str = ""):
        self.path = str(path)
        self.reason = reason
        message = f"Mount check failed for {self.path}: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class UsageExceededError(EnvironmentCheckError):
    """Raised when a filesystem is fuller than the configured ceiling."""

    def __init__(self, path: str, actual_pct: int, max_pct: int):
        self.path = str(path)
        self.actual_pct = actual_pct
        self.max_pct = max_pct
        super().__init__(
            f"Filesystem usage for {self.path} is {actual_pct}%, above the {max_pct}% limit"
        )


class StorageOperationError(VMBackupError):
    """Raised when a clone, copy, compress or archive primitive fails."""
