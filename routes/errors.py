"""Error kinds raised while applying code to a sandbox and syncing projects."""

from typing import Optional


class SandboxSyncError(Exception):
    """Base class for all pipeline errors."""


class SandboxUnavailable(SandboxSyncError):
    """The session is not Running, so it cannot be written to or executed in."""

    def __init__(self, status: str, message: Optional[str] = None):
        self.status = status
        super().__init__(message or f"Sandbox is not running (status: {status})")


class ReconnectFailure(SandboxSyncError):
    """Reconnecting to a known sandbox id failed; it has most likely expired."""

    def __init__(self, sandbox_id: str, cause: Optional[BaseException] = None):
        self.sandbox_id = sandbox_id
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Failed to reconnect to sandbox {sandbox_id}. "
            f"The sandbox may have expired{detail}"
        )


class PerFileWriteError(SandboxSyncError):
    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Failed to write {path}: {message}")


class PerCommandError(SandboxSyncError):
    def __init__(self, command: str, message: str):
        self.command = command
        super().__init__(f"Command '{command}' failed: {message}")


class PackageInstallFailure(SandboxSyncError):
    def __init__(self, packages, output: str = ""):
        self.packages = list(packages)
        self.output = output
        super().__init__(f"Failed to install packages: {', '.join(self.packages)}")


class MalformedPackageName(SandboxSyncError):
    """A package name contained characters outside the allowed class.

    Treated as a possible command injection attempt: the whole batch is
    rejected before anything runs.
    """

    def __init__(self, names, batch=None):
        self.names = list(names)
        self.batch = list(batch) if batch is not None else list(self.names)
        super().__init__(f"Invalid package name: {', '.join(self.names)}")


class PersistenceSyncFailure(SandboxSyncError):
    def __init__(self, project_id: str, message: str, status_code: Optional[int] = None):
        self.project_id = project_id
        self.status_code = status_code
        super().__init__(f"Project {project_id}: {message}")
