"""Error taxonomy for devloop.

Only ConfigurationError and PipelineFailedError are fatal to a session; the
rest are reported on the log channel and leave the pipeline running.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devloop.models import Diagnostic, TargetName


class DevloopError(Exception):
    """Base class for all devloop errors."""


class ConfigurationError(DevloopError):
    """Bad target, path or command; raised before any work is done."""


class CompilationError(DevloopError):
    """A target failed to compile."""

    def __init__(self, target: TargetName, diagnostics: list[Diagnostic]) -> None:
        self.target: TargetName = target
        self.diagnostics: list[Diagnostic] = diagnostics
        first = diagnostics[0].message if diagnostics else "unknown error"
        super().__init__(f"{target.value} build failed: {first}")


class AssetIOError(DevloopError):
    """A single asset could not be copied."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path: Path = path
        self.reason: str = reason
        super().__init__(f"{path}: {reason}")


class SupervisorError(DevloopError):
    """Base class for process supervisor failures."""


class StartupTimeoutError(SupervisorError):
    """The server process did not signal readiness in time."""


class ProcessCrashError(SupervisorError):
    """The server process exited on its own."""

    def __init__(self, returncode: int | None, message: str | None = None) -> None:
        self.returncode: int | None = returncode
        super().__init__(message or f"Server process exited with code {returncode}")


class SupervisorStateError(SupervisorError):
    """An operation was requested from a state that does not allow it."""


class PortInUseError(SupervisorError):
    """The server port is held by another process."""

    def __init__(self, port: int, pids: list[int] | None = None) -> None:
        self.port: int = port
        self.pids: list[int] = pids or []
        detail = f" (listening PIDs: {self.pids})" if self.pids else ""
        super().__init__(f"Port {port} is still in use{detail}")


class PipelineFailedError(DevloopError):
    """The initial build failed, so the pipeline never became ready."""

    def __init__(self, failures: list[str]) -> None:
        self.failures: list[str] = failures
        super().__init__("Initial build failed: " + "; ".join(failures))
