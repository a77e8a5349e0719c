"""Centralized Pydantic models, enums, and type aliases for devloop."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from devloop.constants import (
    DEFAULT_APP_PORT,
    DEFAULT_BUNDLER_COMMAND,
    DEFAULT_GRACE_PERIOD,
    DEFAULT_HOST,
    DEFAULT_PORT_RELEASE_TIMEOUT,
    DEFAULT_PROXY_PORT,
    DEFAULT_READY_PATTERN,
    DEFAULT_SETTLE_WINDOW,
    DEFAULT_STARTUP_TIMEOUT,
    DEFAULT_STOP_TIMEOUT,
    DEV_BUNDLER_ARGS,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === Enums ===


class Mode(str, Enum):
    """Operating mode, read from the environment."""

    development = "development"
    production = "production"

    @classmethod
    def from_string(cls, value: str | None) -> Mode:
        if not value or value.strip().lower() == cls.development.value:
            return cls.development
        return cls.production


class TargetName(str, Enum):
    """The two bundles a project builds."""

    client = "client"
    server = "server"


class Severity(str, Enum):
    error = "error"
    warning = "warning"
    info = "info"


class ProcessState(str, Enum):
    """Lifecycle of the supervised server process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    FAILED = "failed"


class PipelineState(str, Enum):
    """Lifecycle of the build pipeline."""

    IDLE = "idle"
    CLEANING = "cleaning"
    BUILDING = "building"
    READY = "ready"
    REBUILDING = "rebuilding"
    FAILED = "failed"
    # production mode only: built once, nothing left to watch
    COMPLETE = "complete"


class LogChannel(str, Enum):
    """Logical log channel for dev logging."""

    DEVLOOP = "devloop"
    APP = "app"


ReadinessMode = Literal["log", "http", "grace"]


# === Configuration (immutable, one slice per component) ===


class Target(BaseModel):
    """One bundle to build: where it comes from and where it goes."""

    name: TargetName
    entry: Path
    output_dir: Path
    filename: str
    watch: bool = False
    platform: Literal["browser", "node"] = "browser"
    extra_args: tuple[str, ...] = ()
    watch_paths: tuple[Path, ...] = ()

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def outfile(self) -> Path:
        return self.output_dir / self.filename

    @property
    def source_dirs(self) -> tuple[Path, ...]:
        """Directories watched for changes (defaults to the entry's directory).

        `load_config` sets the whole source root, since a bundle may import
        modules from anywhere under it.
        """
        return self.watch_paths or (self.entry.parent,)


class CompilerConfig(BaseModel):
    """How to invoke the external bundler."""

    command: tuple[str, ...] = DEFAULT_BUNDLER_COMMAND
    dev_args: tuple[str, ...] = DEV_BUNDLER_ARGS
    dev: bool = True
    cwd: Path = Field(default_factory=Path.cwd)
    # watchfiles debounce in milliseconds
    watch_debounce_ms: int = 100

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class AssetConfig(BaseModel):
    """Static assets copied verbatim into the client output directory.

    `pattern` is a glob anchored at the project root (or absolute); files keep
    their path relative to the glob's non-wildcard base.
    """

    pattern: str
    destination: Path

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class SupervisorConfig(BaseModel):
    """Everything the supervisor needs to launch and watch the server."""

    command: tuple[str, ...]
    cwd: Path
    port: int = DEFAULT_APP_PORT
    host: str = DEFAULT_HOST
    env: dict[str, str] = Field(default_factory=dict)
    readiness: ReadinessMode = "log"
    ready_pattern: str = DEFAULT_READY_PATTERN
    probe_path: str = "/"
    grace_period: float = DEFAULT_GRACE_PERIOD
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    port_release_timeout: float = DEFAULT_PORT_RELEASE_TIMEOUT
    settle_window: float = DEFAULT_SETTLE_WINDOW

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class NotifierConfig(BaseModel):
    """Reload channel and dev proxy settings."""

    settle_window: float = DEFAULT_SETTLE_WINDOW
    host: str = DEFAULT_HOST
    proxy_port: int = DEFAULT_PROXY_PORT
    reload_after_restart: bool = True

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class PipelineConfig(BaseModel):
    """Complete configuration for one devloop session.

    Built once by `devloop.config.load_config` and never mutated.
    """

    mode: Mode = Mode.development
    project_root: Path
    source_root: Path
    dest_root: Path
    client: Target
    server: Target
    assets: AssetConfig
    compiler: CompilerConfig
    supervisor: SupervisorConfig
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def dev(self) -> bool:
        return self.mode is Mode.development

    @property
    def targets(self) -> tuple[Target, Target]:
        return (self.client, self.server)


# === Build results ===


class Diagnostic(BaseModel):
    message: str
    severity: Severity = Severity.error

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class CommandResult(BaseModel):
    """Result of running an external command."""

    command: list[str]
    cwd: str
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int


class BuildStats(BaseModel):
    """Opaque build statistics, only ever logged."""

    duration_ms: int = 0
    output_bytes: int = 0
    returncode: int | None = None


class CompilationResult(BaseModel):
    """The outcome of one compilation of one target."""

    target: TargetName
    success: bool
    # False when a successful build reproduced the published output byte for byte
    changed: bool = True
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    stats: BuildStats = Field(default_factory=BuildStats)
    finished_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _failure_has_diagnostic(self) -> CompilationResult:
        if not self.success and not self.diagnostics:
            raise ValueError("a failed compilation must carry at least one diagnostic")
        return self

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity is Severity.error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity is Severity.warning]


class AssetFailure(BaseModel):
    path: Path
    reason: str


class AssetSyncReport(BaseModel):
    """Result of one asset sync pass; failures are per file."""

    copied: int = 0
    unchanged: int = 0
    failures: list[AssetFailure] = Field(default_factory=list)

    @property
    def count(self) -> int:
        """Files present and current in the destination after the pass."""
        return self.copied + self.unchanged

    @property
    def ok(self) -> bool:
        return not self.failures


# === Process tracking ===


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage.

    create_time protects against PID reuse. pgid enables POSIX process-group shutdown
    even if the original PID has already exited.
    """

    pid: int | None = None
    create_time: float | None = None
    pgid: int | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


# === Pipeline run ===


class PipelineRun(BaseModel):
    """State of the one pipeline run that lives as long as the session."""

    started_at: datetime = Field(default_factory=_utcnow)
    required_targets: tuple[TargetName, ...] = (TargetName.client, TargetName.server)
    results: dict[TargetName, CompilationResult] = Field(default_factory=dict)
    succeeded: set[TargetName] = Field(default_factory=set)
    failed_targets: set[TargetName] = Field(default_factory=set)
    server_failed: bool = False
    cleaned_at: datetime | None = None
    ready_at: datetime | None = None

    def record(self, result: CompilationResult) -> None:
        self.results[result.target] = result
        if result.success:
            self.succeeded.add(result.target)
            self.failed_targets.discard(result.target)
        else:
            self.failed_targets.add(result.target)

    @property
    def ready(self) -> bool:
        """True once every required target has produced at least one success."""
        return all(t in self.succeeded for t in self.required_targets)

    @property
    def degraded(self) -> bool:
        """Serving last-known-good output because something later failed."""
        return self.ready_at is not None and (
            bool(self.failed_targets) or self.server_failed
        )


# === Log Models ===


class LogEntry(BaseModel):
    """Strongly typed log entry model for streaming logs."""

    timestamp: str
    level: str
    channel: LogChannel
    component: str
    content: str
    target: str | None = None


# === API Response Models ===


class TargetStatus(BaseModel):
    name: TargetName
    success: bool
    errors: int
    warnings: int
    finished_at: datetime

    @classmethod
    def from_result(cls, result: CompilationResult) -> TargetStatus:
        return cls(
            name=result.target,
            success=result.success,
            errors=len(result.errors),
            warnings=len(result.warnings),
            finished_at=result.finished_at,
        )


class StatusResponse(BaseModel):
    """Response model for the dev server status endpoint."""

    mode: Mode
    pipeline_state: PipelineState
    supervisor_state: ProcessState | None = None
    ready: bool
    degraded: bool
    targets: list[TargetStatus] = Field(default_factory=list)
    reload_clients: int = 0
    app_url: str | None = None
