"""Centralized logging for `devloop dev` (buffering, routing, and CLI formatting).

Every component logs through `get_logger(component)`. Records are appended to a
shared in-memory buffer (served by the dev server) and echoed to the console.
Errors and successes go through the same path; a record may carry a `target`
tag (``extra={"target": "client"}``) so reports can be filtered per target.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Any, ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict
from rich.text import Text
from typing_extensions import override

from devloop.constants import DEVLOOP_MANAGEMENT_PREFIX
from devloop.models import LogChannel, LogEntry
from devloop.utils import console

LogBuffer: TypeAlias = deque[LogEntry]


class DevLogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    PIPELINE = "pipeline"
    COMPILER = "compiler"
    ASSETS = "assets"
    SUPERVISOR = "supervisor"
    APP = "app"
    NOTIFIER = "notifier"
    PROXY = "proxy"
    SERVER = "server"
    PROCESS_CONTROL = "process_control"


_COMPONENT_DEFAULT_CHANNEL: dict[DevLogComponent, LogChannel] = {
    DevLogComponent.APP: LogChannel.APP,
}


class _DevLogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    buffer: LogBuffer | None = None
    echo: bool = True
    configured: bool = False


_STATE = _DevLogState()


def _now_timestamp(created: float | None = None) -> str:
    t = time.localtime(created if created is not None else time.time())
    return time.strftime("%Y-%m-%d %H:%M:%S", t)


def _append_entry(
    *,
    channel: LogChannel,
    component: DevLogComponent,
    level: str,
    content: str,
    created: float | None = None,
    target: str | None = None,
) -> None:
    entry = LogEntry(
        timestamp=_now_timestamp(created),
        level=level,
        channel=channel,
        component=component.value,
        content=content,
        target=target,
    )
    if _STATE.buffer is not None:
        _STATE.buffer.append(entry)
    if _STATE.echo:
        print_log_entry(entry)


class _BufferedLogHandler(logging.Handler):
    buffer_component: DevLogComponent
    buffer_channel: LogChannel

    def __init__(self, *, channel: LogChannel, component: DevLogComponent):
        super().__init__()
        self.buffer_channel = channel
        self.buffer_component = component

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            target = getattr(record, "target", None)
            _append_entry(
                channel=self.buffer_channel,
                component=self.buffer_component,
                level=record.levelname,
                content=self.format(record),
                created=record.created,
                target=str(target) if target is not None else None,
            )
        except Exception:
            self.handleError(record)


class _DevServerAccessLogFilter(logging.Filter):
    """Filter noisy access logs for dev-server internal endpoints."""

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        return DEVLOOP_MANAGEMENT_PREFIX not in record.getMessage()


def configure_dev_logging(
    *, buffer: LogBuffer | None = None, echo: bool = True, level: int = logging.INFO
) -> None:
    """Configure all dev loggers to write into the shared buffer (and the console)."""
    _STATE.buffer = buffer
    _STATE.echo = echo

    for component in DevLogComponent:
        channel = _COMPONENT_DEFAULT_CHANNEL.get(component, LogChannel.DEVLOOP)
        logger = logging.getLogger(f"devloop.dev.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = _BufferedLogHandler(channel=channel, component=component)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    # The dev server runs under uvicorn; its logs belong to the devloop channel.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.setLevel(logging.INFO)
        uv.handlers.clear()
        if name == "uvicorn.access":
            uv.addFilter(_DevServerAccessLogFilter())
        h = _BufferedLogHandler(channel=LogChannel.DEVLOOP, component=DevLogComponent.SERVER)
        h.setFormatter(logging.Formatter("%(message)s"))
        uv.addHandler(h)
        uv.propagate = False

    _STATE.configured = True


def get_logger(component: DevLogComponent) -> logging.Logger:
    """Get a dev logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"devloop.dev.{component.value}")
    if not _STATE.configured:
        # Leave records to propagate (pytest's caplog sees them) but avoid lastResort output.
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
    return logger


_LEVEL_STYLES: dict[str, str] = {
    "ERROR": "red",
    "CRITICAL": "bold red",
    "WARNING": "yellow",
    "DEBUG": "dim",
}


def print_log_entry(
    entry: LogEntry | dict[str, Any],  # pyright: ignore[reportExplicitAny]
    *,
    raw_output: bool = False,
) -> None:
    """Print a single log entry with `[devloop]`/`[app]` prefixes."""
    if isinstance(entry, dict):
        entry = LogEntry.model_validate(entry)

    if raw_output:
        print(entry.content)
        return

    prefix_style = "bright_blue" if entry.channel == LogChannel.DEVLOOP else "yellow"
    label = entry.channel.value if entry.target is None else f"{entry.channel.value}:{entry.target}"

    ts = Text(entry.timestamp, style="dim")
    sep = Text(" | ")
    prefix = Text(f"[{label}]", style=prefix_style)
    content = Text(entry.content, style=_LEVEL_STYLES.get(entry.level, ""))
    console.print(ts + sep + prefix + sep + content)
