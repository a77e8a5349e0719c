"""Dev command group for the devloop CLI."""

from devloop.cli.dev.client import DevServerClient
from devloop.models import (
    LogEntry,
    PipelineState,
    ProcessState,
    StatusResponse,
    TargetStatus,
)

__all__ = [
    "DevServerClient",
    "LogEntry",
    "PipelineState",
    "ProcessState",
    "StatusResponse",
    "TargetStatus",
]
