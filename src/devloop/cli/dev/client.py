"""HTTP client for the dev server management endpoints."""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Literal

import httpx
from pydantic import ValidationError

from devloop.constants import DEFAULT_HOST, DEVLOOP_MANAGEMENT_PREFIX
from devloop.models import LogEntry, StatusResponse


class DevServerClient:
    """Client for a running `devloop dev start` session.

    All management endpoints are under the /__devloop__/ prefix of the dev proxy.
    """

    def __init__(
        self, base_url: str | None = None, port: int | None = None, timeout: float = 5.0
    ):
        """Initialize the dev server client.

        Args:
            base_url: Full base URL (e.g., "http://localhost:3000"). If provided, port is ignored.
            port: Port number for a localhost connection. Used if base_url is None.
            timeout: Default timeout for requests in seconds
        """
        if base_url:
            self.base_url: str = base_url.rstrip("/")
        elif port:
            self.base_url = f"http://{DEFAULT_HOST}:{port}"
        else:
            raise ValueError("Either base_url or port must be provided")

        self.timeout: float = timeout

    def _management_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{DEVLOOP_MANAGEMENT_PREFIX}{path}"

    def status(self) -> StatusResponse:
        """Get the pipeline status.

        Raises:
            httpx.HTTPError: If the request fails
        """
        with httpx.Client(timeout=self.timeout) as client:
            response = client.get(self._management_url("/status"))
            response.raise_for_status()
            return StatusResponse.model_validate(response.json())

    def is_running(self) -> bool:
        """Check if the dev server is running and responding."""
        try:
            self.status()
        except httpx.HTTPError:
            return False
        return True

    @contextmanager
    def stream_logs(
        self,
        *,
        duration: int | None = None,
        channel: Literal["devloop", "app", "all"] = "all",
        target: str | None = None,
        follow: bool = False,
    ) -> Iterator[Iterator[LogEntry]]:
        """Stream logs from the dev server using Server-Sent Events.

        Without `follow` the stream ends after the buffered logs. The connection
        is closed when the context exits.

        Example:
            >>> client = DevServerClient(port=3000)
            >>> with client.stream_logs(target="server") as entries:
            ...     for entry in entries:
            ...         print(entry.content)
        """
        params: dict[str, str] = {"channel": channel}
        if duration is not None:
            params["duration"] = str(duration)
        if target:
            params["target"] = target
        if follow:
            params["follow"] = "true"

        with httpx.Client(timeout=None if follow else self.timeout) as client:
            with client.stream(
                "GET", self._management_url("/logs"), params=params
            ) as response:
                response.raise_for_status()
                yield _parse_events(response.iter_lines())


def _parse_events(lines: Iterator[str]) -> Iterator[LogEntry]:
    """Turn SSE lines into log entries, skipping the buffered_done marker."""
    skip_next_data = False
    for line in lines:
        if not line:
            continue
        if line.startswith("event: buffered_done"):
            skip_next_data = True
            continue
        if line.startswith("data: "):
            if skip_next_data:
                skip_next_data = False
                continue
            try:
                yield LogEntry.model_validate(json.loads(line[6:]))
            except (ValidationError, json.JSONDecodeError):
                continue
