"""Dev server: reload channel, management endpoints and the dev proxy.

Routes:
- ``/__devloop__/reload``     WebSocket reload channel (browsers register here)
- ``/__devloop__/client.js``  reload client script injected into HTML pages
- ``/__devloop__/status``     pipeline / supervisor status
- ``/__devloop__/logs``       buffered logs as Server-Sent Events
- everything else             static client output, then the application server
"""

from __future__ import annotations

import asyncio
import datetime
import json
from collections import deque
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated, Literal

import uvicorn
from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.responses import Response, StreamingResponse
from starlette.websockets import WebSocketDisconnect

from devloop.cli.dev.coordinator import PipelineCoordinator
from devloop.cli.dev.logging import DevLogComponent, LogBuffer, get_logger
from devloop.cli.dev.notifier import (
    RELOAD_CLIENT_SCRIPT,
    ReloadNotifier,
    WebSocketReloadClient,
)
from devloop.cli.dev.process_control import find_listeners_for_port, is_port_available
from devloop.cli.dev.proxy import DevProxy
from devloop.constants import (
    DEVLOOP_MANAGEMENT_PREFIX,
    LOG_BUFFER_SIZE,
    RELOAD_CHANNEL_PATH,
    RELOAD_SCRIPT_PATH,
)
from devloop.errors import PortInUseError
from devloop.models import LogEntry, PipelineConfig, StatusResponse
from devloop.utils import console

logger = get_logger(DevLogComponent.SERVER)

_PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _log_matches(
    log: LogEntry,
    channel: str,
    target: str | None,
    cutoff_time: datetime.datetime | None,
) -> bool:
    if channel != "all" and log.channel.value != channel:
        return False
    if target is not None and log.target != target:
        return False
    if cutoff_time is not None:
        try:
            log_time = datetime.datetime.strptime(log.timestamp, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return True
        if log_time < cutoff_time:
            return False
    return True


def create_dev_server(
    coordinator: PipelineCoordinator,
    notifier: ReloadNotifier,
    proxy: DevProxy,
    log_buffer: LogBuffer,
) -> FastAPI:
    """Create the dev server FastAPI app for one pipeline."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
        try:
            yield
        finally:
            await proxy.shutdown()

    app = FastAPI(
        title="devloop dev server",
        description="Reload channel and proxy for a devloop pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.websocket(RELOAD_CHANNEL_PATH)
    async def reload_channel(websocket: WebSocket) -> None:
        """Keep a browser registered for reloads until it disconnects."""
        await websocket.accept()
        client = WebSocketReloadClient(websocket)
        notifier.register(client)
        try:
            while True:
                # Browsers never send anything meaningful; this just waits for close.
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            notifier.unregister(client)

    @app.get(RELOAD_SCRIPT_PATH)
    async def reload_script() -> Response:
        return Response(content=RELOAD_CLIENT_SCRIPT, media_type="application/javascript")

    @app.get(f"{DEVLOOP_MANAGEMENT_PREFIX}/status", response_model=StatusResponse)
    async def get_status() -> StatusResponse:
        """Get the pipeline and server status."""
        return coordinator.status()

    @app.get(f"{DEVLOOP_MANAGEMENT_PREFIX}/logs")
    async def stream_logs(
        duration: Annotated[
            int | None, Query(description="Show logs from last N seconds")
        ] = None,
        channel: Annotated[
            Literal["devloop", "app", "all"], Query(description="Filter by channel")
        ] = "all",
        target: Annotated[
            str | None, Query(description="Filter by target (client, server, assets)")
        ] = None,
        follow: Annotated[
            bool, Query(description="Keep streaming new logs after the buffered ones")
        ] = False,
    ) -> StreamingResponse:
        """Stream logs using Server-Sent Events (SSE)."""
        cutoff_time: datetime.datetime | None = None
        if duration:
            cutoff_time = datetime.datetime.now() - datetime.timedelta(seconds=duration)

        async def event_generator() -> AsyncGenerator[str, None]:
            buffered_logs: list[LogEntry] = list(log_buffer)
            for log in buffered_logs:
                if _log_matches(log, channel, target, cutoff_time):
                    yield f"data: {json.dumps(log.model_dump(mode='json'))}\n\n"

            # Marks the end of buffered logs
            yield "event: buffered_done\ndata: {}\n\n"
            if not follow:
                return

            last_seen = log_buffer[-1] if log_buffer else None
            while True:
                await asyncio.sleep(0.1)
                snapshot = list(log_buffer)
                if not snapshot or snapshot[-1] is last_seen:
                    continue
                # The buffer is bounded, so find the last entry sent rather than an index.
                start = 0
                for index in range(len(snapshot) - 1, -1, -1):
                    if snapshot[index] is last_seen:
                        start = index + 1
                        break
                for log in snapshot[start:]:
                    if _log_matches(log, channel, target, None):
                        yield f"data: {json.dumps(log.model_dump(mode='json'))}\n\n"
                last_seen = snapshot[-1]

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket) -> None:
        await proxy.proxy_websocket(websocket)

    @app.api_route("/{path:path}", methods=_PROXY_METHODS)
    async def proxy_http(request: Request) -> Response:
        return await proxy.handle(request)

    return app


async def run_dev_session(
    config: PipelineConfig, *, log_buffer: LogBuffer | None = None
) -> None:
    """Run the pipeline and the dev server until interrupted.

    Raises whatever the initial pipeline run raises (configuration errors,
    failed initial build); everything is stopped before returning.
    """
    notifier_config = config.notifier
    if not is_port_available(notifier_config.proxy_port, notifier_config.host):
        raise PortInUseError(
            notifier_config.proxy_port, find_listeners_for_port(notifier_config.proxy_port)
        )

    buffer: LogBuffer = log_buffer if log_buffer is not None else deque(maxlen=LOG_BUFFER_SIZE)
    notifier = ReloadNotifier(notifier_config)
    coordinator = PipelineCoordinator.from_config(config, notifier=notifier)
    proxy = DevProxy(
        config.supervisor.url,
        config.client.output_dir,
        is_ready=lambda: coordinator.is_ready,
    )
    app = create_dev_server(coordinator, notifier, proxy, buffer)

    server = uvicorn.Server(
        uvicorn.Config(
            app=app,
            host=notifier_config.host,
            port=notifier_config.proxy_port,
            log_config=None,
            ws="websockets",
        )
    )
    proxy_url = f"http://{notifier_config.host}:{notifier_config.proxy_port}"

    serve_task = asyncio.create_task(server.serve(), name="dev-server")
    start_task = asyncio.create_task(coordinator.start(), name="pipeline-start")
    try:
        done, _ = await asyncio.wait(
            {serve_task, start_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if start_task in done:
            start_task.result()
            console.print(f"[bold green]Ready[/bold green] at [cyan]{proxy_url}[/cyan]")
            await serve_task
    finally:
        server.should_exit = True
        if not start_task.done():
            start_task.cancel()
        await asyncio.gather(start_task, return_exceptions=True)
        await coordinator.stop()
        await asyncio.gather(serve_task, return_exceptions=True)
        logger.info("Dev session stopped")
