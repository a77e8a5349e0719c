"""HTTP and WebSocket reverse proxy in front of the application server.

Requests are answered in this order:
- 503 while the pipeline has not reached Ready (nothing unbuilt is served)
- a file from the client output directory, if one matches the path
- everything else is proxied to the application server

HTML responses get the reload client script injected before ``</body>``.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from pathlib import Path

import httpx
import websockets
from starlette.requests import Request
from starlette.responses import FileResponse, Response
from starlette.websockets import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect

from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.constants import DEVLOOP_PROXY_HEADER, RELOAD_SCRIPT_PATH

logger = get_logger(DevLogComponent.PROXY)

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

RELOAD_SCRIPT_TAG = f'<script src="{RELOAD_SCRIPT_PATH}"></script>'
_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)


def inject_reload_script(html: str) -> str:
    """Insert the reload script tag before the last ``</body>`` (or append it)."""
    if RELOAD_SCRIPT_TAG in html:
        return html
    matches = list(_BODY_CLOSE.finditer(html))
    if not matches:
        return html + RELOAD_SCRIPT_TAG
    last = matches[-1]
    return html[: last.start()] + RELOAD_SCRIPT_TAG + html[last.start() :]


def _is_html(content_type: str | None) -> bool:
    return bool(content_type) and "text/html" in content_type.lower()


class DevProxy:
    """Serves the client build output and proxies the rest to the app server.

    Attributes:
        app_url: Base URL of the application server (e.g., "http://localhost:5000")
        static_dir: Client output directory served before proxying
        accepting_connections: Flag to control whether new connections are accepted
    """

    def __init__(
        self,
        app_url: str,
        static_dir: Path,
        *,
        is_ready: Callable[[], bool] = lambda: True,
    ) -> None:
        self.app_url: str = app_url.rstrip("/")
        self.static_dir: Path = static_dir
        self.accepting_connections: bool = True
        self._is_ready: Callable[[], bool] = is_ready

        # Track active WebSocket connections for graceful shutdown
        self._active_websockets: set[asyncio.Task[None]] = set()
        self._ws_lock: asyncio.Lock = asyncio.Lock()

        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(60.0, connect=10.0),
                follow_redirects=False,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._http_client

    def _static_file(self, path: str) -> Path | None:
        """Map a URL path to a file in the client output directory, if any."""
        relative = path.lstrip("/") or "index.html"
        root = self.static_dir.resolve()
        candidate = (root / relative).resolve()
        if candidate != root and root not in candidate.parents:
            return None
        if candidate.is_dir():
            candidate = candidate / "index.html"
        return candidate if candidate.is_file() else None

    async def handle(self, request: Request) -> Response:
        """Answer a browser request: static output first, then the app server."""
        if not self.accepting_connections:
            return Response(
                content="Server is shutting down",
                status_code=503,
                media_type="text/plain",
            )
        if not self._is_ready():
            return Response(
                content="Build in progress, the page will be available once it finishes",
                status_code=503,
                media_type="text/plain",
                headers={"retry-after": "1"},
            )

        if request.method in ("GET", "HEAD"):
            static = self._static_file(request.url.path)
            if static is not None:
                return self._serve_static(static)
        return await self.proxy_http(request)

    def _serve_static(self, path: Path) -> Response:
        if path.suffix.lower() in (".html", ".htm"):
            html = path.read_text(encoding="utf-8", errors="replace")
            return Response(
                content=inject_reload_script(html),
                media_type="text/html",
                headers={"cache-control": "no-cache"},
            )
        return FileResponse(path, headers={"cache-control": "no-cache"})

    async def proxy_http(self, request: Request) -> Response:
        """Proxy an HTTP request to the application server."""
        path = request.url.path
        target_url = f"{self.app_url}{path}"
        if request.url.query:
            target_url = f"{target_url}?{request.url.query}"

        headers = {
            k: v
            for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() != "host"
        }
        client_host = request.client.host if request.client else "unknown"
        headers["x-forwarded-for"] = client_host
        headers["x-forwarded-proto"] = request.url.scheme
        headers["x-forwarded-host"] = request.headers.get("host", "")
        headers[DEVLOOP_PROXY_HEADER] = "true"

        try:
            client = await self._get_http_client()
            body = await request.body()
            response = await client.request(
                method=request.method,
                url=target_url,
                headers=headers,
                content=body,
            )
        except httpx.ConnectError as e:
            logger.warning(f"Failed to connect to the application server: {e}")
            return Response(
                content="Failed to connect to the application server",
                status_code=502,
                media_type="text/plain",
            )
        except httpx.TimeoutException:
            return Response(
                content="Request timed out",
                status_code=504,
                media_type="text/plain",
            )
        except Exception as e:
            logger.error(f"Proxy error: {e}")
            return Response(
                content=f"Proxy error: {e}",
                status_code=500,
                media_type="text/plain",
            )

        content_type = response.headers.get("content-type")
        content = response.content
        if _is_html(content_type):
            content = inject_reload_script(response.text).encode("utf-8")

        # httpx has already decoded the body, so length and encoding are recomputed.
        response_headers: dict[str, str] = {}
        for key, value in response.headers.multi_items():
            if key.lower() in HOP_BY_HOP or key.lower() in (
                "content-length",
                "content-encoding",
            ):
                continue
            response_headers[key] = value

        return Response(
            content=content,
            status_code=response.status_code,
            headers=response_headers,
            media_type=content_type,
        )

    async def proxy_websocket(self, websocket: WebSocket) -> None:
        """Proxy an application WebSocket connection to the application server."""
        if not self.accepting_connections or not self._is_ready():
            await websocket.close(code=1013, reason="Server not ready")
            return

        ws_base = self.app_url.replace("http://", "ws://").replace("https://", "wss://")
        target_url = f"{ws_base}{websocket.url.path}"
        if websocket.url.query:
            target_url = f"{target_url}?{websocket.url.query}"

        await websocket.accept()

        target_ws: ClientConnection | None = None
        current_task = asyncio.current_task()
        try:
            target_ws = await ws_connect(target_url)
            active_target_ws = target_ws

            async def forward_to_target() -> None:
                try:
                    while True:
                        data = await websocket.receive()
                        if data["type"] == "websocket.disconnect":
                            break
                        if data.get("text") is not None:
                            await active_target_ws.send(data["text"])
                        elif data.get("bytes") is not None:
                            await active_target_ws.send(data["bytes"])
                except WebSocketDisconnect:
                    pass

            async def forward_to_client() -> None:
                try:
                    async for message in active_target_ws:
                        if isinstance(message, str):
                            await websocket.send_text(message)
                        else:
                            await websocket.send_bytes(message)
                except websockets.exceptions.ConnectionClosed:
                    pass

            if current_task:
                async with self._ws_lock:
                    self._active_websockets.add(current_task)

            forward_task = asyncio.create_task(forward_to_target())
            backward_task = asyncio.create_task(forward_to_client())
            _, pending = await asyncio.wait(
                [forward_task, backward_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"WebSocket proxy error: {e}")
        finally:
            if current_task:
                async with self._ws_lock:
                    self._active_websockets.discard(current_task)
            if target_ws is not None:
                await target_ws.close()
            try:
                await websocket.close()
            except RuntimeError:
                # Already closed by the browser.
                pass

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting requests, close proxied WebSockets and the HTTP client."""
        logger.info("Shutting down proxy...")
        self.accepting_connections = False

        async with self._ws_lock:
            tasks = list(self._active_websockets)

        if tasks:
            logger.info(f"Closing {len(tasks)} active WebSocket connection(s)...")
            for task in tasks:
                task.cancel()
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for WebSocket connections to close")

        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

        logger.info("Proxy shutdown complete")

    @property
    def active_websocket_count(self) -> int:
        """Return the number of active WebSocket connections."""
        return len(self._active_websockets)
