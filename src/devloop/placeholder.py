"""Placeholder application server: answers ``ok`` on every path.

Run with ``python -m devloop.placeholder``; listens on ``$PORT`` (default 5000)
and prints ``Server started: http://localhost:<port>/`` once it accepts
connections, which is the readiness line the supervisor waits for.
"""

import asyncio
import os

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from devloop.constants import DEFAULT_APP_PORT, ENV_APP_PORT

app = FastAPI(title="devloop placeholder")


@app.api_route(
    "/{path:path}",
    methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    response_class=PlainTextResponse,
)
async def ok(path: str) -> str:
    return "ok"


async def serve(port: int, host: str = "0.0.0.0") -> None:
    server = uvicorn.Server(
        uvicorn.Config(app=app, host=host, port=port, log_level="warning")
    )
    task = asyncio.create_task(server.serve())
    while not server.started and not task.done():
        await asyncio.sleep(0.05)
    if server.started:
        print(f"Server started: http://localhost:{port}/", flush=True)
    await task


def main() -> None:
    port = int(os.environ.get(ENV_APP_PORT, DEFAULT_APP_PORT))
    asyncio.run(serve(port))


if __name__ == "__main__":
    main()
