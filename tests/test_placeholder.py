import socket
import sys

import pytest
from fastapi.testclient import TestClient

from devloop.cli.dev.supervisor import ProcessSupervisor
from devloop.models import ProcessState, SupervisorConfig
from devloop.placeholder import app


@pytest.mark.parametrize("method", ["GET", "POST", "DELETE"])
@pytest.mark.parametrize("path", ["/", "/anything/at/all", "/api/items?id=1"])
def test_answers_ok_on_any_path(method: str, path: str) -> None:
    with TestClient(app) as client:
        response = client.request(method, path)
    assert response.status_code == 200
    assert response.text == "ok"


@pytest.mark.asyncio
async def test_supervised_placeholder_becomes_ready(tmp_path) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    supervisor = ProcessSupervisor(
        SupervisorConfig(
            command=(sys.executable, "-m", "devloop.placeholder"),
            cwd=tmp_path,
            port=port,
            host="127.0.0.1",
            startup_timeout=15.0,
        )
    )
    try:
        await supervisor.start()
        assert supervisor.state is ProcessState.RUNNING
    finally:
        await supervisor.stop()
