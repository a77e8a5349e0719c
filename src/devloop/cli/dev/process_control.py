"""Process-tree signalling and port checks for the supervised server.

Design goals:
- Only signal processes we started (tracked by pid + create_time).
- Signal the whole process group so children of the server go down with it.
- Verify the port is released before anything else is allowed to bind it.
- Work on POSIX + Windows (best-effort graceful on Windows).
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import time
from collections.abc import Callable

import psutil

from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.models import TrackedProcess

logger = get_logger(DevLogComponent.PROCESS_CONTROL)


def _get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def track_process(pid: int) -> TrackedProcess | None:
    """Create a TrackedProcess for a running PID, recording create_time and pgid."""
    try:
        proc = psutil.Process(pid)
        return TrackedProcess(
            pid=pid,
            create_time=float(proc.create_time()),
            pgid=_get_pgid_safe(pid),
        )
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    if tp.pid is None or tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - float(tp.create_time)) > 0.001:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def list_descendants(tp: TrackedProcess) -> list[psutil.Process]:
    proc = validate_tracked(tp)
    if proc is None:
        return []
    try:
        return proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def signal_tree(tp: TrackedProcess, sig: signal.Signals) -> bool:
    """Send `sig` to the tracked process group (or the process itself).

    Returns False when there was nothing left to signal.
    """
    if os.name != "nt" and tp.pgid is not None:
        try:
            os.killpg(tp.pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.debug(f"Cannot signal pgid={tp.pgid}: {e}")

    proc = validate_tracked(tp)
    if proc is None:
        return False
    try:
        if sig == getattr(signal, "SIGKILL", None):
            proc.kill()
        elif os.name == "nt":
            proc.terminate()
        else:
            proc.send_signal(sig)
        return True
    except psutil.NoSuchProcess:
        return False


def graceful_signal() -> signal.Signals:
    return signal.SIGTERM


def kill_signal() -> signal.Signals:
    return getattr(signal, "SIGKILL", signal.SIGTERM)


def kill_leftovers(children: list[psutil.Process], timeout: float = 1.0) -> int:
    """Terminate descendants that outlived the server (best-effort).

    Returns the number of processes that had to be force-killed.
    """
    children = [c for c in children if c.is_running()]
    if not children:
        return 0
    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(children, timeout=timeout)
    for child in alive:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    if alive:
        psutil.wait_procs(alive, timeout=max(0.5, timeout / 2))
        logger.debug(f"Killed {len(alive)} leftover process(es)")
    return len(alive)


# === Ports ===


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether nothing is listening on `port`.

    1. Try connecting (detects listening servers) on IPv4 and IPv6 loopback.
    2. Try binding with SO_REUSEADDR so sockets in TIME_WAIT after a restart
       count as free, matching what servers do when they bind.
    """
    for family, address in ((socket.AF_INET, host), (socket.AF_INET6, "::1")):
        try:
            with socket.socket(family, socket.SOCK_STREAM) as sock:
                sock.settimeout(0.2)
                if sock.connect_ex((address, port)) == 0:
                    return False
        except OSError:
            pass

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("0.0.0.0", port))
    except OSError:
        return False
    return True


def find_listeners_for_port(port: int) -> list[int]:
    """Return PIDs that have a LISTEN socket bound to the port (best-effort)."""
    pids: set[int] = set()
    try:
        for conn in psutil.net_connections(kind="inet"):
            if not conn.laddr or getattr(conn.laddr, "port", None) != port:
                continue
            if conn.status == psutil.CONN_LISTEN and conn.pid:
                pids.add(int(conn.pid))
    except (psutil.AccessDenied, PermissionError):
        # Not allowed to list all sockets (macOS); same-user processes still work.
        for proc in psutil.process_iter(["pid"]):
            try:
                for c in proc.net_connections(kind="inet"):
                    if getattr(c.laddr, "port", None) == port and c.status == psutil.CONN_LISTEN:
                        pids.add(int(proc.pid))
                        break
            except (psutil.NoSuchProcess, psutil.AccessDenied, OSError):
                continue
    return sorted(pids)


async def wait_for_port_free(
    port: int,
    *,
    host: str = "127.0.0.1",
    timeout: float = 5.0,
    poll: float = 0.1,
    is_port_available_fn: Callable[[int, str], bool] = is_port_available,
) -> bool:
    """Wait (without blocking the loop) until nothing listens on `port`."""
    deadline = time.monotonic() + timeout
    while True:
        if await asyncio.to_thread(is_port_available_fn, port, host):
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(poll)
