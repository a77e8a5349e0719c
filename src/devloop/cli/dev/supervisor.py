"""Process supervisor for the application server.

Lifecycle:
    STOPPED -> STARTING -> RUNNING -> RESTARTING -> STARTING -> RUNNING ...
                   |          |
                   v          v
                 FAILED     FAILED  (crash; waits for the next restart request)

Guarantees:
- At most one server process is alive at any time.
- The old process has exited and the port is released before a new one starts.
- A burst of restart requests is coalesced into a single restart that uses
  the configuration from the last request.
- A crash is reported, never auto-restarted.
"""

from __future__ import annotations

import asyncio
import os
import re
import subprocess
from collections.abc import Callable

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from devloop.cli.dev.debounce import TrailingDebouncer
from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.cli.dev.process_control import (
    find_listeners_for_port,
    graceful_signal,
    kill_leftovers,
    kill_signal,
    list_descendants,
    signal_tree,
    track_process,
    wait_for_port_free,
)
from devloop.errors import (
    PortInUseError,
    ProcessCrashError,
    StartupTimeoutError,
    SupervisorError,
    SupervisorStateError,
)
from devloop.models import ProcessState, SupervisorConfig, TrackedProcess
from devloop.utils import pump_lines

logger = get_logger(DevLogComponent.SUPERVISOR)
app_logger = get_logger(DevLogComponent.APP)

StateListener = Callable[[ProcessState, ProcessState], None]

_RESTARTABLE = frozenset(
    {
        ProcessState.RUNNING,
        ProcessState.FAILED,
        ProcessState.STARTING,
        ProcessState.RESTARTING,
    }
)


class ProcessSupervisor:
    """Runs exactly one instance of the server and restarts it on request."""

    def __init__(self, config: SupervisorConfig) -> None:
        self.config: SupervisorConfig = config
        self.state: ProcessState = ProcessState.STOPPED
        self.process: asyncio.subprocess.Process | None = None
        self.tracked: TrackedProcess | None = None
        self.last_error: SupervisorError | None = None
        self.start_count: int = 0
        self.restart_count: int = 0

        self._listeners: list[StateListener] = []
        self._pending_config: SupervisorConfig | None = None
        self._debouncer: TrailingDebouncer = TrailingDebouncer(
            config.settle_window, self._on_restart_settled, name="restart"
        )
        self._cycle_task: asyncio.Task[None] | None = None
        self._trailing: bool = False
        self._reader_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._expected_exit: bool = False
        self._lock: asyncio.Lock = asyncio.Lock()

    # === State ===

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def url(self) -> str:
        return self.config.url

    def add_state_listener(self, listener: StateListener) -> None:
        """Call `listener(previous, current)` on every state change."""
        self._listeners.append(listener)

    def _transition(self, new_state: ProcessState) -> None:
        previous = self.state
        if previous is new_state:
            return
        self.state = new_state
        logger.debug(f"Server state {previous.value} -> {new_state.value}")
        for listener in list(self._listeners):
            try:
                listener(previous, new_state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    def _fail(self, error: SupervisorError) -> None:
        self.last_error = error
        logger.error(str(error))
        self._transition(ProcessState.FAILED)

    # === Public API ===

    async def start(self) -> None:
        """Launch the server and wait until it is ready.

        Raises:
            SupervisorStateError: if a process is already managed.
            PortInUseError: if something else holds the port.
            StartupTimeoutError: if readiness is not signalled in time.
            ProcessCrashError: if the process exits during startup.
        """
        if self.state is not ProcessState.STOPPED:
            raise SupervisorStateError(
                f"Cannot start the server while it is {self.state.value}"
            )
        async with self._lock:
            await self._launch()

    def restart(self, config: SupervisorConfig | None = None) -> None:
        """Request a restart, optionally with a new configuration.

        Requests inside the settle window collapse into one restart; the
        configuration from the last request that carried one wins.
        """
        if self.state not in _RESTARTABLE:
            raise SupervisorStateError(
                f"Cannot restart the server while it is {self.state.value}"
            )
        if config is not None:
            self._pending_config = config
        self._debouncer.trigger()

    async def stop(self) -> None:
        """Stop the server (and any pending restart). Safe to call repeatedly."""
        await self._debouncer.aclose()
        if self._cycle_task is not None and not self._cycle_task.done():
            self._cycle_task.cancel()
            try:
                await self._cycle_task
            except asyncio.CancelledError:
                pass
        self._cycle_task = None
        async with self._lock:
            try:
                await self._terminate()
            except PortInUseError as e:
                logger.warning(str(e))
            self._transition(ProcessState.STOPPED)

    async def wait_idle(self) -> None:
        """Wait until no restart is pending or in progress."""
        await self._debouncer.drain()

    # === Restart cycle ===

    async def _on_restart_settled(self) -> None:
        if self._cycle_task is not None and not self._cycle_task.done():
            # Picked up by the running cycle once it finishes.
            self._trailing = True
            return
        self._cycle_task = asyncio.create_task(self._restart_cycle(), name="restart-cycle")
        await self._cycle_task

    async def _restart_cycle(self) -> None:
        while True:
            self._trailing = False
            if self._pending_config is not None:
                self.config = self._pending_config
                self._pending_config = None

            async with self._lock:
                if self.state is ProcessState.STOPPED:
                    return
                self._transition(ProcessState.RESTARTING)
                logger.info("Restarting server")
                try:
                    await self._terminate()
                    await self._launch()
                    self.restart_count += 1
                except SupervisorError as e:
                    if self.state is not ProcessState.FAILED:
                        self._fail(e)

            if not self._trailing:
                return

    # === Launch ===

    async def _launch(self) -> None:
        config = self.config
        self._transition(ProcessState.STARTING)

        if not await wait_for_port_free(
            config.port, host=config.host, timeout=config.port_release_timeout
        ):
            pids = await asyncio.to_thread(find_listeners_for_port, config.port)
            error = PortInUseError(config.port, pids)
            self._fail(error)
            raise error

        env = {**os.environ, **config.env, "PORT": str(config.port)}
        kwargs: dict[str, object] = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *config.command,
                cwd=config.cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **kwargs,
            )
        except OSError as e:
            error = ProcessCrashError(None, f"Failed to launch {config.command[0]}: {e}")
            self._fail(error)
            raise error from e

        self.process = process
        self.tracked = track_process(process.pid)
        self.start_count += 1
        self._expected_exit = False
        logger.info(f"Started server (pid {process.pid}): {' '.join(config.command)}")

        ready = asyncio.Event()
        pattern = re.compile(config.ready_pattern) if config.readiness == "log" else None

        def on_line(line: str) -> None:
            app_logger.info(line)
            if pattern is not None and pattern.search(line):
                ready.set()

        assert process.stdout is not None
        self._reader_task = asyncio.create_task(
            pump_lines(process.stdout, on_line), name="server-output"
        )

        try:
            await self._wait_ready(process, ready)
        except SupervisorError as error:
            await self._terminate(check_port=False)
            self._fail(error)
            raise

        self._exit_task = asyncio.create_task(
            self._watch_exit(process), name="server-exit-watch"
        )
        self._transition(ProcessState.RUNNING)
        logger.info(f"Server ready at {config.url}")

    async def _wait_ready(
        self, process: asyncio.subprocess.Process, ready: asyncio.Event
    ) -> None:
        config = self.config
        if config.readiness == "log":
            signal_task = asyncio.create_task(ready.wait())
        elif config.readiness == "http":
            signal_task = asyncio.create_task(self._probe_http())
        else:
            signal_task = asyncio.create_task(asyncio.sleep(config.grace_period))
        exit_task = asyncio.create_task(process.wait())

        try:
            done, _ = await asyncio.wait(
                {signal_task, exit_task},
                timeout=config.startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (signal_task, exit_task):
                task.cancel()
            await asyncio.gather(signal_task, exit_task, return_exceptions=True)

        if exit_task in done:
            raise ProcessCrashError(
                process.returncode,
                f"Server exited with code {process.returncode} before it was ready",
            )
        if signal_task in done and signal_task.exception() is None:
            return
        raise StartupTimeoutError(
            f"Server did not become ready within {config.startup_timeout:g}s"
        )

    async def _probe_http(self) -> None:
        """Poll the server URL until it answers with any HTTP response."""
        config = self.config
        url = f"{config.url}{config.probe_path}"
        async with httpx.AsyncClient(timeout=1.0) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(config.startup_timeout),
                wait=wait_fixed(0.1),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    await client.get(url)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._expected_exit or process is not self.process:
            return
        self._fail(ProcessCrashError(returncode))
        logger.warning("Waiting for a rebuild before starting the server again")

    # === Termination ===

    async def _terminate(self, *, check_port: bool = True) -> None:
        """Stop the current process tree and wait for the port to be released."""
        process, tracked = self.process, self.tracked
        if process is None:
            return
        self._expected_exit = True
        config = self.config

        if process.returncode is None:
            children = (
                await asyncio.to_thread(list_descendants, tracked) if tracked else []
            )
            if tracked is None or not signal_tree(tracked, graceful_signal()):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=config.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Server (pid {process.pid}) ignored SIGTERM for "
                    f"{config.stop_timeout:g}s, killing"
                )
                if tracked is None or not signal_tree(tracked, kill_signal()):
                    process.kill()
                await process.wait()
            if children:
                await asyncio.to_thread(kill_leftovers, children)
        logger.debug(f"Server (pid {process.pid}) exited with code {process.returncode}")

        if tracked is not None and tracked.pgid is not None:
            # Anything left in the group outlived its parent.
            signal_tree(tracked, kill_signal())

        for task in (self._reader_task, self._exit_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._exit_task = None
        self.process = None
        self.tracked = None

        if check_port and not await wait_for_port_free(
            config.port, host=config.host, timeout=config.port_release_timeout
        ):
            pids = await asyncio.to_thread(find_listeners_for_port, config.port)
            raise PortInUseError(config.port, pids)
