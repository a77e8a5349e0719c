"""Pipeline coordinator: clean, build, serve, then react to rebuilds.

States:
    IDLE -> CLEANING -> BUILDING -> READY <-> REBUILDING
                            |
                            v
                          FAILED   (initial build only; terminal)

In production mode BUILDING ends in COMPLETE and nothing is watched.

After READY a failed rebuild is reported and the last good output keeps
serving; the pipeline goes straight back to READY with `degraded` set.
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Coroutine
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from devloop.cli.dev.assets import AssetSync
from devloop.cli.dev.compiler import CompilerAdapter
from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.cli.dev.notifier import ReloadNotifier
from devloop.cli.dev.supervisor import ProcessSupervisor
from devloop.errors import (
    CompilationError,
    ConfigurationError,
    DevloopError,
    PipelineFailedError,
    SupervisorError,
)
from devloop.models import (
    AssetSyncReport,
    CompilationResult,
    PipelineConfig,
    PipelineRun,
    PipelineState,
    ProcessState,
    StatusResponse,
    Target,
    TargetName,
    TargetStatus,
)
from devloop.utils import ensure_dir

logger = get_logger(DevLogComponent.PIPELINE)

_SERVING = frozenset({PipelineState.READY, PipelineState.REBUILDING})


def clean_destination(dest_root: Path, project_root: Path) -> None:
    """Remove and recreate the destination root.

    Refuses to touch a destination that is the project itself or one of its
    parents.
    """
    dest = dest_root.resolve()
    project = project_root.resolve()
    if dest == project or dest in project.parents:
        raise ConfigurationError(
            f"Refusing to clean {dest}: it contains the project at {project}"
        )
    if dest.exists():
        shutil.rmtree(dest)
    ensure_dir(dest)


class PipelineCoordinator:
    """Owns the pipeline run and sequences every other component."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        compiler: CompilerAdapter,
        asset_sync: AssetSync,
        supervisor: ProcessSupervisor | None = None,
        notifier: ReloadNotifier | None = None,
    ) -> None:
        self.config: PipelineConfig = config
        self.compiler: CompilerAdapter = compiler
        self.asset_sync: AssetSync = asset_sync
        self.supervisor: ProcessSupervisor | None = supervisor
        self.notifier: ReloadNotifier | None = notifier

        self.state: PipelineState = PipelineState.IDLE
        self.transitions: list[PipelineState] = [PipelineState.IDLE]
        self.run: PipelineRun = PipelineRun(
            required_targets=tuple(t.name for t in config.targets)
        )

        self._ready: asyncio.Event = asyncio.Event()
        self._outcome: BaseException | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._deferred: dict[TargetName, CompilationResult] = {}
        self._restart_in_progress: bool = False

        if supervisor is not None:
            supervisor.add_state_listener(self._on_supervisor_state)

    @classmethod
    def from_config(
        cls, config: PipelineConfig, notifier: ReloadNotifier | None = None
    ) -> PipelineCoordinator:
        """Wire the standard components for `config`."""
        dev = config.dev
        return cls(
            config,
            compiler=CompilerAdapter(config.compiler),
            asset_sync=AssetSync(config.assets),
            supervisor=ProcessSupervisor(config.supervisor) if dev else None,
            notifier=(notifier or ReloadNotifier(config.notifier)) if dev else None,
        )

    # === State ===

    @property
    def is_ready(self) -> bool:
        return self.state in _SERVING

    def _transition(self, new_state: PipelineState) -> None:
        if self.state is new_state:
            return
        logger.debug(f"Pipeline {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.transitions.append(new_state)

    def _settle(self, error: BaseException | None) -> None:
        """Resolve the one-shot ready signal (first call wins)."""
        if self._ready.is_set():
            return
        self._outcome = error
        self._ready.set()

    async def wait_ready(self) -> None:
        """Wait until the initial build has settled; re-raise its failure."""
        await self._ready.wait()
        if self._outcome is not None:
            raise self._outcome

    def status(self) -> StatusResponse:
        return StatusResponse(
            mode=self.config.mode,
            pipeline_state=self.state,
            supervisor_state=self.supervisor.state if self.supervisor else None,
            ready=self.is_ready,
            degraded=self.run.degraded,
            targets=[TargetStatus.from_result(r) for r in self.run.results.values()],
            reload_clients=len(self.notifier.clients) if self.notifier else 0,
            app_url=self.supervisor.url if self.supervisor else None,
        )

    # === Startup ===

    async def start(self) -> None:
        """Run clean and the initial build, then start serving (development).

        Raises:
            ConfigurationError: before any work, for an unusable configuration.
            PipelineFailedError: when the initial build fails.
        """
        if self.state is not PipelineState.IDLE:
            raise DevloopError(f"Pipeline already started ({self.state.value})")
        try:
            await self._start()
        except Exception as e:
            self._settle(e)
            raise
        self._settle(None)

    async def _start(self) -> None:
        for target in self.config.targets:
            self.compiler.validate(target)

        self._transition(PipelineState.CLEANING)
        try:
            await asyncio.to_thread(
                clean_destination, self.config.dest_root, self.config.project_root
            )
        except OSError as e:
            self._transition(PipelineState.FAILED)
            raise PipelineFailedError([f"clean: {e}"]) from e
        self.run.cleaned_at = datetime.now(timezone.utc)
        logger.info(f"Cleaned {self.config.dest_root}")

        failures = await self._build()
        if failures:
            self._transition(PipelineState.FAILED)
            await self._cancel_tasks()
            error = PipelineFailedError(failures)
            logger.error(str(error))
            raise error

        if not self.config.dev:
            self._transition(PipelineState.COMPLETE)
            logger.info(f"Build complete: {self.config.dest_root}")
            return

        await self._start_supervisor()
        if self.notifier is not None:
            self.notifier.arm()
        self.run.ready_at = datetime.now(timezone.utc)
        self._transition(PipelineState.READY)
        logger.info("Pipeline ready, watching for changes")

        # Rebuilds that finished while the server was starting.
        deferred = list(self._deferred.values())
        self._deferred.clear()
        for result in deferred:
            self._on_rebuild(result)

        self._spawn(self._watch_assets(), name="assets-watch")

    async def _build(self) -> list[str]:
        """Compile every target and sync assets concurrently; return failures."""
        self._transition(PipelineState.BUILDING)
        loop = asyncio.get_running_loop()

        firsts: dict[TargetName, asyncio.Future[CompilationResult]] = {}
        for target in self.config.targets:
            first: asyncio.Future[CompilationResult] = loop.create_future()
            firsts[target.name] = first
            self._spawn(self._consume(target, first), name=f"compile-{target.name.value}")
        assets = asyncio.ensure_future(asyncio.to_thread(self.asset_sync.sync))

        outcomes = await asyncio.gather(*firsts.values(), assets, return_exceptions=True)

        failures: list[str] = []
        for name, outcome in zip(firsts, outcomes):
            if isinstance(outcome, BaseException):
                failures.append(f"{name.value}: {outcome}")
            elif not outcome.success:
                failures.append(str(CompilationError(outcome.target, outcome.errors)))

        report = outcomes[-1]
        if isinstance(report, BaseException):
            failures.append(f"assets: {report}")
        elif isinstance(report, AssetSyncReport) and not report.ok:
            logger.warning(
                f"{len(report.failures)} asset(s) could not be copied",
                extra={"target": "assets"},
            )
        return failures

    async def _consume(
        self, target: Target, first: asyncio.Future[CompilationResult]
    ) -> None:
        try:
            stream = self.compiler.compile(target, watch=target.watch)
        except ConfigurationError as e:
            first.set_exception(e)
            return

        try:
            async for result in stream:
                self.run.record(result)
                if not first.done():
                    first.set_result(result)
                elif self.is_ready:
                    self._on_rebuild(result)
                else:
                    self._deferred[result.target] = result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if first.done():
                raise
            first.set_exception(e)
        finally:
            await stream.aclose()

    async def _start_supervisor(self) -> None:
        if self.supervisor is None:
            return
        try:
            await self.supervisor.start()
        except SupervisorError:
            # Already reported by the supervisor; a server rebuild retries it.
            self.run.server_failed = True
            logger.warning(
                "Serving build output without a running server until the next server rebuild"
            )

    # === Rebuilds ===

    def _on_rebuild(self, result: CompilationResult) -> None:
        extra = {"target": result.target.value}
        self._transition(PipelineState.REBUILDING)
        try:
            if not result.success:
                logger.error(
                    f"{result.target.value} rebuild failed; keeping the last good output",
                    extra=extra,
                )
                return
            if result.target is TargetName.server:
                if self.supervisor is not None:
                    try:
                        self.supervisor.restart()
                    except SupervisorError as e:
                        logger.error(f"Cannot restart server: {e}", extra=extra)
            elif self.notifier is not None:
                self.notifier.notify_reload()
        finally:
            self._transition(PipelineState.READY)

    def _on_supervisor_state(self, previous: ProcessState, current: ProcessState) -> None:
        if current is ProcessState.RESTARTING:
            self._restart_in_progress = True
        elif current is ProcessState.RUNNING:
            self.run.server_failed = False
            if self._restart_in_progress:
                self._restart_in_progress = False
                if (
                    self.notifier is not None
                    and self.config.notifier.reload_after_restart
                    and self.is_ready
                ):
                    self.notifier.notify_reload()
        elif current in (ProcessState.FAILED, ProcessState.STOPPED):
            self._restart_in_progress = False
            if current is ProcessState.FAILED:
                self.run.server_failed = True

    async def _watch_assets(self) -> None:
        async for report in self.asset_sync.watch():
            if report.copied and self.notifier is not None:
                self.notifier.notify_reload()

    # === Tasks and shutdown ===

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{task.get_name()} stopped: {error}")

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Cancel watchers and timers, stop the server. Safe to call repeatedly."""
        await self._cancel_tasks()
        if self.supervisor is not None:
            await self.supervisor.stop()
        if self.notifier is not None:
            await self.notifier.close()
        self._settle(DevloopError("Pipeline stopped before it was ready"))
