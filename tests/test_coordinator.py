"""Tests for the pipeline coordinator, with every collaborator faked."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from devloop.cli.dev.coordinator import PipelineCoordinator, clean_destination
from devloop.errors import (
    ConfigurationError,
    DevloopError,
    PipelineFailedError,
    ProcessCrashError,
)
from devloop.models import (
    AssetConfig,
    AssetFailure,
    AssetSyncReport,
    CompilationResult,
    CompilerConfig,
    Diagnostic,
    Mode,
    NotifierConfig,
    PipelineConfig,
    PipelineState,
    ProcessState,
    SupervisorConfig,
    Target,
    TargetName,
)

CLIENT, SERVER = TargetName.client, TargetName.server


class FakeCompiler:
    """Yields one result per `emit()` and writes the outfile on success."""

    def __init__(self) -> None:
        self.queues: dict[TargetName, asyncio.Queue[bool]] = {
            CLIENT: asyncio.Queue(),
            SERVER: asyncio.Queue(),
        }
        self.invalid: set[TargetName] = set()
        self.written_at: dict[TargetName, datetime] = {}

    def emit(self, name: TargetName, success: bool = True) -> None:
        self.queues[name].put_nowait(success)

    def validate(self, target: Target) -> None:
        if target.name in self.invalid:
            raise ConfigurationError(f"Entry point for {target.name.value} does not exist")

    def compile(self, target: Target, watch: bool) -> AsyncIterator[CompilationResult]:
        self.validate(target)
        return self._stream(target, watch)

    async def _stream(self, target: Target, watch: bool) -> AsyncIterator[CompilationResult]:
        while True:
            success = await self.queues[target.name].get()
            if success:
                target.output_dir.mkdir(parents=True, exist_ok=True)
                target.outfile.write_text(f"// {target.name.value}")
                self.written_at[target.name] = datetime.now(timezone.utc)
                yield CompilationResult(target=target.name, success=True)
            else:
                yield CompilationResult(
                    target=target.name,
                    success=False,
                    diagnostics=[Diagnostic(message="Unexpected token")],
                )
            if not watch:
                return


class FakeAssetSync:
    def __init__(self, report: AssetSyncReport | None = None) -> None:
        self.report: AssetSyncReport = report or AssetSyncReport(copied=1)
        self.changes: asyncio.Queue[AssetSyncReport] = asyncio.Queue()
        self.syncs: int = 0

    def sync(self) -> AssetSyncReport:
        self.syncs += 1
        return self.report

    async def watch(self) -> AsyncIterator[AssetSyncReport]:
        while True:
            yield await self.changes.get()


class FakeSupervisor:
    def __init__(self, fail_start: bool = False) -> None:
        self.state: ProcessState = ProcessState.STOPPED
        self.url: str = "http://localhost:5000"
        self.fail_start: bool = fail_start
        self.starts: int = 0
        self.restarts: int = 0
        self.stopped: bool = False
        self._listeners: list[Callable[[ProcessState, ProcessState], None]] = []

    def add_state_listener(self, listener: Callable[[ProcessState, ProcessState], None]) -> None:
        self._listeners.append(listener)

    def set_state(self, state: ProcessState) -> None:
        previous, self.state = self.state, state
        for listener in self._listeners:
            listener(previous, state)

    async def start(self) -> None:
        self.starts += 1
        self.set_state(ProcessState.STARTING)
        if self.fail_start:
            self.set_state(ProcessState.FAILED)
            raise ProcessCrashError(1)
        self.set_state(ProcessState.RUNNING)

    def restart(self, config: SupervisorConfig | None = None) -> None:
        self.restarts += 1

    async def stop(self) -> None:
        self.stopped = True
        self.set_state(ProcessState.STOPPED)


class FakeNotifier:
    def __init__(self) -> None:
        self.reloads: int = 0
        self.armed: bool = False
        self.closed: bool = False
        self.clients: frozenset[object] = frozenset()

    def arm(self) -> None:
        self.armed = True

    def notify_reload(self, after_ms: int | None = None) -> None:
        if self.armed:
            self.reloads += 1

    async def close(self) -> None:
        self.closed = True
        self.armed = False


def make_config(
    root: Path, mode: Mode = Mode.development, reload_after_restart: bool = True
) -> PipelineConfig:
    src, dest = root / "src", root / "dist"
    dev = mode is Mode.development
    return PipelineConfig(
        mode=mode,
        project_root=root,
        source_root=src,
        dest_root=dest,
        client=Target(
            name=CLIENT,
            entry=src / "client" / "index.js",
            output_dir=dest / "public",
            filename="bundle.js",
            watch=dev,
        ),
        server=Target(
            name=SERVER,
            entry=src / "server" / "index.js",
            output_dir=dest,
            filename="server.js",
            platform="node",
            watch=dev,
        ),
        assets=AssetConfig(pattern=f"{src}/assets/**", destination=dest / "public"),
        compiler=CompilerConfig(dev=dev),
        supervisor=SupervisorConfig(command=("node", str(dest / "server.js")), cwd=root),
        notifier=NotifierConfig(reload_after_restart=reload_after_restart),
    )


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Harness:
    def __init__(self, root: Path, **config_kwargs: object) -> None:
        self.config: PipelineConfig = make_config(root, **config_kwargs)  # type: ignore[arg-type]
        self.compiler: FakeCompiler = FakeCompiler()
        self.assets: FakeAssetSync = FakeAssetSync()
        self.supervisor: FakeSupervisor = FakeSupervisor()
        self.notifier: FakeNotifier = FakeNotifier()

    def build(self) -> PipelineCoordinator:
        dev = self.config.dev
        return PipelineCoordinator(
            self.config,
            compiler=self.compiler,  # type: ignore[arg-type]
            asset_sync=self.assets,  # type: ignore[arg-type]
            supervisor=self.supervisor if dev else None,  # type: ignore[arg-type]
            notifier=self.notifier if dev else None,  # type: ignore[arg-type]
        )


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


class TestStartup:
    @pytest.mark.asyncio
    async def test_valid_project_becomes_ready(self, harness: Harness) -> None:
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()
        try:
            await coordinator.start()
            await coordinator.wait_ready()

            assert coordinator.transitions == [
                PipelineState.IDLE,
                PipelineState.CLEANING,
                PipelineState.BUILDING,
                PipelineState.READY,
            ]
            assert coordinator.is_ready
            assert harness.supervisor.starts == 1
            assert harness.notifier.armed
            assert harness.notifier.reloads == 0
            assert harness.assets.syncs == 1
            assert harness.config.client.outfile.is_file()
            assert harness.config.server.outfile.is_file()
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_initial_server_failure_fails_pipeline(self, harness: Harness) -> None:
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER, success=False)
        coordinator = harness.build()

        with pytest.raises(PipelineFailedError, match="Unexpected token"):
            await coordinator.start()

        assert coordinator.state is PipelineState.FAILED
        assert coordinator.transitions[-1] is PipelineState.FAILED
        assert harness.supervisor.starts == 0
        assert not coordinator._tasks
        with pytest.raises(PipelineFailedError):
            await coordinator.wait_ready()

    @pytest.mark.asyncio
    async def test_configuration_error_before_any_work(self, harness: Harness) -> None:
        stale = harness.config.dest_root / "stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")
        harness.compiler.invalid.add(SERVER)
        coordinator = harness.build()

        with pytest.raises(ConfigurationError):
            await coordinator.start()

        assert coordinator.state is PipelineState.IDLE
        assert coordinator.transitions == [PipelineState.IDLE]
        assert stale.exists()
        assert harness.assets.syncs == 0

    @pytest.mark.asyncio
    async def test_clean_runs_before_any_write(self, harness: Harness) -> None:
        stale = harness.config.dest_root / "old" / "stale.js"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()
        try:
            await coordinator.start()
            cleaned_at = coordinator.run.cleaned_at
            assert cleaned_at is not None
            assert not stale.exists()
            assert all(t >= cleaned_at for t in harness.compiler.written_at.values())
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_asset_failures_are_not_fatal(self, harness: Harness) -> None:
        harness.assets.report = AssetSyncReport(
            copied=1, failures=[AssetFailure(path=Path("logo.png"), reason="Permission denied")]
        )
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()
        try:
            await coordinator.start()
            assert coordinator.state is PipelineState.READY
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_supervisor_start_failure_leaves_pipeline_degraded(
        self, harness: Harness
    ) -> None:
        harness.supervisor.fail_start = True
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()
        try:
            await coordinator.start()
            assert coordinator.state is PipelineState.READY
            assert coordinator.status().degraded

            # The next server rebuild retries the server.
            harness.compiler.emit(SERVER)
            await eventually(lambda: harness.supervisor.restarts == 1)
            harness.supervisor.set_state(ProcessState.RESTARTING)
            harness.supervisor.set_state(ProcessState.STARTING)
            harness.supervisor.set_state(ProcessState.RUNNING)
            assert not coordinator.status().degraded
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_results_before_ready_are_replayed(self, harness: Harness) -> None:
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()
        try:
            await coordinator.start()
            assert harness.notifier.reloads == 1
            assert coordinator.transitions[-3:] == [
                PipelineState.READY,
                PipelineState.REBUILDING,
                PipelineState.READY,
            ]
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, harness: Harness) -> None:
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()
        try:
            await coordinator.start()
            with pytest.raises(DevloopError, match="already started"):
                await coordinator.start()
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_production_build_completes(self, tmp_path: Path) -> None:
        harness = Harness(tmp_path, mode=Mode.production)
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()

        await coordinator.start()

        assert coordinator.transitions == [
            PipelineState.IDLE,
            PipelineState.CLEANING,
            PipelineState.BUILDING,
            PipelineState.COMPLETE,
        ]
        assert not coordinator.is_ready
        assert harness.supervisor.starts == 0
        await coordinator.stop()


class TestRebuilds:
    @pytest_asyncio.fixture
    async def ready(self, harness: Harness) -> AsyncIterator[PipelineCoordinator]:
        harness.compiler.emit(CLIENT)
        harness.compiler.emit(SERVER)
        coordinator = harness.build()
        await coordinator.start()
        yield coordinator
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_client_change_reloads_browser(
        self, harness: Harness, ready: PipelineCoordinator
    ) -> None:
        harness.compiler.emit(CLIENT)
        await eventually(lambda: harness.notifier.reloads == 1)
        assert harness.supervisor.restarts == 0
        assert ready.state is PipelineState.READY
        assert ready.transitions[-2:] == [PipelineState.REBUILDING, PipelineState.READY]

    @pytest.mark.asyncio
    async def test_server_change_restarts_then_reloads(
        self, harness: Harness, ready: PipelineCoordinator
    ) -> None:
        harness.compiler.emit(SERVER)
        await eventually(lambda: harness.supervisor.restarts == 1)
        assert harness.notifier.reloads == 0

        harness.supervisor.set_state(ProcessState.RESTARTING)
        harness.supervisor.set_state(ProcessState.STARTING)
        assert harness.notifier.reloads == 0
        harness.supervisor.set_state(ProcessState.RUNNING)
        assert harness.notifier.reloads == 1

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_serving(
        self, harness: Harness, ready: PipelineCoordinator
    ) -> None:
        harness.compiler.emit(CLIENT, success=False)
        await eventually(lambda: CLIENT in ready.run.failed_targets)
        assert ready.state is PipelineState.READY
        assert ready.status().degraded
        assert harness.notifier.reloads == 0
        assert harness.config.client.outfile.read_text() == "// client"

        harness.compiler.emit(CLIENT)
        await eventually(lambda: harness.notifier.reloads == 1)
        assert not ready.status().degraded

    @pytest.mark.asyncio
    async def test_failed_server_rebuild_does_not_restart(
        self, harness: Harness, ready: PipelineCoordinator
    ) -> None:
        harness.compiler.emit(SERVER, success=False)
        await eventually(lambda: SERVER in ready.run.failed_targets)
        assert harness.supervisor.restarts == 0

    @pytest.mark.asyncio
    async def test_asset_change_reloads_browser(
        self, harness: Harness, ready: PipelineCoordinator
    ) -> None:
        harness.assets.changes.put_nowait(AssetSyncReport(unchanged=3))
        harness.assets.changes.put_nowait(AssetSyncReport(copied=1, unchanged=2))
        await eventually(lambda: harness.notifier.reloads == 1)
        await asyncio.sleep(0.05)
        assert harness.notifier.reloads == 1

    @pytest.mark.asyncio
    async def test_status(self, harness: Harness, ready: PipelineCoordinator) -> None:
        status = ready.status()
        assert status.mode is Mode.development
        assert status.pipeline_state is PipelineState.READY
        assert status.supervisor_state is ProcessState.RUNNING
        assert status.ready
        assert not status.degraded
        assert status.app_url == "http://localhost:5000"
        assert sorted(t.name.value for t in status.targets) == ["client", "server"]


@pytest.mark.asyncio
async def test_reload_after_restart_can_be_disabled(tmp_path: Path) -> None:
    harness = Harness(tmp_path, reload_after_restart=False)
    harness.compiler.emit(CLIENT)
    harness.compiler.emit(SERVER)
    coordinator = harness.build()
    try:
        await coordinator.start()
        harness.supervisor.set_state(ProcessState.RESTARTING)
        harness.supervisor.set_state(ProcessState.RUNNING)
        assert harness.notifier.reloads == 0
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_stop_shuts_everything_down(harness: Harness) -> None:
    harness.compiler.emit(CLIENT)
    harness.compiler.emit(SERVER)
    coordinator = harness.build()
    await coordinator.start()

    await coordinator.stop()
    await coordinator.stop()

    assert harness.supervisor.stopped
    assert harness.notifier.closed
    assert not coordinator._tasks


@pytest.mark.asyncio
async def test_stop_before_ready_releases_waiters(harness: Harness) -> None:
    coordinator = harness.build()
    await coordinator.stop()
    with pytest.raises(DevloopError, match="stopped before it was ready"):
        await coordinator.wait_ready()


class TestCleanDestination:
    def test_recreates_empty_directory(self, tmp_path: Path) -> None:
        dest = tmp_path / "dist"
        (dest / "sub").mkdir(parents=True)
        (dest / "sub" / "file.js").write_text("x")
        clean_destination(dest, tmp_path)
        assert dest.is_dir()
        assert list(dest.iterdir()) == []

    @pytest.mark.parametrize("relative", [".", ".."])
    def test_refuses_project_or_parent(self, tmp_path: Path, relative: str) -> None:
        project = tmp_path / "app"
        project.mkdir()
        marker = project / "package.json"
        marker.write_text("{}")
        with pytest.raises(ConfigurationError, match="Refusing to clean"):
            clean_destination(project / relative, project)
        assert marker.exists()
