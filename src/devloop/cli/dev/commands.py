"""Dev commands for the devloop CLI."""

import asyncio
from collections import deque
from pathlib import Path
from typing import Annotated

import httpx
from rich.table import Table
from typer import Argument, Exit, Option, Typer

from devloop.cli.dev.client import DevServerClient
from devloop.cli.dev.coordinator import PipelineCoordinator
from devloop.cli.dev.logging import LogBuffer, configure_dev_logging, print_log_entry
from devloop.cli.dev.server import run_dev_session
from devloop.config import load_config
from devloop.constants import DEFAULT_PROXY_PORT, LOG_BUFFER_SIZE
from devloop.errors import DevloopError
from devloop.models import ReadinessMode
from devloop.utils import console

# Create the dev app (subcommand group)
dev_app = Typer(name="dev", help="Run the development pipeline")


@dev_app.command(name="start", help="Build, serve and watch the project until Ctrl+C")
def dev_start(
    project_path: Annotated[
        Path | None,
        Argument(
            help="The path to the project. If not provided, current working directory will be used"
        ),
    ] = None,
    port: Annotated[
        int | None, Option("--port", "-p", help="Port for the application server")
    ] = None,
    proxy_port: Annotated[
        int | None, Option("--proxy-port", help="Port for the dev proxy browsers connect to")
    ] = None,
    host: Annotated[str | None, Option(help="Host for the dev proxy and app server")] = None,
    readiness: Annotated[
        str | None,
        Option(help="How to detect that the server is up: log, http or grace"),
    ] = None,
    reload_after_restart: Annotated[
        bool,
        Option(
            "--reload-after-restart/--no-reload-after-restart",
            help="Reload browsers once a restarted server is running again",
        ),
    ] = True,
):
    """Run the pipeline in the mode chosen by DEVLOOP_ENV / NODE_ENV."""
    if project_path is None:
        project_path = Path.cwd()
    if readiness is not None and readiness not in ("log", "http", "grace"):
        console.print(f"[red]❌ Unknown readiness mode '{readiness}'[/red]")
        raise Exit(code=1)
    readiness_mode: ReadinessMode | None = readiness  # pyright: ignore[reportAssignmentType]

    buffer: LogBuffer = deque(maxlen=LOG_BUFFER_SIZE)
    configure_dev_logging(buffer=buffer, echo=True)

    try:
        config = load_config(
            project_path,
            app_port=port,
            proxy_port=proxy_port,
            host=host,
            readiness=readiness_mode,
            reload_after_restart=reload_after_restart,
        )
        if config.dev:
            console.print(
                f"[cyan]🚀 Starting devloop for {config.project_root} "
                f"(app port {config.supervisor.port}, proxy port {config.notifier.proxy_port})[/cyan]"
            )
            asyncio.run(run_dev_session(config, log_buffer=buffer))
        else:
            console.print(f"[cyan]📦 {config.mode.value} mode: building once[/cyan]")
            asyncio.run(PipelineCoordinator.from_config(config).start())
            console.print(f"[bold green]✨ Output written to {config.dest_root}[/bold green]")
    except DevloopError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


def _client_for(port: int) -> DevServerClient:
    return DevServerClient(port=port)


def _state_cell(value: str | None, good: tuple[str, ...], bad: tuple[str, ...]) -> str:
    if value is None:
        return "[dim]-[/dim]"
    if value in good:
        return f"[green]●[/green] {value}"
    if value in bad:
        return f"[red]●[/red] {value}"
    return f"[yellow]●[/yellow] {value}"


@dev_app.command(name="status", help="Show the status of a running dev session")
def dev_status(
    proxy_port: Annotated[
        int, Option("--proxy-port", help="Port of the running dev proxy")
    ] = DEFAULT_PROXY_PORT,
):
    """Query /__devloop__/status on a running session."""
    client = _client_for(proxy_port)
    try:
        status = client.status()
    except httpx.HTTPError:
        console.print("[yellow]No dev session found.[/yellow]")
        console.print("[dim]Run 'devloop dev start' to start one.[/dim]")
        raise Exit(code=1)

    table = Table(title="devloop status", show_header=True, header_style="bold magenta")
    table.add_column("Component", style="cyan", width=12)
    table.add_column("State", justify="center")
    table.add_column("Detail")

    table.add_row(
        "Pipeline",
        _state_cell(status.pipeline_state.value, ("ready", "complete"), ("failed",)),
        "[yellow]degraded[/yellow]" if status.degraded else "",
    )
    table.add_row(
        "Server",
        _state_cell(
            status.supervisor_state.value if status.supervisor_state else None,
            ("running",),
            ("failed", "stopped"),
        ),
        status.app_url or "",
    )
    for target in status.targets:
        detail = f"{target.errors} error(s), {target.warnings} warning(s)"
        table.add_row(
            target.name.value,
            "[green]●[/green] ok" if target.success else "[red]●[/red] failed",
            detail,
        )
    table.add_row("Browsers", str(status.reload_clients), "connected for reload")
    console.print(table)


@dev_app.command(name="logs", help="Display logs from a running dev session")
def dev_logs(
    proxy_port: Annotated[
        int, Option("--proxy-port", help="Port of the running dev proxy")
    ] = DEFAULT_PROXY_PORT,
    duration: Annotated[
        int | None,
        Option(
            "--duration",
            "-d",
            help="Show logs from the last N seconds (None = all logs)",
        ),
    ] = None,
    follow: Annotated[
        bool,
        Option(
            "--follow",
            "-f",
            help="Follow log output (like tail -f). Streams new logs continuously.",
        ),
    ] = False,
    app: Annotated[
        bool,
        Option("--app", help="Show only application server output"),
    ] = False,
    system: Annotated[
        bool,
        Option("--system", help="Show only devloop's own logs"),
    ] = False,
    target: Annotated[
        str | None,
        Option("--target", "-t", help="Show only logs for one target (client, server, assets)"),
    ] = None,
    raw: Annotated[
        bool,
        Option("--raw", help="Show raw log output without prefix formatting"),
    ] = False,
):
    """Display logs. Use -f/--follow to stream continuously."""
    if app and system:
        console.print("[red]❌ --app and --system cannot be combined[/red]")
        raise Exit(code=1)
    channel = "app" if app else "devloop" if system else "all"

    client = _client_for(proxy_port)
    try:
        with client.stream_logs(
            duration=duration, channel=channel, target=target, follow=follow
        ) as entries:
            for entry in entries:
                print_log_entry(entry, raw_output=raw)
    except httpx.HTTPError:
        console.print("[yellow]No dev session found.[/yellow]")
        raise Exit(code=1)
    except KeyboardInterrupt:
        pass
