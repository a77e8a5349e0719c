import asyncio
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit

from devloop.cli.dev.coordinator import PipelineCoordinator
from devloop.cli.dev.logging import configure_dev_logging
from devloop.config import load_config
from devloop.errors import DevloopError
from devloop.models import Mode
from devloop.utils import console, progress_spinner


def build(
    project_path: Annotated[
        Path | None,
        Argument(
            help="The path to the project. If not provided, current working directory will be used",
        ),
    ] = None,
) -> None:
    """
    Build the project once for production:
    1. Clean the destination directory
    2. Compile the client and server bundles and copy static assets
    No watching, no source maps, no server process.
    """
    if project_path is None:
        project_path = Path.cwd()

    console.print(f"🔧 Building project in {project_path.resolve()}")
    configure_dev_logging(echo=True)

    try:
        config = load_config(project_path, Mode.production)
        coordinator = PipelineCoordinator.from_config(config)
        with progress_spinner("📦 Building client, server and assets...", "✅ Build complete"):
            asyncio.run(coordinator.start())
    except DevloopError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)

    for target in config.targets:
        console.print(f"   [cyan]{target.name.value}[/cyan] → {target.outfile}")
    console.print(f"[bold green]✨ Output written to {config.dest_root}[/bold green]")
