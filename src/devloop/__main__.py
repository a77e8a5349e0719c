from typer import Typer

from devloop import __version__
from devloop.cli.build import build
from devloop.cli.dev.commands import dev_app
from devloop.utils import console

app = Typer(
    name="devloop",
    help="Build, serve and live-reload a client + server web project",
    no_args_is_help=True,
)
app.command(name="build", help="Build the project once for production")(build)
app.add_typer(dev_app)


@app.command(name="version", help="Show the devloop version")
def version() -> None:
    console.print(f"devloop {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
