"""Build the immutable `PipelineConfig` for a project.

Values come from, lowest precedence first: the project's ``.env`` file, the
process environment, then explicit keyword overrides (CLI options).
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

from devloop.constants import (
    ASSETS_GLOB,
    CLIENT_BUNDLE_NAME,
    CLIENT_ENTRY,
    CLIENT_OUTPUT_DIR,
    DEFAULT_APP_PORT,
    DEFAULT_BUNDLER_COMMAND,
    DEFAULT_DEST_ROOT,
    DEFAULT_HOST,
    DEFAULT_PROXY_PORT,
    DEFAULT_SERVER_RUNTIME,
    DEFAULT_SETTLE_WINDOW,
    DEFAULT_SOURCE_ROOT,
    ENV_APP_PORT,
    ENV_BUNDLER,
    ENV_DEST_ROOT,
    ENV_MODE,
    ENV_MODE_FALLBACK,
    ENV_PROXY_PORT,
    ENV_SERVER_COMMAND,
    ENV_SETTLE_MS,
    ENV_SOURCE_ROOT,
    SERVER_BUNDLE_NAME,
    SERVER_BUNDLER_ARGS,
    SERVER_ENTRY,
)
from devloop.errors import ConfigurationError
from devloop.models import (
    AssetConfig,
    CompilerConfig,
    Mode,
    NotifierConfig,
    PipelineConfig,
    ReadinessMode,
    SupervisorConfig,
    Target,
    TargetName,
)
from devloop.utils import is_installed


def read_environment(project_root: Path) -> dict[str, str]:
    """The process environment layered over the project's ``.env`` file."""
    environ: dict[str, str] = {}
    dotenv_path = project_root / ".env"
    if dotenv_path.is_file():
        environ.update(
            {k: v for k, v in dotenv_values(dotenv_path).items() if v is not None}
        )
    environ.update(os.environ)
    return environ


def _parse_port(value: str | int, name: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"{name} must be between 1 and 65535, got {port}")
    return port


def _parse_settle(value: str | int) -> float:
    try:
        millis = int(value)
    except ValueError:
        raise ConfigurationError(f"{ENV_SETTLE_MS} must be a number of milliseconds") from None
    if millis < 0:
        raise ConfigurationError(f"{ENV_SETTLE_MS} cannot be negative")
    return millis / 1000


def _split_command(value: str, name: str) -> tuple[str, ...]:
    try:
        parts = tuple(shlex.split(value))
    except ValueError as e:
        raise ConfigurationError(f"{name} is not a valid command line: {e}") from e
    if not parts:
        raise ConfigurationError(f"{name} is empty")
    return parts


def _check_roots(project_root: Path, source_root: Path, dest_root: Path) -> None:
    for protected, label in ((project_root, "project"), (source_root, "source")):
        if dest_root == protected or dest_root in protected.parents:
            raise ConfigurationError(
                f"Destination {dest_root} would delete the {label} root {protected}"
            )
    if source_root in dest_root.parents:
        raise ConfigurationError(
            f"Destination {dest_root} is inside the source root {source_root}"
        )


def load_config(
    project_root: Path,
    mode: Mode | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    app_port: int | None = None,
    proxy_port: int | None = None,
    host: str | None = None,
    readiness: ReadinessMode | None = None,
    reload_after_restart: bool = True,
) -> PipelineConfig:
    """Resolve every setting for `project_root` into one frozen config.

    Raises:
        ConfigurationError: for unusable roots, ports or commands.
    """
    project_root = project_root.resolve()
    if not project_root.is_dir():
        raise ConfigurationError(f"Project directory {project_root} does not exist")
    env = dict(environ) if environ is not None else read_environment(project_root)

    if mode is None:
        mode = Mode.from_string(env.get(ENV_MODE) or env.get(ENV_MODE_FALLBACK))
    dev = mode is Mode.development

    source_root = (project_root / env.get(ENV_SOURCE_ROOT, DEFAULT_SOURCE_ROOT)).resolve()
    dest_root = (project_root / env.get(ENV_DEST_ROOT, DEFAULT_DEST_ROOT)).resolve()
    _check_roots(project_root, source_root, dest_root)

    port = _parse_port(
        app_port if app_port is not None else env.get(ENV_APP_PORT, DEFAULT_APP_PORT),
        ENV_APP_PORT,
    )
    dev_port = _parse_port(
        proxy_port if proxy_port is not None else env.get(ENV_PROXY_PORT, DEFAULT_PROXY_PORT),
        ENV_PROXY_PORT,
    )
    if dev and port == dev_port:
        raise ConfigurationError(f"{ENV_APP_PORT} and {ENV_PROXY_PORT} must differ ({port})")
    settle_window = (
        _parse_settle(env[ENV_SETTLE_MS]) if ENV_SETTLE_MS in env else DEFAULT_SETTLE_WINDOW
    )
    host = host or DEFAULT_HOST

    bundler = (
        _split_command(env[ENV_BUNDLER], ENV_BUNDLER)
        if env.get(ENV_BUNDLER)
        else DEFAULT_BUNDLER_COMMAND
    )
    server_command = (
        _split_command(env[ENV_SERVER_COMMAND], ENV_SERVER_COMMAND)
        if env.get(ENV_SERVER_COMMAND)
        else (DEFAULT_SERVER_RUNTIME, str(dest_root / SERVER_BUNDLE_NAME))
    )
    if dev and not is_installed(server_command[0]):
        raise ConfigurationError(
            f"Server runtime '{server_command[0]}' is not installed or not on PATH"
        )

    client = Target(
        name=TargetName.client,
        entry=source_root / CLIENT_ENTRY,
        output_dir=dest_root / CLIENT_OUTPUT_DIR,
        filename=CLIENT_BUNDLE_NAME,
        watch=dev,
        platform="browser",
        watch_paths=(source_root,),
    )
    server = Target(
        name=TargetName.server,
        entry=source_root / SERVER_ENTRY,
        output_dir=dest_root,
        filename=SERVER_BUNDLE_NAME,
        watch=dev,
        platform="node",
        extra_args=SERVER_BUNDLER_ARGS,
        watch_paths=(source_root,),
    )

    # .env values reach the app as well; PORT is always set by the supervisor.
    app_env = {k: v for k, v in env.items() if k not in os.environ and k != ENV_APP_PORT}

    return PipelineConfig(
        mode=mode,
        project_root=project_root,
        source_root=source_root,
        dest_root=dest_root,
        client=client,
        server=server,
        assets=AssetConfig(
            pattern=str(source_root / ASSETS_GLOB), destination=client.output_dir
        ),
        compiler=CompilerConfig(command=bundler, dev=dev, cwd=project_root),
        supervisor=SupervisorConfig(
            command=server_command,
            cwd=project_root,
            port=port,
            host=host,
            env=app_env,
            readiness=readiness or "log",
            settle_window=settle_window,
        ),
        notifier=NotifierConfig(
            settle_window=settle_window,
            host=host,
            proxy_port=dev_port,
            reload_after_restart=reload_after_restart,
        ),
    )
