"""Static asset sync: copy files matching a glob into the output tree."""

from __future__ import annotations

import filecmp
import os
import re
import shutil
from collections.abc import AsyncIterator
from pathlib import Path

import watchfiles

from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.errors import AssetIOError
from devloop.models import AssetConfig, AssetFailure, AssetSyncReport
from devloop.utils import ensure_dir

logger = get_logger(DevLogComponent.ASSETS)

_GLOB_MAGIC = re.compile(r"[*?\[]")
_LOG_EXTRA = {"target": "assets"}


def split_glob(pattern: str) -> tuple[Path, str]:
    """Split a glob into its literal base directory and the wildcard remainder.

    Examples:
        "src/assets/**"      -> (Path("src/assets"), "**/*")
        "src/assets/*.png"   -> (Path("src/assets"), "*.png")
        "src/assets"         -> (Path("src/assets"), "**/*")   (directory)
    """
    parts = Path(pattern).parts
    for index, part in enumerate(parts):
        if _GLOB_MAGIC.search(part):
            base = Path(*parts[:index]) if index else Path(".")
            rest = "/".join(parts[index:])
            if rest.endswith("**"):
                rest = f"{rest}/*"
            return base, rest

    literal = Path(pattern)
    if literal.is_dir():
        return literal, "**/*"
    return literal.parent, literal.name


def _copy_one(source: Path, destination: Path) -> bool:
    """Copy one file atomically. Returns False if destination was already identical."""
    staging = destination.with_name(f".{destination.name}.devloop-tmp")
    try:
        if destination.is_file() and filecmp.cmp(source, destination, shallow=False):
            return False
        ensure_dir(destination.parent)
        shutil.copy2(source, staging)
        os.replace(staging, destination)
    except OSError as e:
        raise AssetIOError(source, e.strerror or str(e)) from e
    finally:
        if staging.exists():
            staging.unlink()
    return True


def sync_assets(pattern: str, destination: Path) -> AssetSyncReport:
    """Copy every file matching `pattern` into `destination`, keeping relative paths.

    A file that cannot be copied is recorded in the report; the remaining files
    are still copied.
    """
    base, rest = split_glob(pattern)
    report = AssetSyncReport()
    if not base.is_dir():
        return report

    for source in sorted(base.glob(rest)):
        if not source.is_file():
            continue
        relative = source.relative_to(base)
        try:
            if _copy_one(source, destination / relative):
                report.copied += 1
            else:
                report.unchanged += 1
        except AssetIOError as e:
            report.failures.append(AssetFailure(path=source, reason=e.reason))
            logger.warning(f"Failed to copy {relative}: {e.reason}", extra=_LOG_EXTRA)
    return report


class AssetSync:
    """One-shot or watch-mode asset copying for one asset configuration."""

    def __init__(self, config: AssetConfig) -> None:
        self.config: AssetConfig = config

    @property
    def base(self) -> Path:
        return split_glob(self.config.pattern)[0]

    def sync(self) -> AssetSyncReport:
        report = sync_assets(self.config.pattern, self.config.destination)
        if report.ok:
            logger.info(
                f"Assets synced: {report.copied} copied, {report.unchanged} unchanged",
                extra=_LOG_EXTRA,
            )
        else:
            logger.error(
                f"Assets synced with {len(report.failures)} failure(s): "
                f"{report.copied} copied, {report.unchanged} unchanged",
                extra=_LOG_EXTRA,
            )
        return report

    async def watch(self) -> AsyncIterator[AssetSyncReport]:
        """Re-sync whenever a file under the asset base changes."""
        base = self.base
        if not base.is_dir():
            logger.debug(f"Asset directory {base} does not exist; not watching")
            return
        async for changes in watchfiles.awatch(base):
            logger.debug(f"Detected changes in {len(changes)} asset file(s)")
            yield self.sync()
