"""Compiler adapter: one external bundler invocation per target.

`CompilerAdapter.compile(target, watch)` returns an async stream of
`CompilationResult`: a single result when `watch` is False, one result per
batch of source changes otherwise. Output is built into a staging directory
and only moved over the published bundle when the build succeeds, so a failed
build never leaves a half-written file behind.

Watch mode observes the whole source tree, so an edit to a module shared by
both bundles rebuilds both. A rebuild whose output is byte-identical to what
is already published is neither published nor emitted; a client-only edit
therefore never shows up on the server's stream.
"""

from __future__ import annotations

import asyncio
import filecmp
import os
import re
import tempfile
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol

import watchfiles

from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.errors import ConfigurationError
from devloop.models import (
    BuildStats,
    CommandResult,
    CompilationResult,
    CompilerConfig,
    Diagnostic,
    Severity,
    Target,
)
from devloop.utils import ensure_dir, format_size, is_installed

logger = get_logger(DevLogComponent.COMPILER)

_ERROR_LINE = re.compile(r"^\s*(?:[✘×xX]\s*)?\[ERROR\]\s*(?P<msg>.+)$|^\s*error:?\s+(?P<msg2>.+)$", re.I)
_WARNING_LINE = re.compile(
    r"^\s*(?:[▲!]\s*)?\[WARNING\]\s*(?P<msg>.+)$|^\s*warning:?\s+(?P<msg2>.+)$", re.I
)


def parse_diagnostics(output: str) -> list[Diagnostic]:
    """Pull error and warning lines out of bundler output."""
    diagnostics: list[Diagnostic] = []
    for line in output.splitlines():
        if match := _ERROR_LINE.match(line):
            message = match.group("msg") or match.group("msg2")
            diagnostics.append(Diagnostic(message=message.strip(), severity=Severity.error))
        elif match := _WARNING_LINE.match(line):
            message = match.group("msg") or match.group("msg2")
            diagnostics.append(Diagnostic(message=message.strip(), severity=Severity.warning))
    return diagnostics


class BuildTool(Protocol):
    """The external bundler, as seen by the adapter."""

    def check(self) -> None:
        """Raise ConfigurationError if the tool cannot be run at all."""
        ...

    async def run(self, target: Target, outfile: Path) -> CommandResult: ...


class CommandBuildTool:
    """Runs a bundler command line built from a template.

    Placeholders: ``{entry}``, ``{outfile}``, ``{platform}``.
    """

    def __init__(self, config: CompilerConfig) -> None:
        self.config: CompilerConfig = config

    def check(self) -> None:
        if not self.config.command:
            raise ConfigurationError("Bundler command is empty")
        executable = self.config.command[0]
        if not is_installed(executable):
            raise ConfigurationError(
                f"Bundler '{executable}' is not installed or not on PATH"
            )

    def argv(self, target: Target, outfile: Path) -> list[str]:
        values = {
            "entry": str(target.entry),
            "outfile": str(outfile),
            "platform": target.platform,
        }
        args = [part.format(**values) for part in self.config.command]
        args.extend(target.extra_args)
        if self.config.dev:
            args.extend(self.config.dev_args)
        return args

    async def run(self, target: Target, outfile: Path) -> CommandResult:
        args = self.argv(target, outfile)
        started = time.perf_counter()
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=self.config.cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        return CommandResult(
            command=args,
            cwd=str(self.config.cwd),
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )


class CompilerAdapter:
    """Compiles targets with a build tool and publishes successful output."""

    def __init__(self, config: CompilerConfig, tool: BuildTool | None = None) -> None:
        self.config: CompilerConfig = config
        self.tool: BuildTool = tool or CommandBuildTool(config)

    def validate(self, target: Target) -> None:
        """Raise ConfigurationError for a target that can never compile."""
        if not target.entry.is_file():
            raise ConfigurationError(
                f"{target.name.value} entry {target.entry} does not exist"
            )
        if not target.filename or os.sep in target.filename or "/" in target.filename:
            raise ConfigurationError(
                f"{target.name.value} output filename {target.filename!r} is invalid"
            )
        if target.output_dir.exists() and not target.output_dir.is_dir():
            raise ConfigurationError(
                f"{target.name.value} output path {target.output_dir} is not a directory"
            )
        self.tool.check()

    def compile(self, target: Target, watch: bool) -> AsyncIterator[CompilationResult]:
        """Validate `target` now, then stream its compilation results."""
        self.validate(target)
        return self._stream(target, watch)

    async def _stream(
        self, target: Target, watch: bool
    ) -> AsyncIterator[CompilationResult]:
        yield await self.compile_once(target)
        if not watch:
            return
        async for changes in watchfiles.awatch(
            *target.source_dirs, debounce=self.config.watch_debounce_ms
        ):
            logger.debug(
                f"Detected changes in {len(changes)} file(s), rebuilding",
                extra={"target": target.name.value},
            )
            result = await self.compile_once(target)
            if result.success and not result.changed:
                continue
            yield result

    async def compile_once(self, target: Target) -> CompilationResult:
        extra = {"target": target.name.value}
        ensure_dir(target.output_dir)
        with tempfile.TemporaryDirectory(
            prefix=f".devloop-{target.name.value}-", dir=target.output_dir
        ) as staging:
            staging_dir = Path(staging)
            try:
                outcome = await self.tool.run(target, staging_dir / target.filename)
            except OSError as e:
                result = CompilationResult(
                    target=target.name,
                    success=False,
                    diagnostics=[Diagnostic(message=f"Failed to run bundler: {e}")],
                )
                self._log_result(result, extra)
                return result

            diagnostics = parse_diagnostics(f"{outcome.stdout}\n{outcome.stderr}")
            produced = sorted(p for p in staging_dir.rglob("*") if p.is_file())
            success = outcome.returncode == 0 and (staging_dir / target.filename).is_file()

            if not success:
                if not any(d.severity is Severity.error for d in diagnostics):
                    diagnostics.append(Diagnostic(message=_failure_summary(outcome, target)))
                result = CompilationResult(
                    target=target.name,
                    success=False,
                    diagnostics=diagnostics,
                    stats=BuildStats(
                        duration_ms=outcome.duration_ms, returncode=outcome.returncode
                    ),
                )
                self._log_result(result, extra)
                return result

            # The bundle itself goes last so it never points at a missing sibling.
            produced.sort(key=lambda p: p == staging_dir / target.filename)
            published = [(p, target.output_dir / p.relative_to(staging_dir)) for p in produced]
            output_bytes = sum(p.stat().st_size for p, _ in published)
            changed = not all(_same_content(p, dest) for p, dest in published)
            if changed:
                for path, destination in published:
                    ensure_dir(destination.parent)
                    os.replace(path, destination)

        result = CompilationResult(
            target=target.name,
            success=True,
            changed=changed,
            diagnostics=diagnostics,
            stats=BuildStats(
                duration_ms=outcome.duration_ms,
                output_bytes=output_bytes,
                returncode=outcome.returncode,
            ),
        )
        self._log_result(result, extra)
        return result

    def _log_result(self, result: CompilationResult, extra: dict[str, str]) -> None:
        if result.success and not result.changed:
            logger.debug(f"{result.target.value} bundle unchanged", extra=extra)
            return
        if result.success:
            logger.info(
                f"Built {result.target.value} bundle "
                f"({format_size(result.stats.output_bytes)}) in {result.stats.duration_ms}ms",
                extra=extra,
            )
            for warning in result.warnings:
                logger.warning(warning.message, extra=extra)
            return
        logger.error(f"{result.target.value} build failed", extra=extra)
        for diagnostic in result.diagnostics:
            log = logger.error if diagnostic.severity is Severity.error else logger.warning
            log(diagnostic.message, extra=extra)


def _same_content(path: Path, published: Path) -> bool:
    return published.is_file() and filecmp.cmp(path, published, shallow=False)


def _failure_summary(outcome: CommandResult, target: Target) -> str:
    if outcome.returncode == 0:
        return f"Bundler produced no {target.filename}"
    lines = [ln for ln in outcome.stderr.splitlines() if ln.strip()]
    tail = f": {lines[-1].strip()}" if lines else ""
    return f"Bundler exited with code {outcome.returncode}{tail}"
