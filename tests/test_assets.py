"""Tests for static asset sync."""

from __future__ import annotations

import asyncio
import filecmp
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from devloop.cli.dev.assets import AssetSync, split_glob, sync_assets
from devloop.models import AssetConfig


@pytest.fixture
def assets_dir(tmp_path: Path) -> Path:
    root = tmp_path / "src" / "assets"
    (root / "img").mkdir(parents=True)
    (root / "index.html").write_text("<html></html>")
    (root / "img" / "logo.png").write_bytes(b"\x89PNG\r\n")
    (root / "img" / "icon.svg").write_text("<svg/>")
    return root


async def _next(stream):
    return await anext(stream)


def _snapshot(root: Path) -> dict[str, bytes]:
    return {
        str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()
    }


class TestSplitGlob:
    def test_recursive_glob(self) -> None:
        assert split_glob("src/assets/**") == (Path("src/assets"), "**/*")

    def test_extension_glob(self) -> None:
        assert split_glob("src/assets/*.png") == (Path("src/assets"), "*.png")

    def test_literal_directory(self, assets_dir: Path) -> None:
        assert split_glob(str(assets_dir)) == (assets_dir, "**/*")


class TestSyncAssets:
    def test_copies_and_keeps_relative_paths(self, assets_dir: Path, tmp_path: Path) -> None:
        dest = tmp_path / "dist" / "public"
        report = sync_assets(f"{assets_dir}/**", dest)
        assert report.ok
        assert report.count == 3
        assert (dest / "img" / "logo.png").read_bytes() == b"\x89PNG\r\n"
        assert (dest / "index.html").is_file()

    def test_second_run_is_byte_identical(self, assets_dir: Path, tmp_path: Path) -> None:
        dest = tmp_path / "dist"
        first = sync_assets(f"{assets_dir}/**", dest)
        before = _snapshot(dest)
        second = sync_assets(f"{assets_dir}/**", dest)

        assert _snapshot(dest) == before
        assert first.copied == 3
        assert second.copied == 0
        assert second.unchanged == 3
        assert not any(p.name.endswith(".devloop-tmp") for p in dest.rglob("*"))

    def test_changed_file_is_copied_again(self, assets_dir: Path, tmp_path: Path) -> None:
        dest = tmp_path / "dist"
        sync_assets(f"{assets_dir}/**", dest)
        (assets_dir / "index.html").write_text("<html>v2</html>")
        report = sync_assets(f"{assets_dir}/**", dest)
        assert report.copied == 1
        assert (dest / "index.html").read_text() == "<html>v2</html>"

    def test_failure_is_per_file(self, assets_dir: Path, tmp_path: Path) -> None:
        dest = tmp_path / "dist"
        real_copy = shutil.copy2

        def flaky_copy(src: Path, dst: Path) -> object:
            if Path(src).name == "logo.png":
                raise PermissionError(13, "Permission denied")
            return real_copy(src, dst)

        with patch("devloop.cli.dev.assets.shutil.copy2", side_effect=flaky_copy):
            report = sync_assets(f"{assets_dir}/**", dest)

        assert not report.ok
        assert [f.path.name for f in report.failures] == ["logo.png"]
        assert report.failures[0].reason == "Permission denied"
        assert report.count == 2
        assert (dest / "img" / "icon.svg").is_file()
        assert not (dest / "img" / "logo.png").exists()

    def test_unreadable_destination_is_a_per_file_failure(
        self, assets_dir: Path, tmp_path: Path
    ) -> None:
        dest = tmp_path / "dist"
        sync_assets(f"{assets_dir}/**", dest)
        (assets_dir / "img" / "icon.svg").write_text("<svg>v2</svg>")
        real_cmp = filecmp.cmp

        def guarded_cmp(a: Path, b: Path, shallow: bool = True) -> bool:
            if Path(a).name == "index.html":
                raise PermissionError(13, "Permission denied", str(b))
            return real_cmp(a, b, shallow=shallow)

        with patch("devloop.cli.dev.assets.filecmp.cmp", side_effect=guarded_cmp):
            report = sync_assets(f"{assets_dir}/**", dest)

        assert [f.path.name for f in report.failures] == ["index.html"]
        assert report.failures[0].reason == "Permission denied"
        assert report.copied == 1
        assert report.unchanged == 1
        assert (dest / "img" / "icon.svg").read_text() == "<svg>v2</svg>"

    def test_missing_or_empty_glob(self, tmp_path: Path) -> None:
        report = sync_assets(f"{tmp_path}/nothing/**", tmp_path / "dist")
        assert report.count == 0
        assert report.ok
        assert not (tmp_path / "dist").exists()


class TestAssetSync:
    def test_sync_uses_config(self, assets_dir: Path, tmp_path: Path) -> None:
        dest = tmp_path / "out"
        sync = AssetSync(AssetConfig(pattern=f"{assets_dir}/**/*.svg", destination=dest))
        assert sync.base == assets_dir
        report = sync.sync()
        assert report.count == 1
        assert (dest / "img" / "icon.svg").is_file()

    @pytest.mark.asyncio
    async def test_watch_without_directory_ends(self, tmp_path: Path) -> None:
        sync = AssetSync(AssetConfig(pattern=f"{tmp_path}/missing/**", destination=tmp_path))
        reports = [r async for r in sync.watch()]
        assert reports == []

    @pytest.mark.asyncio
    async def test_watch_resyncs_on_change(self, assets_dir: Path, tmp_path: Path) -> None:
        dest = tmp_path / "out"
        sync = AssetSync(AssetConfig(pattern=f"{assets_dir}/**", destination=dest))
        sync.sync()
        stream = sync.watch()
        pending = asyncio.create_task(_next(stream))
        try:
            # Let the watcher start before adding a file.
            await asyncio.sleep(0.5)
            (assets_dir / "robots.txt").write_text("User-agent: *")

            report = await asyncio.wait_for(pending, timeout=10)
            assert report.ok
            assert report.copied == 1
            assert (dest / "robots.txt").read_text() == "User-agent: *"
        finally:
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
            await stream.aclose()
