"""Tests for temporary workspace provisioning."""

from __future__ import annotations

import gc
import multiprocessing
import os
import stat
from pathlib import Path

import pytest

from pgsandbox.errors import WorkspaceError
from pgsandbox.workspace import ROOT_PREFIX, Workspace


@pytest.fixture
def long_base(tmp_path: Path) -> Path:
    """A base directory long enough to push the root past any socket limit."""
    base = tmp_path / ("x" * 90)
    base.mkdir()
    return base


def _child_cleanup(ws: Workspace, result_file: str) -> None:
    """Forked child: trigger the inherited cleanup and report what happened."""
    ws.cleanup()
    ws.remove_socket_dir()
    Path(result_file).write_text("done" if ws.root.exists() else "removed")


class TestCreate:
    def test_layout(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)

        assert ws.root.parent == tmp_path
        assert ws.root.name.startswith(ROOT_PREFIX)
        assert ws.root.is_dir()
        assert ws.data_dir == ws.root / "data"
        assert ws.log_path == ws.root / "pg.log"
        assert not ws.data_dir.exists()  # initdb creates it
        assert ws.owner_pid == os.getpid()

    def test_root_is_private(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)

        assert stat.S_IMODE(ws.root.stat().st_mode) == 0o700

    def test_short_root_holds_socket(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)

        assert ws.socket_dir == ws.root
        assert ws.fallback_socket_dir is None

    def test_unique_per_construction(self, tmp_path: Path) -> None:
        first = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)
        second = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)

        assert first.root != second.root
        assert first.data_dir != second.data_dir

    def test_missing_base_dir_raises(self, tmp_path: Path) -> None:
        with pytest.raises(WorkspaceError, match="Failed to create temporary directory"):
            Workspace.create(base_dir=tmp_path / "missing")


class TestSocketFallback:
    def test_long_root_uses_fallback(self, long_base: Path, tmp_path: Path) -> None:
        fallback_root = tmp_path / "s"
        fallback_root.mkdir()

        ws = Workspace.create(base_dir=long_base, fallback_root=fallback_root)

        assert len(str(ws.root)) > 85
        assert ws.fallback_socket_dir is not None
        assert ws.socket_dir == ws.fallback_socket_dir
        assert ws.socket_dir.parent == fallback_root
        assert ws.socket_dir.name.startswith(f"pgs_{os.getpid()}_")
        assert stat.S_IMODE(ws.socket_dir.stat().st_mode) == 0o700

    def test_fallback_defaults_to_tmp(self, long_base: Path) -> None:
        ws = Workspace.create(base_dir=long_base)
        try:
            assert ws.socket_dir.parent == Path("/tmp")
            assert len(str(ws.socket_dir)) <= 85
        finally:
            ws.remove_socket_dir()

    def test_fallback_unique_per_construction(self, long_base: Path, tmp_path: Path) -> None:
        first = Workspace.create(base_dir=long_base, fallback_root=tmp_path)
        second = Workspace.create(base_dir=long_base, fallback_root=tmp_path)

        assert first.socket_dir != second.socket_dir

    def test_threshold_is_configurable(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=5, fallback_root=tmp_path)

        assert ws.fallback_socket_dir is not None

    def test_unusable_fallback_root_raises_and_cleans_root(
        self, long_base: Path, tmp_path: Path
    ) -> None:
        with pytest.raises(WorkspaceError, match="Failed to create socket dir"):
            Workspace.create(base_dir=long_base, fallback_root=tmp_path / "missing")

        assert list(long_base.iterdir()) == []

    def test_remove_socket_dir(self, long_base: Path, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=long_base, fallback_root=tmp_path)
        socket_dir = ws.socket_dir
        (socket_dir / ".s.PGSQL.5432.lock").write_text("")

        ws.remove_socket_dir()
        ws.remove_socket_dir()  # second call is a no-op

        assert not socket_dir.exists()
        assert ws.root.exists()  # root is left to its own cleanup

    def test_remove_socket_dir_without_fallback_keeps_root(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)

        ws.remove_socket_dir()

        assert ws.root.exists()


class TestCleanup:
    def test_cleanup_removes_root(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)
        ws.data_dir.mkdir()
        (ws.data_dir / "PG_VERSION").write_text("16\n")

        ws.cleanup()

        assert not ws.root.exists()
        assert ws.removed

    def test_cleanup_is_idempotent(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)

        ws.cleanup()
        ws.cleanup()

        assert not ws.root.exists()

    def test_garbage_collection_removes_root(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)
        root = ws.root

        del ws
        gc.collect()

        assert not root.exists()

    def test_root_already_gone(self, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=tmp_path, socket_path_limit=1000)
        ws.root.rmdir()

        ws.cleanup()  # should not raise

    def test_forked_child_does_not_remove(self, long_base: Path, tmp_path: Path) -> None:
        ws = Workspace.create(base_dir=long_base, fallback_root=tmp_path)
        result_file = tmp_path / "child.txt"

        ctx = multiprocessing.get_context("fork")
        proc = ctx.Process(target=_child_cleanup, args=(ws, str(result_file)))
        proc.start()
        proc.join(timeout=10)

        assert proc.exitcode == 0
        assert result_file.read_text() == "done"
        assert ws.root.exists()
        assert ws.socket_dir.exists()
