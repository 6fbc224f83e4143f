"""Private temporary directories for one PostgreSQL instance.

Layout::

    <root>/              pgsandbox_XXXXXXXX, mode 0700
        data/            cluster directory (created by initdb)
        pg.log           combined server stdout/stderr
        .s.PGSQL.<port>  unix socket, unless the root path is too long

Unix socket paths are limited to roughly 104-108 bytes. When ``<root>`` is
longer than the configured threshold the socket goes to a short fallback
directory ``/tmp/pgs_<pid>_XXXXXXXX`` instead, which is removed separately
by the shutdown sequence.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import weakref
from pathlib import Path

from pgsandbox.errors import WorkspaceError

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH_LIMIT = 85
ROOT_PREFIX = "pgsandbox_"


def _remove_tree(path: Path, owner_pid: int) -> None:
    """Remove *path* if we are still the process that created it.

    Registered through ``weakref.finalize`` so it also runs at interpreter
    exit. Forked children inherit the finalizer but must not delete the
    owner's files. Errors are logged and suppressed.
    """
    if os.getpid() != owner_pid:
        return
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove %s: %s", path, exc)


def default_fallback_root() -> Path:
    """Short global temp root for relocated sockets."""
    tmp = Path("/tmp")
    if tmp.is_dir():
        return tmp
    return Path(tempfile.gettempdir())


class Workspace:
    """Directory tree owned by a single instance.

    Usage::

        ws = Workspace.create()
        ws.data_dir, ws.socket_dir, ws.log_path
        # ... later, from the shutdown sequence ...
        ws.remove_socket_dir()

    The relocated socket directory is named ``pgs_<owner pid>_<random>``
    rather than a plain ``pgs_<owner pid>``, so two instances created by the
    same process never share one.

    The root is deleted when the workspace is garbage-collected, at
    interpreter exit, or when :meth:`cleanup` is called, whichever happens
    first, and only in the process that created it.
    """

    def __init__(self, root: Path, socket_dir: Path, fallback_socket_dir: Path | None) -> None:
        self.root = root
        self.socket_dir = socket_dir
        self.fallback_socket_dir = fallback_socket_dir
        self.owner_pid = os.getpid()
        self._finalizer = weakref.finalize(self, _remove_tree, root, self.owner_pid)

    @classmethod
    def create(
        cls,
        base_dir: str | Path | None = None,
        socket_path_limit: int = DEFAULT_SOCKET_PATH_LIMIT,
        fallback_root: str | Path | None = None,
    ) -> Workspace:
        """
        Allocate a fresh, uniquely named workspace.

        Args:
            base_dir: Parent directory for the root (default: system temp dir).
            socket_path_limit: Longest root path usable as the socket directory.
            fallback_root: Parent of the relocated socket directory
                (default: ``/tmp``).

        Returns:
            The new Workspace.

        Raises:
            WorkspaceError: If a directory cannot be created.
        """
        try:
            root = Path(tempfile.mkdtemp(prefix=ROOT_PREFIX, dir=base_dir))
        except OSError as exc:
            raise WorkspaceError(f"Failed to create temporary directory: {exc}") from exc

        fallback: Path | None = None
        socket_dir = root
        if len(str(root)) > socket_path_limit:
            parent = Path(fallback_root) if fallback_root else default_fallback_root()
            try:
                fallback = Path(tempfile.mkdtemp(prefix=f"pgs_{os.getpid()}_", dir=parent))
                os.chmod(fallback, 0o700)
            except OSError as exc:
                _remove_tree(root, os.getpid())
                raise WorkspaceError(
                    f"Failed to create socket dir under {parent}: {exc}"
                ) from exc
            socket_dir = fallback
            logger.info(
                "Workspace path is %d characters (limit %d); using socket dir %s",
                len(str(root)),
                socket_path_limit,
                fallback,
            )

        logger.debug("Created workspace %s (socket dir %s)", root, socket_dir)
        return cls(root, socket_dir, fallback)

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def log_path(self) -> Path:
        return self.root / "pg.log"

    def remove_socket_dir(self) -> None:
        """Delete the relocated socket directory, if one was created."""
        if self.fallback_socket_dir is None or os.getpid() != self.owner_pid:
            return
        if self.fallback_socket_dir.is_dir():
            shutil.rmtree(self.fallback_socket_dir, ignore_errors=True)
            logger.debug("Removed socket dir %s", self.fallback_socket_dir)

    def cleanup(self) -> None:
        """Delete the workspace root now instead of at scope end."""
        self._finalizer()

    @property
    def removed(self) -> bool:
        """True once the root cleanup has run in this process."""
        return not self._finalizer.alive
