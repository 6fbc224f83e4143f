"""Disposable PostgreSQL server instances for test suites."""

from __future__ import annotations

import logging
import os
import subprocess
import weakref
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, NamedTuple
from urllib.parse import quote

from pgsandbox.binaries import Binaries, resolve_binaries
from pgsandbox.config import PgSandboxConfig
from pgsandbox.errors import PostgresError, PrivilegeDeniedError
from pgsandbox.ports import find_free_port
from pgsandbox.process import init_cluster, launch_server, terminate_server, wait_until_ready
from pgsandbox.workspace import Workspace

if TYPE_CHECKING:
    import psycopg

logger = logging.getLogger(__name__)

DEFAULT_USER = "postgres"
DATABASE = "postgres"


class InstanceState(str, Enum):
    """Lifecycle stage of a :class:`PostgresInstance`."""

    LAUNCHING = "launching"
    READY = "ready"
    FAILED = "failed"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class ConnectInfo(NamedTuple):
    """Connection arguments: ``(dsn, user, password, attributes)``."""

    dsn: str
    user: str
    password: str
    attributes: dict[str, Any]


class _Supervisor:
    """Teardown state for one server process.

    Kept separate from :class:`PostgresInstance` so that the
    ``weakref.finalize`` hook can hold it without keeping the instance alive.
    """

    def __init__(self, workspace: Workspace, attempts: int, interval: float) -> None:
        self.workspace = workspace
        self.owner_pid = os.getpid()
        self.attempts = attempts
        self.interval = interval
        self.process: subprocess.Popen[bytes] | None = None
        self.state = InstanceState.LAUNCHING

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def shutdown(self) -> None:
        """Stop the server and remove the relocated socket directory.

        No-op when there is no process or when called from a process other
        than the owner (e.g. a forked test worker). Never raises ``OSError``.
        """
        if self.process is None or os.getpid() != self.owner_pid:
            return

        process = self.process
        self.state = InstanceState.TERMINATING
        logger.info("Stopping postgres (pid %d)", process.pid)
        try:
            terminate_server(process, attempts=self.attempts, interval=self.interval)
        finally:
            self.process = None
            self.state = InstanceState.TERMINATED
            try:
                self.workspace.remove_socket_dir()
            except OSError as exc:
                logger.warning("Failed to remove socket dir: %s", exc)


class PostgresInstance:
    """
    A private PostgreSQL server, running until :meth:`stop` is called.

    Construction resolves the binaries, creates a temporary workspace, picks a
    port, runs ``initdb`` and starts ``postgres``, then waits until the server
    accepts TCP connections. The instance is ready to use when the
    constructor returns.

    Teardown happens on :meth:`stop`, on leaving a ``with`` block, when the
    object is garbage-collected, or at interpreter exit. Only the process that
    created the instance can stop it; forked children inherit a harmless copy.

    Usage::

        with PostgresInstance() as pg:
            conn = psycopg.connect(pg.conninfo())
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        *,
        config: PgSandboxConfig | None = None,
    ) -> None:
        """
        Start a new instance.

        Args:
            host: Listen address (default: config value, ``127.0.0.1``).
            port: Listen port (default: config value, else a free port). 0 and
                None both mean "pick a free port".
            user: Superuser name (default: config value, else ``postgres``).
                Required when running as root.
            config: Tuning options; defaults are used when omitted.

        Raises:
            ValueError: *port* is outside 1..65535 or *user* is empty.
            PrivilegeDeniedError: Running as root without an explicit user.
            BinaryNotFoundError: ``initdb`` or ``postgres`` not found.
            WorkspaceError: Temporary directories could not be created.
            InitFailedError: ``initdb`` failed.
            LaunchFailedError: The server could not be spawned.
            StartupCrashedError: The server exited during startup.
            StartupTimeoutError: The server never became reachable.
        """
        config = config or PgSandboxConfig()

        explicit_user = user if user is not None else config.server.user
        if explicit_user == "":
            raise ValueError("user must not be empty")
        if explicit_user is None and _running_as_root():
            raise PrivilegeDeniedError(
                "PostgreSQL cannot run as root. Please run tests as a non-privileged user."
            )

        self._host = host or config.server.host
        self._user = explicit_user if explicit_user is not None else DEFAULT_USER

        port = port or config.server.port
        if port is not None and not 1 <= port <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got {port}")

        self._binaries = resolve_binaries(config.binaries.postgres_home)
        self._workspace = Workspace.create(
            base_dir=config.workspace.base_dir,
            socket_path_limit=config.workspace.socket_path_limit,
            fallback_root=config.workspace.fallback_root,
        )
        self._supervisor = _Supervisor(
            self._workspace,
            attempts=config.shutdown.attempts,
            interval=config.shutdown.interval_ms / 1000,
        )
        self._finalizer = weakref.finalize(self, self._supervisor.shutdown)

        try:
            if port is None:
                port = find_free_port(self._host, fallback=config.ports.fallback)
            self._port = port

            init_cluster(self._binaries.initdb, self.data_dir, self._user)

            # Stored before the readiness check so a crash is still reaped
            self._supervisor.process = launch_server(
                self._binaries.postgres,
                self.data_dir,
                self._host,
                self._port,
                self.socket_dir,
                self.log_path,
            )
            wait_until_ready(
                self._supervisor.process,
                self._host,
                self._port,
                self.log_path,
                attempts=config.startup.attempts,
                interval=config.startup.interval_ms / 1000,
                connect_timeout=config.startup.connect_timeout_ms / 1000,
            )
        except BaseException:
            self._supervisor.state = InstanceState.FAILED
            self._finalizer()
            self._workspace.remove_socket_dir()
            self._workspace.cleanup()
            raise

        self._supervisor.state = InstanceState.READY

    # ------------------------------------------------------------------
    # Coordinates
    # ------------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def user(self) -> str:
        return self._user

    @property
    def pid(self) -> int | None:
        """PID of the server, or None once it has been stopped."""
        return self._supervisor.pid

    @property
    def owner_pid(self) -> int:
        """PID of the process that created this instance."""
        return self._supervisor.owner_pid

    @property
    def state(self) -> InstanceState:
        return self._supervisor.state

    @property
    def binaries(self) -> Binaries:
        return self._binaries

    @property
    def base_dir(self) -> Path:
        return self._workspace.root

    @property
    def data_dir(self) -> Path:
        return self._workspace.data_dir

    @property
    def socket_dir(self) -> Path:
        return self._workspace.socket_dir

    @property
    def log_path(self) -> Path:
        return self._workspace.log_path

    @property
    def is_running(self) -> bool:
        """True while the server process is alive."""
        process = self._supervisor.process
        return process is not None and process.poll() is None

    # ------------------------------------------------------------------
    # Connection parameters
    # ------------------------------------------------------------------

    def dsn(self) -> str:
        """Perl DBI data source, e.g. ``dbi:Pg:dbname=postgres;host=127.0.0.1;port=54321``."""
        return f"dbi:Pg:dbname={DATABASE};host={self._host};port={self._port:d}"

    def conninfo(self) -> str:
        """libpq keyword/value connection string, values quoted where needed."""
        from psycopg.conninfo import make_conninfo

        return make_conninfo(host=self._host, port=self._port, user=self._user, dbname=DATABASE)

    def url(self) -> str:
        """libpq connection URI, e.g. ``postgresql://postgres@127.0.0.1:54321/postgres``."""
        host = f"[{self._host}]" if ":" in self._host else self._host
        return f"postgresql://{quote(self._user, safe='')}@{host}:{self._port}/{DATABASE}"

    def connect_info(self) -> ConnectInfo:
        """Return ``(dsn, user, "", {"autocommit": True})``."""
        return ConnectInfo(self.dsn(), self._user, "", {"autocommit": True})

    def connect(self, **kwargs: Any) -> psycopg.Connection[Any]:
        """
        Open a psycopg connection to the ``postgres`` database.

        Args:
            **kwargs: Passed to ``psycopg.connect``; ``autocommit`` defaults
                to True.

        Returns:
            An open connection. The caller closes it.
        """
        import psycopg

        kwargs.setdefault("autocommit", True)
        return psycopg.connect(self.conninfo(), **kwargs)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """
        Stop the server: SIGTERM, up to the grace period, then SIGKILL.

        Idempotent, and a no-op outside the owner process. The workspace root
        is removed later, when the instance is garbage-collected or the
        interpreter exits; the relocated socket directory (if any) is removed
        here.
        """
        self._supervisor.shutdown()

    def __enter__(self) -> PostgresInstance:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def __repr__(self) -> str:
        return (
            f"<PostgresInstance {self._host}:{self._port} user={self._user!r} "
            f"pid={self.pid} state={self.state.value}>"
        )


def _running_as_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0


# ---------------------------------------------------------------------------
# Error-slot interface
# ---------------------------------------------------------------------------

_last_error = ""


def create_instance(
    host: str | None = None,
    port: int | None = None,
    user: str | None = None,
    *,
    config: PgSandboxConfig | None = None,
) -> PostgresInstance | None:
    """
    Start an instance, returning None instead of raising on failure.

    The failure message is available from :func:`last_error` afterwards.
    Prefer constructing :class:`PostgresInstance` directly, which raises a
    typed :class:`~pgsandbox.errors.PostgresError`.

    Returns:
        The ready instance, or None.
    """
    global _last_error
    _last_error = ""
    try:
        return PostgresInstance(host, port, user, config=config)
    except PostgresError as exc:
        _last_error = str(exc)
        logger.debug("Instance construction failed: %s", exc)
        return None


def last_error() -> str:
    """Message of the most recent :func:`create_instance` failure, or ``""``."""
    return _last_error
