"""Exceptions raised while provisioning a temporary PostgreSQL instance."""

from __future__ import annotations

from collections.abc import Sequence


class PostgresError(RuntimeError):
    """Base exception for pgsandbox failures."""


class PrivilegeDeniedError(PostgresError):
    """Raised when constructing as root without an explicit superuser name."""


class BinaryNotFoundError(PostgresError):
    """Raised when ``initdb`` or the server executable cannot be located."""

    def __init__(self, message: str, binary: str, searched: Sequence[str]) -> None:
        super().__init__(message)
        self.binary = binary
        self.searched = list(searched)


class WorkspaceError(PostgresError):
    """Raised when a temporary or socket directory cannot be created."""


class InitFailedError(PostgresError):
    """Raised when ``initdb`` exits non-zero or cannot be executed."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class LaunchFailedError(PostgresError):
    """Raised when the server process cannot be spawned."""


class StartupCrashedError(PostgresError):
    """Raised when the server exits before it accepts connections."""

    def __init__(self, message: str, returncode: int | None, log: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.log = log


class StartupTimeoutError(PostgresError):
    """Raised when the server does not accept connections within the budget."""

    def __init__(self, message: str, host: str, port: int) -> None:
        super().__init__(message)
        self.host = host
        self.port = port
