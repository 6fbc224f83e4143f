"""Throwaway PostgreSQL servers for test suites."""

from pgsandbox.errors import (
    BinaryNotFoundError,
    InitFailedError,
    LaunchFailedError,
    PostgresError,
    PrivilegeDeniedError,
    StartupCrashedError,
    StartupTimeoutError,
    WorkspaceError,
)
from pgsandbox.instance import (
    ConnectInfo,
    InstanceState,
    PostgresInstance,
    create_instance,
    last_error,
)

__version__ = "0.1.0"

__all__ = [
    "BinaryNotFoundError",
    "ConnectInfo",
    "InitFailedError",
    "InstanceState",
    "LaunchFailedError",
    "PostgresError",
    "PostgresInstance",
    "PrivilegeDeniedError",
    "StartupCrashedError",
    "StartupTimeoutError",
    "WorkspaceError",
    "__version__",
    "create_instance",
    "last_error",
]
