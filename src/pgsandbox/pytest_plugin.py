"""pytest fixtures backed by a temporary PostgreSQL instance.

Enabled automatically through the ``pytest11`` entry point once pgsandbox is
installed::

    def test_insert(postgresql):
        postgresql.execute("CREATE TABLE item (id serial PRIMARY KEY, name text)")
        postgresql.execute("INSERT INTO item (name) VALUES ('widget')")

Set ``pgsandbox_schema`` in the pytest ini file to a SQL file (relative to
the rootdir) to have it executed once per session before the first
``postgresql`` connection is handed out.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from pgsandbox.config import ConfigError, PgSandboxConfig, load_config
from pgsandbox.errors import PostgresError
from pgsandbox.instance import ConnectInfo, PostgresInstance

if TYPE_CHECKING:
    import psycopg

SCHEMA_INI = "pgsandbox_schema"


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addini(
        SCHEMA_INI,
        help="SQL file (relative to rootdir) deployed into the pgsandbox instance",
        default="",
    )


def schema_path(config: pytest.Config) -> Path | None:
    """Resolve the ``pgsandbox_schema`` ini value against the rootdir."""
    value = config.getini(SCHEMA_INI)
    if not value:
        return None
    path = Path(value)
    if not path.is_absolute():
        path = Path(config.rootpath) / path
    return path


def start_instance(config: PgSandboxConfig, **kwargs: Any) -> PostgresInstance:
    """Construct an instance, turning failures into ``pytest.fail``."""
    try:
        return PostgresInstance(config=config, **kwargs)
    except PostgresError as exc:
        pytest.fail(f"Could not start PostgreSQL: {exc}", pytrace=False)


@pytest.fixture(scope="session")
def pgsandbox_config(pytestconfig: pytest.Config) -> PgSandboxConfig:
    """Configuration loaded from the rootdir's ``.pgsandbox.toml`` and environment."""
    try:
        return load_config(Path(pytestconfig.rootpath))
    except ConfigError as exc:
        pytest.fail(f"Invalid pgsandbox configuration: {exc}", pytrace=False)


@pytest.fixture(scope="session")
def postgresql_instance(pgsandbox_config: PgSandboxConfig) -> Iterator[PostgresInstance]:
    """One PostgreSQL server shared by the whole session."""
    instance = start_instance(pgsandbox_config)
    try:
        yield instance
    finally:
        instance.stop()


@pytest.fixture(scope="session")
def postgresql_connect_info(postgresql_instance: PostgresInstance) -> ConnectInfo:
    """``(dsn, user, password, attributes)`` of the session instance."""
    return postgresql_instance.connect_info()


@pytest.fixture(scope="session")
def _postgresql_schema(
    pytestconfig: pytest.Config, postgresql_instance: PostgresInstance
) -> Path | None:
    path = schema_path(pytestconfig)
    if path is None:
        return None
    if not path.is_file():
        pytest.fail(f"{SCHEMA_INI} file not found: {path}", pytrace=False)
    with postgresql_instance.connect() as conn:
        conn.execute(path.read_text())
    return path


@pytest.fixture
def postgresql(
    postgresql_instance: PostgresInstance, _postgresql_schema: Path | None
) -> Iterator[psycopg.Connection[Any]]:
    """An autocommit psycopg connection to the session instance.

    Closed at the end of the test, before the instance itself is stopped.
    """
    conn = postgresql_instance.connect()
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def postgresql_factory(
    pgsandbox_config: PgSandboxConfig,
) -> Iterator[Callable[..., PostgresInstance]]:
    """Start extra instances inside one test; all are stopped afterwards.

    Accepts the same keyword arguments as :class:`PostgresInstance`.
    """
    started: list[PostgresInstance] = []

    def factory(**kwargs: Any) -> PostgresInstance:
        instance = start_instance(pgsandbox_config, **kwargs)
        started.append(instance)
        return instance

    yield factory

    for instance in reversed(started):
        instance.stop()
