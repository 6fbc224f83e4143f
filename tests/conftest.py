"""Shared fixtures for the pgsandbox test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from pgsandbox.config import PgSandboxConfig
from tests.helpers.fakes import install_fake_postgres


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's config files and PGSANDBOX_* variables out of tests."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in ("PGSANDBOX_HOST", "PGSANDBOX_PORT", "PGSANDBOX_USER", "PGSANDBOX_BASE_DIR"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("PGSANDBOX_FAKE_POSTGRES_MODE", raising=False)
    monkeypatch.delenv("PGSANDBOX_FAKE_INITDB_EXIT", raising=False)


@pytest.fixture
def fake_home(tmp_path: Path) -> Path:
    """A fake PostgreSQL installation (``<home>/bin/{initdb,postgres}``)."""
    home = tmp_path / "pghome"
    install_fake_postgres(home)
    return home


@pytest.fixture
def fake_config(fake_home: Path) -> PgSandboxConfig:
    """Config pointing at the fake installation, with a short shutdown grace."""
    config = PgSandboxConfig()
    config.binaries.postgres_home = str(fake_home)
    config.server.user = "tester"
    config.shutdown.attempts = 20
    config.shutdown.interval_ms = 50
    return config
