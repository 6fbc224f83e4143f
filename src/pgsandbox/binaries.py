"""Discovery of the PostgreSQL ``initdb`` and server executables."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from pgsandbox.errors import BinaryNotFoundError

logger = logging.getLogger(__name__)

POSTGRES_HOME_ENV = "POSTGRES_HOME"

# Server executable names, in order of preference
SERVER_NAMES = ("postgres", "postmaster")

_HINT = (
    "Hint: Install PostgreSQL (e.g. 'sudo apt install postgresql') "
    "or set POSTGRES_HOME to your PostgreSQL installation directory "
    "(e.g. POSTGRES_HOME=/usr/lib/postgresql/16)."
)


@dataclass(frozen=True)
class Binaries:
    """Absolute paths of the executables needed to run a cluster."""

    initdb: Path
    postgres: Path


def base_bin_dir(postgres_home: str | Path | None = None) -> Path | None:
    """Return ``<postgres_home>/bin``, consulting ``$POSTGRES_HOME`` if needed.

    Args:
        postgres_home: Explicit installation directory, or None to use the
            environment variable.

    Returns:
        The ``bin`` directory, or None if no installation directory is set.
    """
    home = postgres_home or os.environ.get(POSTGRES_HOME_ENV)
    if not home:
        return None
    return Path(home) / "bin"


def search_locations(base_dir: Path | None) -> list[str]:
    """Every directory searched, the override directory first, then ``PATH``."""
    searched: list[str] = []
    if base_dir is not None:
        searched.append(str(base_dir))
    searched.extend(p for p in os.environ.get("PATH", "").split(os.pathsep) if p)
    return searched


def _which(name: str, base_dir: Path | None) -> Path | None:
    """Look for *name* in *base_dir* first, then on ``PATH``."""
    if base_dir is not None:
        found = shutil.which(name, path=str(base_dir))
        if found:
            return Path(found).absolute()
    found = shutil.which(name)
    if found:
        return Path(found).absolute()
    return None


def _not_found(label: str, binary: str, base_dir: Path | None) -> BinaryNotFoundError:
    searched = search_locations(base_dir)
    listing = "".join(f"  - {location}\n" for location in searched)
    message = (
        f"Cannot find {label} binary. PostgreSQL does not appear to be "
        f"installed or is not in your PATH.\n"
        f"Searched in:\n{listing}"
        f"{_HINT}"
    )
    return BinaryNotFoundError(message, binary=binary, searched=searched)


def resolve_binaries(postgres_home: str | Path | None = None) -> Binaries:
    """
    Locate ``initdb`` and the server executable.

    ``<postgres_home>/bin`` (or ``$POSTGRES_HOME/bin``) is searched before
    ``PATH``. The server may be named ``postgres`` or ``postmaster``.

    Args:
        postgres_home: Optional installation directory overriding the
            environment variable.

    Returns:
        The resolved Binaries.

    Raises:
        BinaryNotFoundError: If either executable is missing. The message lists
            every directory searched.
    """
    base_dir = base_bin_dir(postgres_home)

    initdb = _which("initdb", base_dir)
    if initdb is None:
        raise _not_found("'initdb'", "initdb", base_dir)

    postgres = None
    for name in SERVER_NAMES:
        postgres = _which(name, base_dir)
        if postgres is not None:
            break
    if postgres is None:
        raise _not_found("'postgres' (or 'postmaster')", "postgres", base_dir)

    logger.debug("Resolved initdb=%s postgres=%s", initdb, postgres)
    return Binaries(initdb=initdb, postgres=postgres)
