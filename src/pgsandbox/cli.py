"""Entry point for the `pgsandbox` CLI."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pgsandbox.binaries import resolve_binaries
from pgsandbox.config import ConfigError, load_config
from pgsandbox.errors import BinaryNotFoundError, PostgresError

if TYPE_CHECKING:
    from pgsandbox.instance import PostgresInstance


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and run the requested command."""
    parser = argparse.ArgumentParser(
        prog="pgsandbox",
        description="Throwaway PostgreSQL servers for test suites.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log debug output to stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # which
    which_parser = subparsers.add_parser(
        "which", help="Show the initdb and postgres executables that would be used"
    )
    which_parser.add_argument(
        "--postgres-home",
        metavar="DIR",
        help="PostgreSQL installation directory (overrides $POSTGRES_HOME).",
    )

    # run
    run_parser = subparsers.add_parser(
        "run", help="Start a temporary server and keep it running until interrupted"
    )
    run_parser.add_argument("--host", help="Listen address (default: 127.0.0.1).")
    run_parser.add_argument("--port", type=int, help="Listen port (default: auto-selected).")
    run_parser.add_argument("--user", help="Superuser name (default: postgres).")
    run_parser.add_argument(
        "--path",
        default=".",
        metavar="PATH",
        help="Directory containing .pgsandbox.toml (default: current working directory).",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if args.command == "which":
        _which(args.postgres_home)
    elif args.command == "run":
        _run(args)
    else:
        parser.print_help()
        sys.exit(0)


def _which(postgres_home: str | None) -> None:
    """Print resolved binaries, or the search report and exit 1.

    Args:
        postgres_home: Optional installation directory
    """
    try:
        binaries = resolve_binaries(postgres_home)
    except BinaryNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    print(f"initdb:   {binaries.initdb}")
    print(f"postgres: {binaries.postgres}")


def _run(args: argparse.Namespace) -> None:
    """Start an instance, print its coordinates and wait for a signal.

    Args:
        args: Parsed command-line arguments
    """
    from pgsandbox.instance import PostgresInstance

    overrides: dict[str, Any] = {}
    for key in ("host", "port", "user"):
        value = getattr(args, key)
        if value is not None:
            overrides.setdefault("server", {})[key] = value

    try:
        config = load_config(Path(args.path).resolve(), cli_overrides=overrides)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        instance = PostgresInstance(config=config)
    except PostgresError as exc:
        print(f"Could not start PostgreSQL: {exc}", file=sys.stderr)
        sys.exit(1)

    stop_event = threading.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, lambda *_: stop_event.set())

    try:
        _print_instance(instance)
        sys.stdout.flush()
        while not stop_event.wait(timeout=0.5):
            if not instance.is_running:
                print("PostgreSQL exited unexpectedly.", file=sys.stderr)
                break
    finally:
        instance.stop()
        print("PostgreSQL stopped.")


def _print_instance(instance: PostgresInstance) -> None:
    """Print connection details of a running instance.

    Args:
        instance: PostgresInstance to describe
    """
    print("PostgreSQL is running:")
    print(f"  DSN:      {instance.dsn()}")
    print(f"  conninfo: {instance.conninfo()}")
    print(f"  URL:      {instance.url()}")
    print(f"  PID:      {instance.pid}")
    print(f"  Data dir: {instance.data_dir}")
    print(f"  Log:      {instance.log_path}")
    print()
    print("Press Ctrl+C to stop.")


def _get_version() -> str:
    from pgsandbox import __version__

    return __version__


if __name__ == "__main__":
    main()
