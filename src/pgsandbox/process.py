"""Running ``initdb`` and supervising the ``postgres`` child process."""

from __future__ import annotations

import logging
import signal
import socket
import subprocess
import time
from pathlib import Path

from pgsandbox.errors import (
    InitFailedError,
    LaunchFailedError,
    StartupCrashedError,
    StartupTimeoutError,
)

logger = logging.getLogger(__name__)

# Lines of initdb output included in InitFailedError messages
_INIT_OUTPUT_TAIL = 20


def read_log(log_path: Path) -> str:
    """Return the server log, or a placeholder if it cannot be read."""
    if not log_path.is_file():
        return "No log found"
    try:
        return log_path.read_text(errors="replace")
    except OSError:
        return "Cannot open log"


# ---------------------------------------------------------------------------
# Cluster initialisation
# ---------------------------------------------------------------------------


def init_cluster(initdb: Path, data_dir: Path, user: str) -> None:
    """
    Create a fresh cluster in *data_dir*.

    Trust authentication is used (the cluster is private and short-lived)
    and ``--nosync`` skips fsync for speed.

    Args:
        initdb: Path to the ``initdb`` executable.
        data_dir: Cluster directory to create; must not exist or be empty.
        user: Name of the superuser to create.

    Raises:
        InitFailedError: If initdb cannot be run or exits non-zero.
    """
    cmd = [str(initdb), "-D", str(data_dir), "--auth=trust", "--nosync", "-U", user]
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise InitFailedError(f"initdb could not be executed: {exc}") from exc

    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip().splitlines()
        tail = "\n".join(output[-_INIT_OUTPUT_TAIL:])
        message = f"initdb failed with exit code {result.returncode}"
        if tail:
            message += f"\n{tail}"
        raise InitFailedError(message, returncode=result.returncode)


# ---------------------------------------------------------------------------
# Launch and readiness
# ---------------------------------------------------------------------------


def launch_server(
    postgres: Path,
    data_dir: Path,
    host: str,
    port: int,
    socket_dir: Path,
    log_path: Path,
) -> subprocess.Popen[bytes]:
    """
    Start the server in the foreground as a child process.

    ``-F`` disables fsync. stdout and stderr both go to *log_path*. The child
    gets its own session so terminal signals aimed at the test runner do not
    reach it; only :func:`terminate_server` ends it.

    Args:
        postgres: Path to the server executable.
        data_dir: Initialised cluster directory.
        host: Listen address.
        port: Listen port.
        socket_dir: Directory for the unix-domain socket.
        log_path: File receiving the server's output.

    Returns:
        The child process handle.

    Raises:
        LaunchFailedError: If the process cannot be spawned.
    """
    cmd = [
        str(postgres),
        "-D", str(data_dir),
        "-p", str(port),
        "-h", host,
        "-k", str(socket_dir),
        "-F",
    ]  # fmt: skip
    try:
        with log_path.open("wb") as log_file:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except OSError as exc:
        raise LaunchFailedError(f"Failed to start {postgres}: {exc}") from exc

    logger.info("Started postgres (pid %d) on %s:%d", process.pid, host, port)
    return process


def wait_until_ready(
    process: subprocess.Popen[bytes],
    host: str,
    port: int,
    log_path: Path,
    attempts: int = 50,
    interval: float = 0.1,
    connect_timeout: float = 0.5,
) -> None:
    """
    Block until the server accepts TCP connections.

    Each attempt first checks whether the child has already exited, then
    tries to connect.

    Args:
        process: The server process returned by :func:`launch_server`.
        host: Address to connect to.
        port: Port to connect to.
        log_path: Server log, quoted in the error if the server dies.
        attempts: Maximum number of checks.
        interval: Seconds to sleep between checks.
        connect_timeout: Timeout of each connection attempt in seconds.

    Raises:
        StartupCrashedError: If the child exits before becoming reachable.
        StartupTimeoutError: If the budget runs out.
    """
    for _ in range(attempts):
        returncode = process.poll()
        if returncode is not None:
            log = read_log(log_path)
            raise StartupCrashedError(
                f"Postgres died on startup. Logs:\n{log}", returncode=returncode, log=log
            )

        try:
            with socket.create_connection((host, port), timeout=connect_timeout):
                logger.info("Postgres ready on %s:%d", host, port)
                return
        except OSError:
            pass

        time.sleep(interval)

    raise StartupTimeoutError(
        f"Timed out waiting for Postgres to start on {host}:{port}", host=host, port=port
    )


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


def terminate_server(
    process: subprocess.Popen[bytes], attempts: int = 50, interval: float = 0.1
) -> bool:
    """
    Stop the server: SIGTERM, wait, then SIGKILL if it is still running.

    Safe to call on a process that has already exited. Signal delivery
    errors are logged, never raised.

    Args:
        process: The server process.
        attempts: Number of non-blocking reap checks after SIGTERM.
        interval: Seconds between checks.

    Returns:
        True if the process had to be killed with SIGKILL.
    """
    try:
        process.send_signal(signal.SIGTERM)
    except OSError as exc:
        logger.debug("SIGTERM to pid %d failed: %s", process.pid, exc)

    for _ in range(attempts):
        if process.poll() is not None:
            logger.debug("Postgres (pid %d) exited with %s", process.pid, process.returncode)
            return False
        time.sleep(interval)

    if process.poll() is not None:
        return False

    logger.warning("Postgres (pid %d) ignored SIGTERM; sending SIGKILL", process.pid)
    try:
        process.kill()
    except OSError as exc:
        logger.warning("SIGKILL to pid %d failed: %s", process.pid, exc)
    try:
        process.wait()
    except OSError as exc:
        logger.warning("Failed to reap pid %d: %s", process.pid, exc)
    return True
