"""Tests for free-port allocation."""

from __future__ import annotations

import socket
from unittest.mock import patch

from pgsandbox.ports import DEFAULT_FALLBACK_PORT, find_free_port


def test_port_is_ephemeral_and_bindable() -> None:
    port = find_free_port("127.0.0.1")

    assert 1024 < port < 65536
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))  # released again, so this works


def test_ports_differ_across_calls() -> None:
    # Hold each port so the OS cannot hand it out twice
    held = []
    try:
        ports = set()
        for _ in range(5):
            port = find_free_port("127.0.0.1")
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.bind(("127.0.0.1", port))
            held.append(sock)
            ports.add(port)
        assert len(ports) == 5
    finally:
        for sock in held:
            sock.close()


def test_bind_failure_returns_fallback() -> None:
    with patch("pgsandbox.ports.socket.socket.bind", side_effect=OSError("sandboxed")):
        assert find_free_port("127.0.0.1") == DEFAULT_FALLBACK_PORT


def test_custom_fallback() -> None:
    with patch("pgsandbox.ports.socket.socket.bind", side_effect=PermissionError):
        assert find_free_port("127.0.0.1", fallback=6000) == 6000


def test_non_local_address_returns_fallback() -> None:
    # TEST-NET-1, never assigned to a local interface
    assert find_free_port("192.0.2.1", fallback=6001) == 6001


def test_ipv6_host_uses_inet6() -> None:
    with patch("pgsandbox.ports.socket.socket") as mock_socket:
        listener = mock_socket.return_value.__enter__.return_value
        listener.getsockname.return_value = ("::1", 40001, 0, 0)

        assert find_free_port("::1") == 40001

    mock_socket.assert_called_once_with(socket.AF_INET6, socket.SOCK_STREAM)
