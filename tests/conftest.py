"""Shared fixtures: a scripted upstream SOCKS5 proxy and relay helpers."""

import socket
import struct
import sys
import threading
import time

import pytest
from loguru import logger

from socks5_chain.core.config import ConnectionParameters, CredentialStore
from socks5_chain.core.lib.proxy_server import RelayServer

USERNAME = "alice"
PASSWORD = "s3cret"


def read_exact(sock: socket.socket, size: int) -> bytes:
    buf = b""
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise ConnectionError(f"closed after {len(buf)} of {size} bytes")
        buf += chunk
    return buf


def recv_all(sock: socket.socket) -> bytes:
    """Read until the peer closes its write side."""
    data = b""
    while chunk := sock.recv(4096):
        data += chunk
    return data


def peer_closed(sock: socket.socket) -> bool:
    """True if the peer closed without sending anything more."""
    try:
        return sock.recv(16) == b""
    except ConnectionResetError:
        # Closing with unread input resets instead of sending FIN
        return True


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class MockUpstream:
    """Minimal upstream SOCKS5 proxy that echoes once connected.

    Args:
        method: Method byte sent in reply to the greeting
        auth_status: Status byte sent in reply to username/password auth
        connect_status: Status byte sent in reply to CONNECT
    """

    def __init__(self, method: int = 2, auth_status: int = 0, connect_status: int = 0) -> None:
        self.method = method
        self.auth_status = auth_status
        self.connect_status = connect_status
        self.auth_attempts: list[tuple[str, str]] = []
        self.requests: list[tuple[int, str, int]] = []
        self.errors: list[Exception] = []
        self._sock = socket.create_server(("127.0.0.1", 0))
        self._sock.settimeout(0.1)
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)

    @property
    def port(self) -> int:
        return self._sock.getsockname()[1]

    def start(self) -> "MockUpstream":
        self._thread.start()
        return self

    def close(self) -> None:
        self._closed.set()
        self._thread.join(2)
        self._sock.close()

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                conn, _ = self._sock.accept()
            except TimeoutError:
                continue
            except OSError:
                return
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn: socket.socket) -> None:
        conn.settimeout(5)
        with conn:
            try:
                _, nmethods = read_exact(conn, 2)
                read_exact(conn, nmethods)
                conn.sendall(bytes([5, self.method]))

                _, ulen = read_exact(conn, 2)
                user = read_exact(conn, ulen).decode()
                plen = read_exact(conn, 1)[0]
                passwd = read_exact(conn, plen).decode()
                self.auth_attempts.append((user, passwd))
                conn.sendall(bytes([1, self.auth_status]))
                if self.auth_status:
                    return

                _, _, _, atyp = read_exact(conn, 4)
                hlen = read_exact(conn, 1)[0]
                host = read_exact(conn, hlen).decode()
                (port,) = struct.unpack("!H", read_exact(conn, 2))
                self.requests.append((atyp, host, port))
                conn.sendall(bytes([5, self.connect_status, 0, 1, 0, 0, 0, 0, 0, 0]))
                if self.connect_status:
                    return

                while data := conn.recv(4096):
                    conn.sendall(data)
            except (OSError, ConnectionError) as e:
                self.errors.append(e)


def socks5_greet(sock: socket.socket) -> bytes:
    sock.sendall(b"\x05\x01\x00")
    return read_exact(sock, 2)


def socks5_request(sock: socket.socket, host: str, port: int) -> bytes:
    """Send a domain-name CONNECT and return the 10-byte reply."""
    encoded = host.encode()
    sock.sendall(struct.pack(f"!BBBBB{len(encoded)}sH", 5, 1, 0, 3, len(encoded), encoded, port))
    return read_exact(sock, 10)


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")


@pytest.fixture
def store(tmp_path) -> CredentialStore:
    return CredentialStore(tmp_path / "config")


@pytest.fixture
def mock_upstream():
    upstreams: list[MockUpstream] = []

    def factory(**kwargs) -> MockUpstream:
        upstream = MockUpstream(**kwargs).start()
        upstreams.append(upstream)
        return upstream

    yield factory
    for upstream in upstreams:
        upstream.close()


def make_params(upstream_port: int, **overrides) -> ConnectionParameters:
    values = {
        "upstream_host": "127.0.0.1",
        "upstream_port": upstream_port,
        "username": USERNAME,
        "password": PASSWORD,
        "local_host": "127.0.0.1",
        "local_port": 0,
    }
    values.update(overrides)
    return ConnectionParameters(**values)


@pytest.fixture
def start_relay():
    servers: list[tuple[RelayServer, threading.Thread]] = []

    def factory(params: ConnectionParameters, **kwargs) -> RelayServer:
        server = RelayServer(params, **kwargs)
        thread = threading.Thread(target=server.start, daemon=True)
        thread.start()
        assert server.wait_started(5)
        servers.append((server, thread))
        return server

    yield factory
    for server, thread in servers:
        server.stop()
        thread.join(5)
