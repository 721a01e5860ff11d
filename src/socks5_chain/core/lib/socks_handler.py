"""SOCKS5 relay handler.

This module implements the per-connection relay. Every accepted client goes
through the same five phases, strictly in order:

1. Inbound handshake: accept any method list, select "no authentication"
2. Inbound request: parse the CONNECT target (IPv4, domain or IPv6)
3. Upstream connection: dial the upstream proxy and authenticate with
   username/password (RFC 1929)
4. Upstream CONNECT: replay the target to the upstream as a domain name
5. Splice: copy bytes in both directions until each side is exhausted

Any error in phases 1-4 closes both sockets and ends the connection without
writing anything further to the client. Errors during the splice are treated
as ordinary end of stream.

Example:
    # The handler is used by the RelayServer
    server = RelayServer(params)
    server.start()
"""

import contextlib
import ipaddress
import socket
import socketserver
import struct
import threading
from dataclasses import dataclass
from typing import Final

from loguru import logger

from socks5_chain.core.config import MAX_CREDENTIAL_LENGTH, ConnectionParameters
from socks5_chain.core.exceptions import (
    ProtocolError,
    ProxyError,
    TransportError,
    UpstreamAuthError,
    UpstreamConnectError,
    ValidationError,
)
from socks5_chain.core.lib.proxy_stats import proxy_stats

# SOCKS protocol constants
SOCKS_VERSION: Final = 5
AUTH_VERSION: Final = 1
METHOD_NO_AUTH: Final = 0
METHOD_USERNAME_PASSWORD: Final = 2
CONNECT_CMD: Final = 1
ADDR_TYPE_IPV4: Final = 1
ADDR_TYPE_DOMAIN: Final = 3
ADDR_TYPE_IPV6: Final = 4

# Response codes
RESP_SUCCESS: Final = 0

# Bound address is always reported as 0.0.0.0:0
SUCCESS_REPLY: Final = struct.pack("!BBBB4sH", SOCKS_VERSION, RESP_SUCCESS, 0, ADDR_TYPE_IPV4, bytes(4), 0)

BUFFER_SIZE: Final = 16384

# Domain names are opaque bytes on the wire
HOST_ENCODING: Final = "utf-8"
HOST_ERRORS: Final = "surrogateescape"


@dataclass
class Session:
    """State owned by the thread handling one client.

    Attributes:
        client: Socket accepted from the client
        client_address: Peer address of the client
        upstream: Socket to the upstream proxy, None until connected
        target_host: Destination host requested by the client
        target_port: Destination port requested by the client
    """

    client: socket.socket
    client_address: tuple = ("", 0)
    upstream: socket.socket | None = None
    target_host: str = ""
    target_port: int = 0

    @property
    def target(self) -> str:
        """Destination as ``host:port``, with IPv6 literals bracketed."""
        if ":" in self.target_host:
            return f"[{self.target_host}]:{self.target_port}"
        return f"{self.target_host}:{self.target_port}"

    def close(self) -> None:
        """Close both sockets."""
        for sock in (self.client, self.upstream):
            if sock is not None:
                with contextlib.suppress(OSError):
                    sock.close()


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes.

    Raises:
        TransportError: If the peer closes before ``size`` bytes arrive
    """
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise TransportError(f"connection closed after {len(buf)} of {size} bytes")
        buf += chunk
    return bytes(buf)


def read_address(sock: socket.socket, addr_type: int) -> tuple[str, int]:
    """Read an address and port of the given SOCKS5 address type.

    Returns:
        tuple[str, int]: Host string and port

    Raises:
        ProtocolError: If the address type is not IPv4, domain or IPv6
    """
    if addr_type == ADDR_TYPE_IPV4:
        host = str(ipaddress.IPv4Address(recv_exact(sock, 4)))
    elif addr_type == ADDR_TYPE_DOMAIN:
        length = recv_exact(sock, 1)[0]
        host = recv_exact(sock, length).decode(HOST_ENCODING, HOST_ERRORS)
    elif addr_type == ADDR_TYPE_IPV6:
        host = str(ipaddress.IPv6Address(recv_exact(sock, 16)))
    else:
        raise ProtocolError(f"unsupported address type: {addr_type}")

    (port,) = struct.unpack("!H", recv_exact(sock, 2))
    return host, port


def negotiate(sock: socket.socket) -> None:
    """Phase 1: answer the client's greeting with "no authentication"."""
    version, nmethods = struct.unpack("!BB", recv_exact(sock, 2))
    if version != SOCKS_VERSION:
        raise ProtocolError(f"version mismatch: {version}")

    # Offered methods are irrelevant, we never authenticate clients
    recv_exact(sock, nmethods)
    sock.sendall(struct.pack("!BB", SOCKS_VERSION, METHOD_NO_AUTH))


def read_request(sock: socket.socket) -> tuple[str, int]:
    """Phase 2: parse the client's request and acknowledge it.

    Every command is served as CONNECT.

    Returns:
        tuple[str, int]: Requested destination host and port
    """
    version, cmd, _, addr_type = struct.unpack("!BBBB", recv_exact(sock, 4))
    if version != SOCKS_VERSION:
        raise ProtocolError(f"version mismatch: {version}")
    if cmd != CONNECT_CMD:
        logger.debug(f"Treating command {cmd} as CONNECT")

    host, port = read_address(sock, addr_type)
    sock.sendall(SUCCESS_REPLY)
    return host, port


def pack_credentials(username: str, password: str) -> bytes:
    """Build the RFC 1929 username/password request.

    Raises:
        ValidationError: If either field exceeds 255 bytes
    """
    user = username.encode("utf-8")
    passwd = password.encode("utf-8")
    if len(user) > MAX_CREDENTIAL_LENGTH or len(passwd) > MAX_CREDENTIAL_LENGTH:
        raise ValidationError(f"username and password must be at most {MAX_CREDENTIAL_LENGTH} bytes")
    return struct.pack(f"!BB{len(user)}sB{len(passwd)}s", AUTH_VERSION, len(user), user, len(passwd), passwd)


def connect_upstream(params: ConnectionParameters, timeout: float | None = None) -> socket.socket:
    """Phase 3: dial the upstream proxy and authenticate.

    Args:
        params: Resolved connection parameters
        timeout: Dial timeout in seconds, None for the OS default

    Returns:
        socket.socket: Authenticated socket in blocking mode

    Raises:
        UpstreamAuthError: If the upstream refuses the method or credentials
    """
    remote = socket.create_connection(params.upstream_address, timeout=timeout)
    try:
        remote.settimeout(None)
        remote.sendall(struct.pack("!BBB", SOCKS_VERSION, 1, METHOD_USERNAME_PASSWORD))

        version, method = struct.unpack("!BB", recv_exact(remote, 2))
        if version != SOCKS_VERSION:
            raise ProtocolError(f"upstream version mismatch: {version}")
        if method != METHOD_USERNAME_PASSWORD:
            raise UpstreamAuthError(f"upstream refused username/password authentication (method {method})", method)

        remote.sendall(pack_credentials(params.username, params.password))
        _, status = struct.unpack("!BB", recv_exact(remote, 2))
        if status != RESP_SUCCESS:
            raise UpstreamAuthError("upstream authentication failed", status)
    except BaseException:
        remote.close()
        raise
    return remote


def forward_request(sock: socket.socket, host: str, port: int) -> None:
    """Phase 4: ask the upstream to CONNECT to ``host:port``.

    The target is always sent as a domain name, whatever type the client used.

    Raises:
        UpstreamConnectError: If the upstream reply carries a non-zero status
    """
    host_bytes = host.encode(HOST_ENCODING, HOST_ERRORS)
    if len(host_bytes) > 255:
        raise ProtocolError(f"target host too long: {len(host_bytes)} bytes")

    request = struct.pack(
        f"!BBBBB{len(host_bytes)}sH",
        SOCKS_VERSION,
        CONNECT_CMD,
        0,
        ADDR_TYPE_DOMAIN,
        len(host_bytes),
        host_bytes,
        port,
    )
    sock.sendall(request)

    version, status, _, addr_type = struct.unpack("!BBBB", recv_exact(sock, 4))
    if version != SOCKS_VERSION:
        raise ProtocolError(f"upstream version mismatch: {version}")
    if status != RESP_SUCCESS:
        raise UpstreamConnectError(f"upstream connection failed: {status}", status)

    # Drain the bound address so it does not leak into the relayed stream
    read_address(sock, addr_type)


def _pipe(src: socket.socket, dst: socket.socket, outbound: bool) -> None:
    """Copy ``src`` into ``dst`` until end of stream, then half-close ``dst``."""
    try:
        while True:
            data = src.recv(BUFFER_SIZE)
            if not data:
                break
            dst.sendall(data)
            if outbound:
                proxy_stats.update_bytes(len(data), 0)
            else:
                proxy_stats.update_bytes(0, len(data))
    except OSError as e:
        logger.debug(f"Stream ended: {e}")
    finally:
        with contextlib.suppress(OSError):
            dst.shutdown(socket.SHUT_WR)


def splice(client: socket.socket, upstream: socket.socket) -> None:
    """Phase 5: relay both directions concurrently and wait for both."""
    pipes = [
        threading.Thread(target=_pipe, args=(client, upstream, True), daemon=True),
        threading.Thread(target=_pipe, args=(upstream, client, False), daemon=True),
    ]
    for pipe in pipes:
        pipe.start()
    for pipe in pipes:
        pipe.join()


def relay(session: Session, params: ConnectionParameters, connect_timeout: float | None = None) -> None:
    """Run all five phases for ``session``.

    Sockets are left open; the caller closes the session.
    """
    negotiate(session.client)
    session.target_host, session.target_port = read_request(session.client)
    logger.debug(f"{session.client_address} requested {session.target}")

    session.upstream = connect_upstream(params, connect_timeout)
    forward_request(session.upstream, session.target_host, session.target_port)
    logger.info(f"Relaying {session.client_address[0]} -> {session.target} via {params.upstream_host}")

    splice(session.client, session.upstream)


class SocksHandler(socketserver.BaseRequestHandler):
    """Handle one inbound SOCKS5 connection."""

    def handle(self) -> None:
        session = Session(client=self.request, client_address=self.client_address)
        proxy_stats.connection_started()
        try:
            relay(session, self.server.params, self.server.connect_timeout)
        except (ProxyError, OSError) as exc:
            proxy_stats.connection_failed()
            logger.warning(f"Connection from {self.client_address[0]}:{self.client_address[1]} failed: {exc}")
        finally:
            session.close()
            proxy_stats.connection_ended()
