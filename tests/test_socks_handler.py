import socket
import struct

import pytest
from conftest import PASSWORD, USERNAME, make_params, peer_closed

from socks5_chain.core.exceptions import (
    ProtocolError,
    TransportError,
    UpstreamAuthError,
    UpstreamConnectError,
    ValidationError,
)
from socks5_chain.core.lib.socks_handler import (
    SUCCESS_REPLY,
    Session,
    connect_upstream,
    forward_request,
    negotiate,
    pack_credentials,
    read_request,
    recv_exact,
)


@pytest.fixture
def pair():
    client, server = socket.socketpair()
    client.settimeout(2)
    server.settimeout(2)
    yield client, server
    client.close()
    server.close()


def closed_without_reply(client: socket.socket, server: socket.socket) -> bool:
    server.close()
    return peer_closed(client)


@pytest.mark.parametrize("methods", [b"\x00", b"\x00\x02", b"\x02\x80\xff", b""])
def test_negotiate_always_selects_no_auth(pair, methods):
    client, server = pair
    client.sendall(bytes([5, len(methods)]) + methods)

    negotiate(server)
    assert client.recv(16) == b"\x05\x00"


def test_negotiate_version_mismatch(pair):
    client, server = pair
    client.sendall(b"\x04\x01\x00")

    with pytest.raises(ProtocolError, match="version mismatch"):
        negotiate(server)
    assert closed_without_reply(client, server)


def test_negotiate_short_read(pair):
    client, server = pair
    client.sendall(b"\x05\x03\x00")
    client.shutdown(socket.SHUT_WR)

    with pytest.raises(TransportError):
        negotiate(server)


@pytest.mark.parametrize(
    ("request_bytes", "host", "port", "target"),
    [
        (b"\x05\x01\x00\x01\xc0\xa8\x01\x01\x00\x50", "192.168.1.1", 80, "192.168.1.1:80"),
        (b"\x05\x01\x00\x03\x0bexample.com\x01\xbb", "example.com", 443, "example.com:443"),
        (
            b"\x05\x01\x00\x04" + socket.inet_pton(socket.AF_INET6, "2001:db8::1") + b"\x1f\x90",
            "2001:db8::1",
            8080,
            "[2001:db8::1]:8080",
        ),
    ],
)
def test_read_request(pair, request_bytes, host, port, target):
    client, server = pair
    client.sendall(request_bytes)

    assert read_request(server) == (host, port)
    assert client.recv(16) == SUCCESS_REPLY

    session = Session(client=server, target_host=host, target_port=port)
    assert session.target == target


def test_read_request_accepts_any_command(pair):
    client, server = pair
    client.sendall(b"\x05\x02\x00\x03\x04host\x00\x16")

    assert read_request(server) == ("host", 22)


def test_success_reply_layout():
    assert SUCCESS_REPLY == bytes([5, 0, 0, 1, 0, 0, 0, 0, 0, 0])


def test_read_request_version_mismatch(pair):
    client, server = pair
    client.sendall(b"\x04\x01\x00\x01\x7f\x00\x00\x01\x00\x50")

    with pytest.raises(ProtocolError):
        read_request(server)
    assert closed_without_reply(client, server)


def test_read_request_unsupported_address_type(pair):
    client, server = pair
    client.sendall(b"\x05\x01\x00\x05\x7f\x00\x00\x01\x00\x50")

    with pytest.raises(ProtocolError, match="unsupported address type"):
        read_request(server)
    assert closed_without_reply(client, server)


def test_recv_exact_reassembles_chunks(pair):
    client, server = pair
    client.sendall(b"ab")
    client.sendall(b"cd")

    assert recv_exact(server, 4) == b"abcd"


def test_pack_credentials():
    assert pack_credentials("user", "pw") == b"\x01\x04user\x02pw"


def test_pack_credentials_rejects_long_values():
    with pytest.raises(ValidationError):
        pack_credentials("u" * 256, "pw")
    with pytest.raises(ValidationError):
        pack_credentials("user", "p" * 256)


def test_forward_request_always_uses_domain_type(pair):
    upstream, relay_side = pair
    upstream.sendall(bytes([5, 0, 0, 1, 10, 0, 0, 1, 0x04, 0x38]))

    forward_request(relay_side, "192.168.1.1", 80)
    assert upstream.recv(64) == b"\x05\x01\x00\x03\x0b192.168.1.1\x00\x50"


def test_forward_request_drains_domain_bound_address(pair):
    upstream, relay_side = pair
    upstream.sendall(b"\x05\x00\x00\x03\x05bound\x00\x01" + b"payload")

    forward_request(relay_side, "example.com", 443)
    assert upstream.recv(64) == b"\x05\x01\x00\x03\x0bexample.com\x01\xbb"
    assert relay_side.recv(64) == b"payload"


def test_forward_request_failure_carries_status(pair):
    upstream, relay_side = pair
    upstream.sendall(bytes([5, 5, 0, 1, 0, 0, 0, 0, 0, 0]))

    with pytest.raises(UpstreamConnectError, match="upstream connection failed: 5") as excinfo:
        forward_request(relay_side, "example.com", 443)
    assert excinfo.value.status == 5


def test_connect_upstream_authenticates(mock_upstream):
    upstream = mock_upstream()

    sock = connect_upstream(make_params(upstream.port))
    try:
        sock.sendall(struct.pack("!BBBBB4sH", 5, 1, 0, 3, 4, b"host", 80))
        assert recv_exact(sock, 10)[1] == 0
    finally:
        sock.close()
    assert upstream.auth_attempts == [(USERNAME, PASSWORD)]


def test_connect_upstream_auth_failure(mock_upstream):
    upstream = mock_upstream(auth_status=1)

    with pytest.raises(UpstreamAuthError) as excinfo:
        connect_upstream(make_params(upstream.port))
    assert excinfo.value.status == 1


def test_connect_upstream_method_refused(mock_upstream):
    upstream = mock_upstream(method=0xFF)

    with pytest.raises(UpstreamAuthError):
        connect_upstream(make_params(upstream.port))
    assert upstream.auth_attempts == []


def test_connect_upstream_unreachable():
    with socket.create_server(("127.0.0.1", 0)) as placeholder:
        port = placeholder.getsockname()[1]

    with pytest.raises(OSError):
        connect_upstream(make_params(port), timeout=2)
