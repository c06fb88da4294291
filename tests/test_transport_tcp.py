import queue
import socket
import threading
import time

import pytest

from siptransport.transport_tcp import (
    IDLE_CONNECTION,
    TCPConnection,
    TCPTransport,
    TLSTransport,
)
from siptransport.utils import Addr


class FakeMsg:
    def __init__(self, text):
        self.text = text
        self.transport = None
        self.source = None

    def __str__(self):
        return self.text


class FakeStream:
    def __init__(self, seen):
        self.seen = seen

    def parse_sip_stream(self, data):
        self.seen.append(data)
        text = data.decode()
        if "BAD" in text:
            raise ValueError("bad message")
        return [FakeMsg(text)]


class FakeParser:
    def __init__(self):
        self.seen = []

    def new_sip_stream(self):
        return FakeStream(self.seen)

    def parse_sip(self, data):
        return FakeMsg(data.decode())


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def tcp_pair():
    listener = socket.create_server(("127.0.0.1", 0))
    client = socket.create_connection(listener.getsockname())
    server, _ = listener.accept()
    listener.close()
    server.settimeout(5)
    yield client, server
    client.close()
    server.close()


@pytest.fixture
def listener():
    sock = socket.create_server(("127.0.0.1", 0))
    sock.settimeout(5)
    yield sock
    sock.close()


def test_connection_addresses(tcp_pair):
    client, server = tcp_pair
    conn = TCPConnection(client)
    assert conn.local_addr() == f"127.0.0.1:{client.getsockname()[1]}"
    assert conn.remote_addr() == f"127.0.0.1:{server.getsockname()[1]}"


def test_ref_counting(tcp_pair):
    client, _ = tcp_pair
    conn = TCPConnection(client)
    assert conn.ref(1) == 1
    assert conn.ref(2) == 3
    assert conn.try_close() == 2
    assert conn.closed is False


def test_try_close_to_zero_closes_socket(tcp_pair):
    client, server = tcp_pair
    conn = TCPConnection(client, refcount=1)
    assert conn.try_close() == 0
    assert conn.closed is True
    assert server.recv(10) == b""


def test_try_close_negative_returns_zero(tcp_pair):
    client, _ = tcp_pair
    conn = TCPConnection(client, refcount=0)
    assert conn.try_close() == 0
    assert conn.closed is False


def test_hard_close_resets_refs(tcp_pair):
    client, server = tcp_pair
    conn = TCPConnection(client, refcount=5)
    conn.close()
    assert conn.ref(0) == 0
    assert server.recv(10) == b""


def test_write_msg_sends_serialised_message(tcp_pair):
    client, server = tcp_pair
    conn = TCPConnection(client)
    conn.write_msg(FakeMsg("OPTIONS sip:bob@example.com SIP/2.0\r\n\r\n"))
    received = TCPConnection(server).read(100)
    assert received == b"OPTIONS sip:bob@example.com SIP/2.0\r\n\r\n"


def test_write_msg_empty_raises(tcp_pair):
    client, _ = tcp_pair
    conn = TCPConnection(client)
    with pytest.raises(OSError, match="wrote 0 bytes"):
        conn.write_msg(FakeMsg(""))


def test_write_msg_after_close_raises(tcp_pair):
    client, _ = tcp_pair
    conn = TCPConnection(client)
    conn.close()
    with pytest.raises(OSError, match="write err"):
        conn.write_msg(FakeMsg("hello"))


def test_transport_names():
    tcp = TCPTransport(FakeParser())
    tls = TLSTransport(FakeParser())
    assert tcp.network() == "TCP"
    assert tls.network() == "TLS"
    assert str(tcp) == "transport<TCP>"
    assert str(tls) == "transport<TLS>"


def test_create_connection_pools_and_refs(listener):
    transport = TCPTransport(FakeParser())
    port = listener.getsockname()[1]
    raddr = Addr("127.0.0.1", port)
    conn = transport.create_connection(None, raddr, lambda m: None)
    peer, _ = listener.accept()
    try:
        assert transport.get_connection(f"127.0.0.1:{port}") is conn
        assert conn.ref(0) == 2 + IDLE_CONNECTION
        assert conn.remote_addr() == f"127.0.0.1:{port}"
    finally:
        transport.close()
        peer.close()


def test_create_connection_reads_and_handles(listener):
    parser = FakeParser()
    transport = TCPTransport(parser)
    port = listener.getsockname()[1]
    received = queue.Queue()
    transport.create_connection(None, Addr("127.0.0.1", port), received.put)
    peer, _ = listener.accept()
    try:
        peer.sendall(b"INVITE sip:bob@example.com SIP/2.0\r\n\r\n")
        msg = received.get(timeout=5)
        assert msg.text == "INVITE sip:bob@example.com SIP/2.0\r\n\r\n"
        assert msg.transport == "TCP"
        assert msg.source == f"127.0.0.1:{port}"
    finally:
        transport.close()
        peer.close()


def test_double_crlf_keepalive_gets_pong(listener):
    parser = FakeParser()
    transport = TCPTransport(parser)
    port = listener.getsockname()[1]
    transport.create_connection(None, Addr("127.0.0.1", port), lambda m: None)
    peer, _ = listener.accept()
    peer.settimeout(5)
    try:
        peer.sendall(b"\r\n\r\n")
        assert peer.recv(10) == b"\r\n"
        assert parser.seen == []
    finally:
        transport.close()
        peer.close()


def test_single_crlf_is_ignored(listener):
    parser = FakeParser()
    transport = TCPTransport(parser)
    port = listener.getsockname()[1]
    received = queue.Queue()
    transport.create_connection(None, Addr("127.0.0.1", port), received.put)
    peer, _ = listener.accept()
    try:
        peer.sendall(b"\r\n")
        time.sleep(0.1)
        peer.sendall(b"MESSAGE sip:bob@example.com SIP/2.0\r\n\r\n")
        msg = received.get(timeout=5)
        assert msg.text == "MESSAGE sip:bob@example.com SIP/2.0\r\n\r\n"
        assert b"\r\n" not in parser.seen
    finally:
        transport.close()
        peer.close()


def test_parse_error_keeps_connection(listener):
    transport = TCPTransport(FakeParser())
    port = listener.getsockname()[1]
    received = queue.Queue()
    transport.create_connection(None, Addr("127.0.0.1", port), received.put)
    peer, _ = listener.accept()
    try:
        peer.sendall(b"BAD DATA HERE")
        time.sleep(0.1)
        peer.sendall(b"BYE sip:bob@example.com SIP/2.0\r\n\r\n")
        msg = received.get(timeout=5)
        assert msg.text == "BYE sip:bob@example.com SIP/2.0\r\n\r\n"
        assert received.empty()
    finally:
        transport.close()
        peer.close()


def test_peer_close_removes_from_pool(listener):
    transport = TCPTransport(FakeParser())
    port = listener.getsockname()[1]
    addr = f"127.0.0.1:{port}"
    conn = transport.create_connection(None, Addr("127.0.0.1", port), lambda m: None)
    peer, _ = listener.accept()
    peer.close()
    assert wait_until(lambda: transport.get_connection(addr) is None)
    assert conn.closed is True


def test_close_clears_pool(listener):
    transport = TCPTransport(FakeParser())
    port = listener.getsockname()[1]
    conn = transport.create_connection(None, Addr("127.0.0.1", port), lambda m: None)
    peer, _ = listener.accept()
    try:
        transport.close()
        assert len(transport.pool) == 0
        assert conn.closed is True
    finally:
        peer.close()


def test_serve_accepts_and_handles():
    server_sock = socket.create_server(("127.0.0.1", 0))
    port = server_sock.getsockname()[1]
    transport = TCPTransport(FakeParser())
    received = queue.Queue()
    thread = threading.Thread(target=lambda: _serve_quietly(transport, server_sock, received.put), daemon=True)
    thread.start()
    client = socket.create_connection(("127.0.0.1", port))
    try:
        client.sendall(b"REGISTER sip:example.com SIP/2.0\r\n\r\n")
        msg = received.get(timeout=5)
        assert msg.text == "REGISTER sip:example.com SIP/2.0\r\n\r\n"
        assert msg.transport == "TCP"
        assert msg.source == f"127.0.0.1:{client.getsockname()[1]}"
        assert transport.get_connection(msg.source) is not None
    finally:
        client.close()
        transport.close()
        try:
            server_sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        server_sock.close()


def _serve_quietly(transport, sock, handler):
    try:
        transport.serve(sock, handler)
    except OSError:
        pass


def test_serve_on_closed_listener_raises():
    sock = socket.create_server(("127.0.0.1", 0))
    sock.close()
    transport = TCPTransport(FakeParser())
    with pytest.raises(OSError):
        transport.serve(sock, lambda m: None)


def _free_port():
    with socket.create_server(("127.0.0.1", 0)) as sock:
        return sock.getsockname()[1]


def test_create_connection_refused_raises():
    transport = TCPTransport(FakeParser())
    with pytest.raises(OSError, match="transport<TCP> dial err"):
        transport.create_connection(None, Addr("127.0.0.1", _free_port()), lambda m: None)
    assert len(transport.pool) == 0


def test_tls_create_connection_refused_raises():
    transport = TLSTransport(FakeParser())
    with pytest.raises(OSError, match="transport<TLS> dial err"):
        transport.create_connection(None, Addr("127.0.0.1", _free_port()), lambda m: None)
    assert len(transport.pool) == 0


def test_tls_handshake_failure_raises(listener):
    transport = TLSTransport(FakeParser())
    port = listener.getsockname()[1]

    def reject():
        peer, _ = listener.accept()
        peer.sendall(b"not tls at all\r\n")
        peer.close()

    thread = threading.Thread(target=reject, daemon=True)
    thread.start()
    with pytest.raises(OSError, match="transport<TLS> dial err"):
        transport.create_connection(None, Addr("127.0.0.1", port), lambda m: None)
    thread.join(timeout=5)
    assert transport.get_connection(f"127.0.0.1:{port}") is None