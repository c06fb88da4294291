"""Stream transports for SIP: plain TCP and TCP wrapped in TLS."""

from __future__ import annotations

import logging
import socket
import ssl
import threading
from typing import Any, Callable, Optional

from .pool import ConnectionPool
from .utils import Addr

log = logging.getLogger(__name__)

TRANSPORT_TCP = "TCP"
TRANSPORT_TLS = "TLS"

# Size of a single read from a connection.
TRANSPORT_BUFFER_SIZE = 65535
# Extra reference a connection keeps so that it stays open while idle.
IDLE_CONNECTION = 1
# When set, every byte read or written is logged.
SIP_DEBUG = False

MessageHandler = Callable[[Any], None]


def _format_sockaddr(sockaddr: Any) -> str:
    if isinstance(sockaddr, tuple) and len(sockaddr) >= 2:
        return str(Addr(sockaddr[0], sockaddr[1]))
    return str(sockaddr)


class TCPConnection:
    """A reference-counted stream connection."""

    def __init__(self, sock: socket.socket, refcount: int = 0) -> None:
        self.sock = sock
        self._lock = threading.Lock()
        self._refcount = refcount
        self._closed = False
        try:
            self._local = _format_sockaddr(sock.getsockname())
        except OSError:
            self._local = ""
        try:
            self._remote = _format_sockaddr(sock.getpeername())
        except OSError:
            self._remote = ""

    @property
    def closed(self) -> bool:
        """True once the socket was closed from this side."""
        return self._closed

    def local_addr(self) -> str:
        """Local ``host:port`` of the connection."""
        return self._local

    def remote_addr(self) -> str:
        """Remote ``host:port`` of the connection."""
        return self._remote

    def ref(self, i: int) -> int:
        """Add ``i`` references and return the new count."""
        with self._lock:
            self._refcount += i
            ref = self._refcount
        log.debug("TCP reference increment ip=%s dst=%s ref=%d", self._local, self._remote, ref)
        return ref

    def _close_socket(self) -> None:
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def close(self) -> None:
        """Close the connection regardless of references."""
        with self._lock:
            self._refcount = 0
        log.debug("TCP doing hard close ip=%s dst=%s", self._local, self._remote)
        self._close_socket()

    def try_close(self) -> int:
        """Drop one reference; close when none remain. Returns the count left."""
        with self._lock:
            self._refcount -= 1
            ref = self._refcount
        log.debug("TCP reference decrement ip=%s dst=%s ref=%d", self._local, self._remote, ref)
        if ref > 0:
            return ref
        if ref < 0:
            log.warning("TCP ref went negative ip=%s dst=%s ref=%d", self._local, self._remote, ref)
            return 0
        log.debug("TCP closing ip=%s dst=%s", self._local, self._remote)
        self._close_socket()
        return ref

    def read(self, size: int) -> bytes:
        """Read at most ``size`` bytes; empty bytes mean the peer closed."""
        data = self.sock.recv(size)
        if SIP_DEBUG:
            log.debug("TCP read %s <- %s:\n%s", self._local, self._remote, data.decode(errors="replace"))
        return data

    def write(self, data: bytes) -> int:
        """Send all of ``data`` and return its length."""
        self.sock.sendall(data)
        if SIP_DEBUG:
            log.debug("TCP write %s -> %s:\n%s", self._local, self._remote, data.decode(errors="replace"))
        return len(data)

    def write_msg(self, msg: Any) -> None:
        """Serialise and send a SIP message."""
        data = str(msg).encode()
        try:
            n = self.write(data)
        except OSError as exc:
            raise OSError(f"conn {self._remote} write err={exc}") from exc
        if n == 0:
            raise OSError("wrote 0 bytes")
        if n != len(data):
            raise OSError("fail to write full message")


class TCPTransport:
    """TCP transport: accepts and dials connections and reads SIP off them."""

    def __init__(self, parser: Any) -> None:
        self.parser = parser
        self.pool = ConnectionPool()
        self.transport = TRANSPORT_TCP

    def __str__(self) -> str:
        return "transport<TCP>"

    def network(self) -> str:
        """Transport name as used in the Via header."""
        return self.transport

    def close(self) -> None:
        """Close every pooled connection."""
        self.pool.clear()

    def serve(self, listener: socket.socket, handler: MessageHandler) -> None:
        """Accept connections on ``listener`` until accepting fails."""
        log.debug("begin listening on %s %s", self.network(), _format_sockaddr(listener.getsockname()))
        while True:
            try:
                sock, peer = listener.accept()
            except OSError as exc:
                log.debug("Fail to accept connection: %s", exc)
                raise
            self._init_connection(sock, _format_sockaddr(peer), handler)

    def get_connection(self, addr: str) -> Optional[TCPConnection]:
        """The pooled connection to ``addr``, or None."""
        return self.pool.get(addr)

    def create_connection(self, laddr: Optional[Addr], raddr: Addr, handler: MessageHandler) -> TCPConnection:
        """Dial ``raddr``, optionally from ``laddr``, and start reading."""
        sock = self._dial(laddr, raddr)
        conn = self._init_connection(sock, str(raddr), handler)
        conn.ref(1)
        return conn

    def _dial(self, laddr: Optional[Addr], raddr: Addr) -> socket.socket:
        addr = str(raddr)
        log.debug("Dialing new connection raddr=%s", addr)
        source = (laddr.ip, laddr.port) if laddr is not None and laddr.ip else None
        try:
            return socket.create_connection((raddr.ip, raddr.port), source_address=source)
        except OSError as exc:
            raise OSError(f"{self} dial err={exc}") from exc

    def _init_connection(self, sock: socket.socket, addr: str, handler: MessageHandler) -> TCPConnection:
        log.debug("New connection raddr=%s", addr)
        conn = TCPConnection(sock, refcount=1 + IDLE_CONNECTION)
        self.pool.add(addr, conn)
        threading.Thread(
            target=self._read_connection, args=(conn, addr, handler), daemon=True
        ).start()
        return conn

    def _read_connection(self, conn: TCPConnection, raddr: str, handler: MessageHandler) -> None:
        stream = self.parser.new_sip_stream()
        try:
            while True:
                try:
                    data = conn.read(TRANSPORT_BUFFER_SIZE)
                except OSError as exc:
                    if conn.closed:
                        log.debug("connection was closed: %s", exc)
                    else:
                        log.error("Read error: %s", exc)
                    return
                if not data:
                    log.debug("connection was closed")
                    return
                if not data.strip(b"\x00"):
                    continue
                if len(data) <= 4 and not data.strip(b"\r\n"):
                    log.debug("Keep alive CRLF received")
                    if len(data) == 4:
                        try:
                            conn.write(data[:2])
                        except OSError as exc:
                            log.error("Failed to pong keep alive: %s", exc)
                            return
                    continue
                self._parse_stream(stream, data, raddr, handler)
        finally:
            self.pool.close_and_delete(conn, raddr)

    def _parse_stream(self, stream: Any, data: bytes, src: str, handler: MessageHandler) -> None:
        try:
            msgs = stream.parse_sip_stream(data)
        except ValueError as exc:
            log.error("failed to parse: %s data=%r", exc, data)
            return
        for msg in msgs:
            self._deliver(msg, src, handler)

    def _parse_full(self, data: bytes, src: str, handler: MessageHandler) -> None:
        try:
            msg = self.parser.parse_sip(data)
        except ValueError as exc:
            log.error("failed to parse: %s data=%r", exc, data)
            return
        self._deliver(msg, src, handler)

    def _deliver(self, msg: Any, src: str, handler: MessageHandler) -> None:
        msg.transport = self.network()
        msg.source = src
        handler(msg)


class TLSTransport(TCPTransport):
    """TCP transport whose outgoing connections are wrapped in TLS."""

    def __init__(self, parser: Any, tls_config: Optional[ssl.SSLContext] = None) -> None:
        super().__init__(parser)
        self.transport = TRANSPORT_TLS
        self.tls_config = tls_config

    def __str__(self) -> str:
        return "transport<TLS>"

    def create_connection(self, laddr: Optional[Addr], raddr: Addr, handler: MessageHandler) -> TCPConnection:
        """Dial ``raddr`` over TLS, optionally from ``laddr``, and start reading."""
        raw = self._dial(laddr, raddr)
        context = self.tls_config or ssl.create_default_context()
        try:
            sock = context.wrap_socket(raw, server_hostname=raddr.ip)
        except OSError as exc:
            raw.close()
            raise OSError(f"{self} dial err={exc}") from exc
        conn = self._init_connection(sock, str(raddr), handler)
        conn.ref(1)
        return conn