"""WebSocket transports for SIP: plain WS and WS over TLS (WSS)."""

from __future__ import annotations

import base64
import hashlib
import ipaddress
import logging
import os
import socket
import ssl
import struct
import threading
import time
from typing import Any, BinaryIO, Callable, Optional

from . import transport_tcp as _stream
from .pool import ConnectionPool
from .utils import Addr, parse_addr

log = logging.getLogger(__name__)

TRANSPORT_WS = "WS"
TRANSPORT_WSS = "WSS"

# Sub-protocols offered when dialing and announced when accepting.
WEB_SOCKET_PROTOCOLS = ["sip"]

OP_CONTINUATION = 0x0
OP_TEXT = 0x1
OP_BINARY = 0x2
OP_CLOSE = 0x8
OP_PING = 0x9
OP_PONG = 0xA

_GUID = b"258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
_MAX_LINE = 8192
_MAX_HEADERS = 100

MessageHandler = Callable[[Any], None]


class WSClosedError(ConnectionError):
    """The peer closed the WebSocket (close frame or end of stream)."""


class WSHandshakeError(OSError):
    """The HTTP upgrade to WebSocket failed."""


class _CleanEOF(Exception):
    """The stream ended exactly at a frame boundary."""


def _sockaddr_str(sockaddr: Any) -> str:
    if isinstance(sockaddr, tuple) and len(sockaddr) >= 2:
        return str(Addr(sockaddr[0], sockaddr[1]))
    return "" if sockaddr is None else str(sockaddr)


def _accept_key(key: str) -> str:
    return base64.b64encode(hashlib.sha1(key.encode("latin-1") + _GUID).digest()).decode()


def _apply_mask(data: bytes, key: bytes) -> bytes:
    if not data:
        return data
    repeated = (key * (len(data) // 4 + 1))[: len(data)]
    value = int.from_bytes(data, "big") ^ int.from_bytes(repeated, "big")
    return value.to_bytes(len(data), "big")


def _encode_frame(opcode: int, payload: bytes, mask: bool) -> bytes:
    head = bytearray([0x80 | opcode])
    mask_bit = 0x80 if mask else 0
    size = len(payload)
    if size < 126:
        head.append(mask_bit | size)
    elif size <= 0xFFFF:
        head.append(mask_bit | 126)
        head += struct.pack("!H", size)
    else:
        head.append(mask_bit | 127)
        head += struct.pack("!Q", size)
    if mask:
        key = os.urandom(4)
        head += key
        payload = _apply_mask(payload, key)
    return bytes(head) + payload


def _tokens(value: Optional[str]) -> set[str]:
    if not value:
        return set()
    return {part.strip().lower() for part in value.split(",")}


def _read_http_head(rfile: BinaryIO) -> tuple[str, dict[str, str]]:
    line = rfile.readline(_MAX_LINE)
    if not line:
        raise WSHandshakeError("connection closed during handshake")
    start = line.decode("latin-1").rstrip("\r\n")
    headers: dict[str, str] = {}
    while True:
        line = rfile.readline(_MAX_LINE)
        if not line:
            raise WSHandshakeError("connection closed during handshake")
        if line in (b"\r\n", b"\n"):
            return start, headers
        name, sep, value = line.decode("latin-1").partition(":")
        if not sep:
            raise WSHandshakeError(f"malformed header line {line!r}")
        if len(headers) >= _MAX_HEADERS:
            raise WSHandshakeError("too many headers")
        key = name.strip().lower()
        value = value.strip()
        if _stream.SIP_DEBUG:
            log.debug("non-websocket header: %s=%s", name.strip(), value)
        headers[key] = f"{headers[key]}, {value}" if key in headers else value


def _server_upgrade(sock: socket.socket, rfile: BinaryIO, protocols: list[str]) -> None:
    try:
        start, headers = _read_http_head(rfile)
        parts = start.split(" ")
        if len(parts) != 3 or parts[0] != "GET" or not parts[2].startswith("HTTP/1."):
            raise WSHandshakeError(f"bad request line {start!r}")
        if "websocket" not in _tokens(headers.get("upgrade")):
            raise WSHandshakeError("missing Upgrade: websocket")
        if "upgrade" not in _tokens(headers.get("connection")):
            raise WSHandshakeError("missing Connection: Upgrade")
        if headers.get("sec-websocket-version") != "13":
            raise WSHandshakeError("unsupported websocket version")
        key = headers.get("sec-websocket-key")
        if not key:
            raise WSHandshakeError("missing Sec-WebSocket-Key")
    except WSHandshakeError:
        try:
            sock.sendall(b"HTTP/1.1 400 Bad Request\r\n\r\n")
        except OSError:
            pass
        raise
    lines = [
        "HTTP/1.1 101 Switching Protocols",
        "Upgrade: websocket",
        "Connection: Upgrade",
        f"Sec-WebSocket-Accept: {_accept_key(key)}",
    ]
    if protocols:
        lines.append(f"Sec-WebSocket-Protocol: {', '.join(protocols)}")
    sock.sendall(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))


def _client_upgrade(sock: socket.socket, rfile: BinaryIO, host: str, protocols: list[str]) -> None:
    key = base64.b64encode(os.urandom(16)).decode()
    lines = [
        "GET / HTTP/1.1",
        f"Host: {host}",
        "Upgrade: websocket",
        "Connection: Upgrade",
        f"Sec-WebSocket-Key: {key}",
        "Sec-WebSocket-Version: 13",
    ]
    if protocols:
        lines.append(f"Sec-WebSocket-Protocol: {', '.join(protocols)}")
    sock.sendall(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
    status, headers = _read_http_head(rfile)
    parts = status.split(" ", 2)
    if len(parts) < 2 or parts[1] != "101":
        raise WSHandshakeError(f"unexpected handshake response {status!r}")
    if "websocket" not in _tokens(headers.get("upgrade")):
        raise WSHandshakeError("missing Upgrade: websocket in response")
    if headers.get("sec-websocket-accept") != _accept_key(key):
        raise WSHandshakeError("bad Sec-WebSocket-Accept")
    chosen = headers.get("sec-websocket-protocol")
    if chosen and chosen not in protocols:
        raise WSHandshakeError(f"unexpected sub-protocol {chosen!r}")


def _resolve_tcp_addr(addr: str) -> str:
    host, port = parse_addr(addr)
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"address {addr}: invalid port")
    ip: Optional[str] = None
    if host:
        try:
            ip = str(ipaddress.ip_address(host))
        except ValueError:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
            ip = infos[0][4][0]
    return str(Addr(ip, port))


class WSConnection:
    """A reference-counted WebSocket connection carrying SIP in text frames."""

    def __init__(
        self,
        sock: socket.socket,
        refcount: int = 0,
        client_side: bool = False,
        rfile: Optional[BinaryIO] = None,
    ) -> None:
        self.sock = sock
        self.client_side = client_side
        self._rfile = rfile if rfile is not None else sock.makefile("rb")
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._refcount = refcount
        self._closed = False
        try:
            self._local = _sockaddr_str(sock.getsockname())
        except OSError:
            self._local = ""
        try:
            self._remote = _sockaddr_str(sock.getpeername())
        except OSError:
            self._remote = ""

    @property
    def closed(self) -> bool:
        """True once the connection was closed from this side."""
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
        log.debug("WS reference increment ip=%s ref=%d", self._remote, ref)
        return ref

    def _close_socket(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        try:
            self._rfile.close()
        except (OSError, ValueError):
            pass

    def close(self) -> None:
        """Close the connection regardless of references."""
        with self._lock:
            self._refcount = 0
        log.debug("WS doing hard close ip=%s", self._remote)
        self._close_socket()

    def try_close(self) -> int:
        """Drop one reference; close when none remain. Returns the count left."""
        with self._lock:
            self._refcount -= 1
            ref = self._refcount
        log.debug("WS reference decrement ip=%s ref=%d", self._remote, ref)
        if ref > 0:
            return ref
        if ref < 0:
            log.warning("WS ref went negative ip=%s ref=%d", self._remote, ref)
            return 0
        log.debug("WS closing ip=%s ref=%d", self._remote, ref)
        self._close_socket()
        return ref

    def _read_exact(self, size: int, at_boundary: bool = False) -> bytes:
        data = self._rfile.read(size) if size else b""
        if len(data) == size:
            return data
        if at_boundary and not data:
            raise _CleanEOF()
        raise ConnectionError("unexpected end of websocket stream")

    def read(self) -> bytes:
        """Read one SIP payload: text frames up to and including a final one.

        Control frames are skipped, frames without the text bit are
        discarded. Raises :class:`WSClosedError` on a close frame, or when the
        stream ends before any payload was read.
        """
        chunks: list[bytes] = []
        while True:
            try:
                first = self._read_exact(2, at_boundary=True)
            except _CleanEOF:
                if chunks:
                    return b"".join(chunks)
                raise WSClosedError("websocket stream ended") from None
            fin = bool(first[0] & 0x80)
            opcode = first[0] & 0x0F
            masked = bool(first[1] & 0x80)
            length = first[1] & 0x7F
            if length == 126:
                (length,) = struct.unpack("!H", self._read_exact(2))
            elif length == 127:
                (length,) = struct.unpack("!Q", self._read_exact(8))
            mask_key = self._read_exact(4) if masked else b""
            if _stream.SIP_DEBUG:
                log.debug("WS read connection header <- %s opcode=%d len=%d", self._remote, opcode, length)
            payload = self._read_exact(length)
            if opcode & 0x8:
                if opcode == OP_CLOSE:
                    raise WSClosedError("websocket close frame received")
                continue
            if opcode & OP_TEXT == 0:
                continue
            if masked:
                payload = _apply_mask(payload, mask_key)
            if _stream.SIP_DEBUG:
                log.debug("WS read %s <- %s:\n%s", self._local, self._remote, payload.decode(errors="replace"))
            chunks.append(payload)
            if fin:
                return b"".join(chunks)

    def write(self, data: bytes) -> int:
        """Send ``data`` as one final text frame; masked on the client side."""
        if _stream.SIP_DEBUG:
            log.debug("WS write %s -> %s:\n%s", self._local, self._remote, data.decode(errors="replace"))
        frame = _encode_frame(OP_TEXT, bytes(data), self.client_side)
        with self._write_lock:
            self.sock.sendall(frame)
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


class WSTransport:
    """WebSocket transport: accepts and dials connections and reads SIP off them."""

    scheme = "ws"

    def __init__(self, parser: Any) -> None:
        self.parser = parser
        self.pool = ConnectionPool()
        self.transport = TRANSPORT_WS
        self.protocols = list(WEB_SOCKET_PROTOCOLS)

    def __str__(self) -> str:
        return "transport<WS>"

    def network(self) -> str:
        """Transport name as used in the Via header."""
        return self.transport

    def close(self) -> None:
        """Close every pooled connection."""
        self.pool.clear()

    def serve(self, listener: socket.socket, handler: MessageHandler) -> None:
        """Accept and upgrade connections on ``listener`` until accepting fails."""
        log.debug("begin listening on %s %s", self.network(), _sockaddr_str(listener.getsockname()))
        while True:
            try:
                sock, peer = listener.accept()
            except OSError as exc:
                log.error("Fail to accept connection: %s", exc)
                raise
            raddr = _sockaddr_str(peer)
            log.debug("New connection accept addr=%s", raddr)
            rfile = sock.makefile("rb")
            try:
                _server_upgrade(sock, rfile, self.protocols)
            except (OSError, ValueError) as exc:
                log.error("Fail to upgrade: %s", exc)
                rfile.close()
                sock.close()
                continue
            self._init_connection(sock, rfile, raddr, False, handler)

    def get_connection(self, addr: str) -> Optional[WSConnection]:
        """The pooled connection to ``addr`` (normalised), or None."""
        return self.pool.get(_resolve_tcp_addr(addr))

    def create_connection(self, laddr: Optional[Addr], raddr: Addr, handler: MessageHandler) -> WSConnection:
        """Dial ``raddr`` and start reading; a local address cannot be chosen."""
        if laddr is not None and laddr.ip:
            log.error("Dialing with local IP is not supported on ws laddr=%s", laddr)
        return self._create(raddr, handler)

    def _wrap(self, raw: socket.socket, raddr: Addr) -> socket.socket:
        return raw

    def _create(self, raddr: Addr, handler: MessageHandler) -> WSConnection:
        addr = str(raddr)
        log.debug("Dialing new connection raddr=%s://%s", self.scheme, addr)
        try:
            raw = socket.create_connection((raddr.ip, raddr.port))
        except OSError as exc:
            raise OSError(f"{self} dial err={exc}") from exc
        rfile: Optional[BinaryIO] = None
        try:
            sock = self._wrap(raw, raddr)
            rfile = sock.makefile("rb")
            _client_upgrade(sock, rfile, addr, self.protocols)
        except (OSError, ValueError) as exc:
            if rfile is not None:
                rfile.close()
            raw.close()
            raise OSError(f"{self} dial err={exc}") from exc
        conn = self._init_connection(sock, rfile, addr, True, handler)
        conn.ref(1)
        return conn

    def _init_connection(
        self,
        sock: socket.socket,
        rfile: BinaryIO,
        addr: str,
        client_side: bool,
        handler: MessageHandler,
    ) -> WSConnection:
        log.debug("New WS connection raddr=%s", addr)
        conn = WSConnection(sock, refcount=1 + _stream.IDLE_CONNECTION, client_side=client_side, rfile=rfile)
        self.pool.add(addr, conn)
        threading.Thread(
            target=self._read_connection, args=(conn, addr, handler), daemon=True
        ).start()
        return conn

    def _read_connection(self, conn: WSConnection, raddr: str, handler: MessageHandler) -> None:
        try:
            while True:
                try:
                    data = conn.read()
                except WSClosedError as exc:
                    log.debug("Read connection closed: %s", exc)
                    return
                except (OSError, ValueError) as exc:
                    if conn.closed:
                        log.debug("Read connection closed: %s", exc)
                    else:
                        log.error("Got read error: %s", exc)
                    return
                if not data:
                    log.debug("Got no bytes, sleeping")
                    time.sleep(0.1)
                    continue
                if not data.strip(b"\x00"):
                    continue
                if len(data) <= 4 and not data.strip(b"\r\n"):
                    log.debug("Keep alive CRLF received")
                    continue
                self._parse_full(data, raddr, handler)
        finally:
            log.debug("Websocket read connection stopped raddr=%s", raddr)
            self.pool.close_and_delete(conn, raddr)

    def _parse_full(self, data: bytes, src: str, handler: MessageHandler) -> None:
        try:
            msg = self.parser.parse_sip(data)
        except ValueError as exc:
            log.error("failed to parse: %s data=%r", exc, data)
            return
        msg.transport = self.transport
        msg.source = src
        handler(msg)


class WSSTransport(WSTransport):
    """WebSocket transport whose outgoing connections are wrapped in TLS."""

    scheme = "wss"

    def __init__(self, parser: Any, tls_config: Optional[ssl.SSLContext] = None) -> None:
        super().__init__(parser)
        self.transport = TRANSPORT_WSS
        self.tls_config = tls_config

    def __str__(self) -> str:
        return "transport<WSS>"

    def _wrap(self, raw: socket.socket, raddr: Addr) -> socket.socket:
        context = self.tls_config or ssl.create_default_context()
        return context.wrap_socket(raw, server_hostname=raddr.ip)

    def create_connection(self, laddr: Optional[Addr], raddr: Addr, handler: MessageHandler) -> WSConnection:
        """Dial ``raddr`` over TLS and start reading."""
        return self._create(raddr, handler)