"""Datagram transport for SIP over UDP."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, Callable, Optional

from . import transport_tcp as _stream
from .pool import ConnectionPool
from .utils import Addr, parse_addr

log = logging.getLogger(__name__)

TRANSPORT_UDP = "UDP"

# Path MTU assumed for UDP; messages within 200 bytes of it are refused.
UDP_MTU_SIZE = 1500
# When set, new client connections are connected UDP sockets.
UDP_USE_CONNECTED_CONNECTION = False

# How often a blocked reader wakes up to notice that its socket was closed.
_POLL_INTERVAL = 0.2

MessageHandler = Callable[[Any], None]


class UDPMTUCongestionError(OSError):
    """The packet is larger than the path MTU allows."""

    def __init__(self) -> None:
        super().__init__("size of packet larger than MTU")


def _sockaddr_str(sockaddr: Any) -> str:
    if isinstance(sockaddr, tuple) and len(sockaddr) >= 2:
        return str(Addr(sockaddr[0], sockaddr[1]))
    return "" if sockaddr is None else str(sockaddr)


def _family(ip: Optional[str]) -> socket.AddressFamily:
    return socket.AF_INET6 if ip and ":" in ip else socket.AF_INET


class UDPConnection:
    """A reference-counted UDP socket.

    Either an unconnected packet socket (``packet_sock``), possibly a listener
    handed to :meth:`UDPTransport.serve`, or a connected socket (``conn``).
    """

    def __init__(
        self,
        packet_sock: Optional[socket.socket] = None,
        packet_addr: str = "",
        listener: bool = False,
        conn: Optional[socket.socket] = None,
        refcount: int = 0,
    ) -> None:
        if (packet_sock is None) == (conn is None):
            raise ValueError("exactly one of packet_sock and conn is required")
        self.packet_sock = packet_sock
        self.conn = conn
        self.listener = listener
        self._lock = threading.Lock()
        self._refcount = refcount
        self._closed = False
        if conn is not None:
            self._local = _sockaddr_str(conn.getsockname())
            self._remote = _sockaddr_str(conn.getpeername())
        else:
            self._local = _sockaddr_str(packet_sock.getsockname())
            self._remote = self._local
        self.packet_addr = packet_addr or (self._local if conn is None else "")

    @property
    def sock(self) -> socket.socket:
        """The underlying socket."""
        return self.conn if self.conn is not None else self.packet_sock

    @property
    def closed(self) -> bool:
        """True once the socket was closed, here or by its owner."""
        return self._closed or self.sock.fileno() == -1

    def local_addr(self) -> str:
        """Local ``host:port`` of the socket."""
        return self._local

    def remote_addr(self) -> str:
        """Peer of a connected socket; the local address otherwise."""
        return self._remote

    def ref(self, i: int) -> int:
        """Add ``i`` references and return the new count."""
        with self._lock:
            self._refcount += i
            return self._refcount

    def _close_socket(self, sock: socket.socket) -> None:
        self._closed = True
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def close(self) -> None:
        """Close the socket regardless of references; listeners are left open."""
        with self._lock:
            self._refcount = 0
        if self.conn is not None:
            log.debug("UDP doing hard close ip=%s dst=%s", self._local, self._remote)
            self._close_socket(self.conn)
            return
        if self.listener:
            # A served socket belongs to the caller that handed it over.
            return
        log.debug("UDP listener doing hard close ip=%s", self._local)
        self._close_socket(self.packet_sock)

    def try_close(self) -> int:
        """Drop one reference; close when none remain. Returns the count left."""
        with self._lock:
            self._refcount -= 1
            ref = self._refcount
        if self.listener:
            return ref
        log.debug("UDP reference decrement src=%s dst=%s ref=%d", self._local, self._remote, ref)
        if ref > 0:
            return ref
        if ref < 0:
            log.warning("UDP ref went negative src=%s dst=%s ref=%d", self._local, self._remote, ref)
            return 0
        self.close()
        return ref

    def read(self, size: int) -> bytes:
        """Read one datagram from a connected socket."""
        data = self.conn.recv(size)
        if _stream.SIP_DEBUG:
            log.debug("UDP read %s <- %s:\n%s", self._local, self._remote, data.decode(errors="replace"))
        return data

    def write(self, data: bytes) -> int:
        """Send one datagram on a connected socket; returns bytes sent."""
        n = self.conn.send(data)
        if _stream.SIP_DEBUG:
            log.debug("UDP write %s -> %s:\n%s", self._local, self._remote, data[:n].decode(errors="replace"))
        return n

    def read_from(self, size: int) -> tuple[bytes, str]:
        """Read one datagram from a packet socket, with its sender address."""
        data, sender = self.packet_sock.recvfrom(size)
        source = _sockaddr_str(sender)
        if _stream.SIP_DEBUG:
            log.debug("UDP read from %s <- %s:\n%s", self._local, source, data.decode(errors="replace"))
        return data, source

    def write_to(self, data: bytes, addr: Addr) -> int:
        """Send one datagram to ``addr`` from a packet socket."""
        n = self.packet_sock.sendto(data, (addr.ip, addr.port))
        if _stream.SIP_DEBUG:
            log.debug("UDP write to %s -> %s:\n%s", self._local, addr, data[:n].decode(errors="replace"))
        return n

    def write_msg(self, msg: Any) -> None:
        """Serialise and send a SIP message to its destination."""
        data = str(msg).encode()
        if len(data) > UDP_MTU_SIZE - 200:
            raise UDPMTUCongestionError()
        if self.conn is not None:
            try:
                n = self.write(data)
            except OSError as exc:
                raise OSError(f"conn {self._local} write err={exc}") from exc
        else:
            host, port = parse_addr(msg.destination)
            try:
                n = self.write_to(data, Addr(host, port))
            except OSError as exc:
                raise OSError(f"udp conn {self._local} err. {exc}") from exc
        if n == 0:
            raise OSError("wrote 0 bytes")
        if n != len(data):
            raise OSError("fail to write full message")


class UDPTransport:
    """UDP transport: serves packet sockets and creates client sockets."""

    def __init__(self, parser: Any) -> None:
        self.parser = parser
        self.pool = ConnectionPool()
        self.use_connected = UDP_USE_CONNECTED_CONNECTION

    def __str__(self) -> str:
        return "transport<UDP>"

    def network(self) -> str:
        """Transport name as used in the Via header."""
        return TRANSPORT_UDP

    def close(self) -> None:
        """Close pooled connections; served sockets stay with their owner."""
        self.pool.clear()

    def serve(self, sock: socket.socket, handler: MessageHandler) -> None:
        """Read SIP messages from ``sock`` until it is closed."""
        conn = UDPConnection(packet_sock=sock, listener=True)
        log.debug("begin listening on %s %s", self.network(), conn.packet_addr)
        self.pool.add(conn.packet_addr, conn)
        self._read_listener_connection(conn, conn.packet_addr, handler)

    def get_connection(self, addr: str) -> Optional[UDPConnection]:
        """The connection used for ``addr``, or None."""
        return self.pool.get(addr)

    def create_connection(
        self, laddr: Optional[Addr], raddr: Addr, handler: MessageHandler
    ) -> UDPConnection:
        """Open a socket for talking to ``raddr`` and start reading from it."""
        if self.use_connected:
            return self._create_connected_connection(laddr, raddr, handler)
        return self._create_connection(laddr, raddr, handler)

    def _create_connection(
        self, laddr: Optional[Addr], raddr: Addr, handler: MessageHandler
    ) -> UDPConnection:
        local_ip = laddr.ip if laddr is not None and laddr.ip else ""
        local_port = laddr.port if laddr is not None else 0
        sock = socket.socket(_family(local_ip or raddr.ip), socket.SOCK_DGRAM)
        try:
            sock.bind((local_ip, local_port))
        except OSError:
            sock.close()
            raise
        # One reference for the caller, one for the reader.
        conn = UDPConnection(packet_sock=sock, refcount=2 + _stream.IDLE_CONNECTION)
        addr = str(raddr)
        log.debug("New connection raddr=%s", addr)
        # Pooled under its own address too, so it can be reused as a listener.
        self.pool.add(conn.packet_addr, conn)
        self.pool.add(addr, conn)
        threading.Thread(
            target=self._read_udp_connection,
            args=(conn, addr, conn.packet_addr, handler),
            daemon=True,
        ).start()
        return conn

    def _read_udp_connection(
        self, conn: UDPConnection, raddr: str, listen_addr: str, handler: MessageHandler
    ) -> None:
        try:
            self._read_listener_connection(conn, listen_addr, handler)
        finally:
            self.pool.delete(raddr)

    def _create_connected_connection(
        self, laddr: Optional[Addr], raddr: Addr, handler: MessageHandler
    ) -> UDPConnection:
        sock = socket.socket(_family(raddr.ip), socket.SOCK_DGRAM)
        try:
            if laddr is not None and laddr.ip:
                sock.bind((laddr.ip, laddr.port))
            sock.connect((raddr.ip, raddr.port))
        except OSError:
            sock.close()
            raise
        conn = UDPConnection(conn=sock, refcount=2 + _stream.IDLE_CONNECTION)
        addr = str(raddr)
        log.debug("New connected connection raddr=%s", addr)
        self.pool.add(addr, conn)
        threading.Thread(
            target=self._read_connected_connection, args=(conn, handler), daemon=True
        ).start()
        return conn

    def _read_listener_connection(
        self, conn: UDPConnection, addr: str, handler: MessageHandler
    ) -> None:
        accepted: list[str] = []
        last_raddr = ""
        conn.sock.settimeout(_POLL_INTERVAL)
        try:
            while True:
                try:
                    data, raddr = conn.read_from(_stream.TRANSPORT_BUFFER_SIZE)
                except TimeoutError:
                    if conn.closed:
                        log.debug("Read connection closed addr=%s", addr)
                        return
                    continue
                except OSError as exc:
                    if conn.closed:
                        log.debug("Read connection closed addr=%s: %s", addr, exc)
                    else:
                        log.error("Read connection error addr=%s: %s", addr, exc)
                    return
                if not data and conn.closed:
                    log.debug("Read connection closed addr=%s", addr)
                    return
                if not data.strip(b"\x00"):
                    continue
                if raddr != last_raddr:
                    # With several listeners, replies must leave by the one that received.
                    self.pool.add(raddr, conn)
                    accepted.append(raddr)
                self._parse_and_handle(data, raddr, handler)
                last_raddr = raddr
        finally:
            self.pool.delete_multiple(accepted)
            log.debug("Read listener connection stopped addr=%s", addr)
            self.pool.close_and_delete(conn, addr)

    def _read_connected_connection(self, conn: UDPConnection, handler: MessageHandler) -> None:
        raddr = conn.remote_addr()
        conn.sock.settimeout(_POLL_INTERVAL)
        try:
            while True:
                try:
                    data = conn.read(_stream.TRANSPORT_BUFFER_SIZE)
                except TimeoutError:
                    if conn.closed:
                        log.debug("Read connection closed raddr=%s", raddr)
                        return
                    continue
                except OSError as exc:
                    if conn.closed:
                        log.debug("Read connection closed raddr=%s: %s", raddr, exc)
                    else:
                        log.error("Read connection error raddr=%s: %s", raddr, exc)
                    return
                if not data and conn.closed:
                    return
                if not data.strip(b"\x00"):
                    continue
                self._parse_and_handle(data, raddr, handler)
        finally:
            log.debug("Read connected connection stopped raddr=%s", raddr)
            self.pool.close_and_delete(conn, raddr)

    def _parse_and_handle(self, data: bytes, src: str, handler: MessageHandler) -> None:
        if len(data) <= 4 and not data.strip(b"\r\n"):
            log.debug("Keep alive CRLF received")
            return
        try:
            msg = self.parser.parse_sip(data)
        except ValueError as exc:
            log.error("failed to parse: %s data=%r", exc, data)
            return
        msg.transport = TRANSPORT_UDP
        # The source is taken as seen on the wire: the peer may be behind NAT.
        msg.source = src
        handler(msg)