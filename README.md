# siptransport

Transports that carry SIP messages over UDP, TCP, TLS, WebSocket (`ws`) and
secure WebSocket (`wss`). Each transport serves sockets you have bound,
dials new connections, keeps its open connections in a pool keyed by remote
address, and hands every message it receives to a handler you supply.
Connections are reference counted. A connection closes when its last
reference is dropped.

It uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `siptransport.transport_udp`

- `UDPTransport(parser)`
  - `serve(sock, handler)` reads datagrams from a bound UDP socket until
    that socket is closed. The socket stays with the caller, so closing the
    transport does not close it. Every sender address is pooled against the
    serving socket, so replies leave by the socket that received the
    request.
  - `create_connection(laddr, raddr, handler)` opens a client socket and
    starts a reader thread. By default the socket is an unconnected bound
    socket that is pooled under its own address and under `raddr`. When
    `UDP_USE_CONNECTED_CONNECTION` is true at construction, or
    `use_connected` is set on the transport, it is a connected socket.
  - `get_connection(addr)`, `network()` (returns `"UDP"`), and `close()`.
- `UDPConnection` wraps either a packet socket or a connected socket. It
  provides `read`, `write`, `read_from`, `write_to`, `write_msg`, `ref`,
  `try_close`, `close`, `local_addr` and `remote_addr`.
- `write_msg` refuses messages longer than `UDP_MTU_SIZE - 200` bytes
  (1300 by default) with `UDPMTUCongestionError`. On a packet socket it
  sends to `msg.destination`.

### `siptransport.transport_tcp`

- `TCPTransport(parser)` provides `serve(listener, handler)`,
  `create_connection(laddr, raddr, handler)`, `get_connection(addr)`,
  `network()` (returns `"TCP"`) and `close()`.
- `TLSTransport(parser, tls_config=None)` wraps outgoing connections with
  the given `ssl.SSLContext`, or with `ssl.create_default_context()` when
  none is given. Its `network()` returns `"TLS"`. `serve` accepts on
  whatever listener you pass, so pass one that is already wrapped in TLS.
- `TCPConnection` provides `read`, `write`, `write_msg`, `ref`,
  `try_close`, `close`, `local_addr` and `remote_addr`.
- Keep-alives from the peer are handled on the stream:
  - A single CRLF is ignored.
  - A double CRLF ping is answered with one CRLF.
- Module settings:
  - `SIP_DEBUG`: log every byte read and written.
  - `IDLE_CONNECTION`: the extra reference that keeps an idle connection
    open.
  - `TRANSPORT_BUFFER_SIZE`: the read size.

### `siptransport.transport_ws`

- `WSTransport(parser)` handles the connection itself:
  - `serve(listener, handler)` performs the HTTP upgrade. A bad request is
    answered with `400 Bad Request` and dropped.
  - `create_connection(laddr, raddr, handler)` dials and upgrades. A local
    address cannot be chosen; one that is given is logged and ignored.
  - `get_connection(addr)` normalises `addr` to an IP address before the
    pool lookup, resolving host names if needed.
- `WSSTransport(parser, tls_config=None)` dials over TLS.
- Both offer and announce the sub-protocols in `WEB_SOCKET_PROTOCOLS`
  (`["sip"]`), copied at construction.
- `WSConnection` works on frames:
  - `read()` returns one payload assembled from text frames. It skips
    control frames and discards frames without the text bit.
  - It raises `WSClosedError` on a close frame or at the end of the stream.
  - `write(data)` sends one final text frame, masked on the client side.
- A failed upgrade raises `WSHandshakeError`.

### `siptransport.pool`

`ConnectionPool` is a thread-safe map from address to connection. One
connection may be stored under several keys. It provides `add`, `get`,
`delete`, `delete_multiple`, `close_and_delete`, `clear` and `len()`.
`clear` closes each distinct connection once.

### `siptransport.uri`

`Uri` is a dataclass for `sip:` and `sips:` URIs. It has these fields:
`encrypted`, `wildcard`, `user`, `password`, `host`, `port`, `uri_params`
and `headers`. It provides `str()`, `clone()`, `is_encrypted()`, `addr()`
and `host_port()`.

### `siptransport.recorder`

`ConnRecorder` is an in-memory connection. It appends every message passed
to `write_msg` to `msgs`, counts references, and is handy in tests.

### `siptransport.utils`

- Addresses: `Addr` (IPv6 hosts are printed in brackets) and `parse_addr`.
- Lower-casing: `ascii_to_lower`, `ascii_to_lower_in_place` and
  `header_to_lower`.
- Scheme checks: `uri_is_sip` and `uri_is_sips`.
- Text scanning: `split_by_whitespace`, `find_unescaped` and
  `find_any_unescaped` with `Delimiter`, `QUOTES_DELIM` and `ANGLES_DELIM`.
- Random strings: `rand_string`, `rand_string_bytes_mask` and `nonce`.
- Other helpers:
  - `resolve_self_ip()` returns a non-loopback IPv4 address of this host,
    or raises `OSError`.
  - `message_short_string`.

## Parsers, handlers and messages

The transports do not parse SIP themselves. They call a parser object you
pass in:

- UDP and WebSocket call `parser.parse_sip(data)`.
- TCP and TLS call `parser.new_sip_stream()` once per connection, then
  `stream.parse_sip_stream(data)`, which returns a list of messages.

A parser signals bad input by raising `ValueError`. The transport logs it
and drops the data.

Before a received message reaches the handler, the transport sets two
attributes on it:

- `msg.transport`: `"UDP"`, `"TCP"`, `"TLS"`, `"WS"` or `"WSS"`.
- `msg.source`: the peer's `host:port`.

Outgoing messages are sent as `str(msg).encode()`.

## Example

```python
from siptransport.pool import ConnectionPool
from siptransport.recorder import ConnRecorder
from siptransport.uri import Uri
from siptransport.utils import Addr, parse_addr

uri = Uri(user="alice", host="127.0.0.1", port=5060)
assert str(uri) == "sip:alice@127.0.0.1:5060"
assert uri.host_port() == "127.0.0.1:5060"

assert parse_addr("[::1]:5060") == ("::1", 5060)
assert str(Addr("::1", 5060)) == "[::1]:5060"

pool = ConnectionPool()
conn = ConnRecorder()
pool.add("127.0.0.1:5060", conn)
assert pool.get("127.0.0.1:5060") is conn
```

## What it does not do

- There is no single layer that owns all five transports and chooses one
  per message.
- There is no Via sent-by rewriting and no DNS SRV lookup of request
  targets.
- There is no user-agent object.
- There are no SIP transactions or dialogs.
- There is no SIP message parser or message model. You supply those.
- There is no command-line program.