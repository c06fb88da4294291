"""String, address and randomness helpers shared by the SIP transport code."""

from __future__ import annotations

import ipaddress
import random
import re
import socket
import string
from dataclasses import dataclass
from typing import Any, Optional

LETTERS = string.digits + string.ascii_lowercase + string.ascii_uppercase
ABNF_WS = " \t"

_LETTER_IDX_BITS = 6
_LETTER_IDX_MASK = (1 << _LETTER_IDX_BITS) - 1
_LETTER_IDX_MAX = 63 // _LETTER_IDX_BITS

_TO_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)
_PORT_RE = re.compile(r"[+-]?[0-9]+", re.ASCII)

# Any public address works: connecting a UDP socket sends nothing.
_PROBE_ADDR = ("192.0.2.1", 9)


@dataclass(frozen=True)
class Delimiter:
    """A pair of characters that opens and closes a quoted span."""

    start: str
    end: str


QUOTES_DELIM = Delimiter('"', '"')
ANGLES_DELIM = Delimiter("<", ">")


@dataclass
class Addr:
    """A network endpoint: an IP address (or None) and a port."""

    ip: Optional[str] = None
    port: int = 0

    def __str__(self) -> str:
        host = self.ip or ""
        if ":" in host:
            return f"[{host}]:{self.port}"
        return f"{host}:{self.port}"


def parse_addr(addr: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into host and integer port."""
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise ValueError(f"address {addr}: missing ']'")
        host = addr[1:end]
        rest = addr[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {addr}: missing port in address")
        port_str = rest[1:]
    else:
        host, sep, port_str = addr.rpartition(":")
        if not sep:
            raise ValueError(f"address {addr}: missing port in address")
        if ":" in host:
            raise ValueError(f"address {addr}: too many colons in address")
    if not _PORT_RE.fullmatch(port_str):
        raise ValueError(f"address {addr}: invalid port {port_str!r}")
    return host, int(port_str)


def rand_string(n: int) -> str:
    """Return ``n`` random alphanumeric characters."""
    return "".join(LETTERS[b % len(LETTERS)] for b in random.randbytes(n))


def rand_string_bytes_mask(n: int) -> str:
    """Return ``n`` random alphanumeric characters, using 6 bits per pick."""
    out: list[str] = []
    cache = random.getrandbits(63)
    remain = _LETTER_IDX_MAX
    while len(out) < n:
        if remain == 0:
            cache = random.getrandbits(63)
            remain = _LETTER_IDX_MAX
        idx = cache & _LETTER_IDX_MASK
        if idx < len(LETTERS):
            out.append(LETTERS[idx])
        cache >>= _LETTER_IDX_BITS
        remain -= 1
    return "".join(out)


def ascii_to_lower(s: str) -> str:
    """Lower only the ASCII letters A-Z, leaving everything else intact."""
    return s.translate(_TO_LOWER)


def ascii_to_lower_in_place(buf: bytearray) -> None:
    """Lower the ASCII letters of a bytearray in place."""
    buf[:] = buf.lower()


def header_to_lower(s: str) -> str:
    """Lower a header name."""
    return ascii_to_lower(s)


def uri_is_sip(s: str) -> bool:
    """True for the scheme ``sip`` in lower or upper case."""
    return s in ("sip", "SIP")


def uri_is_sips(s: str) -> bool:
    """True for the scheme ``sips`` in lower or upper case."""
    return s in ("sips", "SIPS")


def split_by_whitespace(text: str) -> list[str]:
    """Split text on runs of spaces and tabs.

    Leading whitespace yields one empty first item; trailing whitespace
    yields nothing.
    """
    result: list[str] = []
    buffer: list[str] = []
    in_string = True
    for char in text:
        if char in ABNF_WS:
            if in_string:
                result.append("".join(buffer))
                buffer.clear()
            in_string = False
        else:
            buffer.append(char)
            in_string = True
    if buffer:
        result.append("".join(buffer))
    return result


def find_unescaped(text: str, target: str, *args: Delimiter) -> int:
    """Index of the first ``target`` not inside any delimiter span, or -1."""
    return find_any_unescaped(text, target, *args)


def find_any_unescaped(text: str, targets: str, *args: Delimiter) -> int:
    """Index of the first of ``targets`` not inside any delimiter span, or -1."""
    end_chars = {d.start: d.end for d in args}
    escaped = False
    end_escape = ""
    for idx, char in enumerate(text):
        if not escaped and char in targets:
            return idx
        if escaped:
            escaped = char != end_escape
        elif char in end_chars:
            end_escape = end_chars[char]
            escaped = True
    return -1


def _usable_ipv4(candidate: str) -> bool:
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return ip.version == 4 and not ip.is_loopback and not ip.is_unspecified


def resolve_self_ip() -> str:
    """Return a non-loopback IPv4 address of this host."""
    candidates: list[str] = []
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(_PROBE_ADDR)
            candidates.append(sock.getsockname()[0])
    except OSError:
        pass
    try:
        candidates.extend(socket.gethostbyname_ex(socket.gethostname())[2])
    except OSError:
        pass
    for candidate in candidates:
        if _usable_ipv4(candidate):
            return candidate
    raise OSError("server not connected to any network")


def nonce(n: int) -> str:
    """Return ``n`` random alphanumeric characters for use as a nonce."""
    return "".join(random.choice(LETTERS) for _ in range(n))


def message_short_string(msg: Any) -> str:
    """Short description of a SIP message, for logging."""
    short = getattr(msg, "short", None)
    if callable(short):
        return short()
    return "Unknown message type"