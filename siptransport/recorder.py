"""A connection that records written messages instead of sending them."""

from __future__ import annotations

import threading
from typing import Any


class ConnRecorder:
    """Connection stand-in that keeps every message written to it."""

    def __init__(self, local_address: str | None = None) -> None:
        self.msgs: list[Any] = []
        self.closed = False
        self._local_address = local_address
        self._ref = 0
        self._lock = threading.Lock()

    def local_addr(self) -> str | None:
        """The local address given at construction; a recorder has none by default."""
        return self._local_address

    def write_msg(self, msg: Any) -> None:
        """Record the message."""
        self.msgs.append(msg)

    def ref(self, i: int) -> int:
        """Add ``i`` to the reference count and return the new count."""
        with self._lock:
            self._ref += i
            return self._ref

    def try_close(self) -> int:
        """Drop one reference and return the new count."""
        with self._lock:
            self._ref -= 1
            return self._ref

    def close(self) -> None:
        """Mark the recorder closed; recorded messages are kept."""
        with self._lock:
            self.closed = True