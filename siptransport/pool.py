"""Thread-safe map from remote address to open connection."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any, Optional

log = logging.getLogger(__name__)


class ConnectionPool:
    """Connections keyed by address; one connection may sit under many keys."""

    def __init__(self) -> None:
        self._conns: dict[str, Any] = {}
        self._lock = threading.Lock()

    def add(self, addr: str, conn: Any) -> None:
        """Store ``conn`` under ``addr``, replacing what was there."""
        with self._lock:
            self._conns[addr] = conn

    def get(self, addr: str) -> Optional[Any]:
        """The connection under ``addr``, or None."""
        with self._lock:
            return self._conns.get(addr)

    def delete(self, addr: str) -> None:
        """Forget ``addr``; missing keys are ignored."""
        with self._lock:
            self._conns.pop(addr, None)

    def delete_multiple(self, addrs: Iterable[str]) -> None:
        """Forget every address given."""
        with self._lock:
            for addr in addrs:
                self._conns.pop(addr, None)

    def close_and_delete(self, conn: Any, addr: str) -> None:
        """Close ``conn`` and forget ``addr``, even if closing fails."""
        with self._lock:
            try:
                conn.close()
            except OSError as exc:
                log.debug("closing connection %s failed: %s", addr, exc)
            finally:
                self._conns.pop(addr, None)

    def clear(self) -> None:
        """Close every distinct connection once and empty the pool."""
        with self._lock:
            conns = {id(c): c for c in self._conns.values()}
            self._conns.clear()
        for conn in conns.values():
            try:
                conn.close()
            except OSError as exc:
                log.debug("closing connection failed: %s", exc)

    def __len__(self) -> int:
        with self._lock:
            return len(self._conns)