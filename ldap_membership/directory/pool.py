from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Iterator

from .manager import Connection, ConnectionManager
from .models import DirectoryEndpoint

log = logging.getLogger(__name__)


class ConnectionPool:
    """Reuses service-account connections between requests.

    A connection is taken out of the idle queue under the lock, so it is
    never handed to two callers. Idle connections past ``max_idle_s`` or
    failing the liveness probe are closed instead of being reused.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        endpoint: DirectoryEndpoint,
        bind_dn: str | None,
        secret: str | None,
        max_size: int = 4,
        max_idle_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.manager = manager
        self.endpoint = endpoint
        self.bind_dn = bind_dn or ""
        self._secret = secret
        self.max_size = max(1, int(max_size))
        self.max_idle_s = float(max_idle_s)
        self._clock = clock
        self._idle: deque[tuple[Connection, float]] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> Connection:
        while True:
            with self._lock:
                if not self._idle:
                    break
                conn, released_at = self._idle.pop()
            if self._clock() - released_at > self.max_idle_s:
                log.debug("discarding idle connection %r", conn)
                self.manager.close(conn)
                continue
            if not conn.is_alive():
                log.info("discarding stale connection %r", conn)
                self.manager.close(conn)
                continue
            return conn
        return self.manager.open(self.endpoint, self.bind_dn or None, self._secret)

    def release(self, conn: Connection) -> None:
        if conn.closed:
            return
        if conn.broken or conn.bound_dn != self.bind_dn:
            self.manager.close(conn)
            return
        with self._lock:
            if len(self._idle) < self.max_size:
                self._idle.append((conn, self._clock()))
                return
        self.manager.close(conn)

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    def close_all(self) -> None:
        with self._lock:
            idle = list(self._idle)
            self._idle.clear()
        for conn, _ in idle:
            self.manager.close(conn)
