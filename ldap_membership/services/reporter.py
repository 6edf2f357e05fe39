from __future__ import annotations

import contextvars
from contextlib import contextmanager
from typing import Iterator

from ..errors import DirectoryError


class ErrorReporter:
    """Most-recent-error slot, scoped to the current request context.

    Backed by a :class:`contextvars.ContextVar`, so each thread (and each
    asyncio task, if a host runs calls in executors) sees its own slot.
    """

    def __init__(self, name: str = "ldap_membership.last_error") -> None:
        self._slot: contextvars.ContextVar[DirectoryError | None] = contextvars.ContextVar(name, default=None)

    def record(self, error: DirectoryError | None) -> None:
        self._slot.set(error)

    def clear(self) -> None:
        self._slot.set(None)

    def last(self) -> DirectoryError | None:
        return self._slot.get()

    @contextmanager
    def scope(self) -> Iterator["ErrorReporter"]:
        """Isolate the slot for the duration of one request."""
        token = self._slot.set(None)
        try:
            yield self
        finally:
            self._slot.reset(token)
