from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, TypeVar

from ..directory.models import GroupEntry, UserEntry
from ..directory.utils import normalize_dn

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


class MembershipCache:
    """Resolved group sets and user lookups, keyed by subject.

    Entries older than ``ttl_s`` read as misses (lazy expiry, no sweeper
    thread). Concurrent get/put/invalidate are safe; two callers missing
    on the same subject both resolve it and the last ``put`` wins.

    Lifecycle: created with the Authenticator at service startup, emptied
    by :meth:`reset_all` when the directory reports out-of-band changes.
    """

    def __init__(self, ttl_s: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._groups: dict[str, CacheEntry[frozenset[GroupEntry]]] = {}
        self._users: dict[str, CacheEntry[UserEntry]] = {}

    @staticmethod
    def _key(subject: str) -> str:
        return normalize_dn(subject)

    def _fresh(self, entry: CacheEntry | None) -> bool:
        return entry is not None and (self._clock() - entry.stored_at) < self.ttl_s

    def get(self, subject_dn: str) -> frozenset[GroupEntry] | None:
        key = self._key(subject_dn)
        with self._lock:
            entry = self._groups.get(key)
            if entry is None:
                return None
            if not self._fresh(entry):
                del self._groups[key]
                return None
            return entry.value

    def put(self, subject_dn: str, groups: Iterable[GroupEntry]) -> None:
        entry = CacheEntry(frozenset(groups), self._clock())
        with self._lock:
            self._groups[self._key(subject_dn)] = entry

    def get_user(self, identity: str) -> UserEntry | None:
        key = self._key(identity)
        with self._lock:
            entry = self._users.get(key)
            if entry is None:
                return None
            if not self._fresh(entry):
                del self._users[key]
                return None
            return entry.value

    def put_user(self, identity: str, user: UserEntry) -> None:
        entry = CacheEntry(user, self._clock())
        with self._lock:
            self._users[self._key(identity)] = entry
            self._users[user.key] = entry

    def invalidate(self, dn: str) -> None:
        """Drop everything cached for one subject.

        When ``dn`` names a group, subjects whose cached set contains it are
        dropped as well.
        """
        key = self._key(dn)
        with self._lock:
            self._groups.pop(key, None)
            stale_users = [k for k, e in self._users.items() if k == key or e.value.key == key]
            for k in stale_users:
                del self._users[k]
            holders = [k for k, e in self._groups.items() if any(g.key == key for g in e.value)]
            for k in holders:
                del self._groups[k]
        log.debug("membership cache: invalidated %s (+%d holders)", dn, len(holders))

    def reset_all(self) -> None:
        with self._lock:
            n = len(self._groups)
            self._groups.clear()
            self._users.clear()
        log.info("membership cache reset (%d subjects dropped)", n)

    def __len__(self) -> int:
        with self._lock:
            return len(self._groups)
