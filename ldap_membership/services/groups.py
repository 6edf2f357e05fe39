from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Sequence

from ..directory.manager import Connection
from ..directory.models import GroupEntry, MembershipSchema, SearchScope, UserEntry
from ..directory.utils import escape_ldap_filter_value, normalize_dn
from ..errors import DirectoryError, DirectoryUnavailable, PartialResolution
from .reporter import ErrorReporter

log = logging.getLogger(__name__)


@dataclass
class Resolution:
    groups: frozenset[GroupEntry]
    failed_dns: list[str] = field(default_factory=list)
    error: PartialResolution | None = None

    @property
    def partial(self) -> bool:
        return bool(self.failed_dns)


@dataclass
class _Node:
    dn: str
    depth: int
    members: list[str]
    failed: bool = False


class GroupResolver:
    """Transitive group membership over a directed membership graph.

    Breadth-first from the user's direct groups. A group is marked visited
    before its parents are queued, so cycles and diamonds cost one fetch
    per group. Groups at ``max_depth`` hops are kept but not expanded.

    A group whose own lookup fails is dropped, and so is whatever would
    only have been reached through it. Siblings are still traversed and
    the failure is recorded as :class:`PartialResolution`. Running past
    ``deadline`` aborts the whole call with :class:`DirectoryUnavailable`.
    """

    def __init__(
        self,
        schema: MembershipSchema = MembershipSchema.MEMBER,
        group_bases: Sequence[str] = (),
        group_filter: str = "(objectClass=*)",
        member_attribute: str = "member",
        member_of_attribute: str = "memberOf",
        reporter: ErrorReporter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.schema = MembershipSchema(schema)
        self.group_bases = list(group_bases)
        self.group_filter = group_filter or "(objectClass=*)"
        self.member_attribute = member_attribute
        self.member_of_attribute = member_of_attribute
        self.reporter = reporter
        self._clock = clock

    def resolve_groups(
        self,
        conn: Connection,
        user: UserEntry,
        max_depth: int,
        deadline: float | None = None,
    ) -> frozenset[GroupEntry]:
        return self.resolve(conn, user, max_depth, deadline).groups

    def resolve(
        self,
        conn: Connection,
        user: UserEntry,
        max_depth: int,
        deadline: float | None = None,
    ) -> Resolution:
        if max_depth < 1:
            return Resolution(groups=frozenset())

        self._check_deadline(deadline)
        user_key = user.key
        visited: dict[str, _Node] = {}
        queue: deque[str] = deque()

        def enqueue(dn: str, depth: int, member_dn: str) -> None:
            key = normalize_dn(dn)
            if not key or key == user_key:
                return
            node = visited.get(key)
            if node is not None:
                node.members.append(member_dn)
                return
            visited[key] = _Node(dn=dn, depth=depth, members=[member_dn])
            queue.append(key)

        for dn in self._direct_groups(conn, user):
            enqueue(dn, 1, user.dn)

        failed: list[str] = []
        causes: list[DirectoryError] = []
        while queue:
            node = visited[queue.popleft()]
            if node.depth >= max_depth:
                continue
            self._check_deadline(deadline)
            try:
                parents = self._parents_of(conn, node.dn)
            except DirectoryUnavailable as e:
                log.warning("LDAP group lookup for %s failed, dropping branch: %s", node.dn, e)
                node.failed = True
                failed.append(node.dn)
                causes.append(e)
                continue
            for parent in parents:
                enqueue(parent, node.depth + 1, node.dn)

        groups = frozenset(
            GroupEntry(dn=n.dn, depth=n.depth, member_dns=tuple(n.members))
            for n in visited.values()
            if not n.failed
        )

        resolution = Resolution(groups=groups, failed_dns=failed)
        if failed:
            resolution.error = PartialResolution(failed, causes)
            if self.reporter is not None:
                self.reporter.record(resolution.error)
        log.debug("resolved %d groups for %s (%d failed)", len(groups), user.dn, len(failed))
        return resolution

    def _check_deadline(self, deadline: float | None) -> None:
        if deadline is not None and self._clock() > deadline:
            raise DirectoryUnavailable("group resolution exceeded its deadline", stage="search")

    def _direct_groups(self, conn: Connection, user: UserEntry) -> list[str]:
        if self.schema == MembershipSchema.MEMBER_OF:
            values = user.values(self.member_of_attribute)
            if values or user.attributes:
                return list(values)
            # entry was fetched without attributes
            return self._member_of(conn, user.dn)
        return self._groups_listing(conn, user.dn)

    def _parents_of(self, conn: Connection, group_dn: str) -> list[str]:
        if self.schema == MembershipSchema.MEMBER_OF:
            return self._member_of(conn, group_dn)
        return self._groups_listing(conn, group_dn)

    def _groups_listing(self, conn: Connection, member_dn: str) -> list[str]:
        flt = f"(&{self.group_filter}({self.member_attribute}={escape_ldap_filter_value(member_dn)}))"
        out: list[str] = []
        for base in self.group_bases:
            for entry in conn.search(base, flt, scope=SearchScope.SUBTREE, attributes=[]):
                out.append(entry.dn)
        return out

    def _member_of(self, conn: Connection, dn: str) -> list[str]:
        entries = conn.search(dn, "(objectClass=*)", scope=SearchScope.BASE, attributes=[self.member_of_attribute])
        if not entries:
            return []
        return list(UserEntry.from_search(entries[0]).values(self.member_of_attribute))
