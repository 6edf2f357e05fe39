from __future__ import annotations

import re
from typing import Callable, Sequence

import pytest

from ldap_membership.directory.backend import DirectoryBackend, DirectorySession
from ldap_membership.directory.models import DirectoryEndpoint, SearchEntry, SearchScope
from ldap_membership.directory.utils import escape_ldap_filter_value, normalize_dn
from ldap_membership.errors import BindFailed, DirectoryUnavailable
from ldap_membership.settings import DirectorySettings

BASE_DN = "dc=example,dc=com"
PEOPLE = f"ou=people,{BASE_DN}"
GROUPS = f"ou=groups,{BASE_DN}"
SERVICE_DN = f"cn=service,{BASE_DN}"
SERVICE_PW = "service-secret"


def _unescape(value: str) -> str:
    return re.sub(r"\\([0-9a-fA-F]{2})", lambda m: chr(int(m.group(1), 16)), value)


def _parse(flt: str, pos: int = 0):
    """Tiny RFC 4515 subset: &, |, !, equality and presence."""
    assert flt[pos] == "(", flt
    pos += 1
    op = flt[pos]
    if op in "&|!":
        pos += 1
        children = []
        while flt[pos] == "(":
            child, pos = _parse(flt, pos)
            children.append(child)
        assert flt[pos] == ")"
        return (op, children), pos + 1
    end = pos
    while flt[end] != ")":
        if flt[end] == "\\":
            end += 2
        end += 1
    attr, value = flt[pos:end].split("=", 1)
    return ("=", attr.lower(), _unescape(value)), end + 1


def _match(node, attrs: dict[str, list[str]]) -> bool:
    if node[0] == "&":
        return all(_match(c, attrs) for c in node[1])
    if node[0] == "|":
        return any(_match(c, attrs) for c in node[1])
    if node[0] == "!":
        return not _match(node[1][0], attrs)
    _, attr, value = node
    values = attrs.get(attr, [])
    if value == "*":
        return bool(values) or attr == "objectclass"
    if attr in ("member", "uniquemember", "memberof"):
        return normalize_dn(value) in {normalize_dn(v) for v in values}
    return value.lower() in {v.lower() for v in values}


class FakeDirectory(DirectoryBackend):
    """In-memory directory with failure injection and socket accounting."""

    name = "fake"

    def __init__(self) -> None:
        super().__init__(operation_timeout_s=5.0)
        self.entries: dict[str, tuple[str, dict[str, list[str]]]] = {}
        self.passwords: dict[str, str] = {}
        self.failing: set[str] = set()
        self.connect_error: Exception | None = None
        self.tls_error: Exception | None = None
        self.on_search: Callable[[str, str], None] | None = None
        self.searches: list[tuple[str, str]] = []
        self.binds: list[str] = []
        self.sessions: list[FakeSession] = []

    def add(self, dn: str, password: str | None = None, **attrs: Sequence[str] | str) -> str:
        stored: dict[str, list[str]] = {}
        for name, value in attrs.items():
            stored[name.lower()] = [value] if isinstance(value, str) else list(value)
        self.entries[normalize_dn(dn)] = (dn, stored)
        if password is not None:
            self.passwords[normalize_dn(dn)] = password
        return dn

    def add_group(self, cn: str, *members: str) -> str:
        return self.add(f"cn={cn},{GROUPS}", objectClass=["groupOfNames"], cn=cn, member=list(members))

    def add_user(self, uid: str, password: str = "pw", **attrs) -> str:
        attrs.setdefault("objectClass", ["person", "inetOrgPerson"])
        return self.add(f"uid={uid},{PEOPLE}", password=password, uid=uid, **attrs)

    def session(self, endpoint: DirectoryEndpoint) -> "FakeSession":
        s = FakeSession(self, endpoint)
        self.sessions.append(s)
        return s

    @property
    def open_sockets(self) -> int:
        return sum(1 for s in self.sessions if s.socket_open)


class FakeSession(DirectorySession):
    def __init__(self, directory: FakeDirectory, endpoint: DirectoryEndpoint) -> None:
        super().__init__(endpoint, directory.operation_timeout_s)
        self.directory = directory
        self.socket_open = False
        self.closed_calls = 0
        self.alive = True

    def connect(self) -> None:
        self.socket_open = True
        if self.directory.connect_error is not None:
            raise self.directory.connect_error

    def start_tls(self) -> None:
        if self.directory.tls_error is not None:
            raise self.directory.tls_error

    def bind(self, dn: str, secret: str) -> None:
        self.directory.binds.append(dn)
        if self.directory.passwords.get(normalize_dn(dn)) != secret:
            raise BindFailed(f"bind as {dn} rejected: invalid credentials", stage="bind")

    def search(
        self,
        base: str,
        search_filter: str,
        scope: SearchScope = SearchScope.SUBTREE,
        attributes: Sequence[str] | None = None,
        size_limit: int = 0,
    ) -> list[SearchEntry]:
        d = self.directory
        d.searches.append((base, search_filter))
        if d.on_search is not None:
            d.on_search(base, search_filter)
        for dn in d.failing:
            if normalize_dn(dn) == normalize_dn(base) or escape_ldap_filter_value(dn).lower() in search_filter.lower():
                raise DirectoryUnavailable(f"search for {dn} timed out", stage="search")

        tree, _ = _parse(search_filter)
        base_key = normalize_dn(base)
        out: list[SearchEntry] = []
        for key, (dn, attrs) in d.entries.items():
            if scope == SearchScope.BASE:
                if key != base_key:
                    continue
            elif not (key == base_key or key.endswith("," + base_key)):
                continue
            if not _match(tree, attrs):
                continue
            if attributes is None or "*" in attributes:
                picked = attrs
            else:
                wanted = {a.lower() for a in attributes}
                picked = {k: v for k, v in attrs.items() if k in wanted}
            out.append(SearchEntry(dn=dn, attributes={k: tuple(v) for k, v in picked.items()}))
            if size_limit and len(out) >= size_limit:
                break
        return out

    def is_alive(self) -> bool:
        return self.socket_open and self.alive

    def close(self) -> None:
        self.closed_calls += 1
        self.socket_open = False


@pytest.fixture
def directory() -> FakeDirectory:
    """alice -> eng -> staff; bob -> ops; a service account."""
    d = FakeDirectory()
    d.add(SERVICE_DN, password=SERVICE_PW, objectClass=["person"], cn="service")
    alice = d.add_user("alice", password="wonderland", givenName="Alice", sn="Liddell",
                       mail=["alice@example.com", "a.liddell@example.com"], displayName="Alice L.")
    bob = d.add_user("bob", password="builder", givenName="Bob")
    eng = d.add_group("eng", alice)
    d.add_group("staff", eng)
    d.add_group("ops", bob)
    return d


@pytest.fixture
def make_settings():
    def factory(**overrides) -> DirectorySettings:
        values = dict(
            host="ldap.example.com",
            transport="plain",
            bind_strategy="search",
            bind_dn=SERVICE_DN,
            bind_password=SERVICE_PW,
            login_attribute="uid",
            user_base_dns=PEOPLE,
            group_base_dns=GROUPS,
            user_dn_template=f"uid={{login}},{PEOPLE}",
            cache_ttl_s=60,
            max_depth=10,
        )
        values.update(overrides)
        return DirectorySettings(**values)

    return factory


@pytest.fixture
def endpoint() -> DirectoryEndpoint:
    return DirectoryEndpoint(host="ldap.example.com", port=389)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
