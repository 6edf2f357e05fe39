from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from .utils import dn_first_component_value, normalize_dn


class TransportMode(str, Enum):
    PLAIN = "plain"
    SSL = "ssl"
    STARTTLS = "starttls"


class BackendKind(str, Enum):
    MODERN = "modern"
    LEGACY = "legacy"


class BindStrategy(str, Enum):
    DIRECT = "direct"
    SEARCH = "search"


class MembershipSchema(str, Enum):
    # member DNs listed on the group entry
    MEMBER = "member"
    # group DNs listed on the member entry
    MEMBER_OF = "memberof"


class SearchScope(str, Enum):
    BASE = "base"
    ONELEVEL = "onelevel"
    SUBTREE = "subtree"


@dataclass(frozen=True)
class DirectoryEndpoint:
    host: str
    port: int
    transport: TransportMode = TransportMode.PLAIN
    key_material_path: str = ""
    tls_validate: bool = True
    connect_timeout_s: float = 10.0

    @property
    def uses_tls(self) -> bool:
        return self.transport in (TransportMode.SSL, TransportMode.STARTTLS)

    @property
    def url(self) -> str:
        scheme = "ldaps" if self.transport == TransportMode.SSL else "ldap"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class Credential:
    """Login DN or login attribute value plus the secret."""

    login: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class SearchEntry:
    dn: str
    attributes: Mapping[str, tuple[str, ...]]


@dataclass(frozen=True)
class UserEntry:
    dn: str
    attributes: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return normalize_dn(self.dn)

    def values(self, name: str) -> tuple[str, ...]:
        """Attribute values, matching the attribute name case-insensitively."""
        if name in self.attributes:
            return tuple(self.attributes[name])
        lname = name.lower()
        for k, v in self.attributes.items():
            if k.lower() == lname:
                return tuple(v)
        return ()

    def first(self, name: str) -> str | None:
        vals = self.values(name)
        return vals[0] if vals else None

    @classmethod
    def from_search(cls, entry: SearchEntry) -> "UserEntry":
        return cls(dn=entry.dn, attributes=dict(entry.attributes))


@dataclass(frozen=True)
class GroupEntry:
    dn: str
    depth: int = field(default=1, compare=False)
    # members through which the traversal reached this group
    member_dns: tuple[str, ...] = field(default=(), compare=False)

    @property
    def key(self) -> str:
        return normalize_dn(self.dn)

    @property
    def name(self) -> str:
        return dn_first_component_value(self.dn)

    def __hash__(self) -> int:
        return hash(self.key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GroupEntry):
            return NotImplemented
        return self.key == other.key
