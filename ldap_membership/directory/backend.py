"""Backend contract shared by the ldap3 and python-ldap implementations.

A backend produces :class:`DirectorySession` objects. Sessions expose the
protocol stages one by one (``connect`` / ``start_tls`` / ``bind``) so the
connection manager can tell which stage failed, plus ``search`` and
``close``. Sessions translate their library's exceptions into
:mod:`ldap_membership.errors`; nothing library-specific crosses this line.
"""
from __future__ import annotations

import abc
from typing import Sequence

from .models import BackendKind, DirectoryEndpoint, SearchEntry, SearchScope


class DirectorySession(abc.ABC):
    """One protocol session against one endpoint. Not thread-safe."""

    def __init__(self, endpoint: DirectoryEndpoint, operation_timeout_s: float) -> None:
        self.endpoint = endpoint
        self.operation_timeout_s = operation_timeout_s

    @abc.abstractmethod
    def connect(self) -> None:
        """Open the socket; for SSL transport also performs the handshake.

        Raises ConnectFailed or TlsFailed.
        """

    @abc.abstractmethod
    def start_tls(self) -> None:
        """Negotiated encryption on an open plain socket. Raises TlsFailed."""

    @abc.abstractmethod
    def bind(self, dn: str, secret: str) -> None:
        """Simple bind. Raises BindFailed or DirectoryUnavailable."""

    @abc.abstractmethod
    def search(
        self,
        base: str,
        search_filter: str,
        scope: SearchScope = SearchScope.SUBTREE,
        attributes: Sequence[str] | None = None,
        size_limit: int = 0,
    ) -> list[SearchEntry]:
        """Run a search; a missing base yields an empty list.

        Raises DirectoryUnavailable.
        """

    @abc.abstractmethod
    def is_alive(self) -> bool:
        """Cheap liveness probe, never raises."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the socket. Idempotent, never raises."""


class DirectoryBackend(abc.ABC):
    name: str = ""

    def __init__(self, operation_timeout_s: float = 30.0) -> None:
        self.operation_timeout_s = operation_timeout_s

    @abc.abstractmethod
    def session(self, endpoint: DirectoryEndpoint) -> DirectorySession:
        """Create an unconnected session for ``endpoint``."""


def build_backend(kind: str, operation_timeout_s: float = 30.0) -> DirectoryBackend:
    """Resolve the configured backend kind once, at startup."""
    kind = BackendKind(kind)
    if kind == BackendKind.MODERN:
        from .ldap3_backend import Ldap3Backend

        return Ldap3Backend(operation_timeout_s=operation_timeout_s)

    # python-ldap is an optional dependency (the ``legacy`` extra)
    from .legacy_backend import PythonLdapBackend

    return PythonLdapBackend(operation_timeout_s=operation_timeout_s)
