from __future__ import annotations

import dataclasses
import logging
from typing import Sequence

from ..errors import BindFailed, ConnectionClosed, DirectoryError, DirectoryUnavailable
from .backend import DirectoryBackend, DirectorySession
from .models import DirectoryEndpoint, SearchEntry, SearchScope, TransportMode

log = logging.getLogger(__name__)


class Connection:
    """An open session to one endpoint, exclusively owned by its caller.

    Any operation after :meth:`close` raises :class:`ConnectionClosed`.
    """

    def __init__(self, session: DirectorySession, endpoint: DirectoryEndpoint, bound_dn: str = "") -> None:
        self._session: DirectorySession | None = session
        self.endpoint = endpoint
        self.bound_dn = bound_dn
        # set once a transport error was seen; such connections are not reused
        self.broken = False

    @property
    def closed(self) -> bool:
        return self._session is None

    def _live(self) -> DirectorySession:
        if self._session is None:
            raise ConnectionClosed(f"connection to {self.endpoint.url} was released")
        return self._session

    def bind(self, dn: str, secret: str) -> None:
        session = self._live()
        if not secret:
            raise BindFailed(f"refusing bind as {dn} with an empty password", stage="bind")
        try:
            session.bind(dn, secret)
        except DirectoryUnavailable:
            self.broken = True
            raise
        self.bound_dn = dn

    def search(
        self,
        base: str,
        search_filter: str,
        scope: SearchScope = SearchScope.SUBTREE,
        attributes: Sequence[str] | None = None,
        size_limit: int = 0,
    ) -> list[SearchEntry]:
        session = self._live()
        try:
            return session.search(base, search_filter, scope=scope, attributes=attributes, size_limit=size_limit)
        except DirectoryUnavailable:
            self.broken = True
            raise

    def is_alive(self) -> bool:
        if self._session is None or self.broken:
            return False
        return self._session.is_alive()

    def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Connection {self.endpoint.url} as {self.bound_dn or 'anonymous'} {state}>"


class ConnectionManager:
    """Opens, binds and releases sessions through one configured backend."""

    def __init__(self, backend: DirectoryBackend) -> None:
        self.backend = backend

    def open(
        self,
        endpoint: DirectoryEndpoint,
        bind_dn: str | None = None,
        secret: str | None = None,
        transport: TransportMode | None = None,
    ) -> Connection:
        """Connect, upgrade the transport if configured, then bind.

        Failures raise ConnectFailed, TlsFailed or BindFailed (with ``stage``
        set); the half-open session is closed before the error propagates.
        """
        if transport is not None and transport != endpoint.transport:
            endpoint = dataclasses.replace(endpoint, transport=transport)

        session = self.backend.session(endpoint)
        try:
            session.connect()
            if endpoint.transport == TransportMode.STARTTLS:
                session.start_tls()
            if bind_dn:
                if not secret:
                    raise BindFailed(f"refusing bind as {bind_dn} with an empty password", stage="bind")
                session.bind(bind_dn, secret)
        except DirectoryError as e:
            session.close()
            log.warning("LDAP open %s via %s failed: %s", endpoint.url, self.backend.name, e)
            raise
        except BaseException:
            session.close()
            raise

        log.debug("LDAP connection to %s opened as %s", endpoint.url, bind_dn or "anonymous")
        return Connection(session, endpoint, bound_dn=bind_dn or "")

    @staticmethod
    def close(conn: Connection | None) -> None:
        if conn is None:
            return
        try:
            conn.close()
        except Exception:
            log.debug("closing %r failed", conn, exc_info=True)
