"""The "legacy" backend, built on python-ldap (OpenLDAP client library).

Installed through the ``legacy`` extra. python-ldap opens the socket
lazily, so :meth:`PythonLdapSession.connect` issues a WhoAmI request to
force the connect (and, for ldaps, the handshake) to happen up front.
"""
from __future__ import annotations

import logging
from typing import Any, Sequence

import ldap

from ..errors import BindFailed, ConnectFailed, DirectoryUnavailable, TlsFailed
from .backend import DirectoryBackend, DirectorySession
from .models import DirectoryEndpoint, SearchEntry, SearchScope, TransportMode
from .utils import to_str_values

log = logging.getLogger(__name__)

_SCOPES = {
    SearchScope.BASE: ldap.SCOPE_BASE,
    SearchScope.ONELEVEL: ldap.SCOPE_ONELEVEL,
    SearchScope.SUBTREE: ldap.SCOPE_SUBTREE,
}


def _error_text(e: Exception) -> str:
    info: Any = e.args[0] if e.args else None
    if isinstance(info, dict):
        desc = info.get("desc") or ""
        extra = info.get("info") or ""
        return f"{desc}: {extra}" if extra else (desc or type(e).__name__)
    return str(e) or type(e).__name__


def _looks_like_tls_error(e: Exception) -> bool:
    text = _error_text(e).lower()
    return "tls" in text or "ssl" in text or "certificate" in text


class PythonLdapSession(DirectorySession):
    def __init__(self, endpoint: DirectoryEndpoint, operation_timeout_s: float) -> None:
        super().__init__(endpoint, operation_timeout_s)
        self.conn: Any = None

    def _configure(self, conn: Any) -> None:
        conn.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)
        conn.set_option(ldap.OPT_REFERRALS, 0)
        conn.set_option(ldap.OPT_NETWORK_TIMEOUT, float(self.endpoint.connect_timeout_s))
        conn.set_option(ldap.OPT_TIMEOUT, float(self.operation_timeout_s))
        if self.endpoint.uses_tls:
            require = ldap.OPT_X_TLS_DEMAND if self.endpoint.tls_validate else ldap.OPT_X_TLS_NEVER
            conn.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, require)
            if self.endpoint.tls_validate and self.endpoint.key_material_path:
                conn.set_option(ldap.OPT_X_TLS_CACERTFILE, self.endpoint.key_material_path)
            # must come last: applies the TLS options above
            conn.set_option(ldap.OPT_X_TLS_NEWCTX, 0)

    def connect(self) -> None:
        try:
            self.conn = ldap.initialize(self.endpoint.url, bytes_mode=False)
            self._configure(self.conn)
        except (ldap.LDAPError, ValueError) as e:
            if self.endpoint.uses_tls and isinstance(e, ldap.LDAPError) and _looks_like_tls_error(e):
                raise TlsFailed(f"invalid TLS configuration: {_error_text(e)}", stage="tls") from e
            raise ConnectFailed(f"cannot initialize {self.endpoint.url}: {e}", stage="connect") from e

        try:
            self.conn.whoami_s()
        except (ldap.SERVER_DOWN, ldap.CONNECT_ERROR, ldap.TIMEOUT) as e:
            if self.endpoint.transport == TransportMode.SSL and _looks_like_tls_error(e):
                raise TlsFailed(
                    f"SSL handshake with {self.endpoint.url} failed: {_error_text(e)}", stage="tls"
                ) from e
            raise ConnectFailed(f"cannot connect to {self.endpoint.url}: {_error_text(e)}", stage="connect") from e
        except ldap.LDAPError:
            # the server answered; refusing anonymous WhoAmI is fine
            pass

    def start_tls(self) -> None:
        conn = self._require()
        try:
            conn.start_tls_s()
        except ldap.LDAPError as e:
            raise TlsFailed(f"StartTLS with {self.endpoint.url} failed: {_error_text(e)}", stage="tls") from e

    def bind(self, dn: str, secret: str) -> None:
        conn = self._require()
        try:
            conn.simple_bind_s(dn, secret)
        except ldap.INVALID_CREDENTIALS as e:
            raise BindFailed(f"bind as {dn} rejected: invalid credentials", stage="bind") from e
        except (ldap.SERVER_DOWN, ldap.TIMEOUT, ldap.BUSY, ldap.UNAVAILABLE) as e:
            raise DirectoryUnavailable(f"bind failed: {_error_text(e)}", stage="bind") from e
        except ldap.LDAPError as e:
            raise BindFailed(f"bind as {dn} rejected: {_error_text(e)}", stage="bind") from e

    def search(
        self,
        base: str,
        search_filter: str,
        scope: SearchScope = SearchScope.SUBTREE,
        attributes: Sequence[str] | None = None,
        size_limit: int = 0,
    ) -> list[SearchEntry]:
        conn = self._require()
        attrlist = None if attributes is None else (list(attributes) or ["1.1"])
        try:
            results = conn.search_ext_s(
                base,
                _SCOPES[scope],
                search_filter,
                attrlist,
                timeout=self.operation_timeout_s,
            )
        except ldap.NO_SUCH_OBJECT:
            return []
        except ldap.LDAPError as e:
            raise DirectoryUnavailable(f"search under {base} failed: {_error_text(e)}", stage="search") from e

        entries: list[SearchEntry] = []
        for dn, attrs in results or []:
            # referrals come back without a DN
            if not dn:
                continue
            entries.append(SearchEntry(
                dn=dn,
                attributes={k: to_str_values(v) for k, v in (attrs or {}).items()},
            ))
        if size_limit:
            entries = entries[:size_limit]
        return entries

    def is_alive(self) -> bool:
        if self.conn is None:
            return False
        try:
            self.conn.whoami_s()
        except (ldap.SERVER_DOWN, ldap.CONNECT_ERROR, ldap.TIMEOUT):
            return False
        except ldap.LDAPError:
            pass
        return True

    def close(self) -> None:
        conn, self.conn = self.conn, None
        if conn is None:
            return
        try:
            conn.unbind_s()
        except Exception:
            log.debug("python-ldap unbind failed for %s", self.endpoint.url, exc_info=True)

    def _require(self) -> Any:
        if self.conn is None:
            raise DirectoryUnavailable("session is not connected", stage="connect")
        return self.conn


class PythonLdapBackend(DirectoryBackend):
    name = "legacy"

    def session(self, endpoint: DirectoryEndpoint) -> PythonLdapSession:
        return PythonLdapSession(endpoint, self.operation_timeout_s)
