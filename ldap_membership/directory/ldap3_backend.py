"""The "modern" backend, built on the pure-Python ldap3 client."""
from __future__ import annotations

import logging
import math
import ssl
from typing import Any, Callable, Sequence

from ldap3 import (
    Server,
    Connection,
    NONE,
    SIMPLE,
    SYNC,
    BASE,
    LEVEL,
    SUBTREE,
    Tls,
    ALL_ATTRIBUTES,
)
from ldap3.core.exceptions import (
    LDAPException,
    LDAPBindError,
    LDAPCommunicationError,
    LDAPResponseTimeoutError,
    LDAPSSLConfigurationError,
    LDAPStartTLSError,
)

from ..errors import BindFailed, ConnectFailed, DirectoryUnavailable, TlsFailed
from .backend import DirectoryBackend, DirectorySession
from .models import DirectoryEndpoint, SearchEntry, SearchScope, TransportMode
from .utils import to_str_values

log = logging.getLogger(__name__)

_SCOPES = {
    SearchScope.BASE: BASE,
    SearchScope.ONELEVEL: LEVEL,
    SearchScope.SUBTREE: SUBTREE,
}

# result codes that still carry usable entries
_SEARCH_OK = {0, 4}  # success, sizeLimitExceeded
_NO_SUCH_OBJECT = 32
_INVALID_CREDENTIALS = 49
_UNAVAILABLE = {51, 52, 80}  # busy, unavailable, other


def _looks_like_tls_error(exc: BaseException) -> bool:
    cur: BaseException | None = exc
    while cur is not None:
        if isinstance(cur, (ssl.SSLError, ssl.CertificateError, LDAPSSLConfigurationError, LDAPStartTLSError)):
            return True
        cur = cur.__cause__ or cur.__context__
    text = str(exc).lower()
    return "ssl" in text or "certificate" in text or "tls" in text


def _result_text(conn: Any) -> str:
    res = dict(getattr(conn, "result", None) or {})
    desc = res.get("description") or ""
    msg = res.get("message") or ""
    return f"{desc}: {msg}" if msg else (desc or "unknown error")


class Ldap3Session(DirectorySession):
    def __init__(
        self,
        endpoint: DirectoryEndpoint,
        operation_timeout_s: float,
        server: Server,
        client_strategy: str = SYNC,
    ) -> None:
        super().__init__(endpoint, operation_timeout_s)
        self.server = server
        self.client_strategy = client_strategy
        self.conn: Connection | None = None

    def connect(self) -> None:
        try:
            self.conn = Connection(
                self.server,
                auto_bind=False,
                client_strategy=self.client_strategy,
                receive_timeout=self.operation_timeout_s,
                raise_exceptions=False,
            )
            self.conn.open()
        except LDAPException as e:
            if self.endpoint.transport == TransportMode.SSL and _looks_like_tls_error(e):
                raise TlsFailed(f"SSL handshake with {self.endpoint.url} failed: {e}", stage="tls") from e
            raise ConnectFailed(f"cannot connect to {self.endpoint.url}: {e}", stage="connect") from e

    def start_tls(self) -> None:
        conn = self._require()
        try:
            ok = conn.start_tls()
        except LDAPException as e:
            raise TlsFailed(f"StartTLS with {self.endpoint.url} failed: {e}", stage="tls") from e
        if not ok:
            raise TlsFailed(f"StartTLS refused: {_result_text(conn)}", stage="tls")

    def bind(self, dn: str, secret: str) -> None:
        conn = self._require()
        conn.user = dn
        conn.password = secret
        conn.authentication = SIMPLE
        try:
            ok = conn.bind()
        except LDAPResponseTimeoutError as e:
            raise DirectoryUnavailable(f"bind timed out: {e}", stage="bind") from e
        except LDAPCommunicationError as e:
            raise DirectoryUnavailable(f"connection lost during bind: {e}", stage="bind") from e
        except LDAPBindError as e:
            raise BindFailed(f"bind as {dn} rejected: {e}", stage="bind") from e
        except LDAPException as e:
            raise BindFailed(f"bind as {dn} failed: {e}", stage="bind") from e
        if ok:
            return
        code = dict(conn.result or {}).get("result")
        if code in _UNAVAILABLE:
            raise DirectoryUnavailable(f"bind failed: {_result_text(conn)}", stage="bind")
        if code == _INVALID_CREDENTIALS:
            raise BindFailed(f"bind as {dn} rejected: invalid credentials", stage="bind")
        raise BindFailed(f"bind as {dn} rejected: {_result_text(conn)}", stage="bind")

    def search(
        self,
        base: str,
        search_filter: str,
        scope: SearchScope = SearchScope.SUBTREE,
        attributes: Sequence[str] | None = None,
        size_limit: int = 0,
    ) -> list[SearchEntry]:
        conn = self._require()
        if attributes is None:
            attrs: Any = ALL_ATTRIBUTES
        else:
            attrs = list(attributes) or None
        try:
            conn.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=_SCOPES[scope],
                attributes=attrs,
                size_limit=size_limit,
                # whole seconds on the wire, and 0 would mean no limit
                time_limit=max(1, math.ceil(self.operation_timeout_s)),
            )
        except LDAPException as e:
            raise DirectoryUnavailable(f"search under {base} failed: {e}", stage="search") from e

        code = dict(conn.result or {}).get("result", 0)
        if code == _NO_SUCH_OBJECT:
            return []
        if code not in _SEARCH_OK:
            raise DirectoryUnavailable(f"search under {base} failed: {_result_text(conn)}", stage="search")

        entries: list[SearchEntry] = []
        for item in conn.response or []:
            if item.get("type") != "searchResEntry":
                continue
            raw = item.get("attributes") or {}
            entries.append(SearchEntry(
                dn=str(item.get("dn") or ""),
                attributes={k: to_str_values(v) for k, v in raw.items()},
            ))
        return entries

    def is_alive(self) -> bool:
        conn = self.conn
        if conn is None or conn.closed:
            return False
        try:
            conn.search(search_base="", search_filter="(objectClass=*)", search_scope=BASE, attributes=None)
        except LDAPException:
            return False
        return not conn.closed

    def close(self) -> None:
        conn, self.conn = self.conn, None
        if conn is None:
            return
        try:
            conn.unbind()
        except Exception:
            log.debug("ldap3 unbind failed for %s", self.endpoint.url, exc_info=True)

    def _require(self) -> Connection:
        if self.conn is None:
            raise DirectoryUnavailable("session is not connected", stage="connect")
        return self.conn


ServerFactory = Callable[[DirectoryEndpoint], Server]


class Ldap3Backend(DirectoryBackend):
    name = "modern"

    def __init__(
        self,
        operation_timeout_s: float = 30.0,
        client_strategy: str = SYNC,
        server_factory: ServerFactory | None = None,
    ) -> None:
        super().__init__(operation_timeout_s)
        self.client_strategy = client_strategy
        self.server_factory = server_factory or self.build_server

    @staticmethod
    def build_server(endpoint: DirectoryEndpoint) -> Server:
        tls_kwargs: dict[str, Any] = {
            "validate": ssl.CERT_REQUIRED if endpoint.tls_validate else ssl.CERT_NONE,
        }
        # custom CA only when verification is on
        if endpoint.tls_validate and endpoint.key_material_path:
            tls_kwargs["ca_certs_file"] = endpoint.key_material_path
        try:
            tls = Tls(**tls_kwargs)
        except LDAPException as e:
            raise TlsFailed(f"invalid TLS configuration: {e}", stage="tls") from e

        return Server(
            host=endpoint.host,
            port=endpoint.port,
            use_ssl=endpoint.transport == TransportMode.SSL,
            get_info=NONE,
            tls=tls,
            connect_timeout=float(endpoint.connect_timeout_s),
        )

    def session(self, endpoint: DirectoryEndpoint) -> Ldap3Session:
        return Ldap3Session(
            endpoint,
            self.operation_timeout_s,
            server=self.server_factory(endpoint),
            client_strategy=self.client_strategy,
        )
