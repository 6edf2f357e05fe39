from __future__ import annotations

import logging
from typing import Sequence

from ldap3.utils.dn import escape_rdn

from ..directory.manager import Connection, ConnectionManager
from ..directory.models import BindStrategy, Credential, SearchScope, UserEntry
from ..directory.utils import escape_ldap_filter_value, normalize_dn
from ..errors import (
    AmbiguousIdentity,
    BindFailed,
    ConnectFailed,
    DirectoryUnavailable,
    InvalidCredentials,
    TlsFailed,
)

log = logging.getLogger(__name__)


class CredentialValidator:
    """Checks a login + secret against the directory.

    ``direct``: bind the given connection as the user's DN, then read the
    entry as that user.

    ``search``: look the login up over the (service-bound) connection; only
    a single match is accepted. The secret is then checked by binding a
    second, short-lived connection as the matched DN.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        strategy: BindStrategy = BindStrategy.SEARCH,
        login_attribute: str = "uid",
        user_bases: Sequence[str] = (),
        user_search_filter: str = "(objectClass=*)",
        user_dn_template: str = "",
        attributes: Sequence[str] | None = None,
    ) -> None:
        self.manager = manager
        self.strategy = BindStrategy(strategy)
        self.login_attribute = login_attribute
        self.user_bases = list(user_bases)
        self.user_search_filter = user_search_filter or "(objectClass=*)"
        self.user_dn_template = user_dn_template
        self.attributes = None if attributes is None else list(attributes)

    def validate(self, conn: Connection, credential: Credential) -> UserEntry:
        login = (credential.login or "").strip()
        if not login:
            raise InvalidCredentials("empty login")
        # an empty-password simple bind is an unauthenticated bind, which servers accept
        if not credential.secret:
            raise InvalidCredentials(f"empty password for {login}")

        if self.strategy == BindStrategy.DIRECT:
            return self._direct_bind(conn, login, credential.secret)
        return self._search_then_bind(conn, login, credential.secret)

    def user_dn_for(self, login: str) -> str | None:
        if "=" in login:
            return login
        if self.user_dn_template:
            return self.user_dn_template.format(login=escape_rdn(login))
        return None

    def _direct_bind(self, conn: Connection, login: str, secret: str) -> UserEntry:
        dn = self.user_dn_for(login)
        if not dn:
            raise InvalidCredentials(f"cannot derive a DN for {login}")
        try:
            conn.bind(dn, secret)
        except BindFailed as e:
            raise InvalidCredentials(f"invalid credentials for {dn}") from e

        user = self.read_entry(conn, dn)
        if user is None:
            # bound fine but the entry is not readable as the user itself
            log.warning("LDAP entry %s not readable after successful bind", dn)
            return UserEntry(dn=dn)
        return user

    def _search_then_bind(self, conn: Connection, login: str, secret: str) -> UserEntry:
        matches = self.find_entries(conn, login)
        if len(matches) != 1:
            raise AmbiguousIdentity(
                f"{len(matches)} directory entries match {login}", matches=len(matches)
            )
        user = matches[0]

        verify: Connection | None = None
        try:
            verify = self.manager.open(conn.endpoint, user.dn, secret)
        except BindFailed as e:
            raise InvalidCredentials(f"invalid credentials for {user.dn}") from e
        except (ConnectFailed, TlsFailed) as e:
            raise DirectoryUnavailable(f"cannot verify password for {user.dn}: {e}", stage=e.stage) from e
        finally:
            self.manager.close(verify)
        return user

    def login_filter(self, login: str) -> str:
        flt = f"({self.login_attribute}={escape_ldap_filter_value(login)})"
        return f"(&{self.user_search_filter}{flt})"

    def find_entries(self, conn: Connection, login: str) -> list[UserEntry]:
        """Entries matching ``login`` over every user base, deduplicated by DN.

        At most two are kept: that is enough to tell unique from ambiguous.
        A DN login only matches an entry under one of the user bases that
        carries the login attribute.
        """
        if "=" in login:
            if not self.within_user_bases(login):
                log.info("LDAP login DN %s is outside the user bases", login)
                return []
            user = self.read_entry(conn, login, f"(&{self.user_search_filter}({self.login_attribute}=*))")
            return [user] if user else []

        found: dict[str, UserEntry] = {}
        for base in self.user_bases:
            for entry in conn.search(
                base,
                self.login_filter(login),
                scope=SearchScope.SUBTREE,
                attributes=self.attributes,
                size_limit=2,
            ):
                found.setdefault(normalize_dn(entry.dn), UserEntry.from_search(entry))
            if len(found) > 1:
                break
        return list(found.values())

    def within_user_bases(self, dn: str) -> bool:
        key = normalize_dn(dn)
        for base in self.user_bases:
            base_key = normalize_dn(base)
            if base_key and (key == base_key or key.endswith("," + base_key)):
                return True
        return False

    def read_entry(self, conn: Connection, dn: str, search_filter: str | None = None) -> UserEntry | None:
        entries = conn.search(
            dn,
            search_filter or self.user_search_filter,
            scope=SearchScope.BASE,
            attributes=self.attributes,
            size_limit=1,
        )
        if not entries:
            return None
        return UserEntry.from_search(entries[0])
