from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator

from ..directory.backend import DirectoryBackend, build_backend
from ..directory.manager import Connection, ConnectionManager
from ..directory.models import (
    BindStrategy,
    Credential,
    DirectoryEndpoint,
    GroupEntry,
    MembershipSchema,
    TransportMode,
    UserEntry,
)
from ..directory.pool import ConnectionPool
from ..errors import (
    AmbiguousIdentity,
    DirectoryError,
    DirectoryUnavailable,
    ErrorKind,
    NotConfigured,
)
from ..settings import DirectorySettings
from .cache import MembershipCache
from .credentials import CredentialValidator
from .groups import GroupResolver, Resolution
from .mapping import AttributeMapper, ProfileValue
from .reporter import ErrorReporter

log = logging.getLogger(__name__)
audit = logging.getLogger("ldap_membership.audit")


@dataclass
class AuthResult:
    """Outcome of a login attempt."""
    success: bool
    user: UserEntry | None = None
    groups: frozenset[GroupEntry] = frozenset()
    profile: dict[str, ProfileValue] = field(default_factory=dict)
    error: DirectoryError | None = None

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error else ""

    @property
    def partial(self) -> bool:
        return self.error_kind == ErrorKind.PARTIAL_RESOLUTION

    @property
    def group_dns(self) -> list[str]:
        return sorted(g.dn for g in self.groups)


@dataclass
class GroupsResult:
    """Outcome of a group lookup without authentication."""
    success: bool
    groups: frozenset[GroupEntry] = frozenset()
    user: UserEntry | None = None
    error: DirectoryError | None = None
    from_cache: bool = False

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @property
    def partial(self) -> bool:
        return self.error_kind == ErrorKind.PARTIAL_RESOLUTION

    @property
    def group_dns(self) -> list[str]:
        return sorted(g.dn for g in self.groups)


class Authenticator:
    """Login and group-resolution entry point for the host application.

    Owns one backend (picked from settings once), one membership cache and
    one error slot. Public methods never raise :class:`DirectoryError`:
    failures come back in the result and in :meth:`last_error`.
    """

    def __init__(
        self,
        settings: DirectorySettings,
        backend: DirectoryBackend | None = None,
        cache: MembershipCache | None = None,
        reporter: ErrorReporter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.backend = backend or build_backend(settings.backend_kind, settings.operation_timeout_s)
        self.endpoint = settings.endpoint()
        self.manager = ConnectionManager(self.backend)
        self.cache = cache if cache is not None else MembershipCache(settings.cache_ttl_s, clock=clock)
        self.reporter = reporter or ErrorReporter()
        self.mapper = AttributeMapper(settings.profile_field_map, settings.multi_valued_fields)
        self.validator = CredentialValidator(
            self.manager,
            strategy=settings.strategy,
            login_attribute=settings.login_attribute,
            user_bases=settings.user_bases,
            user_search_filter=settings.user_search_filter,
            user_dn_template=settings.user_dn_template,
            attributes=self._user_attributes(),
        )
        self.resolver = GroupResolver(
            schema=settings.schema,
            group_bases=settings.group_bases,
            group_filter=settings.group_filter,
            member_attribute=settings.member_attribute,
            member_of_attribute=settings.member_of_attribute,
            reporter=self.reporter,
            clock=clock,
        )
        self.pool: ConnectionPool | None = None
        if settings.pool_size > 0:
            self.pool = ConnectionPool(
                self.manager,
                self.endpoint,
                settings.bind_dn or None,
                settings.bind_password or None,
                max_size=settings.pool_size,
                max_idle_s=settings.pool_max_idle_s,
                clock=clock,
            )

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.enabled)

    def _user_attributes(self) -> list[str]:
        attrs = ["*"]
        for name in self.mapper.attributes() + [self.settings.login_attribute]:
            if name and name not in attrs:
                attrs.append(name)
        if self.settings.schema == MembershipSchema.MEMBER_OF:
            attrs.append(self.settings.member_of_attribute)
        return attrs

    # connections

    @contextmanager
    def _service_connection(self) -> Iterator[Connection]:
        if self.pool is not None:
            with self.pool.connection() as conn:
                yield conn
            return
        conn = self.manager.open(self.endpoint, self.settings.bind_dn or None, self.settings.bind_password or None)
        try:
            yield conn
        finally:
            self.manager.close(conn)

    @contextmanager
    def _login_connection(self) -> Iterator[Connection]:
        if self.settings.strategy == BindStrategy.SEARCH:
            with self._service_connection() as conn:
                yield conn
            return
        # direct bind rebinds as the user, so the connection is never pooled
        conn = self.manager.open(self.endpoint, self.settings.bind_dn or None, self.settings.bind_password or None)
        try:
            yield conn
        finally:
            self.manager.close(conn)

    def _deadline(self) -> float:
        return self._clock() + self.settings.operation_timeout_s

    def _groups_for(self, conn: Connection, user: UserEntry, deadline: float) -> tuple[frozenset[GroupEntry], Resolution | None]:
        cached = self.cache.get(user.dn)
        if cached is not None:
            return cached, None
        resolution = self.resolver.resolve(conn, user, self.settings.max_depth, deadline)
        # a partial set would hide the missing groups until the TTL runs out
        if not resolution.partial:
            self.cache.put(user.dn, resolution.groups)
        return resolution.groups, resolution

    def _fail(self, error: DirectoryError) -> DirectoryError:
        self.reporter.record(error)
        return error

    # API

    def authenticate(self, credential: Credential) -> AuthResult:
        self.reporter.clear()
        if not self.is_configured:
            return AuthResult(success=False, error=self._fail(NotConfigured("no LDAP authenticator configured")))

        deadline = self._deadline()
        try:
            with self._login_connection() as conn:
                user = self.validator.validate(conn, credential)
                groups, resolution = self._groups_for(conn, user, deadline)
        except DirectoryError as e:
            audit.warning("LDAP login rejected: login=%s kind=%s reason=%s", credential.login, e.kind.value, e)
            return AuthResult(success=False, error=self._fail(e))
        except Exception as e:
            log.exception("Unexpected error during LDAP login for %s", credential.login)
            err = DirectoryUnavailable(f"unexpected error: {e}")
            return AuthResult(success=False, error=self._fail(err))

        self.cache.put_user(credential.login, user)
        partial = resolution.error if resolution is not None else None
        audit.info("LDAP login ok: login=%s dn=%s groups=%d", credential.login, user.dn, len(groups))
        return AuthResult(
            success=True,
            user=user,
            groups=groups,
            profile=self.mapper.map(user),
            error=partial,
        )

    def resolve_groups(self, identity: str) -> GroupsResult:
        """Groups for a login value or DN, from cache when fresh; no password needed."""
        self.reporter.clear()
        if not self.is_configured:
            return GroupsResult(success=False, error=self._fail(NotConfigured("no LDAP authenticator configured")))

        identity = (identity or "").strip()
        if not identity:
            return GroupsResult(success=False, error=self._fail(AmbiguousIdentity("empty identity", matches=0)))

        user = self.cache.get_user(identity)
        subject = user.dn if user is not None else (identity if "=" in identity else "")
        if subject:
            cached = self.cache.get(subject)
            if cached is not None:
                return GroupsResult(success=True, groups=cached, user=user, from_cache=True)

        deadline = self._deadline()
        try:
            with self._service_connection() as conn:
                if user is None:
                    matches = self.validator.find_entries(conn, identity)
                    if len(matches) != 1:
                        raise AmbiguousIdentity(
                            f"{len(matches)} directory entries match {identity}", matches=len(matches)
                        )
                    user = matches[0]
                groups, resolution = self._groups_for(conn, user, deadline)
            # after the groups, so the login mapping never expires before them
            self.cache.put_user(identity, user)
        except DirectoryError as e:
            log.warning("LDAP group resolution for %s failed: %s", identity, e)
            return GroupsResult(success=False, error=self._fail(e))
        except Exception as e:
            log.exception("Unexpected error resolving LDAP groups for %s", identity)
            return GroupsResult(success=False, error=self._fail(DirectoryUnavailable(f"unexpected error: {e}")))

        partial = resolution.error if resolution is not None else None
        return GroupsResult(success=True, groups=groups, user=user, error=partial, from_cache=resolution is None)

    def invalidate_cache(self, subject: str | None = None) -> None:
        """Drop one subject (login, user DN or group DN) or, with no subject, everything."""
        if subject is None:
            self.cache.reset_all()
            return
        user = self.cache.get_user(subject)
        if user is not None:
            self.cache.invalidate(user.dn)
        self.cache.invalidate(subject)

    def directory_changed(self) -> None:
        """Hook for out-of-band directory edits: the whole cache is stale."""
        log.info("LDAP directory change signalled, resetting group cache")
        self.cache.reset_all()

    def last_error(self) -> DirectoryError | None:
        return self.reporter.last()

    def check_connection(
        self,
        host: str,
        port: int,
        login_dn: str,
        secret: str,
        key_material_path: str = "",
        transport: TransportMode | str = TransportMode.PLAIN,
    ) -> bool:
        """Open and release a connection with the given parameters."""
        self.reporter.clear()
        if not self.is_configured:
            self._fail(NotConfigured("no LDAP authenticator configured"))
            return False

        endpoint = DirectoryEndpoint(
            host=host,
            port=int(port),
            transport=TransportMode(transport),
            key_material_path=key_material_path or "",
            tls_validate=self.settings.tls_validate,
            connect_timeout_s=self.settings.connect_timeout_s,
        )
        conn: Connection | None = None
        try:
            conn = self.manager.open(endpoint, login_dn or None, secret or None)
            return True
        except DirectoryError as e:
            self._fail(e)
            return False
        except Exception as e:
            log.exception("Unexpected error checking LDAP connection to %s", endpoint.url)
            self._fail(DirectoryUnavailable(f"unexpected error: {e}"))
            return False
        finally:
            self.manager.close(conn)

    def shutdown(self) -> None:
        if self.pool is not None:
            self.pool.close_all()
        self.cache.reset_all()
