from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from .directory.models import (
    BackendKind,
    BindStrategy,
    DirectoryEndpoint,
    MembershipSchema,
    TransportMode,
)
from .directory.utils import split_dns

DEFAULT_GROUP_FILTER = (
    "(|(objectClass=groupOfNames)(objectClass=groupOfUniqueNames)"
    "(objectClass=group)(objectClass=posixGroup))"
)

DEFAULT_PROFILE_FIELDS = {
    "givenName": "first_name",
    "sn": "last_name",
    "mail": "email",
    "displayName": "display_name",
}


class DirectorySettings(BaseSettings):
    enabled: bool = Field(True, alias="LDAP_ENABLED")

    host: str = Field(..., alias="LDAP_HOST")
    port: int | None = Field(None, alias="LDAP_PORT")
    transport: Literal["plain", "ssl", "starttls"] = Field("plain", alias="LDAP_TRANSPORT")
    key_material_path: str = Field("", alias="LDAP_KEY_MATERIAL_PATH")
    tls_validate: bool = Field(True, alias="LDAP_TLS_VALIDATE")

    backend: Literal["modern", "legacy"] = Field("modern", alias="LDAP_BACKEND")

    bind_strategy: Literal["direct", "search"] = Field("search", alias="LDAP_BIND_STRATEGY")
    bind_dn: str = Field("", alias="LDAP_BIND_DN")
    bind_password: str = Field("", alias="LDAP_BIND_PASSWORD")
    login_attribute: str = Field("uid", alias="LDAP_LOGIN_ATTRIBUTE")
    user_dn_template: str = Field("", alias="LDAP_USER_DN_TEMPLATE")
    user_search_filter: str = Field("(objectClass=*)", alias="LDAP_USER_SEARCH_FILTER")

    # ";"-separated DN lists
    user_base_dns: str = Field("", alias="LDAP_USER_BASE_DNS")
    group_base_dns: str = Field("", alias="LDAP_GROUP_BASE_DNS")

    membership_schema: Literal["member", "memberof"] = Field("member", alias="LDAP_MEMBERSHIP_SCHEMA")
    member_attribute: str = Field("member", alias="LDAP_MEMBER_ATTRIBUTE")
    member_of_attribute: str = Field("memberOf", alias="LDAP_MEMBER_OF_ATTRIBUTE")
    group_filter: str = Field(DEFAULT_GROUP_FILTER, alias="LDAP_GROUP_FILTER")

    profile_field_map: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_PROFILE_FIELDS), alias="LDAP_PROFILE_FIELD_MAP"
    )
    multi_valued_fields: list[str] = Field(default_factory=list, alias="LDAP_MULTI_VALUED_FIELDS")

    cache_ttl_s: float = Field(600.0, alias="LDAP_CACHE_TTL_S")
    max_depth: int = Field(10, alias="LDAP_MAX_DEPTH")
    connect_timeout_s: float = Field(10.0, alias="LDAP_CONNECT_TIMEOUT_S")
    operation_timeout_s: float = Field(30.0, alias="LDAP_OPERATION_TIMEOUT_S")

    pool_size: int = Field(0, alias="LDAP_POOL_SIZE")
    pool_max_idle_s: float = Field(300.0, alias="LDAP_POOL_MAX_IDLE_S")

    log_level: str = Field("INFO", alias="LDAP_LOG_LEVEL")
    log_dir: str = Field("", alias="LDAP_LOG_DIR")
    log_retention_days: int = Field(30, alias="LDAP_LOG_RETENTION_DAYS")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @field_validator(
        "host", "bind_dn", "login_attribute", "user_dn_template", "user_base_dns", "group_base_dns",
        "member_attribute", "member_of_attribute", "key_material_path",
    )
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("host")
    @classmethod
    def _validate_host(cls, v: str) -> str:
        if not v:
            raise ValueError("LDAP host must not be empty.")
        if "://" in v or "/" in v:
            raise ValueError("LDAP host must be a bare host name or address, not a URL.")
        return v

    @field_validator("port")
    @classmethod
    def _validate_port(cls, v: int | None) -> int | None:
        if v is not None and not (0 < v < 65536):
            raise ValueError(f"Invalid LDAP port: {v}.")
        return v

    @field_validator("max_depth")
    @classmethod
    def _validate_depth(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_depth must be at least 1.")
        return v

    @field_validator("cache_ttl_s", "connect_timeout_s", "operation_timeout_s", "pool_max_idle_s")
    @classmethod
    def _validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and TTLs must be positive.")
        return v

    @field_validator("pool_size")
    @classmethod
    def _validate_pool(cls, v: int) -> int:
        return max(0, v)

    @field_validator("user_search_filter", "group_filter")
    @classmethod
    def _validate_filter(cls, v: str) -> str:
        s = (v or "").strip()
        if s and not (s.startswith("(") and s.endswith(")")):
            raise ValueError(f"LDAP filter must be parenthesized: {s!r}")
        return s

    @model_validator(mode="after")
    def _validate_strategy(self) -> "DirectorySettings":
        if self.bind_strategy == "search":
            if not self.user_bases:
                raise ValueError("search-then-bind needs at least one user base DN.")
            if not self.login_attribute:
                raise ValueError("search-then-bind needs a login attribute.")
        if self.user_dn_template and "{login}" not in self.user_dn_template:
            raise ValueError("user_dn_template must contain the {login} placeholder.")
        if self.membership_schema == "member" and not self.group_bases:
            raise ValueError("member-list schema needs at least one group base DN.")
        return self

    @property
    def user_bases(self) -> list[str]:
        return split_dns(self.user_base_dns)

    @property
    def group_bases(self) -> list[str]:
        return split_dns(self.group_base_dns)

    @property
    def resolved_port(self) -> int:
        if self.port:
            return self.port
        return 636 if self.transport == "ssl" else 389

    @property
    def backend_kind(self) -> BackendKind:
        return BackendKind(self.backend)

    @property
    def strategy(self) -> BindStrategy:
        return BindStrategy(self.bind_strategy)

    @property
    def schema(self) -> MembershipSchema:
        return MembershipSchema(self.membership_schema)

    def endpoint(self) -> DirectoryEndpoint:
        return DirectoryEndpoint(
            host=self.host,
            port=self.resolved_port,
            transport=TransportMode(self.transport),
            key_material_path=self.key_material_path,
            tls_validate=self.tls_validate,
            connect_timeout_s=self.connect_timeout_s,
        )


@lru_cache(maxsize=1)
def get_settings() -> DirectorySettings:
    return DirectorySettings()
