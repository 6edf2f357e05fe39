"""Failure kinds reported by the directory core.

Components raise these; :class:`~ldap_membership.services.auth.Authenticator`
turns them into result values at the API boundary.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONNECT_FAILED = "connect_failed"
    TLS_FAILED = "tls_failed"
    BIND_FAILED = "bind_failed"
    INVALID_CREDENTIALS = "invalid_credentials"
    AMBIGUOUS_IDENTITY = "ambiguous_identity"
    DIRECTORY_UNAVAILABLE = "directory_unavailable"
    PARTIAL_RESOLUTION = "partial_resolution"
    CONNECTION_CLOSED = "connection_closed"
    NOT_CONFIGURED = "not_configured"


class DirectoryError(Exception):
    """Base class for every failure the core reports."""

    kind: ErrorKind = ErrorKind.DIRECTORY_UNAVAILABLE

    def __init__(self, message: str = "", *, stage: str | None = None) -> None:
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"{self.message} (stage: {self.stage})"
        return self.message


class ConnectFailed(DirectoryError):
    kind = ErrorKind.CONNECT_FAILED


class TlsFailed(DirectoryError):
    kind = ErrorKind.TLS_FAILED


class BindFailed(DirectoryError):
    kind = ErrorKind.BIND_FAILED


class InvalidCredentials(DirectoryError):
    kind = ErrorKind.INVALID_CREDENTIALS


class AmbiguousIdentity(DirectoryError):
    """Search-then-bind matched zero or several entries."""

    kind = ErrorKind.AMBIGUOUS_IDENTITY

    def __init__(self, message: str = "", *, matches: int = 0, stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.matches = matches


class DirectoryUnavailable(DirectoryError):
    kind = ErrorKind.DIRECTORY_UNAVAILABLE


class PartialResolution(DirectoryError):
    """Some group nodes could not be fetched; the rest of the result is valid."""

    kind = ErrorKind.PARTIAL_RESOLUTION

    def __init__(self, failed_dns: list[str], causes: list[DirectoryError] | None = None) -> None:
        failed = ", ".join(failed_dns)
        super().__init__(f"group resolution incomplete, unreachable: {failed}", stage="search")
        self.failed_dns = list(failed_dns)
        self.causes = list(causes or [])


class ConnectionClosed(DirectoryError):
    kind = ErrorKind.CONNECTION_CLOSED


class NotConfigured(DirectoryError):
    kind = ErrorKind.NOT_CONFIGURED


__all__ = [
    "ErrorKind",
    "DirectoryError",
    "ConnectFailed",
    "TlsFailed",
    "BindFailed",
    "InvalidCredentials",
    "AmbiguousIdentity",
    "DirectoryUnavailable",
    "PartialResolution",
    "ConnectionClosed",
    "NotConfigured",
]
