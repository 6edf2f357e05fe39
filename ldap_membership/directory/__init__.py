"""Directory access layer.

Public API:
    - DirectoryEndpoint, Credential, UserEntry, GroupEntry and the enums
    - DirectoryBackend, build_backend
    - Connection, ConnectionManager, ConnectionPool
"""

from .models import (
    BackendKind,
    BindStrategy,
    Credential,
    DirectoryEndpoint,
    GroupEntry,
    MembershipSchema,
    SearchEntry,
    SearchScope,
    TransportMode,
    UserEntry,
)
from .backend import DirectoryBackend, DirectorySession, build_backend
from .manager import Connection, ConnectionManager
from .pool import ConnectionPool

__all__ = [
    "BackendKind",
    "BindStrategy",
    "Credential",
    "DirectoryEndpoint",
    "GroupEntry",
    "MembershipSchema",
    "SearchEntry",
    "SearchScope",
    "TransportMode",
    "UserEntry",
    "DirectoryBackend",
    "DirectorySession",
    "build_backend",
    "Connection",
    "ConnectionManager",
    "ConnectionPool",
]
