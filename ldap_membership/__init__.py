"""Directory authentication with nested group resolution.

Hosts build one :class:`Authenticator` at startup from
:class:`DirectorySettings` and call ``authenticate`` / ``resolve_groups``;
``directory_changed`` is the hook for out-of-band directory edits.
"""

__version__ = "1.0.0"

from .directory import Credential, DirectoryEndpoint, GroupEntry, TransportMode, UserEntry
from .errors import DirectoryError, ErrorKind
from .services import Authenticator, AuthResult, GroupsResult, MembershipCache
from .settings import DirectorySettings, get_settings

__all__ = [
    "Authenticator",
    "AuthResult",
    "GroupsResult",
    "MembershipCache",
    "Credential",
    "DirectoryEndpoint",
    "GroupEntry",
    "TransportMode",
    "UserEntry",
    "DirectoryError",
    "ErrorKind",
    "DirectorySettings",
    "get_settings",
]
