"""Service layer: credential checks, group resolution, caching, mapping.

Stable import surface for hosts:
    from ldap_membership.services import Authenticator, ...
"""

from .auth import Authenticator, AuthResult, GroupsResult
from .cache import MembershipCache
from .credentials import CredentialValidator
from .groups import GroupResolver, Resolution
from .mapping import AttributeMapper
from .reporter import ErrorReporter

__all__ = [
    "Authenticator",
    "AuthResult",
    "GroupsResult",
    "MembershipCache",
    "CredentialValidator",
    "GroupResolver",
    "Resolution",
    "AttributeMapper",
    "ErrorReporter",
]
