from __future__ import annotations

import pytest

from conftest import GROUPS, PEOPLE, SERVICE_DN, SERVICE_PW, FakeClock
from ldap_membership import Authenticator, Credential, ErrorKind
from ldap_membership.errors import ConnectFailed, PartialResolution

ALICE = f"uid=alice,{PEOPLE}"
BOB = f"uid=bob,{PEOPLE}"


@pytest.fixture
def auth(directory, make_settings):
    return Authenticator(make_settings(multi_valued_fields=["email"]), backend=directory)


def test_login_returns_user_groups_and_profile(auth, directory):
    result = auth.authenticate(Credential("alice", "wonderland"))

    assert result.success
    assert result.error is None
    assert result.user.dn == ALICE
    assert result.group_dns == [f"cn=eng,{GROUPS}", f"cn=staff,{GROUPS}"]
    assert result.profile == {
        "first_name": "Alice",
        "last_name": "Liddell",
        "email": ["alice@example.com", "a.liddell@example.com"],
        "display_name": "Alice L.",
    }
    assert auth.last_error() is None
    assert directory.open_sockets == 0


def test_single_valued_profile_fields_take_first_value(directory, make_settings):
    auth = Authenticator(make_settings(), backend=directory)
    result = auth.authenticate(Credential("alice", "wonderland"))
    assert result.profile["email"] == "alice@example.com"


def test_bad_password(auth, directory):
    result = auth.authenticate(Credential("alice", "nope"))

    assert not result.success
    assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
    assert auth.last_error() is result.error
    assert "uid=alice" in result.error_message
    assert directory.open_sockets == 0


def test_empty_password_is_rejected(auth, directory):
    result = auth.authenticate(Credential("alice", ""))
    assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
    assert directory.binds == [SERVICE_DN]


def test_unknown_login(auth):
    result = auth.authenticate(Credential("mallory", "x"))
    assert result.error_kind == ErrorKind.AMBIGUOUS_IDENTITY


def test_error_slot_cleared_by_next_call(auth):
    auth.authenticate(Credential("alice", "nope"))
    assert auth.last_error() is not None
    assert auth.authenticate(Credential("alice", "wonderland")).success
    assert auth.last_error() is None


def test_service_account_failure(directory, make_settings):
    auth = Authenticator(make_settings(bind_password="wrong"), backend=directory)
    result = auth.authenticate(Credential("alice", "wonderland"))
    assert result.error_kind == ErrorKind.BIND_FAILED
    assert directory.open_sockets == 0


def test_connect_failure(directory, make_settings):
    directory.connect_error = ConnectFailed("connection refused", stage="connect")
    auth = Authenticator(make_settings(), backend=directory)
    result = auth.authenticate(Credential("alice", "wonderland"))
    assert result.error_kind == ErrorKind.CONNECT_FAILED
    assert result.error.stage == "connect"


def test_direct_bind_strategy(directory, make_settings):
    auth = Authenticator(
        make_settings(bind_strategy="direct", bind_dn="", bind_password=""), backend=directory
    )
    result = auth.authenticate(Credential("alice", "wonderland"))
    assert result.success
    assert {g.name for g in result.groups} == {"eng", "staff"}
    assert directory.binds == [ALICE]
    assert directory.open_sockets == 0


def test_groups_served_from_cache(auth, directory):
    auth.authenticate(Credential("alice", "wonderland"))
    first = len(directory.searches)

    auth.authenticate(Credential("alice", "wonderland"))
    # only the login lookup, no group traversal
    assert len(directory.searches) == first + 1


def test_cache_expires(directory, make_settings):
    clock = FakeClock()
    auth = Authenticator(make_settings(cache_ttl_s=60), backend=directory, clock=clock)
    auth.authenticate(Credential("alice", "wonderland"))

    directory.add_group("ops", BOB, ALICE)
    assert auth.resolve_groups("alice").from_cache
    clock.advance(61)
    result = auth.resolve_groups("alice")
    assert not result.from_cache
    assert {g.name for g in result.groups} == {"eng", "staff", "ops"}


def test_login_mapping_outlives_the_group_entry(directory, make_settings):
    clock = FakeClock()
    directory.on_search = lambda base, flt: clock.advance(1)
    auth = Authenticator(make_settings(cache_ttl_s=60), backend=directory, clock=clock)

    auth.resolve_groups("bob")
    directory.on_search = None
    # the group entry is still fresh, so the login must still map to it
    clock.advance(59.5)
    assert auth.cache.get(BOB) is not None

    auth.invalidate_cache("bob")
    assert auth.cache.get(BOB) is None


def test_dn_login_outside_user_bases_is_refused(auth, directory):
    result = auth.authenticate(Credential(SERVICE_DN, SERVICE_PW))

    assert not result.success
    assert result.error_kind == ErrorKind.AMBIGUOUS_IDENTITY
    assert auth.resolve_groups(SERVICE_DN).error_kind == ErrorKind.AMBIGUOUS_IDENTITY
    # only the service bindings, never a login bind as the service DN
    assert directory.binds == [SERVICE_DN, SERVICE_DN]
    assert directory.open_sockets == 0


def test_directory_changed_resets_cache(auth, directory):
    auth.authenticate(Credential("alice", "wonderland"))
    directory.add_group("ops", BOB, ALICE)

    stale = auth.authenticate(Credential("alice", "wonderland"))
    assert {g.name for g in stale.groups} == {"eng", "staff"}

    auth.directory_changed()
    fresh = auth.authenticate(Credential("alice", "wonderland"))
    assert {g.name for g in fresh.groups} == {"eng", "staff", "ops"}


def test_invalidate_by_login_group_and_all(auth):
    auth.authenticate(Credential("alice", "wonderland"))
    auth.resolve_groups("bob")
    assert len(auth.cache) == 2

    auth.invalidate_cache("alice")
    assert auth.cache.get(ALICE) is None
    assert auth.cache.get(BOB) is not None

    auth.resolve_groups("alice")
    auth.invalidate_cache(f"cn=ops,{GROUPS}")
    assert auth.cache.get(BOB) is None
    assert auth.cache.get(ALICE) is not None

    auth.invalidate_cache()
    assert len(auth.cache) == 0


def test_resolve_groups_by_login_and_dn(auth, directory):
    by_login = auth.resolve_groups("bob")
    assert by_login.success
    assert not by_login.from_cache
    assert by_login.group_dns == [f"cn=ops,{GROUPS}"]

    by_dn = auth.resolve_groups(BOB)
    assert by_dn.from_cache
    assert by_dn.groups == by_login.groups
    assert directory.open_sockets == 0


def test_resolve_groups_by_uncached_dn(auth):
    result = auth.resolve_groups(ALICE)
    assert result.success
    assert result.user.dn == ALICE
    assert {g.name for g in result.groups} == {"eng", "staff"}


def test_resolve_groups_rejects_empty_and_unknown(auth):
    assert auth.resolve_groups("").error_kind == ErrorKind.AMBIGUOUS_IDENTITY
    assert auth.resolve_groups("nobody").error_kind == ErrorKind.AMBIGUOUS_IDENTITY


def test_partial_result_is_returned_but_not_cached(auth, directory):
    directory.add_group("broken", ALICE)
    directory.failing.add(f"cn=broken,{GROUPS}")

    result = auth.authenticate(Credential("alice", "wonderland"))

    assert result.success
    assert result.partial
    assert {g.name for g in result.groups} == {"eng", "staff"}
    assert isinstance(auth.last_error(), PartialResolution)
    assert auth.cache.get(ALICE) is None

    directory.failing.clear()
    again = auth.resolve_groups("alice")
    assert not again.partial
    assert {g.name for g in again.groups} == {"eng", "staff", "broken"}


def test_deadline_fails_the_call(directory, make_settings):
    clock = FakeClock()
    directory.on_search = lambda base, flt: clock.advance(3)
    auth = Authenticator(make_settings(operation_timeout_s=5), backend=directory, clock=clock)

    result = auth.authenticate(Credential("alice", "wonderland"))

    assert not result.success
    assert result.error_kind == ErrorKind.DIRECTORY_UNAVAILABLE
    assert auth.cache.get(ALICE) is None
    assert directory.open_sockets == 0


def test_unexpected_backend_error_is_contained(auth, directory):
    def explode(base, flt):
        raise RuntimeError("driver bug")

    directory.on_search = explode
    result = auth.authenticate(Credential("alice", "wonderland"))
    assert result.error_kind == ErrorKind.DIRECTORY_UNAVAILABLE
    assert "driver bug" in result.error_message
    assert directory.open_sockets == 0


def test_not_configured(directory, make_settings):
    auth = Authenticator(make_settings(enabled=False), backend=directory)
    assert not auth.is_configured
    assert auth.authenticate(Credential("alice", "wonderland")).error_kind == ErrorKind.NOT_CONFIGURED
    assert auth.resolve_groups("alice").error_kind == ErrorKind.NOT_CONFIGURED
    assert auth.check_connection("ldap.example.com", 389, SERVICE_DN, SERVICE_PW) is False
    assert directory.sessions == []


def test_check_connection(auth, directory):
    assert auth.check_connection("ldap.example.com", 389, SERVICE_DN, SERVICE_PW)
    assert auth.last_error() is None

    assert not auth.check_connection("ldap.example.com", 389, SERVICE_DN, "wrong")
    assert auth.last_error().kind == ErrorKind.BIND_FAILED

    directory.connect_error = ConnectFailed("connection refused", stage="connect")
    assert not auth.check_connection("ldap.example.com", 10389, "", "", transport="starttls")
    assert auth.last_error().kind == ErrorKind.CONNECT_FAILED
    assert directory.sessions[-1].endpoint.port == 10389
    assert directory.open_sockets == 0


def test_pooled_service_connections(directory, make_settings):
    auth = Authenticator(make_settings(pool_size=2), backend=directory)
    for _ in range(3):
        assert auth.authenticate(Credential("bob", "builder")).success
    # one pooled service session plus one short-lived verification bind per login
    assert len(directory.sessions) == 4
    assert directory.open_sockets == 1

    auth.shutdown()
    assert directory.open_sockets == 0
