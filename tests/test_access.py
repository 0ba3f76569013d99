"""
tests/test_access.py -- Access rule table, request resolver and handler registry.

Covers:
  - bootstrap is idempotent: a second run writes nothing
  - admin sub-requests inherit Administrator from their parent, not Member
  - requests without explicit grants fall to the Member catch-all
  - URL normalization
  - resolution: anonymous vs member vs administrator, unknown == forbidden
  - localized titles fall back to the base language
  - the handler registry agrees with the request table in both directions
"""

from __future__ import annotations

import pytest

from access.catalog import REQUESTS, initialize_access_rules
from access.models import GET, POST, RequestRule
from access.resolver import base_path, normalize_url
from auth.errors import AccessDenied
from auth.roles import ADMINISTRATOR, ALL, MEMBER
from auth.service import Registration
from tests.conftest import STRONG_PASSWORD
from web.controllers import registry
from web.handlers import HandlerRegistry, RegistryMismatch


def _grants(m, method, url):
    return set(m.requests.grants_of(m.requests.get(method, url).id))


class TestCatalog:
    def test_every_request_seeded(self, membership):
        seeded = {r.key for r in membership.requests.list_requests()}
        assert {r.key for r in REQUESTS} <= seeded

    def test_second_run_is_a_noop(self, membership):
        grants_before = membership.requests.count_grants()
        assert initialize_access_rules(membership.engine, membership.requests, membership.roles) is False
        assert membership.requests.count_grants() == grants_before
        assert len(membership.requests.list_requests()) == len(REQUESTS)

    def test_explicit_grants(self, membership):
        assert _grants(membership, GET, "users") == {ADMINISTRATOR}
        assert _grants(membership, GET, "login") == {ALL}
        assert _grants(membership, POST, "register") == {ALL}

    def test_children_inherit_parent_grants(self, membership):
        for url in ("users/unlock", "users/reset-password", "users/activate", "users/grant-role", "users/revoke-role"):
            assert _grants(membership, POST, url) == {ADMINISTRATOR}

    def test_catch_all_covers_ungranted_requests(self, membership):
        assert _grants(membership, GET, "logout") == {MEMBER}
        assert _grants(membership, POST, "change-password") == {MEMBER}
        assert _grants(membership, GET, "profile") == {MEMBER}
        assert _grants(membership, POST, "profile") == {MEMBER}

    def test_every_request_has_a_grant(self, membership):
        for rule in membership.requests.list_requests():
            assert membership.requests.grants_of(rule.id), rule.key

    def test_parent_resolved_to_id(self, membership):
        parent = membership.requests.get(GET, "users")
        assert membership.requests.get(POST, "users/unlock").parent_id == parent.id

    def test_sentinel_round_trip(self, membership):
        about = membership.requests.get(GET, "about")
        assert about.action is None
        assert about.redirect_url is None
        assert about.template == "home/about.html"


class TestUrlNormalization:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/", "index"),
            ("", "index"),
            ("/About.html", "about"),
            ("/login/", "login"),
            ("/users/unlock?x=1", "users/unlock"),
            ("/change-password#top", "change-password"),
            ("/register//", "register"),
        ],
    )
    def test_normalize(self, path, expected):
        assert normalize_url(path) == expected

    def test_base_path_keeps_root(self):
        assert base_path("/") == "/"
        assert base_path("/LOGIN/") == "/login"


class TestResolver:
    @pytest.fixture
    def users(self, membership):
        membership.service.register(
            Registration("bob", STRONG_PASSWORD, STRONG_PASSWORD, "bob@example.com"), "10.0.0.5"
        )
        membership.service.register(
            Registration("admin", STRONG_PASSWORD, STRONG_PASSWORD, "admin@example.com"), "127.0.0.1"
        )
        return membership

    def test_anonymous_reaches_only_all_requests(self, users):
        assert users.resolver.resolve(None, "GET", "/login").rule.template == "home/login.html"
        assert users.resolver.resolve(None, "POST", "/register").rule.action == "Register"
        with pytest.raises(AccessDenied):
            users.resolver.resolve(None, "GET", "/")

    def test_member_reaches_member_pages(self, users):
        resolved = users.resolver.resolve("bob", "GET", "/")
        assert resolved.rule.url == "index"
        assert resolved.title == "Index"
        assert users.resolver.resolve("bob", "GET", "/about.html").rule.url == "about"

    def test_member_cannot_reach_admin_pages(self, users):
        with pytest.raises(AccessDenied):
            users.resolver.resolve("bob", "GET", "/users")
        with pytest.raises(AccessDenied):
            users.resolver.resolve("bob", "POST", "/users/unlock")

    def test_administrator_reaches_admin_pages(self, users):
        assert users.resolver.resolve("admin", "GET", "/users").rule.action == "List"
        assert users.resolver.resolve("admin", "POST", "/users/unlock").rule.action == "Unlock"

    def test_unknown_and_forbidden_look_the_same(self, users):
        with pytest.raises(AccessDenied) as missing:
            users.resolver.resolve("bob", "GET", "/no-such-page")
        with pytest.raises(AccessDenied) as forbidden:
            users.resolver.resolve("bob", "GET", "/users")
        assert type(missing.value) is type(forbidden.value)
        assert "not found or access denied" in str(missing.value)
        assert "not found or access denied" in str(forbidden.value)

    def test_wrong_method_is_denied(self, users):
        with pytest.raises(AccessDenied):
            users.resolver.resolve("bob", "POST", "/about")

    def test_revoked_role_loses_access(self, users):
        users.service.revoke_role("admin", ADMINISTRATOR)
        with pytest.raises(AccessDenied):
            users.resolver.resolve("admin", "GET", "/users")

    def test_title_falls_back_to_base_language(self, users):
        assert users.resolver.resolve("bob", "GET", "/about", language="RO").title == "About"

    def test_any_method_rule_matches_both(self, users):
        rule = RequestRule("All", "ping", "Home", action="Ping")
        request_id, created = users.requests.ensure_request(rule)
        assert created
        users.requests.ensure_grant(request_id, users.roles.require(MEMBER).id)
        assert users.resolver.resolve("bob", "GET", "/ping").rule.url == "ping"
        assert users.resolver.resolve("bob", "POST", "/ping").rule.url == "ping"


class TestHandlerRegistry:
    def test_registry_matches_seeded_table(self, membership):
        registry.validate_against(membership.requests.list_requests())

    def test_missing_handler_detected(self):
        rules = [RequestRule(POST, "login", "Home", action="Login")]
        with pytest.raises(RegistryMismatch, match="no handler for POST login"):
            HandlerRegistry().validate_against(rules)

    def test_orphan_handler_detected(self):
        local = HandlerRegistry()

        @local.register(GET, "orphan")
        def orphan(ctx):
            return None

        with pytest.raises(RegistryMismatch, match="handler GET orphan"):
            local.validate_against([RequestRule(GET, "orphan", "Home", template="home/about.html")])

    def test_double_registration_rejected(self):
        local = HandlerRegistry()
        local.register(GET, "x")(lambda ctx: None)
        with pytest.raises(RegistryMismatch):
            local.register("get", "x")(lambda ctx: None)
