"""
tests/test_web.py -- Integration tests for the catch-all dispatcher.

Covers:
  - anonymous gates: GET redirects to /login, POST flashes and redirects to /
  - logged-in callers are bounced off /login
  - resolver denials are a plain 404, identical for missing and forbidden
  - register -> login -> pages -> logout through real HTTP
  - failed login shows only the generic message
  - admin actions: listing, reset-password JSON, role grants
  - temporary password forces /change-password until changed
  - static scripts are served to anyone
  - profile saves refresh the display name; e-mails stay unique

One TestClient per module; identities are switched by clearing cookies.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.errors import LOGIN_FAILED_MESSAGE
from core.database import make_engine
from tests.conftest import OTHER_PASSWORD, STRONG_PASSWORD, _patch_lifespan, make_settings, memory_url


@pytest.fixture(scope="module")
def web_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over a fresh database.

    TestClient's peer address is "testclient"; listing it in admin_ips lets
    the "admin" registration bootstrap the Administrator role.
    follow_redirects=False so tests can assert on redirect locations.
    """
    engine = make_engine(memory_url("web"))
    settings = make_settings(admin_ips=["testclient"], auto_activate=True)
    app.router.lifespan_context = _patch_lifespan(engine, settings)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        _register(client, "admin")
        _register(client, "bob")
        yield client

    engine.dispose()


def _register(client: TestClient, username: str, password: str = STRONG_PASSWORD):
    client.cookies.clear()
    return client.post(
        "/register",
        data={
            "username": username,
            "password": password,
            "confirm_password": password,
            "email": f"{username}@example.com",
            "name": username.title(),
        },
    )


def _login(client: TestClient, username: str, password: str = STRONG_PASSWORD):
    client.cookies.clear()
    return client.post("/login", data={"username": username, "password": password})


class TestAnonymousGates:
    def test_root_redirects_to_login(self, web_client):
        web_client.cookies.clear()
        resp = web_client.get("/")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"

    def test_unknown_page_also_redirects(self, web_client):
        web_client.cookies.clear()
        assert web_client.get("/no-such-page").headers["location"] == "/login"

    def test_login_page_renders(self, web_client):
        web_client.cookies.clear()
        resp = web_client.get("/login")
        assert resp.status_code == 200
        assert 'action="/login"' in resp.text
        assert resp.headers["cache-control"] == "private, no-store"

    def test_post_elsewhere_flashes_request_failed(self, web_client):
        web_client.cookies.clear()
        resp = web_client.post("/change-password", data={})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/"
        assert "Request failed." in web_client.get("/login").text

    def test_static_script_served_without_session(self, web_client):
        web_client.cookies.clear()
        resp = web_client.get("/js/date-utils.js")
        assert resp.status_code == 200
        assert "javascript" in resp.headers["content-type"]

    def test_missing_script_is_404(self, web_client):
        assert web_client.get("/js/missing.js").status_code == 404


class TestRegistrationAndLogin:
    def test_register_redirects_to_login(self, web_client):
        resp = _register(web_client, "carol")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"
        assert "User registered" in web_client.get("/login").text

    def test_duplicate_register_redirects_back_with_error(self, web_client):
        resp = _register(web_client, "Bob")
        assert resp.headers["location"] == "/register"
        assert "duplicate user &#34;Bob&#34;" in web_client.get("/register").text

    def test_policy_error_shown(self, web_client):
        resp = _register(web_client, "dave", password="short")
        assert resp.headers["location"] == "/register"
        assert "Password must have at least 8 characters" in web_client.get("/register").text

    def test_login_sets_cookie_and_lands_on_index(self, web_client):
        resp = _login(web_client, "bob")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/index"
        assert "access_token" in resp.cookies

        page = web_client.get("/")
        assert page.status_code == 200
        assert "Welcome, Bob." in page.text
        assert "Member" in page.text

    def test_failed_login_shows_generic_message(self, web_client):
        resp = _login(web_client, "bob", "Wr0ng!Pass")
        assert resp.headers["location"] == "/login"
        page = web_client.get("/login")
        assert LOGIN_FAILED_MESSAGE in page.text
        assert "wrong password" not in page.text.replace(LOGIN_FAILED_MESSAGE, "")

    def test_unknown_user_gets_same_message(self, web_client):
        _login(web_client, "nobody", "Wr0ng!Pass")
        assert LOGIN_FAILED_MESSAGE in web_client.get("/login").text

    def test_logged_in_user_bounced_from_login(self, web_client):
        _login(web_client, "bob")
        assert web_client.get("/login").headers["location"] == "/"
        resp = web_client.post("/login", data={"username": "bob", "password": STRONG_PASSWORD})
        assert resp.headers["location"] == "/"

    def test_logout_clears_session(self, web_client):
        _login(web_client, "bob")
        resp = web_client.post("/logout")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"
        assert web_client.get("/").headers["location"] == "/login"

    def test_get_logout(self, web_client):
        _login(web_client, "bob")
        resp = web_client.get("/logout")
        assert resp.headers["location"] == "/"
        assert web_client.get("/about").headers["location"] == "/login"


class TestAuthorization:
    def test_member_gets_404_on_admin_page(self, web_client):
        _login(web_client, "bob")
        resp = web_client.get("/users")
        assert resp.status_code == 404
        assert resp.text == "/users - Not found"

    def test_missing_page_is_the_same_404(self, web_client):
        _login(web_client, "bob")
        resp = web_client.get("/no-such-page")
        assert resp.status_code == 404
        assert resp.text == "/no-such-page - Not found"

    def test_html_suffix_and_case_resolve(self, web_client):
        _login(web_client, "bob")
        assert web_client.get("/About.html").status_code == 200

    def test_admin_lists_users(self, web_client):
        _login(web_client, "admin")
        resp = web_client.get("/users?lpage=1&lrowsonpage=2")
        assert resp.status_code == 200
        assert "page 1 of" in resp.text

    def test_member_cannot_post_admin_actions(self, web_client):
        _login(web_client, "bob")
        assert web_client.post("/users/reset-password", data={"username": "admin"}).status_code == 404

    def test_admin_grants_and_revokes_role(self, web_client):
        _login(web_client, "admin")
        resp = web_client.post("/users/grant-role", data={"username": "carol", "role": "Administrator"})
        assert resp.headers["location"] == "/users"

        _login(web_client, "carol")
        assert web_client.get("/users").status_code == 200

        _login(web_client, "admin")
        web_client.post("/users/revoke-role", data={"username": "carol", "role": "Administrator"})
        _login(web_client, "carol")
        assert web_client.get("/users").status_code == 404


class TestTemporaryPassword:
    def test_reset_login_and_forced_change(self, web_client):
        _login(web_client, "admin")
        resp = web_client.post("/users/reset-password", data={"username": "bob"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["error"] is False
        temporary = body["temporary_password"]

        resp = _login(web_client, "bob", temporary)
        assert resp.headers["location"] == "/index"
        assert web_client.get("/index").headers["location"] == "/change-password"
        assert web_client.get("/about").headers["location"] == "/change-password"
        assert web_client.get("/change-password").status_code == 200

        resp = web_client.post(
            "/change-password",
            data={"password": temporary, "new_password": OTHER_PASSWORD, "confirm_password": OTHER_PASSWORD},
        )
        assert resp.headers["location"] == "/change-password"
        assert "User password changed" in web_client.get("/change-password").text
        assert web_client.get("/about").status_code == 200

    def test_reset_unknown_user_is_json_error(self, web_client):
        _login(web_client, "admin")
        body = web_client.post("/users/reset-password", data={"username": "ghost"}).json()
        assert body["error"] is True
        assert body["message"] == 'unknown user "ghost"'

    def test_json_result_also_sets_flash(self, web_client):
        _login(web_client, "admin")
        web_client.post("/users/reset-password", data={"username": "ghost"})
        assert "unknown user &#34;ghost&#34;" in web_client.get("/users").text


class TestOperationalEndpoints:
    def test_health(self, web_client):
        web_client.cookies.clear()
        resp = web_client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["components"] == {"app": "ok", "database": "ok"}

    def test_stop_process_refused_for_remote_peer(self, web_client):
        resp = web_client.post("/stop-process")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "http_404"


class TestProfile:
    def test_profile_page_shows_own_data(self, web_client):
        _register(web_client, "erin")
        _login(web_client, "erin")
        resp = web_client.get("/profile")
        assert resp.status_code == 200
        assert 'value="erin@example.com"' in resp.text

    def test_save_refreshes_display_name(self, web_client):
        _register(web_client, "frank")
        _login(web_client, "frank")
        resp = web_client.post(
            "/profile", data={"name": "Franklin", "surname": "Moore", "email": "frank.moore@example.com"}
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "/profile"
        page = web_client.get("/profile")
        assert "User profile saved" in page.text
        assert "Log out Franklin Moore" in page.text
        assert 'value="frank.moore@example.com"' in page.text

    def test_email_of_another_user_rejected(self, web_client):
        _register(web_client, "gina")
        _login(web_client, "gina")
        resp = web_client.post("/profile", data={"name": "Gina", "email": "ADMIN@example.com"})
        assert resp.headers["location"] == "/profile"
        page = web_client.get("/profile")
        assert "e-mail &#34;ADMIN@example.com&#34; is already registered" in page.text
        assert 'value="gina@example.com"' in page.text

    def test_register_with_taken_email_rejected(self, web_client):
        web_client.cookies.clear()
        resp = web_client.post(
            "/register",
            data={
                "username": "henry",
                "password": STRONG_PASSWORD,
                "confirm_password": STRONG_PASSWORD,
                "email": "Bob@Example.com",
            },
        )
        assert resp.headers["location"] == "/register"
        assert "is already registered" in web_client.get("/register").text
        assert _login(web_client, "henry").headers["location"] == "/login"
