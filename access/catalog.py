"""
access/catalog.py -- The built-in request catalog and its idempotent bootstrap.

initialize_access_rules() runs on every startup inside one transaction:

  1. ensure every request in REQUESTS (insert-if-absent by method + url)
  2. ensure the default roles
  3. apply GET_RULES, then POST_RULES (names + explicit grants)
  4. copy parent grants down to children until a fixpoint
  5. grant CATCH_ALL_ROLE on every request still without a grant

Step 4 runs before step 5 so that admin sub-requests inherit Administrator
from their section instead of being opened to Member by the catch-all.
A second run inserts nothing.

Redirect targets are written as stored: a bare name ("index") is relative to
the site root, "/" is the root itself.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from access.models import GET, POST, AccessRule, RequestRule
from access.store import RequestStore
from auth.roles import ADMINISTRATOR, ALL, DEFAULT_ROLES, MEMBER, RoleStore
from core.audit import audit

logger = logging.getLogger("membership.access")

HOME = "Home"
USERS = "Users"

CATCH_ALL_ROLE = MEMBER

REQUESTS: list[RequestRule] = [
    # pages
    RequestRule(GET, "index", HOME, template="home/index.html", action="Index", index_level=1, order_number=1),
    RequestRule(GET, "users", USERS, template="home/users.html", action="List", index_level=1, order_number=2),
    RequestRule(GET, "about", HOME, template="home/about.html", index_level=1, order_number=3),
    RequestRule(GET, "login", HOME, template="home/login.html", index_level=1, order_number=4),
    RequestRule(GET, "register", HOME, template="home/register.html", index_level=1, order_number=5),
    RequestRule(GET, "change-password", HOME, template="home/change-password.html", index_level=1, order_number=6),
    RequestRule(GET, "profile", HOME, template="home/profile.html", action="Profile", index_level=1, order_number=7),
    # gets
    RequestRule(GET, "logout", HOME, action="Logout", redirect_url="/"),
    # posts
    RequestRule(POST, "login", HOME, action="Login", redirect_url="index", redirect_on_error="login"),
    RequestRule(POST, "logout", HOME, action="Logout", redirect_url="login", redirect_on_error="login"),
    RequestRule(POST, "register", HOME, action="Register", redirect_url="login", redirect_on_error="register"),
    RequestRule(POST, "profile", HOME, action="SaveProfile", redirect_url="profile", redirect_on_error="profile"),
    RequestRule(
        POST,
        "change-password",
        HOME,
        action="ChangePassword",
        redirect_url="change-password",
        redirect_on_error="change-password",
    ),
    # user administration, children of the users page
    RequestRule(
        POST, "users/unlock", USERS, action="Unlock", redirect_url="users", redirect_on_error="users",
        index_level=2, parent=(GET, "users"),
    ),
    RequestRule(POST, "users/reset-password", USERS, action="ResetPassword", index_level=2, parent=(GET, "users")),
    RequestRule(
        POST, "users/activate", USERS, action="Activate", redirect_url="users", redirect_on_error="users",
        index_level=2, parent=(GET, "users"),
    ),
    RequestRule(
        POST, "users/grant-role", USERS, action="GrantRole", redirect_url="users", redirect_on_error="users",
        index_level=2, parent=(GET, "users"),
    ),
    RequestRule(
        POST, "users/revoke-role", USERS, action="RevokeRole", redirect_url="users", redirect_on_error="users",
        index_level=2, parent=(GET, "users"),
    ),
]

GET_RULES: list[AccessRule] = [
    AccessRule("index", {"EN": "Index"}, (MEMBER,)),
    AccessRule("users", {"EN": "Users"}, (ADMINISTRATOR,)),
    AccessRule("about", {"EN": "About"}, (MEMBER,)),
    AccessRule("login", {"EN": "Login"}, (ALL,)),
    AccessRule("register", {"EN": "Register"}, (ALL,)),
    AccessRule("change-password", {"EN": "Change Password"}, (MEMBER,)),
    AccessRule("profile", {"EN": "Profile"}, ()),
    AccessRule("logout", {"EN": "Logout"}, ()),
]

POST_RULES: list[AccessRule] = [
    AccessRule("login", {"EN": "Login"}, (ALL,)),
    AccessRule("logout", {"EN": "Logout"}, (ALL,)),
    AccessRule("register", {"EN": "Register"}, (ALL,)),
    AccessRule("change-password", {"EN": "Change Password"}, ()),
    AccessRule("profile", {"EN": "Profile"}, ()),
    AccessRule("users/unlock", {"EN": "Unlock User"}, ()),
    AccessRule("users/reset-password", {"EN": "Reset Password"}, ()),
    AccessRule("users/activate", {"EN": "Activate User"}, ()),
    AccessRule("users/grant-role", {"EN": "Grant Role"}, ()),
    AccessRule("users/revoke-role", {"EN": "Revoke Role"}, ()),
]


def _apply_rules(
    method: str,
    rules: list[AccessRule],
    request_store: RequestStore,
    role_store: RoleStore,
    conn,
) -> int:
    added = 0
    for rule in rules:
        request = request_store.get(method, rule.url, conn)
        if request is None:
            logger.warning("Access rule for unknown request %s %s skipped", method, rule.url)
            continue
        for language, name in rule.names.items():
            added += request_store.ensure_name(request.id, language, name, conn)
        for role_name in rule.roles:
            role = role_store.require(role_name, conn)
            added += request_store.ensure_grant(request.id, role.id, conn)
    return added


def initialize_access_rules(
    engine: Engine,
    request_store: RequestStore | None = None,
    role_store: RoleStore | None = None,
) -> bool:
    """Seed requests, roles, names and grants. Returns True if anything was written."""
    request_store = request_store or RequestStore(engine)
    role_store = role_store or RoleStore(engine)

    with engine.begin() as conn:
        new_requests = sum(request_store.ensure_request(r, conn)[1] for r in REQUESTS)
        if new_requests:
            logger.info("Added %d request(s)", new_requests)

        new_roles = 0
        for name in DEFAULT_ROLES:
            if role_store.get_by_name(name, conn) is None:
                role_store.ensure_role(name, conn)
                new_roles += 1

        new_get = _apply_rules(GET, GET_RULES, request_store, role_store, conn)
        if new_get:
            logger.info("Added %d GET name(s)/grant(s)", new_get)
        new_post = _apply_rules(POST, POST_RULES, request_store, role_store, conn)
        if new_post:
            logger.info("Added %d POST name(s)/grant(s)", new_post)

        inherited = request_store.propagate_parent_grants(conn)
        if inherited:
            logger.info("Propagated %d grant(s) from parent requests", inherited)

        catch_all = request_store.grant_catch_all(role_store.require(CATCH_ALL_ROLE, conn).id, conn)
        if catch_all:
            logger.info("Granted %s on %d request(s) without explicit roles", CATCH_ALL_ROLE, catch_all)

    changed = bool(new_requests or new_roles or new_get or new_post or inherited or catch_all)
    if changed:
        audit(
            "init-access-rules",
            "Access rules updated.",
            requests=new_requests,
            roles=new_roles,
            inherited=inherited,
            catch_all=catch_all,
        )
    return changed
