"""
web/controllers.py -- Action handlers bound to the request table.

Every function here is registered on `registry` under the (method, url) of
the request row whose action it implements. Handlers read the parsed form
(query parameters for GET), call the MembershipService on app.state and
return an ActionResult; they never build responses.

User-facing text:
  PasswordValidationError and other operational errors -> str(exc)
  AuthenticationFailure / StoreFailure on login        -> LOGIN_FAILED_MESSAGE
"""

from __future__ import annotations

from auth.errors import LOGIN_FAILED_MESSAGE, AuthenticationFailure, MembershipError, StoreFailure
from auth.models import User
from auth.service import MembershipService, Registration
from auth.session import new_session
from core.audit import audit
from web.handlers import ActionResult, HandlerContext, HandlerRegistry

registry = HandlerRegistry()

DEFAULT_ROWS_ON_PAGE = 20


def _service(ctx: HandlerContext) -> MembershipService:
    return ctx.state.membership


def _int_param(ctx: HandlerContext, name: str, default: int) -> int:
    try:
        return int(ctx.form.get(name, default))
    except (TypeError, ValueError):
        return default


def _user_json(user: User) -> dict:
    return {
        "user_id": user.id,
        "username": user.username,
        "name": user.name,
        "surname": user.surname,
        "email": user.email,
        "password_expires": user.password_expires,
        "creation_time": user.creation_time,
        "last_update": user.last_update,
        "activated": user.activated,
        "locked_out": user.locked_out,
        "valid": user.valid,
        "last_connect_time": user.last_connect_time,
    }


def _failed(ctx: HandlerContext, exc: MembershipError) -> ActionResult:
    return ActionResult.for_rule(ctx.rule, error=True, message=str(exc))


# ---------------------------------------------------------------------------
# Home
# ---------------------------------------------------------------------------


@registry.register("GET", "index")
def index(ctx: HandlerContext) -> ActionResult:
    try:
        roles = [r.name for r in _service(ctx).roles_of(ctx.session.username)]
    except MembershipError as exc:
        return _failed(ctx, exc)
    return ActionResult.for_rule(ctx.rule, payload={"roles": roles})


@registry.register("POST", "login")
def login(ctx: HandlerContext) -> ActionResult:
    username = ctx.form.get("username", "")
    password = ctx.form.get("password", "")
    try:
        outcome = _service(ctx).login(username, password, ctx.client_ip)
    except (AuthenticationFailure, StoreFailure):
        return ActionResult.for_rule(ctx.rule, error=True, message=LOGIN_FAILED_MESSAGE)

    session = new_session(outcome.user, ctx.session.language, outcome.temporary_password)
    return ActionResult.for_rule(
        ctx.rule,
        new_session=session,
        payload={"temporary_password": outcome.temporary_password},
    )


@registry.register("GET", "logout")
def logout_get(ctx: HandlerContext) -> ActionResult:
    return _logout(ctx)


@registry.register("POST", "logout")
def logout_post(ctx: HandlerContext) -> ActionResult:
    return _logout(ctx)


def _logout(ctx: HandlerContext) -> ActionResult:
    audit("logout", "User logged out.", user=ctx.session.username)
    return ActionResult.for_rule(ctx.rule, clear_session=True)


@registry.register("POST", "register")
def register(ctx: HandlerContext) -> ActionResult:
    form = Registration(
        username=ctx.form.get("username", "").strip(),
        password=ctx.form.get("password", ""),
        confirm_password=ctx.form.get("confirm_password", ""),
        email=ctx.form.get("email", "").strip(),
        name=ctx.form.get("name", "").strip(),
        surname=ctx.form.get("surname", "").strip(),
    )
    try:
        _service(ctx).register(form, ctx.peer_ip)
    except MembershipError as exc:
        return _failed(ctx, exc)
    return ActionResult.for_rule(ctx.rule, message="User registered")


@registry.register("POST", "change-password")
def change_password(ctx: HandlerContext) -> ActionResult:
    if not ctx.session.logged_in:
        return ActionResult.for_rule(ctx.rule, error=True, message="User not logged in.")
    try:
        _service(ctx).change_password(
            ctx.session.username,
            ctx.form.get("password", ""),
            ctx.form.get("new_password", ""),
            ctx.form.get("confirm_password", ""),
            ctx.client_ip,
        )
    except MembershipError as exc:
        return _failed(ctx, exc)

    refreshed = None
    if ctx.session.temporary_password:
        refreshed = ctx.session.model_copy(update={"temporary_password": False})
    return ActionResult.for_rule(ctx.rule, message="User password changed", new_session=refreshed)


@registry.register("GET", "profile")
def profile(ctx: HandlerContext) -> ActionResult:
    try:
        user = _service(ctx).get_profile(ctx.session.username)
    except MembershipError as exc:
        return _failed(ctx, exc)
    return ActionResult.for_rule(ctx.rule, payload={"user": _user_json(user)})


@registry.register("POST", "profile")
def save_profile(ctx: HandlerContext) -> ActionResult:
    try:
        user = _service(ctx).save_profile(
            ctx.session.username,
            ctx.form.get("name", "").strip(),
            ctx.form.get("surname", "").strip(),
            ctx.form.get("email", "").strip(),
        )
    except MembershipError as exc:
        return _failed(ctx, exc)

    refreshed = ctx.session.model_copy(update={"name": user.name, "surname": user.surname})
    return ActionResult.for_rule(ctx.rule, message="User profile saved", new_session=refreshed)


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


@registry.register("GET", "users")
def list_users(ctx: HandlerContext) -> ActionResult:
    page = _int_param(ctx, "lpage", 1)
    rows_on_page = max(0, _int_param(ctx, "lrowsonpage", DEFAULT_ROWS_ON_PAGE))
    service = _service(ctx)
    listing = service.list_users(page, rows_on_page)
    return ActionResult.for_rule(
        ctx.rule,
        payload={
            "users": [_user_json(u) for u in listing.users],
            "page": listing.page,
            "page_count": listing.page_count,
            "rows_on_page": listing.rows_on_page,
            "total": listing.total,
            "roles": [r.name for r in service.roles.list_roles()],
        },
    )


@registry.register("POST", "users/unlock")
def unlock_user(ctx: HandlerContext) -> ActionResult:
    try:
        user = _service(ctx).unlock_user(ctx.form.get("username", ""))
    except MembershipError as exc:
        return _failed(ctx, exc)
    return ActionResult.for_rule(ctx.rule, message=f'User "{user.username}" unlocked.')


@registry.register("POST", "users/reset-password")
def reset_password(ctx: HandlerContext) -> ActionResult:
    username = ctx.form.get("username", "")
    try:
        temporary = _service(ctx).reset_password(username)
    except MembershipError as exc:
        return _failed(ctx, exc)
    return ActionResult.for_rule(
        ctx.rule,
        message="Temporary password issued.",
        payload={"username": username, "temporary_password": temporary},
    )


@registry.register("POST", "users/activate")
def activate_user(ctx: HandlerContext) -> ActionResult:
    try:
        user = _service(ctx).activate_user(ctx.form.get("username", ""))
    except MembershipError as exc:
        return _failed(ctx, exc)
    return ActionResult.for_rule(ctx.rule, message=f'User "{user.username}" activated.')


@registry.register("POST", "users/grant-role")
def grant_role(ctx: HandlerContext) -> ActionResult:
    username, role = ctx.form.get("username", ""), ctx.form.get("role", "")
    try:
        changed = _service(ctx).grant_role(username, role)
    except MembershipError as exc:
        return _failed(ctx, exc)
    message = f'Role "{role}" granted to "{username}".' if changed else f'"{username}" already has role "{role}".'
    return ActionResult.for_rule(ctx.rule, message=message)


@registry.register("POST", "users/revoke-role")
def revoke_role(ctx: HandlerContext) -> ActionResult:
    username, role = ctx.form.get("username", ""), ctx.form.get("role", "")
    try:
        changed = _service(ctx).revoke_role(username, role)
    except MembershipError as exc:
        return _failed(ctx, exc)
    message = f'Role "{role}" revoked from "{username}".' if changed else f'"{username}" does not have role "{role}".'
    return ActionResult.for_rule(ctx.rule, message=message)
