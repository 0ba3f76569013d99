"""
web/routes.py -- Catch-all request dispatcher for the membership site.

There is one route. Every GET and POST goes through dispatch(), which applies
the session gates, asks the RequestResolver whether the caller may make this
request, runs the bound handler (see web/controllers.py) and turns its
ActionResult into a response:

  rule has a template  -> rendered page; flash message and model in context
  rule has a redirect  -> 303 to the redirect, flash message set
  neither              -> JSON body {error, message, ...payload}, flash message set

Gates, checked in order before resolution:
  1. GET *.js                                    -> static script file, any caller
  2. anonymous GET outside /login and /register  -> 303 /login
     anonymous POST outside /login and /register -> "Request failed." 303 /
  3. logged-in caller on /login                  -> 303 / (POST also flashes)
  4. GET with a temporary password outside /change-password and /logout
                                                 -> 303 /change-password

A request the resolver rejects is answered with a plain 404 whether the URL
exists or not, so callers cannot tell forbidden pages from missing ones.

The route is async only to read the form body; the rest runs in the
threadpool because the stores use blocking SQLAlchemy connections.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from access.resolver import base_path
from api.limiter import limiter
from auth.dependencies import get_client_ip, get_peer_ip, get_session
from auth.errors import AccessDenied
from auth.session import SessionData, clear_auth_cookie, set_auth_cookie
from core.config import get_settings
from web.controllers import registry
from web.handlers import ActionResult, HandlerContext, pop_flash, set_flash

logger = logging.getLogger("membership.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

STATIC_DIR = Path(__file__).parent / "static"

REQUEST_FAILED_MESSAGE = "Request failed."
_ANONYMOUS_URLS = ("/login", "/register")
_TEMPORARY_PASSWORD_URLS = ("/change-password", "/logout")


def _post_rate_limit() -> str:
    return get_settings().post_rate_limit


def _see_other(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=303)


def _not_found(path: str) -> PlainTextResponse:
    return PlainTextResponse(f"{path} - Not found", status_code=404)


def _serve_script(url: str) -> Response:
    """Serve a .js file from web/static, refusing anything outside it."""
    root = STATIC_DIR.resolve()
    target = (root / url.lstrip("/")).resolve()
    if root not in target.parents or not target.is_file():
        return _not_found(url)
    return FileResponse(target, media_type="application/javascript")


def _no_store(response: Response) -> Response:
    response.headers["Cache-Control"] = "private, no-store"
    response.headers["X-Frame-Options"] = "DENY"
    return response


def _apply_session(response: Response, result: ActionResult | None, request: Request) -> None:
    if result is None:
        return
    settings = request.app.state.settings
    if result.clear_session:
        clear_auth_cookie(response, settings)
    elif result.new_session is not None:
        set_auth_cookie(response, result.new_session, settings)


def _gate(request: Request, url: str, session: SessionData) -> Response | None:
    method = request.method
    if method == "GET" and url.endswith(".js"):
        return _serve_script(url)

    if not session.logged_in and url not in _ANONYMOUS_URLS:
        if method == "POST":
            set_flash(request, REQUEST_FAILED_MESSAGE, error=True)
            return _see_other("/")
        return _see_other("/login")

    if session.logged_in and url.startswith("/login"):
        if method == "POST":
            set_flash(request, REQUEST_FAILED_MESSAGE, error=True)
        return _see_other("/")

    if method == "GET" and session.temporary_password and url not in _TEMPORARY_PASSWORD_URLS:
        return _see_other("/change-password")
    return None


def handle_request(request: Request, form: dict[str, str]) -> Response:
    """Gate, resolve, run the action and build the response."""
    path = request.url.path
    url = base_path(path)
    session = get_session(request)

    if (early := _gate(request, url, session)) is not None:
        return early

    err, serr = pop_flash(request)
    state = request.app.state
    username = session.username if session.logged_in else None
    try:
        resolved = state.resolver.resolve(username, request.method, path, session.language)
    except AccessDenied as exc:
        logger.info("%s %s denied: %s", request.method, path, exc)
        return _not_found(path)

    rule = resolved.rule
    result: ActionResult | None = None
    if rule.action:
        handler = registry.get(rule.method, rule.url)
        if handler is None:
            logger.error("No handler bound to %s %s", rule.method, rule.url)
            return _not_found(path)
        ctx = HandlerContext(
            request=request,
            session=session,
            rule=rule,
            form=form,
            client_ip=get_client_ip(request),
            peer_ip=get_peer_ip(request),
        )
        result = handler(ctx)

    if rule.template:
        if result is not None and (result.error or result.message):
            err, serr = result.error, result.message
        context = {
            "err": err,
            "serr": serr,
            "title": resolved.title or "",
            "app_name": state.settings.app_name,
            "version": state.settings.app_version,
            "date": int(time.time()),
            "session": result.new_session if result and result.new_session else session,
            "model": result.payload if result else {},
        }
        response = templates.TemplateResponse(request, rule.template, context)
        _apply_session(response, result, request)
        return _no_store(response)

    if result is None:
        logger.error("%s %s has neither a template nor an action", rule.method, rule.url)
        return PlainTextResponse(f"{path} - Response has empty model", status_code=500)

    if result.message:
        set_flash(request, result.message, result.error)
    target = result.redirect_target
    if target:
        response = _see_other(target)
    else:
        response = JSONResponse(result.as_json())
    _apply_session(response, result, request)
    return _no_store(response)


@router.api_route("/", methods=["GET", "POST"], include_in_schema=False)
@router.api_route("/{url:path}", methods=["GET", "POST"], include_in_schema=False)
@limiter.limit(_post_rate_limit, methods=["POST"])
async def dispatch(request: Request) -> Response:
    form: dict[str, str] = dict(request.query_params)
    if request.method == "POST":
        body = await request.form()
        form.update({key: value for key, value in body.items() if isinstance(value, str)})
    return await run_in_threadpool(handle_request, request, form)
