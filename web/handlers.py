"""
web/handlers.py -- Static handler registry, action results and flash messages.

Each request rule in the database names an action. Instead of looking the
action up by name at request time, every (method, url) that has an action is
bound here to a plain function at import time, and validate_against() checks
at startup that the registry and the request table agree in both directions.

Handler contract:
    def handler(ctx: HandlerContext) -> ActionResult

A handler never writes the response itself. The dispatcher in web/routes.py
turns the ActionResult into a rendered page, a redirect or a JSON body.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request

from access.models import RequestRule
from auth.session import SessionData

FLASH_KEY = "flash"


@dataclass
class HandlerContext:
    request: Request
    session: SessionData
    rule: RequestRule
    form: dict[str, str]
    client_ip: str
    peer_ip: str

    @property
    def state(self):
        return self.request.app.state


@dataclass
class ActionResult:
    """Outcome of a handler.

    The redirect target is url when set, else error_url for an error, else
    success_url. A target of None means respond with the payload instead.
    new_session re-issues the identity cookie; clear_session logs out.
    """

    error: bool = False
    message: str = ""
    url: str | None = None
    success_url: str | None = None
    error_url: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    new_session: SessionData | None = None
    clear_session: bool = False

    @classmethod
    def for_rule(cls, rule: RequestRule, **kwargs) -> ActionResult:
        kwargs.setdefault("success_url", rule.redirect_url)
        kwargs.setdefault("error_url", rule.redirect_on_error)
        return cls(**kwargs)

    @property
    def redirect_target(self) -> str | None:
        target = self.url or (self.error_url if self.error else self.success_url)
        if not target:
            return None
        return target if target.startswith("/") else f"/{target}"

    def as_json(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.payload}


Handler = Callable[[HandlerContext], ActionResult]


class RegistryMismatch(RuntimeError):
    """The handler registry and the request table disagree."""


class HandlerRegistry:
    """Explicit (method, url) -> handler map.

    Usage:
        registry = HandlerRegistry()

        @registry.register("POST", "login")
        def login(ctx: HandlerContext) -> ActionResult: ...
    """

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], Handler] = {}

    def register(self, method: str, url: str) -> Callable[[Handler], Handler]:
        key = (method.upper(), url)

        def decorator(func: Handler) -> Handler:
            if key in self._handlers:
                raise RegistryMismatch(f"handler for {key[0]} {key[1]} registered twice")
            self._handlers[key] = func
            return func

        return decorator

    def get(self, method: str, url: str) -> Handler | None:
        return self._handlers.get((method.upper(), url))

    def keys(self) -> set[tuple[str, str]]:
        return set(self._handlers)

    def validate_against(self, rules: list[RequestRule]) -> None:
        """Raise RegistryMismatch unless every action has a handler and vice versa."""
        with_action = {rule.key for rule in rules if rule.action}
        missing = sorted(with_action - self.keys())
        orphaned = sorted(self.keys() - with_action)
        problems = [f"no handler for {m} {u}" for m, u in missing]
        problems += [f"handler {m} {u} has no request with an action" for m, u in orphaned]
        if problems:
            raise RegistryMismatch("; ".join(problems))


# ---------------------------------------------------------------------------
# Flash messages (one-shot, stored in the signed Starlette session cookie)
# ---------------------------------------------------------------------------


def set_flash(request: Request, message: str, error: bool) -> None:
    request.session[FLASH_KEY] = {"error": error, "message": message}


def pop_flash(request: Request) -> tuple[bool, str]:
    flash = request.session.pop(FLASH_KEY, None) or {}
    return bool(flash.get("error", False)), str(flash.get("message", ""))
