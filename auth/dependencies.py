"""
auth/dependencies.py -- FastAPI Depends() helpers for identity and client address.

get_session() never raises: a missing, expired or tampered cookie yields an
anonymous SessionData. Whether an anonymous caller may proceed is decided by
the dispatcher gates and the request resolver, not here.

Two notions of client address are used on purpose:
  get_client_ip()  first X-Forwarded-For entry, else the socket peer. Used for
                   the login audit trail and the per-user IP allow-list.
  get_peer_ip()    the socket peer only. Used for the admin bootstrap and the
                   stop endpoint, where a spoofable header must not count.
"""

from __future__ import annotations

from fastapi import Request

from auth.service import LOCALHOST_IPS
from auth.session import COOKIE_NAME, SessionData, anonymous_session, decode_session


def get_session(request: Request) -> SessionData:
    settings = request.app.state.settings
    token = request.cookies.get(COOKIE_NAME)
    if token:
        data = decode_session(token, settings)
        if data is not None:
            return data
    return anonymous_session(settings.default_language)


def get_peer_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    return first or get_peer_ip(request)


def is_local_request(request: Request) -> bool:
    return get_peer_ip(request) in LOCALHOST_IPS
