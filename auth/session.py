"""
auth/session.py -- Session identity carried in a signed JWT cookie.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY. The token carries the
       whole SessionData so no server-side session table is needed.
       Decoding returns None on any failure; the caller then treats the
       request as anonymous.

  Cookie: "access_token", httpOnly, SameSite=Lax, Secure when
       SECURE_COOKIES=true. max_age matches the token expiry.

  Refresh: when the temporary-password flag clears after a password change,
       the dispatcher re-issues the cookie with the updated SessionData
       (same session_id).

Flash messages do not live here; they ride in Starlette's signed session
cookie (request.session), see web/handlers.py.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from auth.models import User
from core.config import Settings

logger = logging.getLogger("membership.auth")

_ALGORITHM = "HS256"
COOKIE_NAME = "access_token"


class SessionData(BaseModel):
    """Identity of the caller. The default instance is an anonymous visitor."""

    logged_in: bool = False
    session_id: str = ""
    username: str = ""
    name: str = ""
    surname: str = ""
    language: str = "EN"
    temporary_password: bool = False

    @property
    def display_name(self) -> str:
        full = f"{self.name} {self.surname}".strip()
        return full or self.username


def anonymous_session(language: str = "EN") -> SessionData:
    return SessionData(language=language)


def new_session(user: User, language: str, temporary_password: bool = False) -> SessionData:
    """Start a logged-in session for user with a fresh session id."""
    return SessionData(
        logged_in=True,
        session_id=str(uuid.uuid4()),
        username=user.username,
        name=user.name,
        surname=user.surname,
        language=language,
        temporary_password=temporary_password,
    )


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def encode_session(data: SessionData, settings: Settings) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=settings.token_expire_seconds)
    payload = data.model_dump()
    payload["sub"] = data.username
    payload["exp"] = expire
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_session(token: str, settings: Settings) -> SessionData | None:
    """Verify and decode a session token. Returns None on any failure."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    payload.pop("sub", None)
    payload.pop("exp", None)
    try:
        return SessionData.model_validate(payload)
    except ValidationError:
        logger.warning("Discarding session token with an unexpected payload")
        return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, data: SessionData, settings: Settings) -> None:
    """Write the session as an httpOnly JWT cookie on the response."""
    response.set_cookie(
        COOKIE_NAME,
        value=encode_session(data, settings),
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.token_expire_seconds,
    )


def clear_auth_cookie(response, settings: Settings) -> None:
    response.delete_cookie(COOKIE_NAME, httponly=True, samesite="lax", secure=settings.secure_cookies)
