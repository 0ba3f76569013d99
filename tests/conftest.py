"""
tests/conftest.py -- Shared test fixtures for the membership site.

This module provides:
  - FakeClock: a settable clock injected into every store
  - make_settings(): Settings with fast bcrypt and explicit policy overrides
  - memory_url(): a unique named shared-memory SQLite URL
  - build_membership(): engine + stores + service, wired like the app does
  - _patch_lifespan(): replaces the real lifespan with init_membership()
    over a test engine, so TestClient routes see an isolated database

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Environment must be set before any app import: DEBUG lets get_settings()
auto-generate SECRET_KEY, ALLOWED_HOSTS admits TestClient's "testserver"
Host header, and POST_RATE_LIMIT keeps slowapi out of the way.
"""

from __future__ import annotations

import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any core/api import; Settings is read at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("POST_RATE_LIMIT", "10000/minute")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy.engine import Engine

from access.catalog import initialize_access_rules
from access.resolver import RequestResolver
from access.store import RequestStore
from api.main import init_membership
from auth.credentials import CredentialStore
from auth.roles import RoleStore
from auth.service import MembershipService
from auth.store import UserStore
from core.config import Settings
from core.database import make_engine

STRONG_PASSWORD = "Str0ng!Pass"
OTHER_PASSWORD = "An0ther#Word"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    """Settings with bcrypt at its minimum cost and any field overridden."""
    values = {"debug": True, "bcrypt_rounds": 4, "auto_activate": True}
    values.update(overrides)
    return Settings(**values)


def memory_url(prefix: str = "test") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@dataclass
class Membership:
    engine: Engine
    settings: Settings
    clock: FakeClock
    users: UserStore
    credentials: CredentialStore
    roles: RoleStore
    requests: RequestStore
    resolver: RequestResolver
    service: MembershipService


def build_membership(settings: Settings | None = None, clock: FakeClock | None = None) -> Membership:
    """Wire a fresh in-memory membership system, seeded with the access rules."""
    settings = settings or make_settings()
    clock = clock or FakeClock()
    engine = make_engine(memory_url())
    users = UserStore(engine, clock=clock)
    roles = RoleStore(engine, clock=clock)
    requests = RequestStore(engine, clock=clock)
    credentials = CredentialStore(engine, users, settings.password_rules(), rounds=settings.bcrypt_rounds, clock=clock)
    service = MembershipService(engine, users, credentials, roles, settings)
    initialize_access_rules(engine, requests, roles)
    return Membership(
        engine=engine,
        settings=settings,
        clock=clock,
        users=users,
        credentials=credentials,
        roles=roles,
        requests=requests,
        resolver=RequestResolver(requests),
        service=service,
    )


@pytest.fixture
def membership():
    m = build_membership()
    yield m
    m.engine.dispose()


def _patch_lifespan(engine: Engine, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Runs the same init_membership() wiring as production, including the
    handler registry check, against the test engine.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_membership(app, engine, settings)
        yield

    return test_lifespan
