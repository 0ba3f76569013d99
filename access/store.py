"""
access/store.py -- SQLAlchemy Core persistence for the access rule table.

Pattern: Repository + Data Mapper. RequestStore owns the request,
request_name and request_role tables; _row_to_rule is the mapper and the
only place that knows about the "-" sentinel.

Every write is insert-if-absent. Existing request rows are never updated,
so manual edits made in the database survive a restart and reseeding.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import and_, exists, func, literal, or_, select, union
from sqlalchemy.engine import Connection, Engine

from access.models import ANY_METHOD, RequestRule, ResolvedRequest
from core.database import (
    request_names,
    request_roles,
    requests,
    roles,
    to_iso,
    transaction,
    user_roles,
    users,
    utcnow,
)

logger = logging.getLogger("membership.access")

NONE_SENTINEL = "-"

# Guard against a parent cycle written by hand into the table.
_MAX_PROPAGATION_PASSES = 32


def _to_db(value: str | None) -> str:
    return NONE_SENTINEL if value is None or value == "" else value


def _from_db(value: str | None) -> str | None:
    return None if value is None or value == NONE_SENTINEL else value


class RequestStore:
    """Repository for request rules, their localized names and role grants.

    Usage:
        store = RequestStore(engine)
        request_id, created = store.ensure_request(RequestRule("GET", "about", "Home", template="home/about.html"))
        store.ensure_grant(request_id, member_role.id)
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def get(self, method: str, url: str, conn: Connection | None = None) -> RequestRule | None:
        with transaction(self.engine, conn) as c:
            row = c.execute(
                requests.select().where((requests.c.request_type == method) & (requests.c.request_url == url))
            ).fetchone()
        return _row_to_rule(row) if row is not None else None

    def list_requests(self, conn: Connection | None = None) -> list[RequestRule]:
        """All request rules ordered by index level, order number, url."""
        with transaction(self.engine, conn) as c:
            rows = c.execute(
                requests.select().order_by(
                    requests.c.index_level, requests.c.order_number, requests.c.request_url, requests.c.request_type
                )
            ).fetchall()
        return [_row_to_rule(r) for r in rows]

    def ensure_request(self, rule: RequestRule, conn: Connection | None = None) -> tuple[int, bool]:
        """Insert rule unless (method, url) already exists.

        Returns (request_id, created). The parent, if any, must already be
        present; a missing parent is stored as no parent and logged.
        """
        with transaction(self.engine, conn) as c:
            existing = self.get(rule.method, rule.url, c)
            if existing is not None:
                return existing.id, False

            parent_id = rule.parent_id
            if parent_id is None and rule.parent is not None:
                parent = self.get(rule.parent[0], rule.parent[1], c)
                if parent is None:
                    logger.warning("Parent %s %s of %s %s not found", *rule.parent, rule.method, rule.url)
                else:
                    parent_id = parent.id

            result = c.execute(
                requests.insert().values(
                    request_type=rule.method,
                    request_url=rule.url,
                    parent_request_id=parent_id,
                    request_template=_to_db(rule.template),
                    controller=rule.controller,
                    action=_to_db(rule.action),
                    redirect_url=_to_db(rule.redirect_url),
                    redirect_on_error=_to_db(rule.redirect_on_error),
                    index_level=rule.index_level if rule.index_level and rule.index_level > 0 else None,
                    order_number=rule.order_number if rule.order_number and rule.order_number > 0 else None,
                    fire_event=1 if rule.fire_event else 0,
                )
            )
            return result.inserted_primary_key[0], True

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def ensure_name(self, request_id: int, language: str, name: str, conn: Connection | None = None) -> bool:
        """Insert the localized name unless one exists for that language."""
        with transaction(self.engine, conn) as c:
            found = c.execute(
                select(request_names.c.request_id).where(
                    (request_names.c.request_id == request_id) & (request_names.c.language == language)
                )
            ).fetchone()
            if found is not None:
                return False
            c.execute(request_names.insert().values(request_id=request_id, language=language, name=name))
        return True

    def name_of(self, request_id: int, language: str, conn: Connection | None = None) -> str | None:
        with transaction(self.engine, conn) as c:
            return c.execute(
                select(request_names.c.name).where(
                    (request_names.c.request_id == request_id) & (request_names.c.language == language)
                )
            ).scalar()

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def ensure_grant(self, request_id: int, role_id: int, conn: Connection | None = None) -> bool:
        """Grant role on request unless already granted. Returns True if inserted."""
        with transaction(self.engine, conn) as c:
            found = c.execute(
                select(request_roles.c.request_id).where(
                    (request_roles.c.request_id == request_id) & (request_roles.c.role_id == role_id)
                )
            ).fetchone()
            if found is not None:
                return False
            c.execute(request_roles.insert().values(request_id=request_id, role_id=role_id))
        return True

    def grants_of(self, request_id: int, conn: Connection | None = None) -> list[str]:
        """Role names granted on request_id, sorted."""
        with transaction(self.engine, conn) as c:
            rows = c.execute(
                select(roles.c.role)
                .select_from(request_roles.join(roles, roles.c.role_id == request_roles.c.role_id))
                .where(request_roles.c.request_id == request_id)
                .order_by(roles.c.role)
            ).fetchall()
        return [r.role for r in rows]

    def count_grants(self, conn: Connection | None = None) -> int:
        with transaction(self.engine, conn) as c:
            return c.execute(select(func.count()).select_from(request_roles)).scalar() or 0

    def propagate_parent_grants(self, conn: Connection | None = None) -> int:
        """Copy every parent's grants onto its children until nothing changes.

        Each pass inserts (child, role) for every role the parent holds and
        the child lacks, so a grant cascades one level per pass. Returns the
        number of grants added.
        """
        parent_grant = request_roles.alias("parent_grant")
        child_grant = request_roles.alias("child_grant")
        missing = (
            select(requests.c.request_id, parent_grant.c.role_id)
            .select_from(requests.join(parent_grant, parent_grant.c.request_id == requests.c.parent_request_id))
            .where(
                ~exists().where(
                    and_(
                        child_grant.c.request_id == requests.c.request_id,
                        child_grant.c.role_id == parent_grant.c.role_id,
                    )
                )
            )
        )

        added = 0
        with transaction(self.engine, conn) as c:
            for _ in range(_MAX_PROPAGATION_PASSES):
                before = self.count_grants(c)
                c.execute(request_roles.insert().from_select(["request_id", "role_id"], missing))
                delta = self.count_grants(c) - before
                if delta == 0:
                    break
                added += delta
            else:
                logger.warning("Grant propagation did not settle; check request parents for a cycle")
        return added

    def grant_catch_all(self, role_id: int, conn: Connection | None = None) -> int:
        """Grant role_id on every request that has no grant at all.

        Anti-join: requests with no request_role row. Returns the number of
        grants added.
        """
        ungranted = (
            select(requests.c.request_id, literal(role_id))
            .select_from(requests.outerjoin(request_roles, request_roles.c.request_id == requests.c.request_id))
            .where(request_roles.c.request_id.is_(None))
        )
        with transaction(self.engine, conn) as c:
            before = self.count_grants(c)
            c.execute(request_roles.insert().from_select(["request_id", "role_id"], ungranted))
            return self.count_grants(c) - before

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def find_authorized(
        self,
        username: str | None,
        universal_role: str,
        method: str,
        url: str,
        languages: tuple[str, ...],
    ) -> ResolvedRequest | None:
        """Return the rule for (method, url) if username may reach it.

        Reachable means granted to a role the user holds right now, or to
        universal_role. username None is an anonymous caller. The title is
        the first name found in languages, in order.
        """
        now = to_iso(self._clock())

        reachable = [
            select(request_roles.c.request_id)
            .select_from(request_roles.join(roles, roles.c.role_id == request_roles.c.role_id))
            .where(roles.c.loweredrole == universal_role.lower())
        ]
        if username:
            reachable.append(
                select(request_roles.c.request_id)
                .select_from(
                    request_roles.join(user_roles, user_roles.c.role_id == request_roles.c.role_id).join(
                        users, users.c.user_id == user_roles.c.user_id
                    )
                )
                .where(users.c.loweredusername == username.lower())
                .where(user_roles.c.valid_from <= now)
                .where(or_(user_roles.c.valid_until.is_(None), user_roles.c.valid_until > now))
            )
        access = union(*reachable).subquery() if len(reachable) > 1 else reachable[0].subquery()

        with self.engine.connect() as conn:
            row = conn.execute(
                requests.select()
                .where(requests.c.request_url == url)
                .where(requests.c.request_type.in_([method, ANY_METHOD]))
                .where(requests.c.request_id.in_(select(access.c.request_id)))
                .order_by((requests.c.request_type == ANY_METHOD).asc())
            ).fetchone()
            if row is None:
                return None
            rule = _row_to_rule(row)
            title = None
            for language in languages:
                title = self.name_of(rule.id, language, conn)
                if title is not None:
                    break
        return ResolvedRequest(rule=rule, title=title)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_rule(row) -> RequestRule:
    return RequestRule(
        id=row.request_id,
        method=row.request_type,
        url=row.request_url,
        parent_id=row.parent_request_id,
        template=_from_db(row.request_template),
        controller=row.controller,
        action=_from_db(row.action),
        redirect_url=_from_db(row.redirect_url),
        redirect_on_error=_from_db(row.redirect_on_error),
        index_level=row.index_level,
        order_number=row.order_number,
        fire_event=bool(row.fire_event),
    )
