"""
auth/roles.py -- Role definitions and time-bounded user-role assignments.

A grant is live in user_role while its interval contains now. Revocation is
three steps in one transaction: close the interval, copy the row into
user_role_history, delete the live row. The history table therefore holds
every grant that ever ended, and user_role holds at most one row per
(user, role).

Role names are case-insensitive via the loweredrole shadow column.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection, Engine

from auth.errors import UnknownRole
from auth.models import Role, RoleAssignment, User
from core.audit import audit
from core.database import roles, to_iso, transaction, user_role_history, user_roles, users, utcnow

logger = logging.getLogger("membership.auth")

ADMINISTRATOR = "Administrator"
MEMBER = "Member"
ALL = "All"  # pseudo-role granted to every identity, anonymous included

DEFAULT_ROLES = (ADMINISTRATOR, MEMBER, ALL)


class RoleStore:
    """Repository for roles and user-role assignments.

    Usage:
        role_store = RoleStore(engine)
        member = role_store.ensure_role("Member")
        role_store.assign_role(user, member)
        names = [r.name for r in role_store.roles_of(user)]
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock
        self.save_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def get_by_name(self, name: str, conn: Connection | None = None) -> Role | None:
        with transaction(self.engine, conn) as c:
            row = c.execute(roles.select().where(roles.c.loweredrole == name.lower())).fetchone()
        return _row_to_role(row) if row is not None else None

    def require(self, name: str, conn: Connection | None = None) -> Role:
        """Like get_by_name() but raises UnknownRole instead of returning None."""
        role = self.get_by_name(name, conn)
        if role is None:
            raise UnknownRole(name)
        return role

    def ensure_role(self, name: str, conn: Connection | None = None) -> Role:
        """Return the role, creating it first if no role of that name exists."""
        if not name:
            raise UnknownRole(name)
        with self.save_lock, transaction(self.engine, conn) as c:
            existing = self.get_by_name(name, c)
            if existing is not None:
                return existing
            result = c.execute(roles.insert().values(role=name, loweredrole=name.lower()))
            logger.info("Created role %r", name)
            return Role(id=result.inserted_primary_key[0], name=name)

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.role)).fetchall()
        return [_row_to_role(r) for r in rows]

    # ------------------------------------------------------------------
    # Membership queries
    # ------------------------------------------------------------------

    def roles_of(self, user: User, as_of: datetime | None = None, conn: Connection | None = None) -> list[Role]:
        """Roles whose grant to user is live at as_of (default now), ordered by name."""
        at = to_iso(as_of or self._clock())
        with transaction(self.engine, conn) as c:
            rows = c.execute(
                select(roles.c.role_id, roles.c.role)
                .select_from(user_roles.join(roles, user_roles.c.role_id == roles.c.role_id))
                .where(user_roles.c.user_id == user.id)
                .where(_live_at(at))
                .order_by(roles.c.role)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    def role_has_member(
        self, role: Role, user: User, as_of: datetime | None = None, conn: Connection | None = None
    ) -> bool:
        at = to_iso(as_of or self._clock())
        with transaction(self.engine, conn) as c:
            found = c.execute(
                select(user_roles.c.user_id)
                .where(user_roles.c.user_id == user.id)
                .where(user_roles.c.role_id == role.id)
                .where(_live_at(at))
            ).fetchone()
        return found is not None

    def is_user_in_role(self, username: str, role_name: str) -> bool:
        """Case-insensitive on both names. Unknown user or role is simply False."""
        at = to_iso(self._clock())
        with self.engine.connect() as conn:
            found = conn.execute(
                select(user_roles.c.user_id)
                .select_from(
                    user_roles.join(users, users.c.user_id == user_roles.c.user_id).join(
                        roles, roles.c.role_id == user_roles.c.role_id
                    )
                )
                .where(users.c.loweredusername == username.lower())
                .where(roles.c.loweredrole == role_name.lower())
                .where(_live_at(at))
            ).fetchone()
        return found is not None

    def history_of(self, user: User, conn: Connection | None = None) -> list[RoleAssignment]:
        """Closed grants for user, oldest first."""
        with transaction(self.engine, conn) as c:
            rows = c.execute(
                user_role_history.select()
                .where(user_role_history.c.user_id == user.id)
                .order_by(user_role_history.c.valid_from)
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    # ------------------------------------------------------------------
    # Membership mutations
    # ------------------------------------------------------------------

    def assign_role(self, user: User, role: Role, conn: Connection | None = None) -> bool:
        """Grant role to user from now on. Returns False if already a live member.

        A lapsed grant still sitting in user_role is archived first so the
        (user, role) pair stays unique.
        """
        now = to_iso(self._clock())
        with self.save_lock, transaction(self.engine, conn) as c:
            if self.role_has_member(role, user, conn=c):
                return False
            _archive(c, user.id, role.id)
            c.execute(user_roles.insert().values(user_id=user.id, role_id=role.id, valid_from=now))
        audit("add-user-role", "Add user to role.", user=user.username, role=role.name)
        return True

    def revoke_role(self, user: User, role: Role, conn: Connection | None = None) -> bool:
        """End user's grant of role now. Returns False if user was not a live member."""
        now = to_iso(self._clock())
        with self.save_lock, transaction(self.engine, conn) as c:
            if not self.role_has_member(role, user, conn=c):
                return False
            c.execute(
                user_roles.update()
                .where((user_roles.c.user_id == user.id) & (user_roles.c.role_id == role.id))
                .values(valid_until=now)
            )
            _archive(c, user.id, role.id)
        audit("remove-user-role", "Remove user from role.", user=user.username, role=role.name)
        return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _live_at(at: str):
    return (user_roles.c.valid_from <= at) & or_(user_roles.c.valid_until.is_(None), user_roles.c.valid_until > at)


def _archive(conn: Connection, user_id: int, role_id: int) -> None:
    """Move the (user, role) row from user_role to user_role_history, if present."""
    pair = (user_roles.c.user_id == user_id) & (user_roles.c.role_id == role_id)
    conn.execute(
        user_role_history.insert().from_select(
            ["user_id", "role_id", "valid_from", "valid_until"],
            select(user_roles.c.user_id, user_roles.c.role_id, user_roles.c.valid_from, user_roles.c.valid_until).where(
                pair
            ),
        )
    )
    conn.execute(user_roles.delete().where(pair))


def _row_to_role(row) -> Role:
    return Role(id=row.role_id, name=row.role)


def _row_to_assignment(row) -> RoleAssignment:
    return RoleAssignment(
        user_id=row.user_id,
        role_id=row.role_id,
        valid_from=row.valid_from,
        valid_until=row.valid_until,
    )
