"""
auth/store.py -- SQLAlchemy Core persistence layer for user records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Case-insensitive identity:
  Every lookup filters on loweredusername / loweredemail, which carry the
  UNIQUE index. The typed casing is kept for display only.

Transactions:
  Each method takes an optional conn. When given, the method runs inside the
  caller's transaction; otherwise it opens and commits its own. See
  core.database.transaction().

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import User, UserPage
from core.database import to_iso, transaction, user_ips, users, utcnow


class UserStore:
    """Repository for User rows and the per-user IP allow-list.

    Usage:
        store = UserStore(make_engine(url))
        user_id = store.create_user(User(username="alice", email="a@example.com"))
        store.activate(user_id)
        user = store.get_by_username("ALICE")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def _now(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_username(self, username: str, conn: Connection | None = None) -> User | None:
        """Case-insensitive lookup. Returns None if not found."""
        with transaction(self.engine, conn) as c:
            row = c.execute(users.select().where(users.c.loweredusername == username.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with transaction(self.engine, conn) as c:
            row = c.execute(users.select().where(users.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def exists(self, username: str, conn: Connection | None = None) -> bool:
        with transaction(self.engine, conn) as c:
            found = c.execute(
                select(users.c.user_id).where(users.c.loweredusername == username.lower())
            ).fetchone()
        return found is not None

    def email_exists(self, email: str, exclude_user_id: int | None = None, conn: Connection | None = None) -> bool:
        """Case-insensitive check on loweredemail, optionally ignoring one user."""
        query = select(users.c.user_id).where(users.c.loweredemail == email.lower())
        if exclude_user_id is not None:
            query = query.where(users.c.user_id != exclude_user_id)
        with transaction(self.engine, conn) as c:
            found = c.execute(query).fetchone()
        return found is not None

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(users)).scalar() or 0

    def list_users(self, page: int = 1, rows_on_page: int = 20) -> UserPage:
        """Return one page of users ordered by name, surname, email.

        page is 1-based and clamped to at least 1. rows_on_page <= 0 returns
        everything on a single page.
        """
        page = max(1, page)
        query = users.select().order_by(users.c.name, users.c.surname, users.c.email, users.c.user_id)
        if rows_on_page > 0:
            query = query.limit(rows_on_page).offset((page - 1) * rows_on_page)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(users)).scalar() or 0
            rows = conn.execute(query).fetchall()
        return UserPage(users=[_row_to_user(r) for r in rows], page=page, rows_on_page=rows_on_page, total=total)

    def allowed_ips(self, user_id: int, conn: Connection | None = None) -> list[str]:
        """Return the user's IP allow-list. Empty means any address is accepted."""
        with transaction(self.engine, conn) as c:
            rows = c.execute(
                select(user_ips.c.ip).where(user_ips.c.user_id == user_id).order_by(user_ips.c.ip)
            ).fetchall()
        return [r.ip for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a new user and return its assigned id.

        Does not check for duplicates; callers hold the credential store's
        save lock and check exists() and email_exists() first. The UNIQUE
        indexes on loweredusername and loweredemail raise IntegrityError.
        """
        now = self._now()
        with transaction(self.engine, conn) as c:
            result = c.execute(
                users.insert().values(
                    username=user.username,
                    loweredusername=user.username.lower(),
                    name=user.name,
                    surname=user.surname,
                    email=user.email,
                    loweredemail=user.email.lower(),
                    creation_time=now,
                    last_update=now,
                    activated=0,
                    locked_out=0,
                    valid=1,
                    password_expires=1 if user.password_expires else 0,
                )
            )
            return result.inserted_primary_key[0]

    def update_profile(self, user_id: int, name: str, surname: str, email: str, conn: Connection | None = None) -> bool:
        with transaction(self.engine, conn) as c:
            result = c.execute(
                users.update()
                .where(users.c.user_id == user_id)
                .values(name=name, surname=surname, email=email, loweredemail=email.lower(), last_update=self._now())
            )
        return result.rowcount > 0

    def activate(self, user_id: int, conn: Connection | None = None) -> bool:
        """Mark the user activated. Returns False if user_id was not found."""
        now = self._now()
        with transaction(self.engine, conn) as c:
            result = c.execute(
                users.update()
                .where(users.c.user_id == user_id)
                .values(activated=1, activation_time=now, last_update=now)
            )
        return result.rowcount > 0

    def record_connect(self, user_id: int, ip: str, conn: Connection | None = None) -> None:
        """Stamp last_connect_time / last_connect_ip after a successful login."""
        with transaction(self.engine, conn) as c:
            c.execute(
                users.update()
                .where(users.c.user_id == user_id)
                .values(last_connect_time=self._now(), last_connect_ip=ip)
            )

    def add_allowed_ip(self, user_id: int, ip: str, conn: Connection | None = None) -> None:
        """Add ip to the user's allow-list. No-op if already present."""
        with transaction(self.engine, conn) as c:
            found = c.execute(
                select(user_ips.c.ip).where((user_ips.c.user_id == user_id) & (user_ips.c.ip == ip))
            ).fetchone()
            if found is None:
                c.execute(user_ips.insert().values(user_id=user_id, ip=ip))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.user_id,
        username=row.username,
        name=row.name,
        surname=row.surname,
        email=row.email,
        creation_time=row.creation_time,
        last_update=row.last_update,
        activated=bool(row.activated),
        activation_time=row.activation_time,
        locked_out=bool(row.locked_out),
        valid=bool(row.valid),
        password_expires=bool(row.password_expires),
        failed_password_attempts=row.failed_password_atmpts,
        first_failed_password=row.first_failed_password,
        last_failed_password=row.last_failed_password,
        last_password_change=row.last_password_change,
        last_connect_time=row.last_connect_time,
        last_connect_ip=row.last_connect_ip,
    )
