"""
core/database.py -- SQLAlchemy Core schema and engine factory for the membership DB.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py and
access/models.py remain the authoritative domain representation. Swapping
SQLite for PostgreSQL is a connection string change, not a rewrite.

All tables live in one MetaData because registration, login and the access
rule bootstrap each touch several of them inside a single transaction.

Case-insensitive uniqueness:
  username, email and role names are stored twice -- as typed and lower-cased
  in a shadow column (loweredusername, loweredemail, loweredrole). Lookups
  compare against the shadow column, which carries the UNIQUE index.

Timestamps:
  Stored as ISO 8601 UTC strings with fixed microsecond precision (see
  to_iso()). Fixed width keeps lexical order equal to chronological order, so
  validity-interval comparisons can run in SQL on every backend.

Sentinels:
  The request table stores "-" for "no template / no action / no redirect".
  Mapping to None happens in access/store.py, never in SQL callers.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'membership.db'}"

metadata = MetaData()

# ---------------------------------------------------------------------------
# Users and credentials
# ---------------------------------------------------------------------------

users = Table(
    "user",
    metadata,
    Column("user_id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("loweredusername", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("surname", String(255), nullable=False, server_default=""),
    Column("email", String(255), nullable=False, server_default=""),
    Column("loweredemail", String(255), nullable=False, unique=True),
    Column("creation_time", String(32), nullable=False),
    Column("last_update", String(32), nullable=False),
    Column("activated", Integer, nullable=False, server_default="0"),
    Column("activation_time", String(32)),
    Column("locked_out", Integer, nullable=False, server_default="0"),
    Column("valid", Integer, nullable=False, server_default="1"),
    Column("password_expires", Integer, nullable=False, server_default="0"),
    Column("failed_password_atmpts", Integer, nullable=False, server_default="0"),
    Column("first_failed_password", String(32)),
    Column("last_failed_password", String(32)),
    Column("last_password_change", String(32)),
    Column("last_connect_time", String(32)),
    Column("last_connect_ip", String(45)),
)

user_passwords = Table(
    "user_password",
    metadata,
    Column("password_id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("user.user_id"), nullable=False, index=True),
    Column("password", Text, nullable=False),  # bcrypt hash
    Column("password_salt", String(64), nullable=False),
    Column("valid_from", String(32), nullable=False),
    Column("valid_until", String(32)),  # NULL = open-ended
    Column("temporary", Integer, nullable=False, server_default="0"),
)

user_ips = Table(
    "user_ip",
    metadata,
    Column("user_id", Integer, ForeignKey("user.user_id"), nullable=False),
    Column("ip", String(45), nullable=False),
    UniqueConstraint("user_id", "ip", name="uq_user_ip"),
)

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

roles = Table(
    "role",
    metadata,
    Column("role_id", Integer, primary_key=True, autoincrement=True),
    Column("role", String(100), nullable=False),
    Column("loweredrole", String(100), nullable=False, unique=True),
)

user_roles = Table(
    "user_role",
    metadata,
    Column("user_id", Integer, ForeignKey("user.user_id"), nullable=False),
    Column("role_id", Integer, ForeignKey("role.role_id"), nullable=False),
    Column("valid_from", String(32), nullable=False),
    Column("valid_until", String(32)),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

# Same shape as user_role, without the uniqueness: one row per closed grant.
user_role_history = Table(
    "user_role_history",
    metadata,
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, nullable=False),
    Column("valid_from", String(32), nullable=False),
    Column("valid_until", String(32)),
)

# ---------------------------------------------------------------------------
# Access rules
# ---------------------------------------------------------------------------

requests = Table(
    "request",
    metadata,
    Column("request_id", Integer, primary_key=True, autoincrement=True),
    Column("request_type", String(10), nullable=False),  # GET, POST, All
    Column("request_url", String(255), nullable=False),
    Column("parent_request_id", Integer, ForeignKey("request.request_id")),
    Column("request_template", String(255), nullable=False, server_default="-"),
    Column("controller", String(100), nullable=False),
    Column("action", String(100), nullable=False, server_default="-"),
    Column("redirect_url", String(255), nullable=False, server_default="-"),
    Column("redirect_on_error", String(255), nullable=False, server_default="-"),
    Column("index_level", Integer),
    Column("order_number", Integer),
    Column("fire_event", Integer, nullable=False, server_default="1"),
    UniqueConstraint("request_type", "request_url", name="uq_request_type_url"),
)

request_names = Table(
    "request_name",
    metadata,
    Column("request_id", Integer, ForeignKey("request.request_id"), nullable=False),
    Column("language", String(10), nullable=False),
    Column("name", String(255), nullable=False),
    UniqueConstraint("request_id", "language", name="uq_request_name_language"),
)

request_roles = Table(
    "request_role",
    metadata,
    Column("request_id", Integer, ForeignKey("request.request_id"), nullable=False),
    Column("role_id", Integer, ForeignKey("role.role_id"), nullable=False),
    UniqueConstraint("request_id", "role_id", name="uq_request_role"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width ISO 8601 UTC string. Keeps lexical order == time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Yield conn when the caller already holds a transaction, else open one.

    Lets store methods run standalone or as one step of a larger unit of work
    (registration inserts the user, its password and its roles atomically).
    """
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str = "") -> Engine:
    """Create the engine and make sure every table exists.

    create_all() is idempotent, so this is safe to call on every startup.
    """
    db_url = db_url or DEFAULT_DB_URL
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Sync route handlers run on a thread pool; the same pooled
        # connection may be used from different worker threads.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine
