"""
auth/credentials.py -- Password credential lifecycle and lockout bookkeeping.

A user's password history is an append-only list of user_password rows. Each
row covers a half-open interval [valid_from, valid_until); valid_until NULL
means open-ended. Rotation closes the active row at "now" and inserts the new
one starting at the same instant, so at most one row is active at any time.
Expiry is nothing more than the active row's valid_until passing: after that
the user has no active credential and validation fails as "not found".

Lockout:
  Every mismatch runs one conditional UPDATE that either restarts the
  failure window (count = 1, first failure = now) when the previous first
  failure is older than password_fail_interval minutes, or increments the
  count. The post-update count is read back in the same transaction; on
  reaching max_allowed_failed_attempts the user is flagged locked_out and
  the active credential is closed. max_allowed_failed_attempts <= 0 disables
  lockout.

Concurrency:
  save_lock (re-entrant) serializes credential writes and user inserts;
  registration holds it across the duplicate check, the insert and the first
  password. fail_lock serializes the failure counter update.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import case, or_, select
from sqlalchemy.engine import Connection, Engine

from auth.errors import AuthenticationFailure, CredentialNotFound, PasswordValidationError
from auth.models import PasswordCredential, User, ValidationResult
from auth.passwords import (
    DUMMY_SALT,
    check_policy,
    generate_temporary_password,
    hash_password,
    make_dummy_hash,
    new_salt,
    verify_password,
)
from auth.store import UserStore
from core.audit import audit
from core.config import PasswordRules
from core.database import to_iso, transaction, user_passwords, users, utcnow

logger = logging.getLogger("membership.auth")


class CredentialStore:
    """Repository and policy owner for password credentials.

    Usage:
        creds = CredentialStore(engine, user_store, settings.password_rules())
        creds.change_password(user, "N3w!Passw0rd")
        result = creds.validate_password("alice", "N3w!Passw0rd", "10.0.0.5")
    """

    def __init__(
        self,
        engine: Engine,
        user_store: UserStore,
        rules: PasswordRules,
        rounds: int = 12,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.users = user_store
        self.rules = rules
        self.rounds = rounds
        self._clock = clock
        self._dummy_hash = make_dummy_hash(rounds)
        self.save_lock = threading.RLock()
        self.fail_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_credential(self, user_id: int, conn: Connection | None = None) -> PasswordCredential | None:
        """Return the credential whose interval contains now, if any."""
        now = to_iso(self._clock())
        with transaction(self.engine, conn) as c:
            row = c.execute(
                user_passwords.select()
                .where(user_passwords.c.user_id == user_id)
                .where(_active_at(now))
                .order_by(user_passwords.c.password_id.desc())
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def history(self, user_id: int, limit: int = 0, conn: Connection | None = None) -> list[PasswordCredential]:
        """Return the user's credentials, newest first. limit <= 0 returns all."""
        query = (
            user_passwords.select()
            .where(user_passwords.c.user_id == user_id)
            .order_by(user_passwords.c.password_id.desc())
        )
        if limit > 0:
            query = query.limit(limit)
        with transaction(self.engine, conn) as c:
            rows = c.execute(query).fetchall()
        return [_row_to_credential(r) for r in rows]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_password(self, username: str, plaintext: str, client_ip: str) -> ValidationResult:
        """Check a login attempt against the active credential.

        Gates are checked in order: user exists, not locked out, activated,
        valid, has an active credential, IP allow-list. Only then is the hash
        compared. A mismatch records a failed attempt in its own committed
        transaction.

        Raises AuthenticationFailure (CredentialNotFound for unknown users or
        users without an active credential). str(exc) names the real reason
        for the logs; callers must show only the generic message.
        """
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    users.c.user_id,
                    users.c.activated,
                    users.c.locked_out,
                    users.c.valid,
                    user_passwords.c.password_id,
                    user_passwords.c.password,
                    user_passwords.c.password_salt,
                    user_passwords.c.temporary,
                )
                .select_from(
                    users.outerjoin(
                        user_passwords,
                        (users.c.user_id == user_passwords.c.user_id) & _active_at(now),
                    )
                )
                .where(users.c.loweredusername == username.lower())
                .order_by(user_passwords.c.password_id.desc())
            ).fetchone()
            ips = self.users.allowed_ips(row.user_id, conn) if row is not None else []

        reason = None
        not_found = False
        if row is None:
            reason, not_found = f'username "{username}" not found', True
        elif row.locked_out:
            reason = f'username "{username}" is locked out'
        elif not row.activated:
            reason = f'username "{username}" is not activated'
        elif not row.valid:
            reason = f'username "{username}" is not valid'
        elif row.password_id is None:
            reason, not_found = f'no active password for "{username}" (expired)', True
        elif ips and client_ip not in ips:
            reason = f'IP not accepted for "{username}"'

        if reason is not None:
            # Equalize timing with the real comparison below.
            verify_password(plaintext, DUMMY_SALT, self._dummy_hash)
            if not_found:
                raise CredentialNotFound(reason)
            raise AuthenticationFailure(reason)

        if not verify_password(plaintext, row.password_salt, row.password):
            self.record_failed_attempt(row.user_id, username)
            raise AuthenticationFailure(f'wrong password for "{username}"')

        if row.temporary:
            return ValidationResult.TEMPORARY_PASSWORD
        return ValidationResult.OK

    def record_failed_attempt(self, user_id: int, username: str = "") -> int:
        """Count one failed login and lock the account at the threshold.

        Returns the failure count after the update.
        """
        rules = self.rules
        with self.fail_lock:
            now_dt = self._clock()
            now = to_iso(now_dt)
            cutoff = to_iso(now_dt - timedelta(minutes=rules.password_fail_interval))
            restart = or_(users.c.first_failed_password.is_(None), users.c.first_failed_password < cutoff)

            with self.engine.begin() as conn:
                conn.execute(
                    users.update()
                    .where(users.c.user_id == user_id)
                    .values(
                        failed_password_atmpts=case((restart, 1), else_=users.c.failed_password_atmpts + 1),
                        first_failed_password=case((restart, now), else_=users.c.first_failed_password),
                        last_failed_password=now,
                    )
                )
                count = conn.execute(
                    select(users.c.failed_password_atmpts).where(users.c.user_id == user_id)
                ).scalar()
                if count is None:
                    logger.warning("Failed attempt recorded for missing user_id=%s", user_id)
                    return 0

                locked = rules.max_allowed_failed_attempts > 0 and count >= rules.max_allowed_failed_attempts
                if locked:
                    conn.execute(users.update().where(users.c.user_id == user_id).values(locked_out=1))
                    _close_active(conn, user_id, now)

        if locked:
            audit("lockout", "User locked out.", user=username, failed_attempts=count)
        else:
            audit("failed-login", "Wrong password.", user=username, failed_attempts=count)
        return count

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def password_already_used(self, user_id: int, plaintext: str, conn: Connection | None = None) -> bool:
        """True if plaintext matches any of the last N credentials.

        N is not_repeat_last_x_passwords; 0 disables the check.
        """
        n = self.rules.not_repeat_last_x_passwords
        if n <= 0:
            return False
        for cred in self.history(user_id, limit=n, conn=conn):
            if verify_password(plaintext, cred.salt, cred.password_hash):
                return True
        return False

    def change_password(
        self,
        user: User,
        new_plaintext: str,
        temporary: bool = False,
        conn: Connection | None = None,
    ) -> PasswordCredential:
        """Rotate the user's password.

        Raises PasswordValidationError for reuse or any policy violation;
        nothing is written in that case. On success the active row is closed
        at now and the new row opened at now, expiring after change_interval
        days when that is > 0.
        """
        rules = self.rules
        with self.save_lock, transaction(self.engine, conn) as c:
            if self.password_already_used(user.id, new_plaintext, c):
                raise PasswordValidationError(
                    f"Password already used. Can't use the last {rules.not_repeat_last_x_passwords} passwords"
                )
            check_policy(new_plaintext, user.username, rules)

            now_dt = self._clock()
            now = to_iso(now_dt)
            until = to_iso(now_dt + timedelta(days=rules.change_interval)) if rules.change_interval > 0 else None
            salt = new_salt()
            hashed = hash_password(new_plaintext, salt, self.rounds)

            _close_active(c, user.id, now)
            result = c.execute(
                user_passwords.insert().values(
                    user_id=user.id,
                    password=hashed,
                    password_salt=salt,
                    valid_from=now,
                    valid_until=until,
                    temporary=1 if temporary else 0,
                )
            )
            c.execute(users.update().where(users.c.user_id == user.id).values(last_password_change=now))

        logger.debug("Password changed for user_id=%s temporary=%s", user.id, temporary)
        return PasswordCredential(
            id=result.inserted_primary_key[0],
            user_id=user.id,
            password_hash=hashed,
            salt=salt,
            valid_from=now,
            valid_until=until,
            temporary=temporary,
        )

    def issue_temporary_password(self, user: User, conn: Connection | None = None) -> str:
        """Store a random policy-compliant password flagged temporary and return it.

        The next successful login yields TEMPORARY_PASSWORD, which forces the
        user through change-password before anything else.
        """
        plain = generate_temporary_password(self.rules, user.username)
        self.change_password(user, plain, temporary=True, conn=conn)
        audit("temporary-password", "Temporary password issued.", user=user.username)
        return plain

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def unlock(self, user_id: int, conn: Connection | None = None) -> bool:
        """Clear the lockout flag and failure counters.

        Lockout closed the credential, so this alone does not let the user
        log in again; follow with issue_temporary_password().
        """
        with self.save_lock, transaction(self.engine, conn) as c:
            result = c.execute(
                users.update()
                .where(users.c.user_id == user_id)
                .values(
                    locked_out=0,
                    failed_password_atmpts=0,
                    first_failed_password=None,
                    last_failed_password=None,
                    last_update=to_iso(self._clock()),
                )
            )
        return result.rowcount > 0

    def make_unlimited(self, user_id: int, conn: Connection | None = None) -> None:
        """Remove password expiry for the user and open-end the active credential."""
        now = to_iso(self._clock())
        with self.save_lock, transaction(self.engine, conn) as c:
            c.execute(users.update().where(users.c.user_id == user_id).values(password_expires=0))
            c.execute(
                user_passwords.update()
                .where(user_passwords.c.user_id == user_id)
                .where(_active_at(now))
                .values(valid_until=None)
            )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _active_at(now: str):
    return (user_passwords.c.valid_from <= now) & (
        or_(user_passwords.c.valid_until.is_(None), user_passwords.c.valid_until > now)
    )


def _close_active(conn: Connection, user_id: int, now: str) -> None:
    conn.execute(
        user_passwords.update()
        .where(user_passwords.c.user_id == user_id)
        .where(_active_at(now))
        .values(valid_until=now)
    )


def _row_to_credential(row) -> PasswordCredential:
    return PasswordCredential(
        id=row.password_id,
        user_id=row.user_id,
        password_hash=row.password,
        salt=row.password_salt,
        valid_from=row.valid_from,
        valid_until=row.valid_until,
        temporary=bool(row.temporary),
    )
