"""
auth/service.py -- Membership use cases composed from the stores.

Each use case that writes runs as one unit of work: a single engine.begin()
transaction handed to every store call, so a failure at any step rolls back
the user row, the credential and the role grants together.

Failures surface as MembershipError subclasses (see auth/errors.py).
SQLAlchemyError is logged with its traceback and re-raised as StoreFailure.
Every outcome, good or bad, is written to the audit log.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.credentials import CredentialStore
from auth.errors import (
    AuthenticationFailure,
    DuplicateEmail,
    DuplicateUser,
    PasswordValidationError,
    StoreFailure,
    UnknownUser,
)
from auth.models import LoginOutcome, Role, User, UserPage, ValidationResult
from auth.roles import ADMINISTRATOR, MEMBER, RoleStore
from auth.store import UserStore
from core.audit import audit
from core.config import Settings

logger = logging.getLogger("membership.auth")

LOCALHOST_IPS = frozenset({"127.0.0.1", "::1"})
BOOTSTRAP_USERNAME = "admin"

EMPTY_PASSWORD_MESSAGE = "Password is empty or is different from it's confirmation."


@dataclass
class Registration:
    username: str
    password: str
    confirm_password: str
    email: str
    name: str = ""
    surname: str = ""


class MembershipService:
    """Registration, login, password and profile changes, user administration.

    Usage:
        service = MembershipService(engine, user_store, credential_store, role_store, settings)
        user = service.register(Registration("alice", "pw", "pw", "a@example.com"), peer_ip="10.0.0.5")
        outcome = service.login("alice", "pw", client_ip="10.0.0.5")
    """

    def __init__(
        self,
        engine: Engine,
        users: UserStore,
        credentials: CredentialStore,
        roles: RoleStore,
        settings: Settings,
    ) -> None:
        self.engine = engine
        self.users = users
        self.credentials = credentials
        self.roles = roles
        self.settings = settings

    @contextmanager
    def _unit_of_work(self, action: str) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.exception("%s: database error", action)
            raise StoreFailure(f"Could not complete {action}") from exc

    def is_bootstrap_ip(self, peer_ip: str | None) -> bool:
        """True for localhost peers and the configured admin IPs."""
        return bool(peer_ip) and (peer_ip in LOCALHOST_IPS or peer_ip in self.settings.admin_ips)

    def _require_user(self, username: str, conn: Connection | None = None) -> User:
        user = self.users.get_by_username(username, conn) if username else None
        if user is None:
            raise UnknownUser(username)
        return user

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, form: Registration, peer_ip: str | None) -> User:
        """Create a user with its first password and roles.

        "admin" registered from localhost or an admin IP becomes an
        activated Administrator + Member with a non-expiring password.
        Everyone else gets Member and is activated only when auto_activate
        is set.
        """
        try:
            if not form.username:
                raise PasswordValidationError("User is empty")
            if not form.password or form.password != form.confirm_password:
                raise PasswordValidationError(EMPTY_PASSWORD_MESSAGE)
            if not form.email:
                raise PasswordValidationError("E-mail is empty")

            bootstrap = form.username.lower() == BOOTSTRAP_USERNAME and self.is_bootstrap_ip(peer_ip)

            with self.credentials.save_lock, self._unit_of_work("register") as conn:
                if self.users.exists(form.username, conn):
                    raise DuplicateUser(form.username)
                if self.users.email_exists(form.email, conn=conn):
                    raise DuplicateEmail(form.email)
                user_id = self.users.create_user(
                    User(
                        username=form.username,
                        name=form.name,
                        surname=form.surname,
                        email=form.email,
                        password_expires=self.settings.change_interval > 0,
                    ),
                    conn,
                )
                user = self.users.get_by_id(user_id, conn)
                self.credentials.change_password(user, form.password, conn=conn)

                if bootstrap:
                    self.roles.assign_role(user, self.roles.require(ADMINISTRATOR, conn), conn)
                    self.users.activate(user.id, conn)
                    self.credentials.make_unlimited(user.id, conn)
                    self.roles.assign_role(user, self.roles.require(MEMBER, conn), conn)
                else:
                    self.roles.assign_role(user, self.roles.require(MEMBER, conn), conn)
                    if self.settings.auto_activate:
                        self.users.activate(user.id, conn)
                user = self.users.get_by_id(user_id, conn)
        except (PasswordValidationError, StoreFailure) as exc:
            audit("register", str(exc), error=exc, user=form.username, email=form.email)
            raise

        audit("register", "User registered", user=user.username, email=user.email, bootstrap=bootstrap)
        return user

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, client_ip: str) -> LoginOutcome:
        """Validate credentials and stamp last-connect metadata.

        Raises AuthenticationFailure for every rejection; str(exc) is for
        the logs only.
        """
        try:
            if not username or not password:
                raise AuthenticationFailure("empty username or password")
            result = self.credentials.validate_password(username, password, client_ip)
            user = self._require_user(username)
            self.users.record_connect(user.id, client_ip)
        except AuthenticationFailure as exc:
            audit("login", "Login failed.", error=exc, user=username, ip=client_ip)
            raise
        except SQLAlchemyError as exc:
            logger.exception("login: database error")
            audit("login", "Login failed.", error=exc, user=username, ip=client_ip)
            raise StoreFailure("Could not complete login") from exc

        temporary = result is ValidationResult.TEMPORARY_PASSWORD
        audit("login", "User logged in.", user=user.username, ip=client_ip, temporary_password=temporary)
        return LoginOutcome(user=user, temporary_password=temporary)

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def change_password(self, username: str, old: str, new: str, confirm: str, client_ip: str) -> User:
        """Rotate the logged-in user's password after re-checking the old one.

        The old password is validated before the write transaction opens;
        a wrong old password counts toward lockout like any failed login.
        """
        try:
            if not old:
                raise PasswordValidationError("Old password cannot be empty")
            if not new or new != confirm:
                raise PasswordValidationError(EMPTY_PASSWORD_MESSAGE)
            if old == new:
                raise PasswordValidationError("The new password must be different from the current one.")
            try:
                self.credentials.validate_password(username, old, client_ip)
            except AuthenticationFailure as exc:
                logger.info("change-password: old password rejected for %r: %s", username, exc)
                raise PasswordValidationError("Old password is not valid.") from exc

            with self._unit_of_work("change-password") as conn:
                user = self._require_user(username, conn)
                self.credentials.change_password(user, new, conn=conn)
        except (PasswordValidationError, StoreFailure) as exc:
            audit("change-password", str(exc), error=exc, user=username)
            raise

        audit("change-password", "User password changed", user=user.username)
        return user

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get_profile(self, username: str) -> User:
        return self._require_user(username)

    def save_profile(self, username: str, name: str, surname: str, email: str) -> User:
        """Update display name, surname and e-mail of the logged-in user."""
        try:
            if not email:
                raise PasswordValidationError("E-mail is empty")
            with self.credentials.save_lock, self._unit_of_work("profile") as conn:
                user = self._require_user(username, conn)
                if self.users.email_exists(email, exclude_user_id=user.id, conn=conn):
                    raise DuplicateEmail(email)
                self.users.update_profile(user.id, name, surname, email, conn)
                user = self.users.get_by_id(user.id, conn)
        except (PasswordValidationError, StoreFailure) as exc:
            audit("profile", str(exc), error=exc, user=username, email=email)
            raise

        audit("profile", "User profile saved", user=user.username, email=user.email)
        return user

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_users(self, page: int = 1, rows_on_page: int = 20) -> UserPage:
        return self.users.list_users(page, rows_on_page)

    def roles_of(self, username: str) -> list[Role]:
        return self.roles.roles_of(self._require_user(username))

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def unlock_user(self, username: str) -> User:
        with self._unit_of_work("unlock") as conn:
            user = self._require_user(username, conn)
            self.credentials.unlock(user.id, conn)
        audit("unlock", "User unlocked.", user=user.username)
        return user

    def reset_password(self, username: str) -> str:
        """Issue a temporary password and return it for out-of-band delivery."""
        with self._unit_of_work("reset-password") as conn:
            user = self._require_user(username, conn)
            return self.credentials.issue_temporary_password(user, conn)

    def activate_user(self, username: str) -> User:
        with self._unit_of_work("activate") as conn:
            user = self._require_user(username, conn)
            self.users.activate(user.id, conn)
        audit("activate", "User activated.", user=user.username)
        return user

    def grant_role(self, username: str, role_name: str) -> bool:
        with self._unit_of_work("grant-role") as conn:
            user = self._require_user(username, conn)
            return self.roles.assign_role(user, self.roles.require(role_name, conn), conn)

    def revoke_role(self, username: str, role_name: str) -> bool:
        with self._unit_of_work("revoke-role") as conn:
            user = self._require_user(username, conn)
            return self.roles.revoke_role(user, self.roles.require(role_name, conn), conn)
