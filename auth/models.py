"""
auth/models.py -- Domain dataclasses for membership entities.

Pattern: Data class (pure data container, zero logic). The stores build these
from rows via their _row_to_* mappers; services and routes pass them around.

Timestamps stay as the ISO strings the database holds (see core/database.py).

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


@dataclass
class User:
    """A registered member.

    username keeps the casing typed at registration; every lookup goes
    through the lower-cased shadow column, so "Alice" and "alice" are the
    same account.

    activated / locked_out / valid are the three gates checked before the
    password hash is even compared.
    """

    username: str
    id: int | None = None
    name: str = ""
    surname: str = ""
    email: str = ""
    creation_time: str | None = None
    last_update: str | None = None
    activated: bool = False
    activation_time: str | None = None
    locked_out: bool = False
    valid: bool = True
    password_expires: bool = False
    failed_password_attempts: int = 0
    first_failed_password: str | None = None
    last_failed_password: str | None = None
    last_password_change: str | None = None
    last_connect_time: str | None = None
    last_connect_ip: str | None = None


@dataclass
class PasswordCredential:
    """One version of a user's password.

    valid_until is None for an open-ended credential. Closed rows are kept
    as history for the reuse check and never rewritten.
    """

    user_id: int
    password_hash: str
    salt: str
    valid_from: str
    id: int | None = None
    valid_until: str | None = None
    temporary: bool = False


@dataclass
class Role:
    name: str
    id: int | None = None


@dataclass
class RoleAssignment:
    user_id: int
    role_id: int
    valid_from: str
    valid_until: str | None = None


class ValidationResult(enum.Enum):
    """Successful outcomes of CredentialStore.validate_password().

    Failures are raised as AuthenticationFailure, never returned.
    """

    OK = "ok"
    TEMPORARY_PASSWORD = "temporary_password"


@dataclass
class LoginOutcome:
    user: User
    temporary_password: bool = False


@dataclass
class UserPage:
    """One page of the admin user listing."""

    users: list[User]
    page: int
    rows_on_page: int
    total: int

    @property
    def page_count(self) -> int:
        if self.rows_on_page <= 0:
            return 1
        return max(1, -(-self.total // self.rows_on_page))
