"""
auth/errors.py -- Exception hierarchy for the membership and access layers.

Everything derives from MembershipError so the web layer can catch one base
class at the dispatcher seam. What reaches the user depends on the subclass:

  PasswordValidationError  message shown verbatim (policy / form problems)
  AuthenticationFailure    detail logged, user sees LOGIN_FAILED_MESSAGE
  AccessDenied             rendered as a generic 404
  StoreFailure             logged with traceback, transaction rolled back
"""

LOGIN_FAILED_MESSAGE = "Unknown user or wrong password."


class MembershipError(Exception):
    pass


class PasswordValidationError(MembershipError):
    """Input or password policy violation. The message is user-facing."""


class DuplicateUser(PasswordValidationError):
    def __init__(self, username: str) -> None:
        super().__init__(f'duplicate user "{username}"')
        self.username = username


class DuplicateEmail(PasswordValidationError):
    def __init__(self, email: str) -> None:
        super().__init__(f'e-mail "{email}" is already registered')
        self.email = email


class UnknownUser(PasswordValidationError):
    def __init__(self, username: str) -> None:
        super().__init__(f'unknown user "{username}"')
        self.username = username


class AuthenticationFailure(MembershipError):
    """Login rejected. str(exc) is the internal reason and must not be shown."""


class CredentialNotFound(AuthenticationFailure):
    """No such user, or the user has no credential valid right now."""


class AccessDenied(MembershipError):
    """No authorized rule for (method, url). Covers both unknown and forbidden."""


class UnknownRole(MembershipError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown role {name!r}")
        self.name = name


class StoreFailure(MembershipError):
    """A database error surfaced from a store, wrapping the SQLAlchemyError."""
