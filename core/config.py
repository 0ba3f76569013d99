"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead, or receive the
Settings instance that the application lifespan stores on app.state.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, min_capitals -> MIN_CAPITALS).

  @model_validator(mode="after"): DEBUG-conditional SECRET_KEY logic. Dev mode
      generates a key with a warning, production mode refuses to start without one.

Password rules:
  The password policy thresholds are flat fields so each one maps to a single
  env var. password_rules() snapshots them into a frozen PasswordRules value
  that the credential store receives at construction. A zero threshold
  disables the corresponding check.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/ or access/.
"""

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("membership.config")


@dataclass(frozen=True)
class PasswordRules:
    """Snapshot of the password policy.

    change_interval is in days, password_fail_interval in minutes. A value
    of 0 disables the matching rule (no expiry, no lockout, no history check,
    no minimum).
    """

    change_interval: int = 0
    password_fail_interval: int = 15
    max_allowed_failed_attempts: int = 3
    not_repeat_last_x_passwords: int = 0
    min_characters: int = 0
    min_letters: int = 0
    min_capitals: int = 0
    min_digits: int = 0
    min_non_alpha_numerics: int = 0
    allow_repetitive_characters: bool = True
    can_contain_username: bool = True


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    app_name: str = "MembershipSite"
    app_version: str = "0.1.0"
    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = ""
    port: int = 8080
    default_language: str = "EN"
    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost"])

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 8 * 3600
    post_rate_limit: str = "60/minute"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    auto_activate: bool = False
    # Peers allowed to bootstrap the "admin" account besides localhost.
    admin_ips: list[str] = Field(default_factory=list)
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Password rules
    # ------------------------------------------------------------------

    change_interval: int = 0
    password_fail_interval: int = 15
    max_allowed_failed_attempts: int = 3
    not_repeat_last_x_passwords: int = 5
    min_characters: int = 8
    min_letters: int = 2
    min_capitals: int = 1
    min_digits: int = 1
    min_non_alpha_numerics: int = 1
    allow_repetitive_characters: bool = False
    can_contain_username: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.bcrypt_rounds < 4 or self.bcrypt_rounds > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self

    def password_rules(self) -> PasswordRules:
        return PasswordRules(
            change_interval=self.change_interval,
            password_fail_interval=self.password_fail_interval,
            max_allowed_failed_attempts=self.max_allowed_failed_attempts,
            not_repeat_last_x_passwords=self.not_repeat_last_x_passwords,
            min_characters=self.min_characters,
            min_letters=self.min_letters,
            min_capitals=self.min_capitals,
            min_digits=self.min_digits,
            min_non_alpha_numerics=self.min_non_alpha_numerics,
            allow_repetitive_characters=self.allow_repetitive_characters,
            can_contain_username=self.can_contain_username,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and hand it to the component under test.
    """
    return Settings()
