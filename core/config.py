"""
core/config.py -- Centralized configuration for the mail-admin auth core via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, login_delay_step -> LOGIN_DELAY_STEP).

  @model_validator(mode="after"): Cross-field validation once all fields are
      resolved. Dev mode generates a session key with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       session cookie that carries pending-TFA state and the throttle delay,
       so a weak key would let a client forge either.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
import re
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("mailadmin.config")


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file.

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

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///mailadmin.db"
    # Prefix of the fail-ban notification line ("<app> UI: Invalid password ...")
    app_name: str = "mailadmin"

    # ------------------------------------------------------------------
    # Login throttle / fail-ban feed
    # ------------------------------------------------------------------

    redis_url: str = "redis://localhost:6379/0"
    failban_channel: str = "F2B_CHANNEL"
    login_delay_step: float = 0.5

    # ------------------------------------------------------------------
    # Second factors
    # ------------------------------------------------------------------

    totp_issuer: str = "mailadmin"
    # Accepted clock drift in 30 second steps on each side of "now".
    totp_valid_window: int = 1
    # U2F AppID. Must be the https origin the browser sees.
    u2f_app_id: str = "https://localhost"

    # ------------------------------------------------------------------
    # Password policy (mailbox self-service)
    # ------------------------------------------------------------------

    password_policy_regex: str = ".{4,}"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Session signing key policy [M6][M7].

        DEBUG=true without a key: generate one and warn. Every restart then
        signs cookies with a new key, so all sessions (and pending second
        factors) are dropped.

        Otherwise a key is mandatory, and in either mode it must be at least
        32 characters.
        """
        if not self.secret_key and self.debug:
            self.secret_key = secrets.token_hex(32)
            logger.warning("No SECRET_KEY set; signing sessions with a throwaway key (DEBUG mode).")
        elif not self.secret_key:
            raise ValueError(
                "SECRET_KEY is required unless DEBUG=true. It signs the session cookie; "
                "set it in the environment or in .env."
            )
        if len(self.secret_key) < 32:
            raise ValueError(f"SECRET_KEY must be at least 32 characters, got {len(self.secret_key)}.")
        return self

    @model_validator(mode="after")
    def validate_password_policy(self) -> "Settings":
        """Fail at startup rather than on the first password change."""
        try:
            re.compile(self.password_policy_regex)
        except re.error as exc:
            raise ValueError(f"PASSWORD_POLICY_REGEX is not a valid regular expression: {exc}") from exc
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings.

    Tests that need different environment values construct Settings(...)
    directly or call get_settings.cache_clear().
    """
    return Settings()
