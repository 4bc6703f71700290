"""
core/config.py -- Molunzaka settings (environment + optional .env file).

Every tunable lives on Settings: database URLs, the profile cap, reset token
lifetime, the default role, the pwned-password switch, rate limits and SMTP.
Field names map to upper-case env vars (profile_limit -> PROFILE_LIMIT).
Read them through get_settings(), which builds Settings once and caches it;
no application module reads os.environ itself.

Secret key policy:
  SECRET_KEY signs nothing directly but keys three HMACs: access token hashes,
  password reset token hashes and email verification proofs. A short key
  weakens all three, so keys under 32 chars are rejected.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or profiles/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("molunzaka.config")


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

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # Empty string -> SQLite file next to the owning store module.
    auth_database_url: str = ""
    profiles_database_url: str = ""

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    default_role: str = "Subscriber"
    reset_token_expire_seconds: int = 3600
    password_pwned_check: bool = True
    pwned_api_url: str = "https://api.pwnedpasswords.com/range/"

    # Frontend base URL used to build links inside notification emails.
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    profile_limit: int = 5

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    auth_rate_limit: str = "60/minute"

    # ------------------------------------------------------------------
    # Outbound mail (optional -- empty smtp_host logs messages instead)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "no-reply@molunzaka.local"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens and verification links will not survive a restart.

        Production mode: refuse to start if SECRET_KEY is missing, since every
            stored token hash would silently stop matching after a restart.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued tokens will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.profile_limit < 1:
            raise ValueError("PROFILE_LIMIT must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
