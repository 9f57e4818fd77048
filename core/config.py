"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for sessionguard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Used for the DEBUG-conditional SECRET_KEY logic and for the
      access/refresh lifetime ordering.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright when an HMAC
       algorithm is selected. A short key weakens every signed token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY under
       HS256/HS512 is a hard startup failure. RS256 does not need one: its key
       material lives in PEM files under KEY_DIR.

Layer rule: core/ is the kernel. This module may not import from auth/ or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessionguard.db'}"


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
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    signing_algorithm: Literal["HS256", "HS512", "RS256"] = "HS256"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises when an HMAC algorithm is used.
    secret_key: str = ""
    # RS256 keypair location: <key_dir>/<key_name>.rsa and <key_name>.rsa.pub
    key_dir: str = "assets/keys"
    key_name: str = "jwt"

    # ------------------------------------------------------------------
    # Lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 30 * 24 * 3600
    jti_max_attempts: int = 5

    # ------------------------------------------------------------------
    # Revocation store
    # ------------------------------------------------------------------

    revocation_backend: Literal["sql", "redis"] = "sql"
    database_url: str = _DEFAULT_DB_URL
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = ""

    # ------------------------------------------------------------------
    # Channel-scoped tokens (real-time pub/sub authorization)
    # ------------------------------------------------------------------

    scoped_token_secret: str = ""
    scoped_token_channels: list[str] = ["personal:broadcast"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy for HMAC signing [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.
        """
        if self.signing_algorithm == "RS256":
            return self
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not verify after a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required for HS256/HS512 in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Access tokens must expire strictly before the refresh tokens that renew them."""
        if self.access_token_expire_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be positive.")
        if self.access_token_expire_seconds >= self.refresh_token_expire_seconds:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be shorter than REFRESH_TOKEN_EXPIRE_SECONDS.")
        if self.jti_max_attempts < 1:
            raise ValueError("JTI_MAX_ATTEMPTS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
