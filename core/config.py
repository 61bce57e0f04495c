"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the service happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
and pass the resulting Settings object into the services that need it.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The API
      lifespan reads it once at startup and injects it into TokenService,
      MFAService, LoginService and LoginAuditRecorder. Services never reach
      back into this module on their own.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning; production mode refuses to start without one.

Security notes:
  [K1] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the keyed backup-code hashes both rely on key entropy.

  [K2] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would silently log every
       user out on restart and break tokens across replicas.

  [K3] Behaviour switches (audit logging, geolocation lookups, secure cookies)
       are explicit fields. Nothing branches on DEBUG except key generation.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or audit/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("spendtracker.config")

MIN_SECRET_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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

    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_ttl_seconds: int = 24 * 60 * 60  # 1 day, no Remember Me
    remember_me_ttl_seconds: int = 7 * 24 * 60 * 60  # 7 days with Remember Me
    # Clock-skew tolerance applied to "exp" when verifying a token.
    token_leeway_seconds: int = 60

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_issuer_name: str = "Spend Tracker"
    backup_code_count: int = 10
    # Adjacent 30-second TOTP steps accepted on each side of "now".
    totp_valid_window: int = 1

    # ------------------------------------------------------------------
    # Login policy
    # ------------------------------------------------------------------

    max_failed_logins: int = 5
    lockout_seconds: int = 15 * 60
    login_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Audit and storage
    # ------------------------------------------------------------------

    audit_enabled: bool = True
    audit_timeout_seconds: float = 2.0
    # Audit writes queued or running at once; beyond this, new rows are dropped.
    audit_max_pending: int = 32
    store_timeout_seconds: float = 5.0
    auth_db_url: str = "sqlite:///spendtracker_auth.db"
    audit_db_url: str = "sqlite:///spendtracker_audit.db"

    # ------------------------------------------------------------------
    # Geolocation (best-effort, disabled unless configured)
    # ------------------------------------------------------------------

    geoip_enabled: bool = False
    geoip_url: str = "https://ipapi.co/{ip}/json/"
    geoip_timeout_seconds: float = 2.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [K1][K2].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < MIN_SECRET_KEY_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_KEY_LENGTH} characters.")
        return self

    def ttl_for(self, remember_me: bool) -> int:
        """Return the fixed session lifetime in seconds for the Remember Me choice."""
        return self.remember_me_ttl_seconds if remember_me else self.session_ttl_seconds


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to the service under test.
    """
    return Settings()
