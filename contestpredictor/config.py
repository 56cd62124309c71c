"""
Application Configuration.

Pydantic Settings model for the Contest Predictor authentication core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import ClassVar, Optional

from pydantic_settings import BaseSettings
from pydantic import SecretStr, model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Remote identity provider ---
    PROVIDER_ENABLED: bool = True
    PROVIDER_API_KEY: SecretStr = SecretStr("")
    PROVIDER_AUTH_BASE_URL: str = "https://identitytoolkit.googleapis.com/v1"
    PROVIDER_TOKEN_URL: str = "https://securetoken.googleapis.com/v1/token"
    PROVIDER_DATABASE_URL: str = ""

    # Values shipped in the sample properties file; treated as "not set".
    API_KEY_PLACEHOLDER: ClassVar[str] = "YOUR_API_KEY_HERE"
    DATABASE_URL_PLACEHOLDER: ClassVar[str] = "https://YOUR_PROJECT_ID.firebaseio.com"

    # --- Network ---
    HTTP_TIMEOUT_S: float = 10.0
    WORKER_POOL_SIZE: int = 4

    # --- Local persistence ---
    SQLITE_PATH: Path = Path("contest_predictor.db")

    # --- Auth policy ---
    MIN_PASSWORD_LENGTH: int = 6
    LOCAL_SESSION_DAYS: int = 30
    OTP_TTL_MINUTES: int = 10

    # --- Session token encryption at rest ---
    SESSION_TOKEN_ENCRYPTION: bool = True
    SESSION_SALT_PATH: Path = Path.home() / ".contest_predictor_session_salt"
    SESSION_KDF_ITERATIONS: int = 600_000

    # --- Logging ---
    LOG_FILE: str = "contest_predictor.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when the remote provider is unusable.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        and a disabled provider turns every credential operation into a
        local-only one.  Operators should see that on first run.
        """
        _log = logging.getLogger("contestpredictor.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found. All configuration loaded from "
                "environment variables or defaults."
            )

        if not self.provider_configured:
            _log.warning(
                "Remote identity provider is disabled or has no API key. "
                "Authentication will use the local credential store only."
            )
        elif not self.otp_store_configured:
            _log.warning(
                "PROVIDER_DATABASE_URL is empty. Password-reset codes will "
                "be kept in the local database."
            )

        return self

    # --- Derived flags ---
    @property
    def provider_configured(self) -> bool:
        """``True`` when remote calls are allowed at all."""
        key = self.PROVIDER_API_KEY.get_secret_value().strip()
        return (
            self.PROVIDER_ENABLED
            and bool(key)
            and key != self.API_KEY_PLACEHOLDER
        )

    @property
    def otp_store_configured(self) -> bool:
        """``True`` when the remote key-value store for OTPs is usable."""
        url = self.PROVIDER_DATABASE_URL.strip()
        return (
            self.provider_configured
            and bool(url)
            and url.rstrip("/") != self.DATABASE_URL_PLACEHOLDER
        )


# ---------------------------------------------------------------------------
# Module-level factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` instance.

    On first call, creates an ``AppConfig`` (reading from ``.env``).
    Subsequent calls return the same instance.  Uses check-lock-check so
    the fast path stays lock-free while first initialisation is
    thread-safe.

    Only the entry point should call this; everything else receives the
    config through its constructor.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
