from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from evergreen_core.images import DEFAULT_MAX_BYTES

logger = logging.getLogger(__name__)

BACKEND_DIR = Path(__file__).resolve().parent.parent


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("Ignoring non-integer %s; using %s", name, default)
        return default


@dataclass
class AppConfig:
    session_secret: str
    session_cookie_secure: bool
    session_max_age: int
    google_client_id: str
    google_client_secret: str
    google_callback_url: str
    data_dir: Path
    public_dir: Path
    max_upload_bytes: int
    log_level: str
    app_env: str

    @property
    def expose_error_detail(self) -> bool:
        return self.app_env == "development"

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @classmethod
    def from_env(cls) -> "AppConfig":
        session_secret = os.getenv("SESSION_SECRET", "")
        if not session_secret:
            logger.warning("SESSION_SECRET is not set; sessions will not survive a restart")
            session_secret = secrets.token_urlsafe(32)

        return cls(
            session_secret=session_secret,
            session_cookie_secure=_env_flag("SESSION_COOKIE_SECURE"),
            session_max_age=_env_int("SESSION_MAX_AGE", 24 * 60 * 60),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            google_callback_url=os.getenv("GOOGLE_CALLBACK_URL", "/auth/google/callback"),
            data_dir=Path(os.getenv("EVERGREEN_DATA_DIR") or BACKEND_DIR / "data"),
            public_dir=Path(os.getenv("EVERGREEN_PUBLIC_DIR") or BACKEND_DIR / "public"),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_BYTES),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            app_env=os.getenv("APP_ENV", "production").strip().lower(),
        )


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return AppConfig.from_env()
