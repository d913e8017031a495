"""Settings read from the environment (and an optional ``.env`` file)."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Final, TypeVar
from urllib.parse import quote_plus

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")


logger = logging.getLogger(__name__)

N = TypeVar("N", int, float)


def _env(name: str) -> str:
    return (os.environ.get(name) or "").strip()


def _env_path(name: str, default: Path) -> Path:
    raw = _env(name)
    return Path(raw).expanduser() if raw else default


def _env_number(name: str, default: N, cast: Callable[[str], N], *, allow_zero: bool = False) -> N:
    """Return the numeric setting ``name``; unparsable or out-of-range values give ``default``."""

    raw = _env(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    logger.warning("Ignoring out-of-range %s=%r", name, raw)
    return default


def _env_flag(name: str) -> bool:
    return _env(name).lower() in {"1", "true", "yes", "on"}


def _int(raw: str) -> int:
    return int(float(raw))


LOG_DIR_PATH: Final[Path] = _env_path("LOG_DIR", BASE_DIR / "logs")
LOG_DIR: Final[str] = os.fspath(LOG_DIR_PATH)
LOG_FILE_PATH: Final[Path] = _env_path("LOG_FILE", LOG_DIR_PATH / "catalog_sync.log")
LOG_FILE: Final[str] = os.fspath(LOG_FILE_PATH)

# Any MariaDB setting switches the catalog from the bundled SQLite file.
_MARIADB_KEYS = ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD")

DB_HOST: Final[str] = _env("DB_HOST") or "localhost"
DB_PORT: Final[int] = _env_number("DB_PORT", 3306, _int)
DB_NAME: Final[str] = _env("DB_NAME") or "igdb_catalog"
DB_USER: Final[str] = _env("DB_USER")
DB_PASSWORD: Final[str] = _env("DB_PASSWORD")


def _build_db_dsn() -> str:
    """``DB_DSN`` wins, then MariaDB settings, then ``igdb_catalog.db`` beside this file."""

    explicit = _env("DB_DSN")
    if explicit:
        return explicit
    if any(_env(key) for key in _MARIADB_KEYS):
        credentials = ""
        if DB_USER:
            credentials = DB_USER
            if DB_PASSWORD:
                credentials += f":{quote_plus(DB_PASSWORD)}"
            credentials += "@"
        return f"mariadb://{credentials}{DB_HOST}:{DB_PORT}/{DB_NAME}"
    return f"sqlite:///{(BASE_DIR / 'igdb_catalog.db').as_posix()}"


DB_DSN: Final[str] = _build_db_dsn()
DB_CONNECT_TIMEOUT_SECONDS: Final[float] = _env_number("DB_CONNECT_TIMEOUT", 10.0, float)

DEFAULT_IGDB_USER_AGENT: Final[str] = "IGDB-Catalog-Sync/1.0 (support@example.com)"
IGDB_USER_AGENT: Final[str] = _env("IGDB_USER_AGENT") or DEFAULT_IGDB_USER_AGENT
IGDB_CLIENT_ID: Final[str] = _env("IGDB_CLIENT_ID")
IGDB_CLIENT_SECRET: Final[str] = _env("IGDB_CLIENT_SECRET")
IGDB_ENABLED: bool = True

# Upstream page size; values above IGDB's 500 cap are clamped where used.
IGDB_BATCH_SIZE: Final[int] = _env_number("IGDB_BATCH_SIZE", 500, _int)
IGDB_REQUESTS_PER_SECOND: Final[float] = _env_number("IGDB_REQUESTS_PER_SECOND", 4.0, float)

SYNC_DB_BATCH_SIZE: Final[int] = _env_number("SYNC_DB_BATCH_SIZE", 100, _int)
SYNC_DB_BATCH_PAUSE: Final[float] = _env_number(
    "SYNC_DB_BATCH_PAUSE", 0.1, float, allow_zero=True
)
SYNC_WORKERS: Final[int] = _env_number("SYNC_WORKERS", 1, _int)

CELERY_BROKER_URL: Final[str] = _env("CELERY_BROKER_URL") or "redis://localhost:6379/0"
CELERY_RESULT_BACKEND: Final[str] = _env("CELERY_RESULT_BACKEND") or CELERY_BROKER_URL
CELERY_TASK_ALWAYS_EAGER: Final[bool] = _env_flag("CELERY_TASK_ALWAYS_EAGER")
JOB_REDIS_URL: Final[str] = _env("JOB_REDIS_URL") or CELERY_RESULT_BACKEND

APP_SECRET_KEY: Final[str] = _env("APP_SECRET_KEY") or "dev-secret"


def validate_igdb_credentials() -> bool:
    """Return whether the Twitch client id and secret are set; updates ``IGDB_ENABLED``."""

    global IGDB_ENABLED

    missing = [
        name
        for name, value in (
            ("IGDB_CLIENT_ID", IGDB_CLIENT_ID),
            ("IGDB_CLIENT_SECRET", IGDB_CLIENT_SECRET),
        )
        if not value
    ]
    IGDB_ENABLED = not missing
    if missing:
        logger.error("Missing required IGDB credentials; set %s.", " and ".join(missing))
    return IGDB_ENABLED


__all__ = [
    "APP_SECRET_KEY",
    "BASE_DIR",
    "CELERY_BROKER_URL",
    "CELERY_RESULT_BACKEND",
    "CELERY_TASK_ALWAYS_EAGER",
    "DB_CONNECT_TIMEOUT_SECONDS",
    "DB_DSN",
    "DB_HOST",
    "DB_NAME",
    "DB_PASSWORD",
    "DB_PORT",
    "DB_USER",
    "DEFAULT_IGDB_USER_AGENT",
    "IGDB_BATCH_SIZE",
    "IGDB_CLIENT_ID",
    "IGDB_CLIENT_SECRET",
    "IGDB_ENABLED",
    "IGDB_REQUESTS_PER_SECOND",
    "IGDB_USER_AGENT",
    "JOB_REDIS_URL",
    "LOG_DIR",
    "LOG_DIR_PATH",
    "LOG_FILE",
    "LOG_FILE_PATH",
    "SYNC_DB_BATCH_PAUSE",
    "SYNC_DB_BATCH_SIZE",
    "SYNC_WORKERS",
    "validate_igdb_credentials",
]
