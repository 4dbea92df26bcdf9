from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_POOL_MIN = 1
DEFAULT_POOL_MAX = 10
PRODUCTION_ENVS = {"production", "prod"}


@dataclass(frozen=True)
class DatabaseConfig:
    # Required before the pool can connect
    database_url: Optional[str]

    # "true" => sslmode=require
    database_ssl: bool

    pool_min_size: int = DEFAULT_POOL_MIN
    pool_max_size: int = DEFAULT_POOL_MAX

    app_env: str = "development"

    @property
    def is_production(self) -> bool:
        return self.app_env in PRODUCTION_ENVS


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name, default)
    if v is None:
        return None
    v = v.strip()
    return v if v else None


def _getenv_bool(name: str, default: bool = False) -> bool:
    v = _getenv(name)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "on"}


def _getenv_int(name: str, default: int) -> int:
    v = _getenv(name)
    if v is None:
        return default
    try:
        n = int(v)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {v!r}") from None
    if n < 0:
        raise ValueError(f"{name} must not be negative, got {n}")
    return n


def get_config() -> DatabaseConfig:
    """
    Centralized config: this is the ONLY place env vars are read.
    - Loads `.env` if present (local dev), never overriding real environment values
    - APP_ENV wins over NODE_ENV; both default to development
    """
    load_dotenv(override=False)

    pool_min = _getenv_int("DATABASE_POOL_MIN", DEFAULT_POOL_MIN)
    pool_max = _getenv_int("DATABASE_POOL_MAX", DEFAULT_POOL_MAX)
    if pool_max < max(pool_min, 1):
        raise ValueError(
            f"DATABASE_POOL_MAX ({pool_max}) must be at least DATABASE_POOL_MIN ({pool_min}) and 1"
        )

    app_env = _getenv("APP_ENV") or _getenv("NODE_ENV") or "development"

    return DatabaseConfig(
        database_url=_getenv("DATABASE_URL"),
        database_ssl=_getenv_bool("DATABASE_SSL", False),
        pool_min_size=pool_min,
        pool_max_size=pool_max,
        app_env=app_env.lower(),
    )


def assert_database_config(cfg: DatabaseConfig) -> None:
    if not cfg.database_url:
        raise ValueError("Missing required env var: DATABASE_URL")
