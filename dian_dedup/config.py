"""Configuration loader for the reconciliation service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote


def _get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is not None:
        value = value.strip()
        if value == "":
            return default
        return value
    return default


def _get_int(key: str, default: int) -> int:
    value = _get_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {key} must be an integer") from exc


def _get_float(key: str, default: float) -> float:
    value = _get_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {key} must be a number") from exc


def _get_decimal(key: str, default: str) -> Decimal:
    value = _get_env(key, default)
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Environment variable {key} must be a decimal number") from exc


@dataclass(slots=True)
class AppConfig:
    database_url: str
    auth_base_url: str
    download_base_url: str
    session_dir: Path
    connect_timeout: float
    http_timeout: float
    auth_timeout: float
    amount_tolerance: Decimal
    active_state: int
    inactive_state: int
    http_user_agent: str
    log_level: str
    cors_allowed_origins: str
    log_format: str = "json"


LOG_FORMATS = {"json", "console"}
DEFAULT_AUTH_BASE_URL = "https://catalogo-vpfe.dian.gov.co/User/AuthToken"
DEFAULT_DOWNLOAD_BASE_URL = "https://catalogo-vpfe.dian.gov.co/Document/DownloadZipFiles"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
)


def _build_database_url() -> Optional[str]:
    """Build a SQLAlchemy URL from discrete DB_* variables."""
    database = _get_env("DB_DATABASE")
    if not database:
        return None

    host = _get_env("DB_HOST", "localhost")
    port = _get_env("DB_PORT", "3306")
    user = quote(_get_env("DB_USERNAME", "root"), safe="")
    password = quote(_get_env("DB_PASSWORD", ""), safe="")
    driver = _get_env("DB_DRIVER", "mysql+pymysql")
    return f"{driver}://{user}:{password}@{host}:{port}/{database}?charset=utf8mb4"


def load_config() -> AppConfig:
    database_url = _get_env("DATABASE_URL") or _build_database_url()
    if not database_url:
        raise ValueError("DATABASE_URL or DB_DATABASE must be set")

    auth_base_url = _get_env("DIAN_AUTH_BASE_URL", DEFAULT_AUTH_BASE_URL)
    download_base_url = _get_env("DIAN_DOWNLOAD_BASE_URL", DEFAULT_DOWNLOAD_BASE_URL)
    session_dir = Path(_get_env("SESSION_DIR", "sessions"))

    connect_timeout = _get_float("HTTP_CONNECT_TIMEOUT_SECONDS", 15.0)
    http_timeout = _get_float("HTTP_TIMEOUT_SECONDS", 120.0)
    auth_timeout = _get_float("HTTP_AUTH_TIMEOUT_SECONDS", 30.0)

    amount_tolerance = _get_decimal("AMOUNT_TOLERANCE", "0.10")
    if amount_tolerance < 0:
        raise ValueError("AMOUNT_TOLERANCE must not be negative")

    log_format = _get_env("LOG_FORMAT", "json").lower()
    if log_format not in LOG_FORMATS:
        raise ValueError(f"LOG_FORMAT must be one of: {', '.join(sorted(LOG_FORMATS))}")

    active_state = _get_int("ACTIVE_STATE_ID", 1)
    inactive_state = _get_int("INACTIVE_STATE_ID", 0)
    if active_state == inactive_state:
        raise ValueError("ACTIVE_STATE_ID and INACTIVE_STATE_ID must differ")

    return AppConfig(
        database_url=database_url,
        auth_base_url=auth_base_url,
        download_base_url=download_base_url,
        session_dir=session_dir,
        connect_timeout=connect_timeout,
        http_timeout=http_timeout,
        auth_timeout=auth_timeout,
        amount_tolerance=amount_tolerance,
        active_state=active_state,
        inactive_state=inactive_state,
        http_user_agent=_get_env("HTTP_USER_AGENT", DEFAULT_USER_AGENT),
        log_level=_get_env("LOG_LEVEL", "INFO").upper(),
        cors_allowed_origins=_get_env("CORS_ALLOWED_ORIGINS", "*"),
        log_format=log_format,
    )


def parse_origins(value: Optional[str]) -> List[str]:
    origins = [origin.strip() for origin in (value or "").split(",") if origin.strip()]
    return origins or ["*"]


def cors_origins_from_env() -> List[str]:
    return parse_origins(_get_env("CORS_ALLOWED_ORIGINS", "*"))
