"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "IronLog"


DATA_DIR = get_default_data_dir(APP_NAME)
STORAGE_DIR = DATA_DIR / "storage"
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, STORAGE_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


CLIENT_DB_PATH = STORAGE_DIR / "queue.db"
SERVER_DB_PATH = STORAGE_DIR / "server.db"
SYNC_LOG_PATH = LOG_DIR / "sync.log"
SERVER_LOG_PATH = LOG_DIR / "server.log"


@dataclass(frozen=True)
class SyncSettings:
    enabled: bool = True
    server_url: str = "http://127.0.0.1:54321"
    endpoint_path: str = "/functions/v1/sync-operation"
    request_timeout_sec: float = 15.0
    # direct writes retry a few times in-process before falling back to the queue
    direct_write_attempts: int = 3
    direct_write_initial_delay_sec: float = 0.25
    flush_call_attempts: int = 1
    flush_call_initial_delay_sec: float = 0.25
    retry_base_delay_sec: float = 1.0
    retry_max_exponent: int = 6
    max_error_length: int = 1000


SYNC = SyncSettings()


@dataclass(frozen=True)
class ServerSettings:
    database_url: str
    jwt_secret: Optional[str]
    jwt_issuer: str = "supabase"
    jwt_audience: str = "authenticated"
    cors_origins: tuple[str, ...] = ("*",)
    max_error_length: int = 2000


def load_server_settings(env: Optional[Mapping[str, str]] = None) -> ServerSettings:
    """Build :class:`ServerSettings` from environment variables."""

    environ = dict(env if env is not None else os.environ)
    origins = environ.get("CORS_ORIGINS") or "*"
    return ServerSettings(
        database_url=environ.get("DATABASE_URL") or f"sqlite:///{SERVER_DB_PATH.as_posix()}",
        jwt_secret=environ.get("JWT_SECRET") or environ.get("SUPABASE_JWT_SECRET"),
        jwt_issuer=environ.get("JWT_ISSUER") or "supabase",
        jwt_audience=environ.get("JWT_AUDIENCE") or "authenticated",
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
    )


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "STORAGE_DIR",
    "LOG_DIR",
    "CLIENT_DB_PATH",
    "SERVER_DB_PATH",
    "SYNC_LOG_PATH",
    "SERVER_LOG_PATH",
    "SYNC",
    "ServerSettings",
    "SyncSettings",
    "get_default_data_dir",
    "load_server_settings",
]
