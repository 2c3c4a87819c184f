"""Rotating file loggers shared by the client and the server."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.settings import SERVER_LOG_PATH, SYNC_LOG_PATH


def ensure_logger(name: str, path: Path | str, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def sync_logger() -> logging.Logger:
    return ensure_logger("ironlog.sync", SYNC_LOG_PATH)


def server_logger() -> logging.Logger:
    return ensure_logger("ironlog.server", SERVER_LOG_PATH)


__all__ = ["ensure_logger", "server_logger", "sync_logger"]
