"""Maps failures of server calls to a queue disposition.

This is the only place that interprets raw transport or server errors; the
flush loop and the direct write path both act on :func:`disposition` alone.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Optional

import httpx

from core.errors import InvalidRequest, KeyConflict, StorageFailure, TransientInfra, Unauthorized


class Disposition(str, Enum):
    RETRY = "retry"
    DROP = "drop"
    HALT = "halt"


AUTH_STATUS = {401, 403}
RETRYABLE_STATUS = {408, 425, 429}
PAYLOAD_STATUS = {400, 409, 413, 422}


def status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_auth_error(error: BaseException) -> bool:
    if isinstance(error, Unauthorized):
        return True
    return status_code(error) in AUTH_STATUS


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, (TransientInfra, StorageFailure)):
        return True
    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return True
    code = status_code(error)
    if code is None:
        return False
    return code in RETRYABLE_STATUS or 500 <= code <= 599


def is_payload_error(error: BaseException) -> bool:
    if isinstance(error, (InvalidRequest, KeyConflict)):
        return True
    if isinstance(error, (json.JSONDecodeError, UnicodeDecodeError, httpx.DecodingError)):
        return True
    return status_code(error) in PAYLOAD_STATUS


def disposition(error: BaseException) -> Disposition:
    if is_auth_error(error):
        return Disposition.HALT
    if is_retryable_error(error):
        return Disposition.RETRY
    if is_payload_error(error):
        return Disposition.DROP
    return Disposition.RETRY


def describe(error: BaseException) -> str:
    """Short diagnostic text for logs and ``last_error`` columns."""

    if isinstance(error, httpx.HTTPStatusError):
        detail = ""
        try:
            body = error.response.json()
            if isinstance(body, dict) and body.get("error"):
                detail = str(body["error"])
        except (json.JSONDecodeError, UnicodeDecodeError):
            detail = error.response.text[:200]
        return f"HTTP {error.response.status_code}: {detail}".rstrip(": ")
    message = str(error) or error.__class__.__name__
    return f"{error.__class__.__name__}: {message}"


__all__ = [
    "Disposition",
    "describe",
    "disposition",
    "is_auth_error",
    "is_payload_error",
    "is_retryable_error",
    "status_code",
]
