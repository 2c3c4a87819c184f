"""Deterministic payload serialization used for idempotency hashing."""
from __future__ import annotations

import hashlib
import json
from typing import Any


def canonicalize(value: Any) -> Any:
    """Return ``value`` with every mapping rebuilt in sorted key order."""

    if isinstance(value, dict):
        return {str(key): canonicalize(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    return value


def canonical_json(value: Any) -> bytes:
    text = json.dumps(
        canonicalize(value),
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
    )
    return text.encode("utf-8")


def payload_hash(value: Any) -> str:
    """Hex SHA-256 digest of the canonical JSON form of ``value``."""

    return hashlib.sha256(canonical_json(value)).hexdigest()


__all__ = ["canonical_json", "canonicalize", "payload_hash"]
