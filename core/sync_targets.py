"""Tables and actions the sync endpoint accepts."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class SyncTable(str, Enum):
    WORKOUTS = "workouts"
    EXERCISE_DEFS = "exercise_defs"
    WORKOUT_TEMPLATES = "workout_templates"


class SyncAction(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


SUPPORTED_TABLES = frozenset(item.value for item in SyncTable)
SUPPORTED_ACTIONS = frozenset(item.value for item in SyncAction)


def is_supported_table(value: Any) -> bool:
    return isinstance(value, str) and value in SUPPORTED_TABLES


def is_supported_action(value: Any) -> bool:
    return isinstance(value, str) and value in SUPPORTED_ACTIONS


def read_string(value: Any) -> str:
    """Trimmed string value, or an empty string for anything else."""
    return value.strip() if isinstance(value, str) else ""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one executor call, as carried on the wire."""

    applied: bool
    deduped: bool
    idempotency_key: str
    table: str
    action: str

    @property
    def resolved(self) -> bool:
        return self.applied or self.deduped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "deduped": self.deduped,
            "idempotencyKey": self.idempotency_key,
            "table": self.table,
            "action": self.action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncResult":
        return cls(
            applied=bool(data.get("applied")),
            deduped=bool(data.get("deduped")),
            idempotency_key=str(data.get("idempotencyKey") or ""),
            table=str(data.get("table") or ""),
            action=str(data.get("action") or ""),
        )


__all__ = [
    "SUPPORTED_ACTIONS",
    "SUPPORTED_TABLES",
    "SyncAction",
    "SyncResult",
    "SyncTable",
    "is_supported_action",
    "is_supported_table",
    "read_string",
]
