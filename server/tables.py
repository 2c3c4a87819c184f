"""Row-level writes into the synced tables."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Type

from sqlmodel import Session

from core.errors import InvalidRequest
from core.sync_targets import SyncAction, SyncTable, read_string
from datetime_utils import utc_now
from models.target_rows import ExerciseDefRow, TargetRowBase, WorkoutRow, WorkoutTemplateRow


TABLE_MODELS: Dict[str, Type[TargetRowBase]] = {
    SyncTable.WORKOUTS.value: WorkoutRow,
    SyncTable.EXERCISE_DEFS.value: ExerciseDefRow,
    SyncTable.WORKOUT_TEMPLATES.value: WorkoutTemplateRow,
}


def model_for(table: str) -> Type[TargetRowBase]:
    try:
        return TABLE_MODELS[table]
    except KeyError:
        raise InvalidRequest("Unsupported table") from None


def effective_row(user_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    row_id = read_string(payload.get("id"))
    if not row_id:
        raise InvalidRequest("id is required for upsert")
    return {**payload, "id": row_id, "user_id": user_id}


class TableWriter:
    """Applies one upsert or delete inside the caller's session.

    Nothing here commits; the executor commits the mutation together with the
    receipt flip.
    """

    def apply(
        self,
        session: Session,
        user_id: str,
        table: str,
        action: str,
        payload: Mapping[str, Any],
    ) -> None:
        model = model_for(table)
        if action == SyncAction.DELETE.value:
            self._delete(session, model, user_id, payload)
        elif action == SyncAction.UPSERT.value:
            self._upsert(session, model, user_id, payload)
        else:
            raise InvalidRequest("Unsupported action")

    def _upsert(self, session: Session, model, user_id: str, payload: Mapping[str, Any]) -> None:
        row = effective_row(user_id, payload)
        existing = session.get(model, row["id"])
        if existing is None:
            session.add(model(id=row["id"], user_id=user_id, data=row, version=1))
            return
        if existing.user_id != user_id:
            raise InvalidRequest("id belongs to another user")
        existing.data = row
        existing.version += 1
        existing.updated_at = utc_now()
        session.add(existing)

    def _delete(self, session: Session, model, user_id: str, payload: Mapping[str, Any]) -> None:
        row_id = read_string(payload.get("id"))
        if not row_id:
            raise InvalidRequest("id is required for delete")
        existing = session.get(model, row_id)
        if existing is None or existing.user_id != user_id:
            return
        session.delete(existing)


__all__ = ["TABLE_MODELS", "TableWriter", "effective_row", "model_for"]
