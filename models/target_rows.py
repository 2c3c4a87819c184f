"""Rows the sync endpoint writes to.

The business columns belong to the clients; the server only stores the
effective row as JSON next to the ownership and versioning columns.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class TargetRowBase(SQLModel):
    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    data: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON, nullable=False)
    version: int = Field(default=1)
    updated_at: datetime = Field(default_factory=utc_now)


class WorkoutRow(TargetRowBase, table=True):
    __tablename__ = "workouts"


class ExerciseDefRow(TargetRowBase, table=True):
    __tablename__ = "exercise_defs"


class WorkoutTemplateRow(TargetRowBase, table=True):
    __tablename__ = "workout_templates"


__all__ = ["ExerciseDefRow", "TargetRowBase", "WorkoutRow", "WorkoutTemplateRow"]
