"""Engine and session helpers for the sync endpoint's database."""
from __future__ import annotations

from typing import Callable, Optional

from sqlmodel import Session, SQLModel, create_engine

from core.settings import ServerSettings, load_server_settings
from models.sync_receipt import SyncReceipt
from models.target_rows import ExerciseDefRow, WorkoutRow, WorkoutTemplateRow


SERVER_TABLES = [
    SyncReceipt.__table__,
    WorkoutRow.__table__,
    ExerciseDefRow.__table__,
    WorkoutTemplateRow.__table__,
]

_server_engine = None


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=False, connect_args=connect_args)


def get_server_engine(settings: Optional[ServerSettings] = None):
    """Return (and lazily create) the engine behind the sync endpoint."""

    global _server_engine
    if _server_engine is None:
        actual = settings or load_server_settings()
        _server_engine = build_engine(actual.database_url)
    return _server_engine


def init_server_db(engine=None) -> None:
    actual_engine = engine or get_server_engine()
    SQLModel.metadata.create_all(actual_engine, tables=SERVER_TABLES)


def session_factory_for(engine) -> Callable[[], Session]:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = [
    "SERVER_TABLES",
    "build_engine",
    "get_server_engine",
    "init_server_db",
    "session_factory_for",
]
