# ironlog/storage/db.py
from sqlmodel import SQLModel, create_engine, Session

from core.settings import CLIENT_DB_PATH
from models.queued_operation import QueuedOperationRecord
from storage import migrations


CLIENT_TABLES = [QueuedOperationRecord.__table__]

_engine = create_engine(f"sqlite:///{CLIENT_DB_PATH.as_posix()}", echo=False)


def init_db(engine=None):
    actual_engine = engine or _engine
    CLIENT_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(actual_engine, tables=CLIENT_TABLES)
    migrations.run_all(actual_engine)


def get_engine():
    return _engine


def get_session() -> Session:
    return Session(_engine)
