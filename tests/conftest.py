from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import models  # noqa: F401  registers every table on SQLModel.metadata
from server.auth import IdentityVerifier, issue_token
from server.executor import SyncOperationExecutor


SECRET = "test-secret-with-enough-bytes-for-hs256"


@pytest.fixture()
def engine():
    # one shared connection so the threadpool used by the HTTP layer sees the same database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    def factory():
        return Session(engine)

    return factory


@pytest.fixture()
def verifier():
    return IdentityVerifier(SECRET)


@pytest.fixture()
def token():
    return issue_token("user-1", SECRET)


@pytest.fixture()
def other_token():
    return issue_token("user-2", SECRET)


@pytest.fixture()
def executor(verifier, session_factory):
    return SyncOperationExecutor(verifier, session_factory)
