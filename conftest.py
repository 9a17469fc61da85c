import os

# Must be set before config/core.db are imported.
os.environ["TESTING"] = "true"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STORAGE_BACKEND", "memory")

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers mappers on Base)
from core.broker import InMemoryBroker
from core.db import Base, get_db
from core.realtime import build_realtime, get_realtime
from routers.dependencies import get_current_user_id, get_stream_user_id
from routers.messaging.api import router as messaging_router
from utils.storage import InMemoryStorage

# One shared in-memory database per test; StaticPool keeps a single connection
# so every session (including the presence sweeper's) sees the same data.
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def test_db():
    Base.metadata.create_all(bind=test_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def realtime():
    return build_realtime(
        broker=InMemoryBroker(),
        broker_kind="memory",
        session_factory=TestingSessionLocal,
        storage=InMemoryStorage(),
        presence_enabled=True,
    )


class UserSwitch:
    """Lets a test act as different users against one app."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    def __call__(self) -> str:
        return self.user_id


@pytest.fixture
def current_user():
    return UserSwitch("user-a")


@pytest.fixture
def app(test_db, realtime, current_user):
    app = FastAPI()
    app.include_router(messaging_router)
    app.state.realtime = realtime
    # Pumps run on the TestClient's loop; stop them there.
    app.add_event_handler("shutdown", realtime.fanout.close)

    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_id] = current_user
    app.dependency_overrides[get_stream_user_id] = current_user
    app.dependency_overrides[get_realtime] = lambda: realtime
    yield app
    app.dependency_overrides = {}


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
