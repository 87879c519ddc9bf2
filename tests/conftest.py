import os

os.environ["LIBRARY_DB"] = "sqlite://"

import pytest
from datetime import datetime
from fastapi.testclient import TestClient

from church_library.core.database import Base, SessionLocal, engine
from church_library.main import app
from church_library.api import routes

NOW = datetime(2024, 1, 10, 9, 30)


class Clock:
    def __init__(self, now):
        self.now = now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(clock):
    app.dependency_overrides[routes.get_now] = lambda: clock.now
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
