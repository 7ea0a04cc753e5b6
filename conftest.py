import os

# Must be set before config/db are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["API_BEARER_TOKEN"] = "2BH52wAHrAymR7wP3CASt"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

import models  # noqa: F401
from config import Settings
from db import Base, SessionLocal, engine
from lockout import LockoutPolicy, SqlLockoutStore
from main import create_app

VALID_TOKEN = "2BH52wAHrAymR7wP3CASt"


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 6, 4, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return SqlLockoutStore(SessionLocal, LockoutPolicy(), clock)


@pytest.fixture
def app_settings():
    return Settings(API_BEARER_TOKEN=VALID_TOKEN, TRUST_X_FORWARDED_FOR=True)


@pytest.fixture
def app(app_settings, clock):
    return create_app(app_settings, clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)
