import os

# settings are read at import time; tests never touch a real database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("NOTIFICATION_BACKEND", "log")

import pytest

# FORCE model registration
import redevelopment.models  # noqa

from redevelopment.db.base import Base
from redevelopment.db.session import build_engine, build_sessionmaker
from redevelopment.services.notifications import InMemoryDispatcher


@pytest.fixture(scope="function")
def engine():
    # fresh in-memory database per test
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db(engine):
    session = build_sessionmaker(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def dispatcher():
    return InMemoryDispatcher()
