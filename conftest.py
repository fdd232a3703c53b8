"""
Pytest configuration and shared fixtures.

Environment variables are set BEFORE any wachat imports so that
``wachat.config.settings`` and the storage engine resolve without a .env file.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_wachat.db")
os.environ.setdefault("LOG_LEVEL", "INFO")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from wachat.config import get_settings
get_settings.cache_clear()

from wachat.main import app
from wachat.realtime import EVENT_NAMES, broker
from wachat.storage import Base, SessionLocal, engine


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Session on freshly created tables, dropped after the test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def published():
    """Capture every event published on the shared broker during a test."""
    received = []
    subscriptions = [
        broker.subscribe(name, lambda payload, name=name: received.append((name, payload)))
        for name in EVENT_NAMES
    ]
    yield received
    for subscription in subscriptions:
        broker.unsubscribe(subscription)
