import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from sparkchat.auth import AuthUser, get_authorized_user
from sparkchat.main import create_app

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_ID = "22222222-2222-2222-2222-222222222222"
PROJECT_ID = "33333333-3333-3333-3333-333333333333"


def make_user(user_id: str = USER_ID, email: str = "alice@example.com") -> AuthUser:
    return AuthUser(
        sub=user_id,
        email=email,
        token="test-token",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


def make_conn():
    """An asyncpg connection double; ``conn.transaction()`` is an async context manager."""
    conn = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


def message_row(text="hello", sender=None, message_id=None, project_id=PROJECT_ID, timestamp=None):
    return {
        "id": uuid.UUID(message_id) if message_id else uuid.uuid4(),
        "project_id": uuid.UUID(project_id),
        "message": text,
        "sender": sender or {"_id": USER_ID, "email": "alice@example.com"},
        "timestamp": timestamp or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    }


@pytest.fixture
def conn():
    return make_conn()


@pytest.fixture
def user():
    return make_user()


@pytest.fixture
def app(user):
    application = create_app(init_db=False)
    application.dependency_overrides[get_authorized_user] = lambda: user
    return application


@pytest.fixture
def client(app):
    """Fixture for the TestClient, used to test API endpoints."""
    return TestClient(app)


@pytest.fixture
def anonymous_client():
    return TestClient(create_app(init_db=False))
