import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from sparkchat.auth import decode_access_token, hash_password

from conftest import OTHER_ID, USER_ID


def user_row(email="alice@example.com", password="secret", user_id=USER_ID):
    return {
        "id": uuid.UUID(user_id),
        "email": email,
        "password": hash_password(password),
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }


def test_register_returns_user_and_token(anonymous_client, conn):
    conn.fetchrow.return_value = user_row()

    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = anonymous_client.post(
            "/users/register",
            json={"email": "  Alice@Example.com ", "password": "secret"},
        )

    assert response.status_code == 201
    body = response.json()
    assert body["user"] == {"_id": USER_ID, "email": "alice@example.com"}
    assert decode_access_token(body["token"]).sub == USER_ID
    assert "password" not in body["user"]

    # email is normalized and the password is hashed before storage
    args = conn.fetchrow.call_args.args
    assert args[1] == "alice@example.com"
    assert args[2] != "secret"
    conn.close.assert_awaited_once()


def test_register_duplicate_email(anonymous_client, conn):
    conn.fetchrow.return_value = None

    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = anonymous_client.post(
            "/users/register",
            json={"email": "alice@example.com", "password": "secret"},
        )

    assert response.status_code == 409


def test_register_rejects_invalid_email(anonymous_client):
    response = anonymous_client.post("/users/register", json={"email": "not-an-email", "password": "secret"})
    assert response.status_code == 422


def test_login_with_valid_credentials(anonymous_client, conn):
    conn.fetchrow.return_value = user_row(password="secret")

    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = anonymous_client.post(
            "/users/login",
            json={"email": "alice@example.com", "password": "secret"},
        )

    assert response.status_code == 200
    assert response.json()["user"]["_id"] == USER_ID


def test_login_with_wrong_password(anonymous_client, conn):
    conn.fetchrow.return_value = user_row(password="secret")

    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = anonymous_client.post(
            "/users/login",
            json={"email": "alice@example.com", "password": "wrong"},
        )

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"


def test_login_unknown_user(anonymous_client, conn):
    conn.fetchrow.return_value = None

    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = anonymous_client.post(
            "/users/login",
            json={"email": "nobody@example.com", "password": "secret"},
        )

    assert response.status_code == 401


def test_profile(client, conn):
    conn.fetchrow.return_value = {"id": uuid.UUID(USER_ID), "email": "alice@example.com"}

    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = client.get("/users/me")

    assert response.status_code == 200
    assert response.json() == {"user": {"_id": USER_ID, "email": "alice@example.com"}}


def test_profile_requires_token(anonymous_client):
    response = anonymous_client.get("/users/me")
    assert response.status_code == 401


def test_logout_revokes_token(client, conn, user):
    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = client.get("/users/logout")

    assert response.status_code == 200
    args = conn.execute.call_args.args
    assert "revoked_tokens" in args[0]
    assert args[1] == user.token


def test_list_users_excludes_caller(client, conn):
    conn.fetch.return_value = [{"id": uuid.UUID(OTHER_ID), "email": "bob@example.com"}]

    with patch("sparkchat.apis.users.get_db_connection", AsyncMock(return_value=conn)):
        response = client.get("/users/all")

    assert response.status_code == 200
    assert response.json()["users"] == [{"_id": OTHER_ID, "email": "bob@example.com"}]
    assert conn.fetch.call_args.args[1] == USER_ID
