"""Users API - registration, login, profile, logout and the user directory."""

import logging
import re
from typing import List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, field_validator

from sparkchat.auth import AuthorizedUser, create_access_token, hash_password, verify_password
from sparkchat.libs.database import get_db_connection
from sparkchat.libs.models import User, UserPublic

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Pydantic Models

class UserCredentials(BaseModel):
    """Register/login request."""
    email: str = Field(min_length=6, max_length=50)
    password: str = Field(min_length=3)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

class AuthResponse(BaseModel):
    user: UserPublic
    token: str

class ProfileResponse(BaseModel):
    user: UserPublic

class UsersResponse(BaseModel):
    users: List[UserPublic]

# API Endpoints

@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(credentials: UserCredentials):
    """Create an account and return a token for it."""
    conn = await get_db_connection()
    try:
        row = await conn.fetchrow(
            """
            INSERT INTO users (email, password)
            VALUES ($1, $2)
            ON CONFLICT (email) DO NOTHING
            RETURNING id, email, password, created_at
            """,
            credentials.email,
            hash_password(credentials.password)
        )
    finally:
        await conn.close()

    if not row:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(**dict(row))
    logger.info("Registered user %s", user.email)
    return AuthResponse(
        user=UserPublic(id=str(user.id), email=user.email),
        token=create_access_token(str(user.id), user.email)
    )


@router.post("/login", response_model=AuthResponse)
async def login(credentials: UserCredentials):
    conn = await get_db_connection()
    try:
        row = await conn.fetchrow(
            "SELECT id, email, password, created_at FROM users WHERE email = $1",
            credentials.email
        )
    finally:
        await conn.close()

    if not row or not verify_password(credentials.password, row["password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user = User(**dict(row))
    return AuthResponse(
        user=UserPublic(id=str(user.id), email=user.email),
        token=create_access_token(str(user.id), user.email)
    )


@router.get("/me", response_model=ProfileResponse)
async def profile(user: AuthorizedUser):
    """Profile of the token's owner."""
    conn = await get_db_connection()
    try:
        row = await conn.fetchrow(
            "SELECT id, email FROM users WHERE id = $1::uuid",
            user.sub
        )
    finally:
        await conn.close()

    if not row:
        raise HTTPException(status_code=404, detail="User not found")

    return ProfileResponse(user=UserPublic(id=str(row["id"]), email=row["email"]))


@router.get("/logout")
async def logout(user: AuthorizedUser):
    """Revoke the token used for this request."""
    conn = await get_db_connection()
    try:
        await conn.execute(
            """
            INSERT INTO revoked_tokens (token, expires_at)
            VALUES ($1, $2)
            ON CONFLICT (token) DO NOTHING
            """,
            user.token,
            user.expires_at
        )
    finally:
        await conn.close()

    return {"success": True, "message": "Logged out successfully"}


@router.get("/all", response_model=UsersResponse)
async def list_users(user: AuthorizedUser):
    """Everyone except the caller, for the add-collaborator picker."""
    conn = await get_db_connection()
    try:
        rows = await conn.fetch(
            "SELECT id, email FROM users WHERE id != $1::uuid ORDER BY email",
            user.sub
        )
    finally:
        await conn.close()

    return UsersResponse(users=[UserPublic(id=str(r["id"]), email=r["email"]) for r in rows])
