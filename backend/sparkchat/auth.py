"""Authentication: bcrypt password hashes and bearer JWTs.

Endpoints declare ``user: AuthorizedUser`` to require a valid, non-revoked
token; ``user.sub`` is the user's id.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sparkchat.libs.config import JWT_ALGORITHM, JWT_EXPIRATION_HOURS, JWT_SECRET
from sparkchat.libs.database import get_db_connection

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass
class AuthUser:
    """Identity carried by a verified token."""
    sub: str
    email: str
    token: str
    expires_at: datetime


class AuthError(Exception):
    """Token missing, malformed, expired or revoked."""


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # stored hash isn't a bcrypt hash
        return False


def create_access_token(user_id: str, email: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)
    payload = {"sub": user_id, "email": email, "exp": int(expire.timestamp())}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> AuthUser:
    """Verify signature and expiry.

    Raises:
        AuthError: if the token can't be trusted
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        raise AuthError(str(e)) from e

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Token has no subject")

    return AuthUser(
        sub=str(user_id),
        email=payload.get("email", ""),
        token=token,
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


async def authenticate_token(token: Optional[str]) -> AuthUser:
    """Decode a token and make sure it hasn't been revoked by a logout."""
    if not token:
        raise AuthError("Missing token")

    user = decode_access_token(token)

    conn = await get_db_connection()
    try:
        revoked = await conn.fetchval(
            "SELECT 1 FROM revoked_tokens WHERE token = $1",
            token,
        )
    finally:
        await conn.close()

    if revoked:
        raise AuthError("Token has been revoked")
    return user


async def get_authorized_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthUser:
    """FastAPI dependency resolving the bearer token to a user."""
    token = credentials.credentials if credentials else None
    try:
        return await authenticate_token(token)
    except AuthError as e:
        logger.info("Rejected token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


AuthorizedUser = Annotated[AuthUser, Depends(get_authorized_user)]
