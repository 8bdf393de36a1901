"""Bearer-token user identification for StudyCards.

Tokens are issued by the account service; this API only verifies them and
reads the `user_id` claim. Progress rows are always scoped to that id.
"""

import os
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, Header

# JWT configuration
JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
JWT_ACCESS_TOKEN_EXPIRE_MINUTES = int(
    os.environ.get("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "60")
)


def create_access_token(user_id: str, expires_minutes: int = JWT_ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    """Create a signed access token for a user (development and tests)."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {
        "user_id": user_id,
        "exp": expire,
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and validate a JWT access token.

    Raises HTTPException on invalid or expired tokens.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("user_id"):
        raise HTTPException(status_code=401, detail="Token has no user_id claim")
    return payload


async def get_current_user_id(authorization: str = Header(None)) -> str:
    """FastAPI dependency returning the user id from the Authorization header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid Authorization header",
        )

    token = authorization.split(" ", 1)[1]
    return str(decode_access_token(token)["user_id"])
