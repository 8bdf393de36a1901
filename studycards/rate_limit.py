"""Rate limiting for StudyCards.

Uses slowapi for per-user request throttling, mainly to absorb
double-submitted reviews. Limits are keyed by the JWT user id, falling
back to IP address for unauthenticated requests.
"""

import os

from fastapi import HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

REVIEW_RATE_LIMIT = os.environ.get("REVIEW_RATE_LIMIT", "120/minute")


def get_user_identifier(request: Request) -> str:
    """Extract user identifier for rate limiting.

    Uses the JWT user_id if available, falls back to IP address.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        from .auth import decode_access_token

        token = auth_header.split(" ", 1)[1]
        try:
            payload = decode_access_token(token)
            return f"user:{payload['user_id']}"
        except HTTPException:
            pass
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=get_user_identifier)
