"""JWT access tokens for dashboard clients.

Learn: The login endpoint issues a short-lived access token carrying the
agent id (`sub`), display name and role. Every HTTP route and the
dashboard WebSocket verify it; nothing is stored server-side.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from switchboard.config import settings


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(
    agent_id: str,
    name: Optional[str] = None,
    role: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": agent_id,
        "type": "access",
        "exp": now + timedelta(
            minutes=expires_minutes or settings.access_token_expire_minutes
        ),
        "iat": now,
    }
    if name:
        payload["name"] = name
    if role:
        payload["role"] = role
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")
    if payload.get("type") != "access":
        raise TokenError("Not an access token")
    return payload
