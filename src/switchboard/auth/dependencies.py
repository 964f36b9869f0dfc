"""FastAPI auth dependencies.

Learn: Used as Depends() in route handlers to turn the request's bearer
token into a StaffIdentity. Same two steps as a dashboard login:

1. Token → Principal (401 if missing, expired, or malformed)
2. Principal → staff agent row (403 if the caller is not staff)
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.auth.identity import TokenIdentityProvider, verify_staff
from switchboard.db.engine import get_db
from switchboard.errors import AuthenticationFailed, AuthorizationDenied
from switchboard.services.session_context import StaffIdentity

_tokens = TokenIdentityProvider()


async def get_current_agent(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> StaffIdentity:
    """Extract the calling agent (required — 401/403 otherwise)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        principal = _tokens.from_token(authorization[7:])
        return await verify_staff(db, principal)
    except AuthenticationFailed as e:
        raise HTTPException(
            status_code=401,
            detail=e.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )
    except AuthorizationDenied as e:
        raise HTTPException(status_code=403, detail=e.to_dict())
