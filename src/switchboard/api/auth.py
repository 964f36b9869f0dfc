"""Auth API — staff login and the current agent.

Learn: Login is the same two-step check a dashboard does:
- POST /auth/login → email/password → access token (401 bad credentials,
  403 when the account is not staff)
- GET /auth/me → the agent behind the bearer token

The token is what the WebSocket dashboard connects with.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from switchboard.api.errors import service_errors
from switchboard.auth.dependencies import get_current_agent
from switchboard.auth.identity import PasswordIdentityProvider, verify_staff
from switchboard.auth.jwt import create_access_token
from switchboard.db.engine import get_db, get_sessionmaker
from switchboard.services.session_context import StaffIdentity

router = APIRouter(prefix="/auth")


# ─── Schemas ─────────────────────────────────────────────


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    agent_id: str
    name: str


# ─── Routes ──────────────────────────────────────────────


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    """Login with email and password → JWT access token."""
    identity = PasswordIdentityProvider(sessions)
    with service_errors():
        principal = await identity.authenticate(body.email, body.password)
        staff = await verify_staff(db, principal)

    token = create_access_token(str(staff.id), name=staff.name, role=staff.role)
    return TokenResponse(access_token=token, agent_id=str(staff.id), name=staff.name)


@router.get("/me")
async def get_me(agent: StaffIdentity = Depends(get_current_agent)):
    """The authenticated agent's identity."""
    return {
        "id": str(agent.id),
        "email": agent.email,
        "name": agent.name,
        "role": agent.role,
    }
