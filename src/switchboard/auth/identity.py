"""Identity providers and the staff check.

Learn: Two steps, two errors:

1. authenticate — the provider checks credentials and returns a Principal.
   Rejected credentials → AuthenticationFailed (nothing changes).
2. verify_staff — the principal must map to an agent row with a staff
   role. Anything else → AuthorizationDenied; the caller logs the
   principal out and does not retry.

PasswordIdentityProvider checks bcrypt hashes on the agents table (for
deployments without an external IdP). TokenIdentityProvider accepts
access tokens minted by `auth.jwt` (or by an IdP sharing the secret).
"""

import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from switchboard.auth.jwt import TokenError, verify_token
from switchboard.auth.password import verify_password
from switchboard.db.models import Agent
from switchboard.errors import AuthenticationFailed, AuthorizationDenied
from switchboard.services.session_context import StaffIdentity

logger = structlog.get_logger()

STAFF_ROLES = {"agent", "supervisor"}


@dataclass(frozen=True)
class Principal:
    """Who the identity provider says the caller is."""

    subject: str
    email: Optional[str] = None


class IdentityProvider(Protocol):
    async def authenticate(self, email: str, password: str) -> Principal: ...

    async def logout(self, principal: Principal) -> None: ...


class PasswordIdentityProvider:
    """Email + bcrypt password against the agents table."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self.sessions = sessions

    async def authenticate(self, email: str, password: str) -> Principal:
        async with self.sessions() as db:
            result = await db.execute(
                select(Agent).where(Agent.email == email.strip().lower())
            )
            agent = result.scalars().first()
        if agent is None or not verify_password(password, agent.password_hash):
            logger.info("auth.login_failed", email=email)
            raise AuthenticationFailed("Login failed: invalid email or password.")
        return Principal(subject=str(agent.id), email=agent.email)

    async def logout(self, principal: Principal) -> None:
        logger.info("auth.logout", subject=principal.subject)


class TokenIdentityProvider:
    """Bearer access tokens. `password` is the token; `email` is ignored."""

    async def authenticate(self, email: str, password: str) -> Principal:
        return self.from_token(password)

    def from_token(self, token: str) -> Principal:
        try:
            payload = verify_token(token)
        except TokenError as e:
            raise AuthenticationFailed(str(e))
        return Principal(subject=payload["sub"], email=payload.get("email"))

    async def logout(self, principal: Principal) -> None:
        logger.info("auth.logout", subject=principal.subject)


async def verify_staff(db: AsyncSession, principal: Principal) -> StaffIdentity:
    """Map a principal to a staff agent.

    Raises:
        AuthorizationDenied: no agent row, or a non-staff role
    """
    try:
        agent_id = uuid.UUID(principal.subject)
    except ValueError:
        agent_id = None
    agent = await db.get(Agent, agent_id) if agent_id else None
    if agent is None or agent.role not in STAFF_ROLES:
        logger.warning("auth.not_staff", subject=principal.subject)
        raise AuthorizationDenied("Access denied: you are not authorized as staff.")
    return StaffIdentity(id=agent.id, name=agent.name, email=agent.email, role=agent.role)
