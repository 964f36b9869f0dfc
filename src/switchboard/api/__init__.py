"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Health and auth routers are
open (login is how you get a token).
"""

from fastapi import APIRouter, Depends

from switchboard.api.auth import router as auth_router
from switchboard.api.conversations import router as conversations_router
from switchboard.api.health import router as health_router
from switchboard.api.queue import router as queue_router
from switchboard.api.ribbon import router as ribbon_router
from switchboard.auth.dependencies import get_current_agent

# All protected routers require a staff bearer token
_auth = [Depends(get_current_agent)]

api_router = APIRouter(prefix="/api/v1")

# Open routes, no token needed
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])

# Protected routes
api_router.include_router(queue_router, tags=["queue"], dependencies=_auth)
api_router.include_router(conversations_router, tags=["conversations", "messages"], dependencies=_auth)
api_router.include_router(ribbon_router, tags=["ribbon", "missed-calls"], dependencies=_auth)
