"""Request ID middleware — a correlation id on every log line of a request.

Learn: The id comes from the incoming X-Request-ID header (so a front end
or proxy can correlate) or is generated. It is bound to structlog's
contextvars, so `queue.claimed` and friends logged by the services carry
it without being passed around, and echoed back in the response header.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind and propagate a per-request id."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
        )
        try:
            response: Response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("path")
        response.headers[HEADER] = request_id
        return response
