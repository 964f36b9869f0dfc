"""Error taxonomy for dashboard actions.

Every failure a dashboard action can produce is one of these. Services
raise them; the action boundary (HTTP route or WebSocket command loop)
turns them into a user-visible response. `code` is stable and goes over
the wire, `message` is what the operator sees.
"""

from typing import Any, Optional


class SwitchboardError(Exception):
    """Base class — carries a machine code and a user-facing message."""

    code = "error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class AuthenticationFailed(SwitchboardError):
    """Credentials rejected by the identity provider."""

    code = "authentication_failed"
    status_code = 401


class AuthorizationDenied(SwitchboardError):
    """Authenticated, but not a recognized staff identity. Forces logout."""

    code = "authorization_denied"
    status_code = 403


class CapacityExceeded(SwitchboardError):
    """Agent already handles the maximum number of active chats."""

    code = "capacity_exceeded"
    status_code = 409


class InvalidTransition(SwitchboardError):
    """A status change the state machine does not allow."""

    code = "invalid_transition"
    status_code = 409


class NotFound(SwitchboardError):
    code = "not_found"
    status_code = 404


class TransientIOFailure(SwitchboardError):
    """The store or the change feed failed. Nothing is retried."""

    code = "transient_io_failure"
    status_code = 503


class DeadlineTaskFailed(SwitchboardError):
    """The secure record was saved but its ribbon task was not created."""

    code = "deadline_task_failed"
    status_code = 502

    def __init__(self, message: str = "", record: Optional[dict] = None):
        super().__init__(message)
        self.record = record or {}

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "record_saved": True, "record": self.record}
