"""Per-dashboard session context.

Learn: Everything one open dashboard "currently" has — the logged-in
agent, the open conversation, the live chat subscription, and the list
subscriptions of the trackers — lives on one object that the Dashboard
owns and passes down. Nothing is module-global, so two dashboards in the
same process (two WebSocket connections, or two agents in a test) never
share state by accident.

The live chat subscription has exactly one slot. `replace_chat()` closes
whatever was in it before storing the new handle.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from switchboard.errors import AuthenticationFailed
from switchboard.realtime.feed import Subscription


@dataclass(frozen=True)
class StaffIdentity:
    """The authenticated agent behind a dashboard."""

    id: uuid.UUID
    name: str
    email: str
    role: str = "agent"


@dataclass
class SessionContext:
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    agent: Optional[StaffIdentity] = None
    conversation_id: Optional[uuid.UUID] = None
    chat_subscription: Optional[Subscription] = None
    list_subscriptions: list[Subscription] = field(default_factory=list)

    @property
    def chat_key(self) -> str:
        """Feed key for this dashboard's chat slot."""
        return f"chat:{self.id}"

    @property
    def logged_in(self) -> bool:
        return self.agent is not None

    def require_agent(self) -> StaffIdentity:
        if self.agent is None:
            raise AuthenticationFailed("Not logged in.")
        return self.agent

    def replace_chat(self, subscription: Optional[Subscription]) -> None:
        self.close_chat()
        self.chat_subscription = subscription

    def close_chat(self) -> bool:
        """Tear down the live chat subscription. Returns True if one was open."""
        sub, self.chat_subscription = self.chat_subscription, None
        if sub is None:
            return False
        sub.close()
        return True

    def close_all(self) -> None:
        self.close_chat()
        for sub in self.list_subscriptions:
            sub.close()
        self.list_subscriptions.clear()
        self.conversation_id = None
