"""Chat session — the one conversation a dashboard has open.

Learn: Opening a chat is a small protocol between history and the live feed:

1. Tear down the previous live subscription (synchronously, first)
2. Subscribe to message inserts for the new conversation
3. Load the full history, oldest first
4. Release whatever the live feed delivered while history was loading

Because the subscription exists before the history query runs, a message
inserted in the gap is seen by at least one of the two paths. Rows are
keyed by message id, so a row seen by both is rendered once, and every row
is placed by (created_at, id) — the rendered list is always ordered even
if the feed delivers out of order.

Sending never renders locally. The sender's own message comes back through
the live feed exactly like the client's.
"""

import bisect
import uuid
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from switchboard.db.models import Conversation, as_utc
from switchboard.errors import InvalidTransition
from switchboard.realtime.feed import INSERT, Change, ChangeFeed
from switchboard.services.conversation_store import ConversationStore
from switchboard.services.queue_engine import QueueEngine
from switchboard.services.read_model import ReadModel
from switchboard.services.session_context import SessionContext

logger = structlog.get_logger()


def _order_key(record: dict[str, Any]) -> tuple[datetime, int]:
    created = record.get("created_at")
    if isinstance(created, str):
        created = datetime.fromisoformat(created)
    return as_utc(created), int(record["id"])


class ChatSession(ReadModel):
    """History + live message stream for the context's open conversation."""

    name = "messages"

    def __init__(
        self,
        context: SessionContext,
        sessions: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
    ):
        super().__init__()
        self.context = context
        self.sessions = sessions
        self.feed = feed
        self._keys: list[tuple[datetime, int]] = []
        self._seen: set[int] = set()
        self._buffer: list[dict[str, Any]] = []
        self._history_loaded = False

    @property
    def conversation_id(self) -> Optional[uuid.UUID]:
        return self.context.conversation_id

    @property
    def is_open(self) -> bool:
        return self.context.conversation_id is not None

    # ─── Lifecycle ───────────────────────────────────────

    async def open(self, conversation_id: uuid.UUID) -> list[dict[str, Any]]:
        """Show `conversation_id`, replacing whatever was open before."""
        self.context.close_chat()
        self._reset()
        self.context.conversation_id = conversation_id

        subscription = self.feed.subscribe(
            "messages",
            self._on_insert,
            event=INSERT,
            where={"conversation_id": conversation_id},
            key=self.context.chat_key,
        )
        self.context.replace_chat(subscription)

        history = await self._load_history(conversation_id)
        if self.context.chat_subscription is not subscription:
            # Another open() superseded us while history was loading.
            return self.items

        for record in history:
            self._insert(record)
        self._history_loaded = True
        buffered, self._buffer = self._buffer, []
        for record in buffered:
            self._insert(record)

        logger.debug(
            "chat.opened",
            conversation_id=str(conversation_id),
            history=len(history),
            buffered=len(buffered),
        )
        await self._emit()
        return self.items

    async def send(self, text: Optional[str]) -> Optional[dict[str, Any]]:
        """Append a message as the current agent. No-op for empty text."""
        body = (text or "").strip()
        if not body or not self.is_open or not self.context.logged_in:
            return None

        agent = self.context.require_agent()
        conversation_id = self.context.conversation_id
        async with self.sessions() as db:
            msg = await ConversationStore(db).add_message(
                conversation_id, agent.id, body
            )
            try:
                await db.commit()
            except StaleDataError:
                await db.rollback()
                raise InvalidTransition("Conversation changed while sending.")
            return msg.to_dict()

    async def close(self) -> Optional[Conversation]:
        """Release the conversation, then tear the session down."""
        if not self.is_open:
            return None
        try:
            async with self.sessions() as db:
                conv = await QueueEngine(db).release(self.context.conversation_id)
        finally:
            # The pane clears even when another dashboard closed it first.
            await self.detach()
        return conv

    async def detach(self) -> None:
        """Tear down the live subscription and forget the conversation."""
        self.context.close_chat()
        self.context.conversation_id = None
        self._reset()
        await self._emit()

    # ─── Internals ───────────────────────────────────────

    def _reset(self) -> None:
        self.items = []
        self._keys = []
        self._seen = set()
        self._buffer = []
        self._history_loaded = False

    async def _load_history(self, conversation_id: uuid.UUID) -> list[dict[str, Any]]:
        async with self.sessions() as db:
            rows = await ConversationStore(db).messages(conversation_id)
            return [m.to_dict() for m in rows]

    async def _on_insert(self, change: Change) -> None:
        record = change.record
        if not self._is_current(record):
            return
        if "text" not in record:
            # Oversized NOTIFY payloads arrive without their text.
            record = await self._fetch(int(record["id"]))
            if record is None or not self._is_current(record):
                return
        if not self._history_loaded:
            self._buffer.append(record)
            return
        if self._insert(record):
            await self._emit()

    async def _fetch(self, message_id: int) -> Optional[dict[str, Any]]:
        async with self.sessions() as db:
            msg = await ConversationStore(db).message(message_id)
            return msg.to_dict() if msg is not None else None

    def _is_current(self, record: dict[str, Any]) -> bool:
        return str(record.get("conversation_id")) == str(self.context.conversation_id)

    def _insert(self, record: dict[str, Any]) -> bool:
        """Place a row by (created_at, id). Returns False for a duplicate."""
        msg_id = int(record["id"])
        if msg_id in self._seen:
            return False
        self._seen.add(msg_id)
        agent = self.context.agent
        row = {
            **record,
            "mine": agent is not None and str(record.get("sender_id")) == str(agent.id),
        }
        key = _order_key(record)
        pos = bisect.bisect_right(self._keys, key)
        self._keys.insert(pos, key)
        self.items.insert(pos, row)
        return True
