"""Dashboard — one agent's live view, wired to the dispatch core.

Learn: The Dashboard is the consumer interface the view layer talks to.
It owns one SessionContext and the read models built on it:

    waiting       WaitingQueue      (conversations, status=queued)
    active        ActiveQueue       (conversations, mine + active)
    messages      ChatSession       (the open conversation)
    secure_record dict              (the open conversation's client record)
    ribbon        RibbonTracker     (deadline_tasks, pending)
    missed_calls  MissedCallTracker (missed_calls, unattended)

Each public coroutine is an action entry point — it is what a user gesture
triggers. Actions are the error boundary: taxonomy errors pass through
unchanged, store failures become TransientIOFailure, and nothing is retried.

Every action opens its own database session. The dashboard itself is
long-lived (one per WebSocket connection) but never holds a session
between actions, so it always sees committed state.
"""

import functools
import inspect
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from switchboard.auth.identity import IdentityProvider, Principal, verify_staff
from switchboard.db.models import Agent, Conversation, utcnow
from switchboard.errors import (
    AuthorizationDenied,
    InvalidTransition,
    NotFound,
    SwitchboardError,
    TransientIOFailure,
)
from switchboard.realtime.feed import ChangeFeed
from switchboard.services.chat_session import ChatSession
from switchboard.services.queue_engine import QueueEngine
from switchboard.services.secure_records import (
    Deadline,
    SaveResult,
    SecureRecordLinker,
    empty_record,
)
from switchboard.services.session_context import SessionContext, StaffIdentity
from switchboard.services.trackers import (
    ActiveQueue,
    MissedCallTracker,
    RibbonTracker,
    WaitingQueue,
)
from switchboard.states import AgentStatus, ConversationStatus

logger = structlog.get_logger()

Listener = Callable[[str], Union[None, Awaitable[None]]]

IO_ERRORS = (SQLAlchemyError, RedisError, OSError)


def action(fn):
    """Mark a coroutine as an action entry point (the error boundary)."""

    @functools.wraps(fn)
    async def wrapper(self: "Dashboard", *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except SwitchboardError:
            raise
        except IO_ERRORS as e:
            logger.warning(
                "dashboard.io_failure",
                action=fn.__name__,
                error=str(e),
                agent_id=self._agent_id,
            )
            raise TransientIOFailure(
                "The server could not complete that. Please try again."
            ) from e

    return wrapper


class Dashboard:
    """Orchestrates the core services for one logged-in agent."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
        identity: IdentityProvider,
        context: Optional[SessionContext] = None,
    ):
        self.sessions = sessions
        self.feed = feed
        self.identity = identity
        self.context = context or SessionContext()
        self._principal: Optional[Principal] = None
        self._listeners: list[Listener] = []

        self.chat = ChatSession(self.context, sessions, feed)
        self.waiting = WaitingQueue(sessions, feed)
        self.active: Optional[ActiveQueue] = None
        self.ribbon = RibbonTracker(sessions, feed)
        self.missed = MissedCallTracker(sessions, feed)
        self.secure_record: dict[str, Any] = empty_record()

        for model in (self.chat, self.waiting, self.ribbon, self.missed):
            model.on_change(self._forward)

    # ─── Read models ─────────────────────────────────────

    def on_change(self, listener: Listener) -> None:
        """Register a view callback; it receives the changed read model's name."""
        self._listeners.append(listener)

    @property
    def agent(self) -> Optional[StaffIdentity]:
        return self.context.agent

    @property
    def messages(self) -> list[dict[str, Any]]:
        return self.chat.items

    def snapshot(self) -> dict[str, Any]:
        return {
            "waiting": self.waiting.items,
            "active": self.active.items if self.active else [],
            "messages": self.chat.items,
            "secure_record": self.secure_record,
            "ribbon": self.ribbon.items,
            "missed_calls": self.missed.items,
            "conversation_id": (
                str(self.context.conversation_id)
                if self.context.conversation_id else None
            ),
        }

    def read_model(self, name: str) -> Any:
        return self.snapshot()[name]

    # ─── Login / logout ──────────────────────────────────

    @action
    async def login(self, email: str, password: str) -> StaffIdentity:
        """Authenticate, check staff status, go online, start live lists.

        Raises:
            AuthenticationFailed: bad credentials, nothing changes
            AuthorizationDenied: not staff; the principal is logged out
        """
        principal = await self.identity.authenticate(email, password)
        return await self.login_principal(principal)

    @action
    async def login_principal(self, principal: Principal) -> StaffIdentity:
        if self.context.logged_in:
            await self.logout()
        async with self.sessions() as db:
            try:
                staff = await verify_staff(db, principal)
            except AuthorizationDenied:
                await self.identity.logout(principal)
                raise
            agent = await db.get(Agent, staff.id)
            agent.status = AgentStatus.ONLINE.value
            agent.last_active = utcnow()
            await db.commit()

        self._principal = principal
        self.context.agent = staff
        self.active = ActiveQueue(self.sessions, self.feed, staff.id)
        self.active.on_change(self._forward)

        try:
            for tracker in (self.waiting, self.active, self.ribbon, self.missed):
                self.context.list_subscriptions.append(await tracker.start())
        except Exception:
            # Half-started trackers and the online status go with the login.
            await self.logout()
            raise

        logger.info("dashboard.login", agent_id=str(staff.id), context=self.context.id)
        return staff

    @action
    async def logout(self) -> None:
        """Tear down every subscription (chat first) and go offline."""
        staff = self.context.agent
        self.context.close_all()
        for tracker in (self.waiting, self.active, self.ribbon, self.missed):
            if tracker is not None:
                tracker.stop()
        await self.chat.detach()
        self.secure_record = empty_record()
        self.context.agent = None
        if staff is None:
            return

        async with self.sessions() as db:
            agent = await db.get(Agent, staff.id)
            if agent is not None:
                agent.status = AgentStatus.OFFLINE.value
                agent.last_active = utcnow()
                await db.commit()
        if self._principal is not None:
            await self.identity.logout(self._principal)
            self._principal = None
        logger.info("dashboard.logout", agent_id=str(staff.id), context=self.context.id)

    # ─── Queue actions ───────────────────────────────────

    @action
    async def claim(self, conversation_id: uuid.UUID) -> Conversation:
        """Claim a waiting conversation and open it.

        Raises:
            CapacityExceeded: the agent is at the cap; nothing changes
            InvalidTransition: the conversation is no longer waiting
        """
        staff = self.context.require_agent()
        async with self.sessions() as db:
            conv = await QueueEngine(db).claim(staff.id, conversation_id)
        await self._open(conversation_id)
        return conv

    @action
    async def pick_up(self, conversation_id: uuid.UUID) -> Conversation:
        """Open a conversation from any list: claim it first if it is waiting."""
        staff = self.context.require_agent()
        async with self.sessions() as db:
            engine = QueueEngine(db)
            conv = await engine.get(conversation_id)
            if self.context.conversation_id == conversation_id:
                return conv
            status = ConversationStatus(conv.status)
            if status is ConversationStatus.QUEUED:
                conv = await engine.claim(staff.id, conversation_id)
            elif status is ConversationStatus.CLOSED:
                raise InvalidTransition("That conversation is already closed.")
        await self._open(conversation_id)
        return conv

    @action
    async def search(self, display_code: str) -> Conversation:
        """Find a client by display code and open their conversation.

        Raises:
            NotFound: no conversation has that code (user-visible)
        """
        self.context.require_agent()
        async with self.sessions() as db:
            conv = await QueueEngine(db).find_by_display_code(display_code)
        return await self.pick_up(conv.id)

    # ─── Chat actions ────────────────────────────────────

    @action
    async def open_conversation(self, conversation_id: uuid.UUID) -> list[dict[str, Any]]:
        self.context.require_agent()
        await self._open(conversation_id)
        return self.chat.items

    @action
    async def send_message(self, text: Optional[str]) -> Optional[dict[str, Any]]:
        self.context.require_agent()
        return await self.chat.send(text)

    @action
    async def close_conversation(self) -> Optional[Conversation]:
        """Release the open conversation and clear the chat and record panes."""
        self.context.require_agent()
        if not self.chat.is_open:
            return None
        try:
            return await self.chat.close()
        finally:
            await self._set_secure_record(empty_record())

    # ─── Secure record / ribbon / missed calls ───────────

    @action
    async def save_secure_record(
        self,
        fields: dict[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> SaveResult:
        """Save the open client's record; with a deadline, add a ribbon task.

        Raises:
            NotFound: no conversation is open
            DeadlineTaskFailed: record saved, ribbon task not created
        """
        staff = self.context.require_agent()
        if self.context.conversation_id is None:
            raise NotFound("Select a chat first.")
        async with self.sessions() as db:
            result = await SecureRecordLinker(db).save(
                self.context.conversation_id,
                fields,
                deadline=deadline,
                updated_by=staff.name,
            )
        await self._set_secure_record(result.record)
        return result

    @action
    async def acknowledge_missed_call(self, call_id: int) -> dict[str, Any]:
        self.context.require_agent()
        return await self.missed.acknowledge(call_id)

    @action
    async def complete_ribbon_task(self, task_id: int) -> dict[str, Any]:
        self.context.require_agent()
        return await self.ribbon.complete(task_id)

    # ─── Internals ───────────────────────────────────────

    @property
    def _agent_id(self) -> Optional[str]:
        return str(self.context.agent.id) if self.context.agent else None

    async def _open(self, conversation_id: uuid.UUID) -> None:
        await self.chat.open(conversation_id)
        async with self.sessions() as db:
            record = await SecureRecordLinker(db).load(conversation_id)
        await self._set_secure_record(record)

    async def _set_secure_record(self, record: dict[str, Any]) -> None:
        self.secure_record = record
        await self._forward("secure_record")

    async def _forward(self, name: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(name)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("dashboard.listener_failed", model=name)
