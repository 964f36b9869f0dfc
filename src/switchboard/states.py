"""Status state machines.

Learn: Conversations, deadline tasks and missed calls each move through a
small closed set of statuses. Each set is a str-valued Enum (so it stores
and serializes as plain text) with an exhaustive transition table; every
status change in the services goes through `ensure_transition()`.

    conversation:  queued → active → closed
    deadline task: pending → done
    missed call:   unattended → attended

No edge goes backwards and every terminal state has no outgoing edges.
"""

from enum import Enum
from typing import TypeVar

from switchboard.errors import InvalidTransition


class ConversationStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    CLOSED = "closed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"


class CallStatus(str, Enum):
    UNATTENDED = "unattended"
    ATTENDED = "attended"


class AgentStatus(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"


VALID_TRANSITIONS: dict[Enum, set[Enum]] = {
    ConversationStatus.QUEUED: {ConversationStatus.ACTIVE},
    ConversationStatus.ACTIVE: {ConversationStatus.CLOSED},
    ConversationStatus.CLOSED: set(),  # terminal
    TaskStatus.PENDING: {TaskStatus.DONE},
    TaskStatus.DONE: set(),  # terminal
    CallStatus.UNATTENDED: {CallStatus.ATTENDED},
    CallStatus.ATTENDED: set(),  # terminal
}

S = TypeVar("S", ConversationStatus, TaskStatus, CallStatus)


def can_transition(current: S, new: S) -> bool:
    return new in VALID_TRANSITIONS[current]


def ensure_transition(current: S | str, new: S, what: str = "record") -> S:
    """Validate `current → new`, coercing a raw column value to the enum.

    Raises:
        InvalidTransition: if the edge is not in VALID_TRANSITIONS.
    """
    current = type(new)(current)
    if not can_transition(current, new):
        allowed = ", ".join(sorted(s.value for s in VALID_TRANSITIONS[current]))
        raise InvalidTransition(
            f"Cannot move {what} from '{current.value}' to '{new.value}'. "
            f"Allowed: {allowed or 'none (terminal state)'}"
        )
    return new
