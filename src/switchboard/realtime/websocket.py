"""WebSocket endpoint — one live Dashboard per browser tab.

Learn: Each client connects to /ws/dashboard?token=JWT. The handler:
1. Authenticates the token and checks the caller is staff
2. Builds a Dashboard (its own SessionContext, trackers, chat slot)
3. Pushes a full snapshot, then every read model that changes
4. Executes action commands the client sends
5. On disconnect, logs the dashboard out (tears down every subscription)

Frames pushed to the client:
    {"type": "<read model>", "data": ...}        waiting, active, messages, ...
    {"type": "result", "action": ..., "data": ...}
    {"type": "error", "action": ..., "code": ..., "message": ...}

Commands from the client:
    {"action": "claim", "conversation_id": "..."}
    {"action": "pick_up" | "open", "conversation_id": "..."}
    {"action": "send", "text": "..."}
    {"action": "close"}
    {"action": "save_secure_record", "fields": {...}, "deadline": "2025-01-01"}
    {"action": "ack_missed_call", "call_id": 3}
    {"action": "complete_task", "task_id": 5}
    {"action": "search", "code": "482913"}
    {"action": "ping"}
"""

import asyncio
import json
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.websockets import WebSocketState

from switchboard.auth.identity import TokenIdentityProvider
from switchboard.db.engine import get_sessionmaker
from switchboard.errors import (
    AuthenticationFailed,
    AuthorizationDenied,
    SwitchboardError,
)
from switchboard.realtime.feed import ChangeFeed, get_feed
from switchboard.services.dashboard import Dashboard

logger = structlog.get_logger()
router = APIRouter()


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "record") and hasattr(value, "task"):  # SaveResult
        return {"record": value.record, "task": value.task}
    return value


async def run_command(dashboard: Dashboard, msg: dict[str, Any]) -> Any:
    """Dispatch one client command to its dashboard action."""
    name = msg.get("action")
    if name == "claim":
        return await dashboard.claim(uuid.UUID(msg["conversation_id"]))
    if name in ("pick_up", "open"):
        return await dashboard.pick_up(uuid.UUID(msg["conversation_id"]))
    if name == "send":
        return await dashboard.send_message(msg.get("text"))
    if name == "close":
        return await dashboard.close_conversation()
    if name == "save_secure_record":
        return await dashboard.save_secure_record(
            msg.get("fields") or {}, deadline=msg.get("deadline") or None
        )
    if name == "ack_missed_call":
        return await dashboard.acknowledge_missed_call(int(msg["call_id"]))
    if name == "complete_task":
        return await dashboard.complete_ribbon_task(int(msg["task_id"]))
    if name == "search":
        return await dashboard.search(str(msg["code"]))
    raise ValueError(f"Unknown action: {name!r}")


def _bad_request(action: Any, message: str) -> dict[str, Any]:
    return {"type": "error", "action": action, "code": "bad_request", "message": message}


async def handle_frame(dashboard: Dashboard, data: str) -> dict[str, Any]:
    """Run one raw client frame and return the frame to push back.

    Malformed input of any shape becomes a bad_request error frame.
    """
    try:
        msg = json.loads(data)
    except json.JSONDecodeError:
        return _bad_request(None, "Invalid JSON")
    if not isinstance(msg, dict):
        return _bad_request(None, "Commands must be JSON objects")

    action = msg.get("action")
    if msg.get("type") == "ping" or action == "ping":
        return {"type": "pong"}
    try:
        result = await run_command(dashboard, msg)
    except SwitchboardError as e:
        return {"type": "error", "action": action, **e.to_dict()}
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        return _bad_request(action, str(e))
    return {"type": "result", "action": action, "data": _jsonable(result)}


@router.websocket("/ws/dashboard")
async def dashboard_websocket(
    websocket: WebSocket,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    feed: ChangeFeed = Depends(get_feed),
):
    """Live dashboard session.

    Learn: Two concurrent tasks run:
    1. Sender — drains the outbox (read-model frames) to the socket, so
       feed callbacks never write to the socket concurrently
    2. Client listener — reads and executes commands

    When either side finishes, both are cancelled and the dashboard logs out.
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return

    identity = TokenIdentityProvider()
    dashboard = Dashboard(sessions, feed, identity)
    try:
        principal = identity.from_token(token)
        await dashboard.login_principal(principal)
    except AuthenticationFailed as e:
        await websocket.close(code=4001, reason=e.message)
        return
    except AuthorizationDenied as e:
        await websocket.close(code=4003, reason=e.message)
        return
    except SwitchboardError as e:
        logger.warning("ws.login_failed", code=e.code, error=e.message)
        await websocket.close(code=1011, reason=e.message)
        return

    await websocket.accept()
    log = logger.bind(agent_id=str(dashboard.agent.id), context=dashboard.context.id)
    outbox: asyncio.Queue[str] = asyncio.Queue()

    def push(frame: dict[str, Any]) -> None:
        outbox.put_nowait(json.dumps(frame, default=str))

    dashboard.on_change(
        lambda name: push({"type": name, "data": dashboard.read_model(name)})
    )
    push({"type": "snapshot", "data": dashboard.snapshot()})

    async def sender():
        try:
            while True:
                await websocket.send_text(await outbox.get())
        except (WebSocketDisconnect, asyncio.CancelledError):
            pass

    async def client_listener():
        try:
            while True:
                frame = await handle_frame(dashboard, await websocket.receive_text())
                push(frame)
                if frame.get("code") == AuthorizationDenied.code:
                    return
        except (WebSocketDisconnect, asyncio.CancelledError):
            pass

    send_task = asyncio.create_task(sender())
    client_task = asyncio.create_task(client_listener())
    log.info("ws.connected")

    try:
        await asyncio.wait(
            [send_task, client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (send_task, client_task):
            task.cancel()
        try:
            await dashboard.logout()
        except SwitchboardError as e:
            log.warning("ws.logout_failed", error=e.message)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
        log.info("ws.disconnected")
