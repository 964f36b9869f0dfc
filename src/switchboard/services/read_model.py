"""Read-model base — something the view layer renders wholesale.

Each read model (waiting list, active list, open chat, ribbon, missed
calls) keeps its current snapshot in `items` and calls every registered
listener with its `name` whenever the snapshot changes. Listeners may be
plain functions or coroutines; a listener that raises is logged and the
others still run.
"""

import inspect
from typing import Any, Awaitable, Callable, Union

import structlog

logger = structlog.get_logger()

Listener = Callable[[str], Union[None, Awaitable[None]]]


class ReadModel:
    name = "read_model"

    def __init__(self):
        self.items: list[dict[str, Any]] = []
        self._listeners: list[Listener] = []

    def on_change(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(self.name)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("read_model.listener_failed", model=self.name)
