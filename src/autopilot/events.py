from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

PHASE_STARTED = "phase:started"
PHASE_COMPLETED = "phase:completed"
STEP_STARTED = "step:started"
STEP_COMPLETED = "step:completed"
ERROR_ESCALATION = "error:escalation"
GAP_ESCALATED = "gap:escalated"
BUILD_COMPLETE = "build:complete"
QUESTION_PENDING = "question:pending"
QUESTION_ANSWERED = "question:answered"

EventHandler = Callable[[dict[str, Any]], None]
AnyEventHandler = Callable[[str, dict[str, Any]], None]


class EventBus:
    """Synchronous in-process publish/subscribe for lifecycle events.

    Handlers run in subscription order on the emitting call stack.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._any_handlers: list[AnyEventHandler] = []

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def on_any(self, handler: AnyEventHandler) -> None:
        self._any_handlers.append(handler)

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        data = dict(payload or {})
        for handler in list(self._handlers.get(event, [])):
            handler(data)
        for any_handler in list(self._any_handlers):
            any_handler(event, data)
