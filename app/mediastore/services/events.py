"""
In-process publish/subscribe for task events.

Handlers are registered per event name ("progress", "progress:<task_id>",
"completed", ...) and called synchronously in registration order on the
emitting thread. A failing handler is logged and does not stop delivery to
the others.

Usage:
    bus = EventBus()
    bus.on("progress", handler)
    bus.emit("progress", {"task_id": "upload_1", "progress": 10})
    bus.off("progress", handler)
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


class EventBus:
    """Observer list keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Unregister handler. Unknown handlers are ignored."""
        with self._lock:
            handlers = self._handlers.get(event)
            if not handlers:
                return
            try:
                handlers.remove(handler)
            except ValueError:
                return
            if not handlers:
                del self._handlers[event]

    def emit(self, event: str, payload: dict[str, Any]) -> int:
        """
        Deliver payload to every handler of event.

        Returns:
            Number of handlers called.
        """
        with self._lock:
            handlers = list(self._handlers.get(event, ()))

        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"event": event, "handler": getattr(handler, "__qualname__", repr(handler))},
                )
        return len(handlers)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, ()))
