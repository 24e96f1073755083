"""In-process publish/subscribe for recording and replay events."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

STEP_ADDED = "step-added"
REPLAY_STARTED = "replay-started"
REPLAY_STEP_STARTED = "replay-step-started"
REPLAY_STEP_COMPLETED = "replay-step-completed"
REPLAY_ERROR = "replay-error"
REPLAY_COMPLETED = "replay-completed"

ALL = "*"

Handler = Callable[["AgentEvent"], None]


@dataclass(frozen=True)
class AgentEvent:
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "timestamp": self.timestamp, **self.data}


def format_sse(event: AgentEvent) -> str:
    """Encode ``event`` as one ``text/event-stream`` message."""

    payload = json.dumps(event.to_dict(), default=str)
    return f"event: {event.kind}\ndata: {payload}\n\n"


class EventBus:
    """Synchronous fan-out of events to subscribed handlers.

    Must only be used from the event loop thread. A failing handler is
    logged and does not affect the other subscribers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, kind: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``kind`` (or ``"*"``); returns an unsubscribe callable."""

        self._handlers.setdefault(kind, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(kind, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def subscriber_count(self, kind: Optional[str] = None) -> int:
        if kind is not None:
            return len(self._handlers.get(kind, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def publish(self, kind: str, data: Optional[Dict[str, Any]] = None) -> AgentEvent:
        event = AgentEvent(kind=kind, data=dict(data or {}))
        for handler in [*self._handlers.get(kind, []), *self._handlers.get(ALL, [])]:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler for %s failed", kind)
        return event

    async def listen(self, max_queue: int = 256) -> AsyncIterator[AgentEvent]:
        """Yield every published event until the consumer stops iterating."""

        queue: "asyncio.Queue[AgentEvent]" = asyncio.Queue(maxsize=max_queue)

        def _enqueue(event: AgentEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event listener is lagging; dropped %s", event.kind)

        unsubscribe = self.subscribe(ALL, _enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
