"""Lifecycle notifications the embedding layer subscribes to."""

from __future__ import annotations

import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Awaitable, Callable, Union

from flowchat.log import get_logger

logger = get_logger(__name__)


class EventType(StrEnum):
    SESSION_STARTED = "session_started"
    MESSAGE_SENT = "message_sent"
    PARTIAL_UPDATE = "partial_update"
    ERROR = "error"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ChatEvent:
    type: EventType
    instance_id: str
    session_id: str | None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[ChatEvent], Union[None, Awaitable[None]]]

WILDCARD = "*"


class EventBus:
    """Per-type, wildcard, and per-instance subscriptions.

    A failing listener is logged and skipped; it never breaks the exchange
    that emitted the event.
    """

    def __init__(self, history_size: int = 50) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._history: deque[ChatEvent] = deque(maxlen=history_size)

    def subscribe(self, key: EventType | str, callback: Listener) -> Callable[[], None]:
        """Subscribe to an event type, ``"*"``, or ``"instance:<id>"``. Returns an unsubscribe function."""
        listeners = self._listeners.setdefault(str(key), [])
        listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return _unsubscribe

    async def emit(
        self,
        event_type: EventType,
        instance_id: str,
        session_id: str | None = None,
        **data: Any,
    ) -> ChatEvent:
        event = ChatEvent(type=event_type, instance_id=instance_id, session_id=session_id, data=data)
        self._history.append(event)

        for key in (str(event_type), WILDCARD, f"instance:{instance_id}"):
            for callback in list(self._listeners.get(key, ())):
                try:
                    result = callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error("event_listener_error", event_type=event_type.value, key=key, error=str(e))
        return event

    def history(self, event_type: EventType | None = None) -> list[ChatEvent]:
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.type is event_type]
