"""In-process chat event bus.

Transport code (the SSE route) subscribes per chat id; the turn orchestrator
publishes a MessageEvent after every message append and a RunEvent after every
run transition. Delivery is synchronous and best-effort: a failing listener is
logged and skipped, it never affects the turn that published the event.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel

from wind_tavern.models import ChatRun, Message

logger = logging.getLogger(__name__)


class MessageEvent(BaseModel):
    type: Literal["message"] = "message"
    message: Message


class RunEvent(BaseModel):
    type: Literal["run"] = "run"
    run: ChatRun


ChatEvent = MessageEvent | RunEvent
Listener = Callable[[ChatEvent], None]


class ChatEventBus:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, chat_id: str, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns the matching unsubscribe callable."""
        with self._lock:
            self._listeners.setdefault(chat_id, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(chat_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(chat_id, None)

        return unsubscribe

    def subscriber_count(self, chat_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(chat_id, []))

    def publish(self, chat_id: str, event: ChatEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.get(chat_id, []))
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("chat event listener failed chat=%s type=%s", chat_id, event.type)

    def publish_message(self, chat_id: str, message: Message) -> None:
        self.publish(chat_id, MessageEvent(message=message))

    def publish_run(self, chat_id: str, run: ChatRun) -> None:
        self.publish(chat_id, RunEvent(run=run))


class InFlightChats:
    """Set of chat ids with a turn in progress.

    `claim` is the check-and-insert: it either adds the id and returns True,
    or returns False because another turn already holds it.
    """

    def __init__(self) -> None:
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def claim(self, chat_id: str) -> bool:
        with self._lock:
            if chat_id in self._active:
                return False
            self._active.add(chat_id)
            return True

    def release(self, chat_id: str) -> None:
        with self._lock:
            self._active.discard(chat_id)

    def __contains__(self, chat_id: str) -> bool:
        with self._lock:
            return chat_id in self._active
