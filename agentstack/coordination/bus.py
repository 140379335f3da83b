"""Publish/subscribe message bus for agent-to-agent traffic."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .emitter import Emitter

logger = logging.getLogger(__name__)

Handler = Callable[["Message"], Any]


@dataclass
class Message:
    id: str
    from_: str
    type: str
    payload: Any = None
    to: str | None = None  # None means broadcast
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class MessageBus(Emitter):
    """Events: ``message``, ``direct``, ``broadcast``, ``error``."""

    def __init__(self) -> None:
        super().__init__()
        self._counter = itertools.count(1)
        self._message_count = 0
        self._subscribers: dict[str, dict[Handler, None]] = {}
        self._all_handlers: dict[Handler, None] = {}

    def _next_id(self) -> str:
        self._message_count = next(self._counter)
        return f"msg-{self._message_count}"

    def _deliver(self, handlers: list[Handler], message: Message) -> None:
        for handler in handlers:
            try:
                handler(message)
            except Exception as exc:
                if not self.emit("error", exc, message):
                    logger.exception("Handler failed for message %s (%s)", message.id, message.type)

    def send(self, from_: str, to: str, type: str, payload: Any = None) -> Message:
        message = Message(id=self._next_id(), from_=from_, to=to, type=type, payload=payload)
        self.emit("direct", message)
        self.emit("message", message)
        self._deliver([*self._all_handlers, *self._subscribers.get(to, {})], message)
        logger.debug("Message %s sent %s -> %s (%s)", message.id, from_, to, type)
        return message

    def broadcast(self, from_: str, type: str, payload: Any = None) -> Message:
        message = Message(id=self._next_id(), from_=from_, type=type, payload=payload)
        self.emit("broadcast", message)
        self.emit("message", message)
        handlers = [*self._all_handlers, *(h for subs in list(self._subscribers.values()) for h in subs)]
        self._deliver(handlers, message)
        logger.debug("Message %s broadcast from %s (%s)", message.id, from_, type)
        return message

    def subscribe(self, address: str, handler: Handler) -> Callable[[], None]:
        subs = self._subscribers.setdefault(address, {})
        subs[handler] = None
        logger.debug("Subscribed %s", address)

        def unsubscribe() -> None:
            current = self._subscribers.get(address)
            if current is None:
                return
            current.pop(handler, None)
            if not current:
                del self._subscribers[address]

        return unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        """Receive every direct and broadcast message; failures follow the ``error`` path."""
        self._all_handlers[handler] = None
        return lambda: self._all_handlers.pop(handler, None)

    def unsubscribe(self, address: str) -> bool:
        removed = self._subscribers.pop(address, None) is not None
        if removed:
            logger.debug("Unsubscribed %s", address)
        return removed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def message_count(self) -> int:
        return self._message_count

    def clear(self) -> None:
        self._subscribers.clear()
        self._all_handlers.clear()
        self.remove_all_listeners()
        logger.debug("Bus cleared")
