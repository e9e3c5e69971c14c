"""Small publish/subscribe bus used by the queue manager and the engine."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


@dataclass
class Subscription:
    """Handle returned by ``EventBus.subscribe``.

    Call ``unsubscribe()`` (or leave the ``with`` block) to stop receiving
    events. Unsubscribing twice is harmless.
    """

    topic: str
    callback: Callback
    bus: Optional["EventBus"] = field(default=None, repr=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def active(self) -> bool:
        return self.bus is not None and self.bus.has_subscription(self)

    def unsubscribe(self) -> bool:
        if self.bus is None:
            return False
        removed = self.bus.unsubscribe(self)
        self.bus = None
        return removed

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class EventBus:
    """Dispatch events to subscribers of a topic.

    Callbacks run synchronously in publish order. A callback returning an
    awaitable has it scheduled on the running loop. Exceptions raised by a
    callback are logged and never reach the publisher.
    """

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        sub = Subscription(topic=topic, callback=callback, bus=self)
        self._subscriptions.setdefault(topic, {})[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        subs = self._subscriptions.get(subscription.topic)
        if not subs or subscription.id not in subs:
            return False
        del subs[subscription.id]
        if not subs:
            del self._subscriptions[subscription.topic]
        return True

    def has_subscription(self, subscription: Subscription) -> bool:
        return subscription.id in self._subscriptions.get(subscription.topic, {})

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subscriptions.get(topic, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    def publish(self, topic: str, *args: Any) -> int:
        """Deliver ``args`` to every subscriber of ``topic``.

        Returns the number of callbacks invoked.
        """
        subs = list(self._subscriptions.get(topic, {}).values())
        for sub in subs:
            try:
                result = sub.callback(*args)
            except Exception:
                logger.exception(f"{self.name}: subscriber for '{topic}' failed")
                continue
            if inspect.isawaitable(result):
                self._track(topic, result)
        return len(subs)

    def _track(self, topic: str, awaitable: Any) -> None:
        async def runner() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception(f"{self.name}: async subscriber for '{topic}' failed")

        task = asyncio.ensure_future(runner())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for callbacks scheduled by ``publish`` to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._subscriptions.clear()
