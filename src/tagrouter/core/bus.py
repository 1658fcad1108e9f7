"""
Synchronous event bus used for engine observability and correlation.

Handlers are keyed by event type, with a wildcard key that receives every
event. `emit` dispatches in subscription order, type-specific handlers first
and wildcard handlers second, iterating snapshots so handlers may subscribe
or unsubscribe while an event is being delivered.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .contracts import WILDCARD, EventPayload

logger = logging.getLogger(__name__)


Handler = Callable[[EventPayload], Awaitable[None] | None]


@dataclass(eq=False)
class Subscription:
    """Handle for an event-type subscription."""

    event_type: str
    handler: Handler
    _bus: EventBus | None = field(default=None, repr=False)
    active: bool = True

    def unsubscribe(self) -> None:
        """Detach the handler; calling this more than once is a no-op."""
        if self._bus is not None:
            self._bus.unsubscribe(self)


class EventBus:
    """
    In-process publish/subscribe hub.

    Delivery is synchronous. A handler that returns an awaitable has it
    scheduled on the running event loop; failures are logged either way and
    never reach the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._emitted_total = 0

    @property
    def emitted_total(self) -> int:
        return self._emitted_total

    def subscribe(self, event_type: str, handler: Handler) -> Subscription:
        """Register a handler for an event type, or `"*"` for every event."""
        subscription = Subscription(event_type=str(event_type), handler=handler, _bus=self)
        self._subscribers[subscription.event_type].append(subscription)
        logger.debug("Subscribed handler %s to %s", handler, subscription.event_type)
        return subscription

    def once(self, event_type: str, handler: Handler) -> Subscription:
        """Register a handler that is removed right before its first delivery."""
        subscription: Subscription

        def _once(event: EventPayload) -> Awaitable[None] | None:
            subscription.unsubscribe()
            return handler(event)

        subscription = self.subscribe(event_type, _once)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a previously registered subscription."""
        if not subscription.active:
            return
        subscription.active = False
        handlers = self._subscribers.get(subscription.event_type)
        if not handlers:
            return
        try:
            handlers.remove(subscription)
        except ValueError:
            return
        if not handlers:
            del self._subscribers[subscription.event_type]
        logger.debug(
            "Unsubscribed handler %s from %s", subscription.handler, subscription.event_type
        )

    def clear(self, event_type: str | None = None) -> None:
        """Remove subscriptions for one type, or all of them for `None`/`"*"`."""
        if event_type is None or event_type == WILDCARD:
            keys = list(self._subscribers)
        else:
            keys = [str(event_type)] if str(event_type) in self._subscribers else []
        for key in keys:
            for subscription in self._subscribers.pop(key, []):
                subscription.active = False

    def handler_count(self, event_type: str) -> int:
        return len(self._subscribers.get(str(event_type), ()))

    def emit(self, event: EventPayload) -> None:
        """Deliver an event to matching handlers, then to wildcard handlers."""
        self._emitted_total += 1
        specific = list(self._subscribers.get(event.type, ()))
        wildcard = list(self._subscribers.get(WILDCARD, ())) if event.type != WILDCARD else []
        for subscription in (*specific, *wildcard):
            if not subscription.active:
                continue
            self._call_handler(subscription, event)

    async def drain(self) -> None:
        """Wait for handler coroutines scheduled by `emit` to finish."""
        while self._handler_tasks:
            pending = list(self._handler_tasks)
            await asyncio.gather(*pending, return_exceptions=True)

    def _call_handler(self, subscription: Subscription, event: EventPayload) -> None:
        try:
            result = subscription.handler(event)
        except Exception:
            logger.exception(
                "Event handler %s failed on %s", subscription.handler, event.type
            )
            return
        if inspect.isawaitable(result):
            self._schedule(result, event.type)

    def _schedule(self, awaitable: Awaitable[None], event_type: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Async handler for %s emitted outside an event loop; dropping it.", event_type
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(_await(awaitable))
        self._handler_tasks.add(task)

        def _on_done(t: asyncio.Task[None], _event_type: str = event_type) -> None:
            self._handler_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "Async event handler failed on %s", _event_type, exc_info=exc
                )

        task.add_done_callback(_on_done)


async def _await(awaitable: Awaitable[None]) -> None:
    await awaitable


__all__ = ["EventBus", "Handler", "Subscription"]
