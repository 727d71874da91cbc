"""
Event Bus - Typed publish/subscribe hub for plugin events.

This module implements:
1. subscribe(): Register a handler for one event type, optionally filtered
2. once(): Register a handler that is removed on its first delivery
3. publish(): Deliver an event to all matching handlers concurrently
4. publish_sync(): Fire-and-forget publish that never raises to the caller

All subscriptions may carry a plugin id so that a plugin's handlers can be
bulk-removed when it is uninstalled. Handlers may be plain functions or
coroutine functions; a failing handler is counted and logged, and never
prevents delivery to the other handlers.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from relaykit.core.events import EVENT_TYPES
from relaykit.core.utils import maybe_await
from relaykit.errors import RelayKitError

logger = logging.getLogger(__name__)


class EventBusError(RelayKitError):
    """Base exception for event bus errors."""

    pass


class RegistrationError(EventBusError):
    """Raised when handler registration fails."""

    pass


@dataclass
class EventSubscription:
    """
    Represents a registered event handler.

    Attributes:
        id: Bus-unique subscription id (``sub-<n>``)
        event_type: Event type the handler listens to
        handler: Callback taking the event (sync or async)
        filter: Optional predicate applied before the handler runs
        plugin_id: Owning plugin, used for bulk removal
        once: Remove the subscription on first delivery
    """

    id: str
    event_type: str
    handler: Callable[[Any], Any]
    filter: Callable[[Any], bool] | None = None
    plugin_id: str | None = None
    once: bool = False
    _bus: "EventBus | None" = field(default=None, repr=False, compare=False)

    def unsubscribe(self) -> bool:
        """Remove this subscription. Returns False if it was already gone."""
        if self._bus is None:
            return False
        return self._bus.unsubscribe(self.id)


@dataclass
class EventStats:
    published: int = 0
    handled: int = 0
    errors: int = 0


class EventBus:
    """
    Core event bus implementation.

    Subscriptions are stored per event type in registration order.
    Execution order across subscribers during a publish is not guaranteed.
    """

    def __init__(self):
        # event_type -> subscription id -> subscription
        self._subscriptions: dict[str, dict[str, EventSubscription]] = {}
        self._counter = 0
        self._stats = EventStats()

        # Tasks created by publish_sync, kept alive until done
        self._pending: set[asyncio.Task] = set()

    def _next_id(self) -> str:
        self._counter += 1
        return f"sub-{self._counter}"

    def _check_event_type(self, event_type: str) -> None:
        if event_type not in EVENT_TYPES:
            raise RegistrationError(
                f"Unknown event type: {event_type!r}. "
                f"Expected one of: {sorted(EVENT_TYPES)}"
            )

    def subscribe(
        self,
        event_type: str,
        handler: Callable[[Any], Any],
        filter: Callable[[Any], bool] | None = None,
        plugin_id: str | None = None,
        once: bool = False,
    ) -> EventSubscription:
        """
        Register a handler for an event type.

        Args:
            event_type: One of the known event types
            handler: Callback taking the event
            filter: Predicate; the handler only runs when it returns True
            plugin_id: Owning plugin id
            once: Remove after the first matching delivery

        Returns:
            The created subscription

        Raises:
            RegistrationError: If the event type is unknown or handler is not callable
        """
        self._check_event_type(event_type)
        if not callable(handler):
            raise RegistrationError(f"Handler for {event_type!r} is not callable")
        if filter is not None and not callable(filter):
            raise RegistrationError(f"Filter for {event_type!r} is not callable")

        subscription = EventSubscription(
            id=self._next_id(),
            event_type=event_type,
            handler=handler,
            filter=filter,
            plugin_id=plugin_id,
            once=once,
            _bus=self,
        )
        self._subscriptions.setdefault(event_type, {})[subscription.id] = subscription
        return subscription

    def once(
        self,
        event_type: str,
        handler: Callable[[Any], Any],
        filter: Callable[[Any], bool] | None = None,
        plugin_id: str | None = None,
    ) -> EventSubscription:
        """Register a handler that is delivered at most one event."""
        return self.subscribe(event_type, handler, filter, plugin_id, once=True)

    def unsubscribe(self, subscription_id: str) -> bool:
        for event_type, subs in self._subscriptions.items():
            if subscription_id in subs:
                del subs[subscription_id]
                if not subs:
                    del self._subscriptions[event_type]
                return True
        return False

    def _matching(self, event_type: str, event: Any) -> list[EventSubscription]:
        """
        Select the subscriptions an event is delivered to.

        once() subscriptions are removed here, before any handler runs, so a
        concurrent publish cannot deliver to them a second time.
        """
        matched = []
        subs = self._subscriptions.get(event_type, {})
        for subscription in list(subs.values()):
            if subscription.filter is not None:
                try:
                    if not subscription.filter(event):
                        continue
                except Exception as e:
                    self._stats.errors += 1
                    logger.error(
                        "Event filter failed for %s (%s, plugin=%s): %s",
                        event_type,
                        subscription.id,
                        subscription.plugin_id,
                        e,
                    )
                    continue

            if subscription.once:
                self.unsubscribe(subscription.id)
            matched.append(subscription)
        return matched

    async def _invoke(self, subscription: EventSubscription, event: Any) -> None:
        try:
            await maybe_await(subscription.handler(event))
            self._stats.handled += 1
        except Exception as e:
            self._stats.errors += 1
            logger.error(
                "Event handler failed for %s (%s, plugin=%s): %s",
                subscription.event_type,
                subscription.id,
                subscription.plugin_id,
                e,
                exc_info=True,
            )

    async def publish(self, event_type: str, event: Any) -> None:
        """
        Deliver an event to every matching subscriber.

        Handlers run concurrently; this returns once all of them have
        settled. Handler failures are counted and logged, never raised.

        Args:
            event_type: One of the known event types
            event: Event payload

        Raises:
            EventBusError: If the event type is unknown
        """
        if event_type not in EVENT_TYPES:
            raise EventBusError(f"Unknown event type: {event_type!r}")

        self._stats.published += 1
        matched = self._matching(event_type, event)
        if not matched:
            return

        await asyncio.gather(*(self._invoke(sub, event) for sub in matched))

    def publish_sync(self, event_type: str, event: Any) -> asyncio.Task | None:
        """
        Schedule a publish without waiting for it.

        Failures are logged. Without a running event loop the event is
        dropped with a warning.

        Returns:
            The scheduled task, or None if nothing was scheduled
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, dropping %s event", event_type)
            return None

        task = loop.create_task(self.publish(event_type, event))
        self._pending.add(task)
        task.add_done_callback(self._on_publish_done)
        return task

    def _on_publish_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Fire-and-forget publish failed: %s", exc)

    async def drain(self) -> None:
        """Wait for every publish scheduled by publish_sync to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def remove_plugin_subscriptions(self, plugin_id: str) -> int:
        """
        Remove every subscription tagged with a plugin id.

        Args:
            plugin_id: Owning plugin id

        Returns:
            Number of subscriptions removed
        """
        removed = 0
        for event_type in list(self._subscriptions):
            subs = self._subscriptions[event_type]
            for sub_id in [s.id for s in subs.values() if s.plugin_id == plugin_id]:
                del subs[sub_id]
                removed += 1
            if not subs:
                del self._subscriptions[event_type]

        if removed:
            logger.debug("Removed %d subscriptions for plugin %s", removed, plugin_id)
        return removed

    def get_subscription_count(self, event_type: str | None = None) -> int:
        if event_type is not None:
            return len(self._subscriptions.get(event_type, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    def get_plugin_subscription_count(self, plugin_id: str) -> int:
        return sum(
            1
            for subs in self._subscriptions.values()
            for sub in subs.values()
            if sub.plugin_id == plugin_id
        )

    def get_event_types(self) -> list[str]:
        """Return event types that currently have at least one subscriber."""
        return [t for t, subs in self._subscriptions.items() if subs]

    def get_stats(self) -> dict[str, Any]:
        return {
            "published": self._stats.published,
            "handled": self._stats.handled,
            "errors": self._stats.errors,
            "active_subscriptions": self.get_subscription_count(),
            "event_types": len(self.get_event_types()),
        }

    def reset_stats(self) -> None:
        self._stats = EventStats()

    def clear(self) -> None:
        """Remove all subscriptions."""
        self._subscriptions.clear()
