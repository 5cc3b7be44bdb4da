"""CrmFlow EventBus - fire-and-forget automation events with a pluggable transport."""

import logging
from typing import Awaitable, Callable, Dict, List

from ..models import TriggerEvent
from ..storage.base import AutomationStore

logger = logging.getLogger(__name__)

EventCallback = Callable[[TriggerEvent], Awaitable[None]]
Dispatch = Callable[[TriggerEvent], Awaitable[int]]


class InProcessTransport:
    """Dispatch events immediately, in the emitting task.

    Events are lost if the process exits before dispatch finishes.
    """

    name = "in_process"

    async def deliver(self, event: TriggerEvent, dispatch: Dispatch) -> None:
        await dispatch(event)

    async def drain(self, dispatch: Dispatch, limit: int) -> Dict[str, int]:
        return {"delivered": 0, "failed": 0}


class OutboxTransport:
    """Persist events to the automation store; a batch driver drains them later.

    Delivery is at-least-once per event, not per subscriber: when any
    subscriber fails, the whole event is redelivered on the next drain,
    including to subscribers that already handled it.

    Args:
        store: AutomationStore holding the outbox table.
    """

    name = "outbox"

    def __init__(self, store: AutomationStore):
        self._store = store

    async def deliver(self, event: TriggerEvent, dispatch: Dispatch) -> None:
        event_id = await self._store.enqueue_event(event)
        logger.debug(f"Queued event {event.trigger_type} as outbox #{event_id}")

    async def drain(self, dispatch: Dispatch, limit: int) -> Dict[str, int]:
        delivered = failed = 0
        for item in await self._store.claim_outbox(limit):
            failures = await dispatch(item.event)
            if failures:
                failed += 1
                await self._store.mark_outbox(item.id, error=f"{failures} subscriber(s) failed")
            else:
                delivered += 1
                await self._store.mark_outbox(item.id)
        return {"delivered": delivered, "failed": failed}


class EventBus:
    """
    Routes TriggerEvents to subscribers through a transport.

    Usage:
        bus = EventBus()                          # in-process
        bus = EventBus(OutboxTransport(store))    # durable

        bus.subscribe("*", engine.handle_event)
        bus.subscribe("opportunity.*", callback)

        await bus.emit(TriggerEvent(...))         # never raises
        await bus.drain(limit=100)                # outbox only
    """

    def __init__(self, transport=None):
        self._transport = transport or InProcessTransport()
        self._subscriptions: Dict[str, List[EventCallback]] = {}  # pattern -> [callback]

    @property
    def transport(self):
        return self._transport

    def subscribe(self, pattern: str, callback: EventCallback) -> None:
        """Subscribe to events matching a pattern.

        Pattern format: an exact trigger type ("email.opened"), a prefix
        wildcard ("email.*") or "*" for everything.
        Callback signature: async (event: TriggerEvent) -> None
        """
        self._subscriptions.setdefault(pattern, []).append(callback)
        logger.info(f"Subscribed to event pattern: {pattern}")

    def unsubscribe(self, pattern: str) -> None:
        """Remove all callbacks for a pattern."""
        self._subscriptions.pop(pattern, None)

    async def publish(self, event: TriggerEvent) -> None:
        """Hand an event to the transport. Transport errors propagate."""
        await self._transport.deliver(event, self._dispatch)

    async def emit(self, event: TriggerEvent) -> None:
        """Publish without ever failing the caller; errors are logged."""
        try:
            await self.publish(event)
        except Exception:
            logger.exception(
                f"Failed to emit {event.trigger_type} for {event.entity_type} {event.entity_id}"
            )

    async def drain(self, limit: int = 100) -> Dict[str, int]:
        """Deliver queued events (outbox transport); a no-op in process."""
        return await self._transport.drain(self._dispatch, limit)

    async def _dispatch(self, event: TriggerEvent) -> int:
        """Dispatch event to matching subscribers. Returns the number of failed callbacks."""
        failures = 0
        for pattern, callbacks in list(self._subscriptions.items()):
            if self._matches_pattern(pattern, event):
                for callback in callbacks:
                    try:
                        await callback(event)
                    except Exception as e:
                        failures += 1
                        logger.error(f"Event callback error for {pattern}: {e}")
        return failures

    @staticmethod
    def _matches_pattern(pattern: str, event: TriggerEvent) -> bool:
        """Check if event matches subscription pattern."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return event.trigger_type.startswith(pattern[:-1])
        return pattern == event.trigger_type
