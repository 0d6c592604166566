"""In-process publish/subscribe channel for run events.

Handlers are called synchronously in subscription order, so a single
publisher sees its events delivered in FIFO order. A failing handler is
logged and skipped; it never breaks the publisher or other handlers.

Usage::

    bus = EventBus()
    sub = bus.subscribe(print, ProgressUpdated)
    ...
    sub.unsubscribe()
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from spamguard.schemas.events import RunEvent

logger = logging.getLogger(__name__)

Handler = Callable[[RunEvent], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    bus: "EventBus"
    handler: Handler
    event_type: type[RunEvent] | None

    def unsubscribe(self) -> None:
        self.bus._remove(self)


class EventBus:
    """Explicit observer registry for :class:`RunEvent` instances."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        handler: Handler,
        event_type: type[RunEvent] | None = None,
    ) -> Subscription:
        """Register a handler for all events, or only for ``event_type``."""
        sub = Subscription(self, handler, event_type)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, handler: Handler) -> int:
        """Remove every subscription of ``handler``. Returns how many were removed."""
        before = len(self._subscriptions)
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]
        return before - len(self._subscriptions)

    def _remove(self, sub: Subscription) -> None:
        self._subscriptions = [s for s in self._subscriptions if s is not sub]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: RunEvent) -> None:
        # Snapshot so handlers may (un)subscribe while being called.
        for sub in list(self._subscriptions):
            if sub.event_type is not None and not isinstance(event, sub.event_type):
                continue
            try:
                sub.handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed on %s", sub.handler, type(event).__name__
                )
