"""Publish/subscribe registry for real-time ticks."""

import logging
import threading
from typing import Callable

logger = logging.getLogger("autotrader.stream")


class Subscription:
    """Handle returned by :meth:`SubscriberRegistry.subscribe`."""

    def __init__(self, registry: "SubscriberRegistry", callback: Callable) -> None:
        self._registry = registry
        self._callback = callback
        self.active = True

    def cancel(self) -> None:
        """Stop delivery to this subscriber.  Safe to call more than once."""
        if self.active:
            self.active = False
            self._registry._remove(self)


class SubscriberRegistry:
    """Delivers events to callbacks in registration order.

    Delivery iterates over a snapshot taken at publish time, so subscribers
    added mid-delivery only see later events.  A callback that raises is
    logged and skipped; the rest still receive the event.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable) -> Subscription:
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event) -> int:
        """Deliver *event*; return how many subscribers handled it cleanly."""
        with self._lock:
            snapshot = list(self._subscriptions)

        delivered = 0
        for subscription in snapshot:
            if not subscription.active:
                continue
            try:
                subscription._callback(event)
                delivered += 1
            except Exception:
                logger.exception("Tick subscriber %r failed", subscription._callback)
        return delivered
