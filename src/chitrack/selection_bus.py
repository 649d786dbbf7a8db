"""Publish/subscribe channel between the station search UI and the orchestrator."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Type

from .models import Station

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StationSelected:
    station: Station


@dataclass(frozen=True)
class SearchQueryChanged:
    query: str


Handler = Callable[[object], None]


class Subscription:
    """Handle returned by SelectionBus.subscribe; use as a context manager for symmetric teardown."""

    def __init__(self, bus: "SelectionBus", event_type: Type, handler: Handler):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class SelectionBus:
    """
    Fire-and-forget event channel.

    Each publish reaches the handlers registered at that moment, at most once
    each. Late subscribers never see earlier events. A handler that raises is
    logged and skipped; the rest still receive the event.
    """

    def __init__(self):
        self._subscriptions: Dict[Type, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type, handler: Handler) -> Subscription:
        subscription = Subscription(self, event_type, handler)
        with self._lock:
            self._subscriptions.setdefault(event_type, []).append(subscription)
        return subscription

    def publish(self, event: object) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(type(event), []))
        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(f"Handler for {type(event).__name__} failed")

    def subscriber_count(self, event_type: Type) -> int:
        with self._lock:
            return len(self._subscriptions.get(event_type, []))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            handlers = self._subscriptions.get(subscription.event_type, [])
            if subscription in handlers:
                handlers.remove(subscription)


# Process-wide bus used when none is injected
default_bus = SelectionBus()
