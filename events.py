"""
Event log: append-only domain events (cart and admin actions) for analytics.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from schemas import Event
from storage import KeyValueStore, StorageChange, StorageError

logger = logging.getLogger(__name__)

EVENTS_KEY = "events"

ADD_TO_CART = "Add to Cart"
REMOVE_FROM_CART = "Remove from Cart"
PRODUCT_ADDED = "Product Added"
PRODUCT_DELETED = "Product Deleted"
PRODUCT_OUT_OF_STOCK = "Product Out of Stock"
PRODUCT_IN_STOCK = "Product In Stock"
SIZE_UNAVAILABLE = "Size Marked Unavailable"
SIZE_RESTORED = "Size Restored"
CONTACT_UPDATED = "Contact Updated"


class EventLog:
    def __init__(self, store: KeyValueStore, clock: Callable[[], float]):
        self.store = store
        self.clock = clock

    def append(self, type: str, data: Any = None) -> Event:
        event = Event(type=type, data=data, timestamp=datetime.fromtimestamp(self.clock(), tz=timezone.utc))
        doc = event.model_dump(mode="json")

        def apply(events):
            events.append(doc)
            return events

        self.store.update(EVENTS_KEY, apply, default=[])
        return event

    def record(self, type: str, data: Any = None) -> Optional[Event]:
        """Best-effort append for analytics that follow an already committed change."""
        try:
            return self.append(type, data)
        except StorageError:
            logger.exception("Failed to record %s event", type)
            return None

    def list(self, limit: Optional[int] = None, newest_first: bool = True) -> List[Event]:
        events = [Event.model_validate(e) for e in (self.store.get(EVENTS_KEY) or [])]
        if newest_first:
            events.reverse()
        if limit is not None:
            events = events[:limit]
        return events

    def count(self) -> int:
        return len(self.store.get(EVENTS_KEY) or [])

    def clear(self) -> None:
        self.store.remove(EVENTS_KEY)


class DashboardSummary:
    """
    Admin dashboard metrics, recomputed only after the event log or the
    product catalog changes.
    """

    def __init__(self, events: EventLog, product_count: Callable[[], int], catalog_key: str, recent: int = 50):
        self.events = events
        self.product_count = product_count
        self.recent = recent
        self._cached: Optional[Dict[str, Any]] = None
        self._version = 0
        feed = events.store.feed
        self._subscriptions = [
            feed.subscribe(self.invalidate, key=events.store.full_key(EVENTS_KEY)),
            feed.subscribe(self.invalidate, key=catalog_key),
        ]

    def invalidate(self, change: Optional[StorageChange] = None) -> None:
        self._version += 1
        self._cached = None

    def close(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()

    def get(self) -> Dict[str, Any]:
        cached = self._cached
        if cached is None:
            version = self._version
            cached = self._build()
            # a change during the build leaves the result uncached
            if version == self._version:
                self._cached = cached
        return cached

    def _build(self) -> Dict[str, Any]:
        events = self.events.list()
        per_product: Dict[str, Dict[str, int]] = {}
        for ev in events:
            if ev.type != ADD_TO_CART or not isinstance(ev.data, dict):
                continue
            name = ev.data.get("name") or ev.data.get("id") or "unknown"
            day = ev.timestamp.date().isoformat()
            per_day = per_product.setdefault(name, {})
            per_day[day] = per_day.get(day, 0) + 1
        return {
            "productCount": self.product_count(),
            "eventCount": len(events),
            "addToCartByProduct": per_product,
            "recentEvents": [e.model_dump(mode="json") for e in events[: self.recent]],
        }
