"""
Order record store: per-user order history, newest first, capped.
"""
from typing import List, Optional

from schemas import Order
from storage import KeyValueStore

USER_ORDERS_KEY = "userOrders"
LAST_ORDER_KEY = "lastOrder"
MAX_ORDERS_PER_USER = 50


class OrderHistory:
    def __init__(self, store: KeyValueStore, cap: int = MAX_ORDERS_PER_USER):
        self.store = store
        self.cap = cap

    def record(self, email: str, order: Order) -> None:
        doc = order.model_dump(mode="json", by_alias=True)

        def apply(orders):
            orders[email] = [doc] + orders.get(email, [])[: self.cap - 1]
            return orders

        self.store.update(USER_ORDERS_KEY, apply, default={})

    def discard(self, email: str, order_number: str) -> None:
        def apply(orders):
            orders[email] = [o for o in orders.get(email, []) if o.get("orderNumber") != order_number]
            return orders

        self.store.update(USER_ORDERS_KEY, apply, default={})

    def list(self, email: str) -> List[Order]:
        orders = self.store.get(USER_ORDERS_KEY) or {}
        return [Order.model_validate(o) for o in orders.get(email, [])]


def save_last_order(session_store: KeyValueStore, order: Order) -> None:
    session_store.set(LAST_ORDER_KEY, order.model_dump(mode="json", by_alias=True))


def load_last_order(session_store: KeyValueStore) -> Optional[Order]:
    raw = session_store.get(LAST_ORDER_KEY)
    return Order.model_validate(raw) if raw else None
