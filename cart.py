"""
Cart store: one browser's ordered list of line items.

Lines are addressed by position. Removing a line shifts every later index.
"""
import logging
from typing import Any, Callable, List, Tuple

from pydantic import ValidationError

from schemas import CartItem, CartSummary
from storage import KeyValueStore, StorageChange

logger = logging.getLogger(__name__)

CART_KEY = "cart"


class CartError(Exception):
    status_code = 404


class CartStore:
    def __init__(self, store: KeyValueStore, shipping_cost: float):
        self.store = store
        self.shipping_cost = shipping_cost

    @property
    def key(self) -> str:
        return self.store.full_key(CART_KEY)

    def _parse(self, raw) -> List[CartItem]:
        items = []
        for entry in raw or []:
            try:
                items.append(CartItem.model_validate(entry))
            except ValidationError:
                logger.warning("Dropping malformed cart line from %s", self.key)
        return items

    def items(self) -> List[CartItem]:
        raw = self.store.get(CART_KEY) or []
        items = self._parse(raw)
        if len(items) < len(raw):
            self._save(items)
        return items

    def _save(self, items: List[CartItem]) -> None:
        self.store.set(CART_KEY, self._dump(items))

    @staticmethod
    def _dump(items: List[CartItem]) -> list:
        return [i.model_dump(mode="json", by_alias=True) for i in items]

    def _mutate(self, fn: Callable[[List[CartItem]], Any]) -> Tuple[List[CartItem], Any]:
        """Apply `fn` to the parsed lines under the store's update; nothing is saved if it raises."""
        box = {}

        def apply(raw):
            items = self._parse(raw)
            box["result"] = fn(items)
            box["items"] = items
            return self._dump(items)

        self.store.update(CART_KEY, apply, default=[])
        return box["items"], box["result"]

    def add(self, item: CartItem) -> List[CartItem]:
        def apply(items):
            for existing in items:
                if (existing.id, existing.size, existing.printing, existing.customization) == (
                    item.id,
                    item.size,
                    item.printing,
                    item.customization,
                ):
                    existing.quantity += item.quantity
                    return
            items.append(item.model_copy())

        items, _ = self._mutate(apply)
        return items

    def update_quantity(self, index: int, quantity: int) -> List[CartItem]:
        def apply(items):
            if not 0 <= index < len(items):
                raise CartError("Cart item not found")
            items[index].quantity = max(1, int(quantity or 1))

        items, _ = self._mutate(apply)
        return items

    def remove(self, index: int) -> CartItem:
        def apply(items):
            if not 0 <= index < len(items):
                raise CartError("Cart item not found")
            return items.pop(index)

        _, removed = self._mutate(apply)
        return removed

    def clear(self) -> None:
        self.store.remove(CART_KEY)

    def subtotal(self) -> float:
        return sum(i.price * i.quantity for i in self.items())

    def total(self) -> float:
        return self.subtotal() + self.shipping_cost

    def summary(self) -> CartSummary:
        items = self.items()
        subtotal = sum(i.price * i.quantity for i in items)
        return CartSummary(items=items, subtotal=subtotal, shipping=self.shipping_cost, total=subtotal + self.shipping_cost)

    def watch(self, callback: Callable[[StorageChange], None]) -> Callable[[], None]:
        """Call `callback` whenever this cart's stored value changes; returns an unsubscribe."""
        return self.store.feed.subscribe(callback, key=self.key)
