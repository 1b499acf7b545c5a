"""
Checkout state machine

    ShippingEntry -> PaymentSelection -> Validating -> {Card|Upi|Netbanking|Cod}Flow
        -> OrderCreated -> Confirmed
                        -> AwaitingExternalConfirmation (UPI) -> Confirmed

A failed validation leaves the machine where the user can correct and retry.
The order is committed (and the cart cleared) as soon as it is created, so a
UPI payment that is never confirmed still leaves an order behind.
"""
import asyncio
import logging
import secrets
import string
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from cart import CartStore
from customers import CustomerAccounts
from orders import LAST_ORDER_KEY, OrderHistory, load_last_order, save_last_order
from payments import base36, generate_payment_token, qr_data_uri, upi_link, validate_payment
from schemas import Order, OrderItem, PaymentDetails, ShippingAddress, UpiPayment
from storage import KeyValueStore, StorageChange

logger = logging.getLogger(__name__)


class CheckoutState(str, Enum):
    SHIPPING_ENTRY = "shipping_entry"
    PAYMENT_SELECTION = "payment_selection"
    VALIDATING = "validating"
    CARD_FLOW = "card_flow"
    UPI_FLOW = "upi_flow"
    NETBANKING_FLOW = "netbanking_flow"
    COD_FLOW = "cod_flow"
    ORDER_CREATED = "order_created"
    AWAITING_EXTERNAL_CONFIRMATION = "awaiting_external_confirmation"
    CONFIRMED = "confirmed"


METHOD_FLOWS = {
    "card": CheckoutState.CARD_FLOW,
    "upi": CheckoutState.UPI_FLOW,
    "netbanking": CheckoutState.NETBANKING_FLOW,
    "cod": CheckoutState.COD_FLOW,
}

BUSY_STATES = {CheckoutState.VALIDATING, CheckoutState.AWAITING_EXTERNAL_CONFIRMATION}

_NOT_SAVED = object()


class CheckoutError(Exception):
    status_code = 400
    field: Optional[str] = None


class CheckoutStateError(CheckoutError):
    status_code = 409


class CheckoutBusyError(CheckoutError):
    status_code = 409


class EmptyCartError(CheckoutError):
    def __init__(self):
        super().__init__("Cart is empty")


class PaymentNotVerifiedError(CheckoutError):
    status_code = 402

    def __init__(self):
        super().__init__("Payment not verified yet. Please try again.")


class PendingPayment:
    def __init__(self, order: Order, link: str, qr: str):
        self.order = order
        self.link = link
        self.qr = qr


async def always_verified(order: Order) -> bool:
    return True


class Checkout:
    """
    One storefront client's checkout.

    Holds no raw payment credentials: payment details are validated, turned
    into an opaque token and dropped within `place_order`.
    """

    def __init__(
        self,
        cart: CartStore,
        session_store: KeyValueStore,
        history: OrderHistory,
        customers: Optional[CustomerAccounts],
        clock: Callable[[], float],
        store_name: str,
        order_prefix: str,
        verify_delay: float = 1.2,
        verifier: Callable[[Order], Awaitable[bool]] = always_verified,
        token_factory: Callable[[], str] = generate_payment_token,
    ):
        self.cart = cart
        self.session_store = session_store
        self.history = history
        self.customers = customers
        self.clock = clock
        self.store_name = store_name
        self.order_prefix = order_prefix
        self.verify_delay = verify_delay
        self.verifier = verifier
        self.token_factory = token_factory

        self.state = CheckoutState.SHIPPING_ENTRY
        self.shipping_address: Optional[ShippingAddress] = None
        self.pending: Optional[PendingPayment] = None
        self.verifying = False
        self._amounts: Optional[Dict[str, float]] = None
        self._lock = threading.RLock()
        self._unwatch = cart.watch(self._cart_changed)

    def close(self) -> None:
        self._unwatch()

    def _cart_changed(self, change: StorageChange) -> None:
        self._amounts = None

    @property
    def busy(self) -> bool:
        return self.state in BUSY_STATES

    def amounts(self) -> Dict[str, float]:
        if self._amounts is None:
            subtotal = self.cart.subtotal()
            shipping = self.cart.shipping_cost
            self._amounts = {"subtotal": subtotal, "shipping": shipping, "total": subtotal + shipping}
        return dict(self._amounts)

    def submit_shipping(self, address: ShippingAddress) -> CheckoutState:
        with self._lock:
            if self.busy:
                raise CheckoutBusyError("Checkout is in progress")
            self.shipping_address = address
            self.pending = None
            self.state = CheckoutState.PAYMENT_SELECTION
            return self.state

    def new_order_number(self) -> str:
        millis = int(self.clock() * 1000)
        suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(4))
        return f"{self.order_prefix}{base36(millis).upper()}{suffix}"

    def place_order(self, payment: PaymentDetails, customer_email: Optional[str] = None) -> Order:
        with self._lock:
            return self._place_order(payment, customer_email)

    def _place_order(self, payment: PaymentDetails, customer_email: Optional[str]) -> Order:
        if self.busy:
            raise CheckoutBusyError("Checkout is in progress")
        if self.state != CheckoutState.PAYMENT_SELECTION or self.shipping_address is None:
            raise CheckoutStateError("Enter shipping details first")

        self.state = CheckoutState.VALIDATING
        try:
            validate_payment(payment)
            items = self.cart.items()
            if not items:
                raise EmptyCartError()
        except Exception:
            self.state = CheckoutState.PAYMENT_SELECTION
            raise
        self.state = METHOD_FLOWS[payment.method]

        subtotal = sum(i.price * i.quantity for i in items)
        shipping = self.cart.shipping_cost
        order = Order(
            order_number=self.new_order_number(),
            method=payment.method,
            subtotal=subtotal,
            shipping=shipping,
            total=subtotal + shipping,
            payment_token=self.token_factory(),
            items=[
                OrderItem(id=i.id, name=i.name, price=i.price, quantity=i.quantity, size=i.size, image=i.image)
                for i in items
            ],
            shipping_address=self.shipping_address,
            created_at=datetime.fromtimestamp(self.clock(), tz=timezone.utc),
        )
        try:
            self._commit(order, customer_email)
        except Exception:
            self.state = CheckoutState.PAYMENT_SELECTION
            raise

        if isinstance(payment, UpiPayment):
            link = upi_link(payment.vpa.strip(), self.store_name, order.total, f"Order {order.order_number}")
            self.pending = PendingPayment(order, link, qr_data_uri(link))
            self.state = CheckoutState.AWAITING_EXTERNAL_CONFIRMATION
        else:
            self.state = CheckoutState.CONFIRMED
        return order

    def _commit(self, order: Order, customer_email: Optional[str]) -> None:
        """Record the order, then expose it as the last order, then clear the cart; undo on failure."""
        previous = load_last_order(self.session_store)
        recorded = saved = False
        try:
            if customer_email:
                self.history.record(customer_email, order)
                recorded = True
            save_last_order(self.session_store, order)
            saved = True
            self.cart.clear()
        except Exception:
            self._rollback(order, customer_email if recorded else None, previous if saved else _NOT_SAVED)
            raise
        if customer_email and self.customers is not None:
            try:
                self.customers.save_shipping_address(customer_email, order.shipping_address)
            except Exception:
                logger.warning("Failed to save shipping address to profile for %s", customer_email, exc_info=True)
        self.state = CheckoutState.ORDER_CREATED

    def _rollback(self, order: Order, recorded_for: Optional[str], previous) -> None:
        try:
            if previous is not _NOT_SAVED:
                if previous is None:
                    self.session_store.remove(LAST_ORDER_KEY)
                else:
                    save_last_order(self.session_store, previous)
            if recorded_for:
                self.history.discard(recorded_for, order.order_number)
        except Exception:
            logger.exception("Failed to roll back order %s", order.order_number)

    async def confirm_external_payment(self) -> Order:
        # runs on the event loop: never wait for a worker thread holding the lock
        if not self._lock.acquire(blocking=False):
            raise CheckoutBusyError("Checkout is in progress")
        try:
            if self.state != CheckoutState.AWAITING_EXTERNAL_CONFIRMATION or self.pending is None:
                raise CheckoutStateError("No payment is awaiting confirmation")
            if self.verifying:
                raise CheckoutBusyError("Payment verification already in progress")
            order = self.pending.order
            self.verifying = True
        finally:
            self._lock.release()

        try:
            await asyncio.sleep(self.verify_delay)
            verified = await self.verifier(order)
        finally:
            self.verifying = False
        if not verified:
            raise PaymentNotVerifiedError()
        self.pending = None
        self.state = CheckoutState.CONFIRMED
        return order

    def cancel(self) -> CheckoutState:
        with self._lock:
            if self.verifying:
                raise CheckoutBusyError("Payment verification already in progress")
            if self.pending is not None:
                logger.warning("UPI payment for order %s abandoned before confirmation", self.pending.order.order_number)
            self.pending = None
            self.state = CheckoutState.SHIPPING_ENTRY
            return self.state

    def snapshot(self) -> Dict:
        data = {"state": self.state.value, "busy": self.busy, **self.amounts()}
        if self.pending is not None:
            data["pendingPayment"] = {
                "orderNumber": self.pending.order.order_number,
                "upiLink": self.pending.link,
                "qrCode": self.pending.qr,
            }
        return data


class CheckoutRegistry:
    """Live checkouts by client id, evicting the least recently used past `max_size`."""

    def __init__(self, factory: Callable[[str], Checkout], max_size: int = 10_000):
        self.factory = factory
        self.max_size = max_size
        self._checkouts: "OrderedDict[str, Checkout]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, client_id: str) -> Checkout:
        with self._lock:
            checkout = self._checkouts.get(client_id)
            if checkout is None:
                checkout = self.factory(client_id)
                self._checkouts[client_id] = checkout
                while len(self._checkouts) > self.max_size:
                    _, evicted = self._checkouts.popitem(last=False)
                    evicted.close()
            else:
                self._checkouts.move_to_end(client_id)
            return checkout

    def __len__(self) -> int:
        return len(self._checkouts)
