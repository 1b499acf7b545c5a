import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest
from passlib.context import CryptContext
from pydantic import ValidationError

from cart import CartStore
from checkout import (
    Checkout,
    CheckoutBusyError,
    CheckoutError,
    CheckoutRegistry,
    CheckoutState,
    CheckoutStateError,
    EmptyCartError,
    PaymentNotVerifiedError,
)
from customers import CustomerAccounts
from orders import OrderHistory, load_last_order
from payments import PaymentValidationError
from schemas import CardPayment, CartItem, CodPayment, ShippingAddress, UpiPayment
from storage import ChangeFeed, MemoryStore, StorageError

ADDRESS = ShippingAddress(
    fullName="Asha Rao",
    email="asha@example.com",
    address="12 MG Road",
    city="Bengaluru",
    state="KA",
    zip="560001",
    country="India",
    phone="9876543210",
)
CARD = CardPayment(method="card", holderName="Asha Rao", number="4242424242424242", expiry="12/29", cvv="123")


@pytest.fixture
def world(clock):
    feed = ChangeFeed()
    kv = MemoryStore(feed)
    session_kv = MemoryStore(feed)
    ctx = CryptContext(schemes=["bcrypt"], bcrypt__rounds=4)
    customers = CustomerAccounts(kv, ctx, "test-secret", 60, clock)
    history = OrderHistory(kv)

    def build(verifier=None):
        kwargs = {"verifier": verifier} if verifier else {}
        return Checkout(
            cart=CartStore(kv.namespace("client-a"), 60),
            session_store=session_kv.namespace("client-a"),
            history=history,
            customers=customers,
            clock=clock,
            store_name="11 Code",
            order_prefix="11C",
            verify_delay=0,
            **kwargs,
        )

    class World:
        pass

    w = World()
    w.kv, w.session_kv, w.customers, w.history, w.build = kv, session_kv, customers, history, build
    return w


def fill_cart(checkout):
    checkout.cart.add(CartItem(id="tee", name="Tee", price=750, quantity=1, size="M"))
    checkout.cart.add(CartItem(id="cap", name="Cap", price=300, quantity=2, size="L"))


def test_starts_in_shipping_entry(world):
    checkout = world.build()
    assert checkout.state == CheckoutState.SHIPPING_ENTRY
    with pytest.raises(CheckoutStateError):
        checkout.place_order(CodPayment(method="cod"))


def test_card_order_snapshots_and_clears_cart(world):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    assert checkout.state == CheckoutState.PAYMENT_SELECTION

    order = checkout.place_order(CARD)

    assert checkout.state == CheckoutState.CONFIRMED
    assert order.order_number.startswith("11C")
    assert (order.subtotal, order.shipping, order.total) == (1350, 60, 1410)
    assert [(i.id, i.quantity) for i in order.items] == [("tee", 1), ("cap", 2)]
    assert order.payment_token.startswith("tok_")
    assert checkout.cart.items() == []

    # later cart changes never reach the stored order
    checkout.cart.add(CartItem(id="mug", name="Mug", price=200, quantity=5))
    stored = load_last_order(checkout.session_store)
    assert stored == order
    assert [i.id for i in stored.items] == ["tee", "cap"]


def test_order_holds_no_card_data(world):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    order = checkout.place_order(CARD)
    dumped = order.model_dump_json()
    assert "4242424242424242" not in dumped
    assert "cvv" not in dumped.lower()


def test_invalid_payment_returns_to_selection(world):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    bad = CardPayment(method="card", holderName="Asha Rao", number="4242424242424241", expiry="12/29", cvv="123")
    with pytest.raises(PaymentValidationError) as exc:
        checkout.place_order(bad)
    assert exc.value.field == "number"
    assert checkout.state == CheckoutState.PAYMENT_SELECTION
    assert len(checkout.cart.items()) == 2
    assert load_last_order(checkout.session_store) is None

    checkout.place_order(CARD)
    assert checkout.state == CheckoutState.CONFIRMED


def test_empty_cart_is_rejected(world):
    checkout = world.build()
    checkout.submit_shipping(ADDRESS)
    with pytest.raises(EmptyCartError):
        checkout.place_order(CodPayment(method="cod"))
    assert checkout.state == CheckoutState.PAYMENT_SELECTION


def test_order_recorded_for_signed_in_customer(world):
    world.customers.register("Asha", "asha@example.com", "secret1")
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    order = checkout.place_order(CodPayment(method="cod"), customer_email="asha@example.com")

    assert world.history.list("asha@example.com") == [order]
    customer = world.customers.get("asha@example.com")
    assert customer.shipping_address == ADDRESS
    assert customer.phone == "9876543210"


def test_profile_save_failure_does_not_block_order(world, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("profile store down")

    monkeypatch.setattr(world.customers, "save_shipping_address", broken)
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    checkout.place_order(CodPayment(method="cod"), customer_email="asha@example.com")
    assert checkout.state == CheckoutState.CONFIRMED
    assert checkout.cart.items() == []


def test_history_failure_leaves_no_last_order(world, monkeypatch):
    def broken(email, order):
        raise StorageError("order store down")

    monkeypatch.setattr(world.history, "record", broken)
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    with pytest.raises(StorageError):
        checkout.place_order(CodPayment(method="cod"), customer_email="asha@example.com")

    assert checkout.state == CheckoutState.PAYMENT_SELECTION
    assert load_last_order(checkout.session_store) is None
    assert len(checkout.cart.items()) == 2


def test_cart_clear_failure_rolls_back_order(world, clock, monkeypatch):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    previous = checkout.place_order(CodPayment(method="cod"), customer_email="asha@example.com")

    clock.advance(5)
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)

    def broken():
        raise StorageError("cart store down")

    monkeypatch.setattr(checkout.cart, "clear", broken)
    with pytest.raises(StorageError):
        checkout.place_order(CodPayment(method="cod"), customer_email="asha@example.com")

    assert checkout.state == CheckoutState.PAYMENT_SELECTION
    assert load_last_order(checkout.session_store) == previous
    assert world.history.list("asha@example.com") == [previous]
    assert len(checkout.cart.items()) == 2


def test_placed_order_is_immutable(world):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    order = checkout.place_order(CARD)

    assert isinstance(order.items, tuple)
    with pytest.raises(AttributeError):
        order.items.append(order.items[0])
    with pytest.raises(ValidationError):
        order.items[0].quantity = 99
    with pytest.raises(ValidationError):
        order.shipping_address.city = "Mysuru"
    assert load_last_order(checkout.session_store).items[0].quantity == 1


def test_concurrent_place_order_creates_one_order(world):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)

    def attempt(_):
        try:
            return checkout.place_order(CodPayment(method="cod"), customer_email="asha@example.com")
        except CheckoutError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))

    orders = [r for r in results if r is not None]
    assert len(orders) == 1
    assert world.history.list("asha@example.com") == orders


def test_order_history_is_capped_newest_first(world):
    checkout = world.build()
    numbers = []
    for _ in range(3):
        fill_cart(checkout)
        checkout.submit_shipping(ADDRESS)
        numbers.append(checkout.place_order(CodPayment(method="cod"), customer_email="asha@example.com").order_number)
    assert [o.order_number for o in world.history.list("asha@example.com")] == numbers[::-1]

    small = OrderHistory(MemoryStore(), cap=2)
    for order in world.history.list("asha@example.com"):
        small.record("x@example.com", order)
    assert len(small.list("x@example.com")) == 2


def test_upi_waits_for_confirmation(world):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)

    order = checkout.place_order(UpiPayment(method="upi", upiId="asha@okbank"))

    assert checkout.state == CheckoutState.AWAITING_EXTERNAL_CONFIRMATION
    assert checkout.busy
    snap = checkout.snapshot()
    assert snap["pendingPayment"]["orderNumber"] == order.order_number
    assert snap["pendingPayment"]["upiLink"].startswith("upi://pay?pa=asha%40okbank&pn=11%20Code&am=1410")
    assert snap["pendingPayment"]["qrCode"].startswith("data:image/png;base64,")
    # committed before payment is verified
    assert checkout.cart.items() == []
    assert load_last_order(checkout.session_store) == order

    with pytest.raises(CheckoutBusyError):
        checkout.place_order(CodPayment(method="cod"))

    confirmed = asyncio.run(checkout.confirm_external_payment())
    assert confirmed == order
    assert checkout.state == CheckoutState.CONFIRMED
    assert "pendingPayment" not in checkout.snapshot()


def test_upi_verification_failure_allows_retry(world):
    answers = [False, True]

    async def verifier(order):
        return answers.pop(0)

    checkout = world.build(verifier=verifier)
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    checkout.place_order(UpiPayment(method="upi", upiId="asha@okbank"))

    with pytest.raises(PaymentNotVerifiedError):
        asyncio.run(checkout.confirm_external_payment())
    assert checkout.state == CheckoutState.AWAITING_EXTERNAL_CONFIRMATION

    asyncio.run(checkout.confirm_external_payment())
    assert checkout.state == CheckoutState.CONFIRMED


def test_upi_cancel_keeps_committed_order(world):
    checkout = world.build()
    fill_cart(checkout)
    checkout.submit_shipping(ADDRESS)
    order = checkout.place_order(UpiPayment(method="upi", upiId="asha@okbank"))

    checkout.cancel()

    assert checkout.state == CheckoutState.SHIPPING_ENTRY
    assert "pendingPayment" not in checkout.snapshot()
    assert load_last_order(checkout.session_store) == order
    with pytest.raises(CheckoutStateError):
        asyncio.run(checkout.confirm_external_payment())


def test_amounts_follow_cart_changes(world):
    checkout = world.build()
    assert checkout.amounts()["total"] == 60
    fill_cart(checkout)
    assert checkout.amounts() == {"subtotal": 1350, "shipping": 60, "total": 1410}
    checkout.cart.clear()
    assert checkout.amounts()["subtotal"] == 0


def test_registry_evicts_least_recently_used(world):
    built = []

    def factory(client_id):
        checkout = world.build()
        built.append(checkout)
        return checkout

    registry = CheckoutRegistry(factory, max_size=2)
    a = registry.get("a")
    registry.get("b")
    assert registry.get("a") is a
    registry.get("c")
    assert len(registry) == 2
    assert registry.get("a") is a
    assert len(built) == 3
