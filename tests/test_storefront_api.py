import pytest
from fastapi.testclient import TestClient

from conftest import PeerAddress
from storage import StorageError

SHIPPING = {
    "fullName": "Asha Rao",
    "email": "asha@example.com",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "zip": "560001",
    "country": "India",
    "phone": "9876543210",
}
CARD = {"method": "card", "holderName": "Asha Rao", "number": "4242 4242 4242 4242", "expiry": "12/29", "cvv": "123"}


@pytest.fixture
def shopper(remote_client, products):
    return remote_client


def fill_cart(c):
    assert c.post("/api/cart/items", json={"productId": "tee-01", "size": "M"}).status_code == 200
    response = c.post("/api/cart/items", json={"productId": "cap-01", "size": "L", "quantity": 2})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    assert client.get("/").json() == {"message": "Storefront API running"}
    status = client.get("/test").json()
    assert status["storage"] == "✅ Connected & Working"
    assert status["storage_backend"] == "memory"


def test_catalog_is_public(shopper):
    names = {p["name"] for p in shopper.get("/api/catalog").json()}
    assert names == {"Classic Tee", "Logo Cap", "Hoodie", "Raglan Tee"}


def test_cart_totals(shopper):
    cart = fill_cart(shopper)
    assert (cart["subtotal"], cart["shipping"], cart["total"]) == (1350, 60, 1410)
    assert [(i["name"], i["price"], i["quantity"]) for i in cart["items"]] == [("Classic Tee", 750, 1), ("Logo Cap", 300, 2)]
    assert shopper.get("/api/cart").json() == cart


def test_cart_client_cookie(shopper):
    response = shopper.get("/api/cart")
    assert "storefront.cid=" in response.headers["set-cookie"]
    assert "set-cookie" not in shopper.get("/api/cart").headers


def test_carts_are_per_browser(app, shopper):
    fill_cart(shopper)
    with TestClient(PeerAddress(app, "198.51.100.9")) as other:
        assert other.get("/api/cart").json()["items"] == []


def test_update_and_remove_lines(shopper):
    fill_cart(shopper)
    cart = shopper.patch("/api/cart/items/1", json={"quantity": 0}).json()
    assert cart["items"][1]["quantity"] == 1
    cart = shopper.delete("/api/cart/items/0").json()
    assert [i["id"] for i in cart["items"]] == ["cap-01"]
    assert shopper.delete("/api/cart/items/5").status_code == 404
    assert shopper.delete("/api/cart").json()["items"] == []


def test_cannot_add_unavailable_items(shopper):
    assert shopper.post("/api/cart/items", json={"productId": "hood-01", "size": "M"}).status_code == 409
    assert shopper.post("/api/cart/items", json={"productId": "tee-02", "size": "XL"}).status_code == 409
    assert shopper.post("/api/cart/items", json={"productId": "tee-02", "size": "L"}).status_code == 200
    assert shopper.post("/api/cart/items", json={"productId": "ghost", "size": "L"}).status_code == 404


def test_add_to_cart_is_logged(shopper, app):
    fill_cart(shopper)
    events = app.state.events.list()
    assert [e.type for e in events] == ["Add to Cart", "Add to Cart"]
    assert events[0].data == {"id": "cap-01", "name": "Logo Cap", "price": 300}


def test_place_card_order(shopper):
    fill_cart(shopper)
    assert shopper.get("/api/checkout").json()["state"] == "shipping_entry"
    assert shopper.post("/api/checkout/shipping", json=SHIPPING).json()["state"] == "payment_selection"

    response = shopper.post("/api/checkout/place", json={"payment": CARD})
    assert response.status_code == 200
    body = response.json()
    order = body["order"]
    assert body["checkout"]["state"] == "confirmed"
    assert order["orderNumber"].startswith("11C")
    assert order["total"] == 1410
    assert "4242424242424242" not in response.text
    assert "4242 4242" not in response.text

    assert shopper.get("/api/cart").json()["items"] == []
    assert shopper.get("/api/checkout/last-order").json()["orderNumber"] == order["orderNumber"]


def test_invalid_card_names_field(shopper):
    fill_cart(shopper)
    shopper.post("/api/checkout/shipping", json=SHIPPING)
    response = shopper.post("/api/checkout/place", json={"payment": dict(CARD, expiry="13/29")})
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "expiry"
    assert shopper.get("/api/checkout").json()["state"] == "payment_selection"
    assert len(shopper.get("/api/cart").json()["items"]) == 2


def test_invalid_shipping_names_field(shopper):
    response = shopper.post("/api/checkout/shipping", json=dict(SHIPPING, email="asha"))
    assert response.status_code == 400
    assert response.json()["field"] == "email"
    assert shopper.get("/api/checkout").json()["state"] == "shipping_entry"


def test_unknown_payment_method(shopper):
    fill_cart(shopper)
    shopper.post("/api/checkout/shipping", json=SHIPPING)
    assert shopper.post("/api/checkout/place", json={"payment": {"method": "crypto"}}).status_code == 400


def test_place_before_shipping_conflicts(shopper):
    fill_cart(shopper)
    assert shopper.post("/api/checkout/place", json={"payment": {"method": "cod"}}).status_code == 409


def test_empty_cart(shopper):
    shopper.post("/api/checkout/shipping", json=SHIPPING)
    response = shopper.post("/api/checkout/place", json={"payment": {"method": "cod"}})
    assert response.status_code == 400
    assert shopper.get("/api/checkout").json()["state"] == "payment_selection"


def test_upi_flow(shopper):
    fill_cart(shopper)
    shopper.post("/api/checkout/shipping", json=SHIPPING)
    body = shopper.post("/api/checkout/place", json={"payment": {"method": "upi", "upiId": "asha@okbank"}}).json()

    checkout = body["checkout"]
    assert checkout["state"] == "awaiting_external_confirmation"
    assert checkout["busy"] is True
    assert checkout["pendingPayment"]["upiLink"].startswith("upi://pay?pa=asha%40okbank")
    assert "tn=Order%20" + body["order"]["orderNumber"] in checkout["pendingPayment"]["upiLink"]
    assert shopper.get("/api/cart").json()["items"] == []

    assert shopper.post("/api/checkout/shipping", json=SHIPPING).status_code == 409

    confirmed = shopper.post("/api/checkout/upi/confirm")
    assert confirmed.status_code == 200
    assert confirmed.json()["checkout"]["state"] == "confirmed"
    assert shopper.post("/api/checkout/upi/confirm").status_code == 409


def test_upi_cancel(shopper):
    fill_cart(shopper)
    shopper.post("/api/checkout/shipping", json=SHIPPING)
    order = shopper.post("/api/checkout/place", json={"payment": {"method": "upi", "upiId": "asha@okbank"}}).json()
    assert shopper.post("/api/checkout/cancel").json()["state"] == "shipping_entry"
    assert shopper.get("/api/checkout/last-order").json()["orderNumber"] == order["order"]["orderNumber"]


def test_no_last_order(shopper):
    assert shopper.get("/api/checkout/last-order").status_code == 404


def test_customer_account_and_order_history(shopper):
    registered = shopper.post("/api/auth/register", json={"name": "Asha", "email": "Asha@Example.com", "password": "secret1"})
    assert registered.status_code == 200
    assert registered.json()["user"]["email"] == "asha@example.com"
    assert "passwordHash" not in registered.json()["user"]

    assert shopper.post("/api/auth/register", json={"name": "A", "email": "asha@example.com", "password": "secret1"}).status_code == 400
    assert shopper.post("/api/auth/login", json={"email": "asha@example.com", "password": "nope"}).status_code == 401

    token = shopper.post("/api/auth/login", json={"email": "asha@example.com", "password": "secret1"}).json()["token"]
    auth = {"Authorization": f"Bearer {token}"}
    assert shopper.get("/api/me", headers=auth).json()["name"] == "Asha"

    fill_cart(shopper)
    shopper.post("/api/checkout/shipping", json=SHIPPING)
    order = shopper.post("/api/checkout/place", json={"payment": {"method": "cod"}}, headers=auth).json()["order"]

    history = shopper.get("/api/orders", headers=auth).json()["items"]
    assert [o["orderNumber"] for o in history] == [order["orderNumber"]]
    assert shopper.get("/api/me", headers=auth).json()["shippingAddress"]["city"] == "Bengaluru"


def test_protected_customer_routes(shopper):
    assert shopper.get("/api/orders").status_code == 401
    assert shopper.get("/api/me", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_site_contact_defaults_empty(shopper):
    assert shopper.get("/api/contact").json() == {}


def test_cart_storage_failure_is_a_server_error(app, shopper, monkeypatch):
    def broken(key, fn):
        raise StorageError("disk full")

    monkeypatch.setattr(app.state.kv, "_update", broken)
    response = shopper.post("/api/cart/items", json={"productId": "tee-01", "size": "M"})
    assert response.status_code == 500
    assert response.json() == {"detail": "Storage unavailable. Please try again."}
    assert app.state.events.count() == 0
