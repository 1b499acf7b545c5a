import logging
import re
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

import events as ev
from admin import SITE_CONTACT_KEY
from cart import CartError, CartStore
from catalog import CatalogError
from checkout import Checkout, CheckoutError
from customers import CustomerAccounts, CustomerError
from orders import load_last_order
from payments import PaymentValidationError
from schemas import (
    AddToCartRequest,
    CartItem,
    Customer,
    CustomerLoginRequest,
    PlaceOrderRequest,
    RegisterRequest,
    ShippingAddress,
    UpdateQuantityRequest,
)
from storage import StorageError

logger = logging.getLogger(__name__)

CLIENT_COOKIE = "storefront.cid"
CLIENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")

router = APIRouter(prefix="/api")
bearer = HTTPBearer(auto_error=False)


def storefront_client(request: Request) -> str:
    """Opaque per-browser id; minted on first visit and returned as a cookie."""
    client_id = request.cookies.get(CLIENT_COOKIE)
    if not client_id or not CLIENT_ID_RE.match(client_id):
        client_id = secrets.token_urlsafe(18)
        request.state.new_client_id = client_id
    return client_id


def get_customers(request: Request) -> CustomerAccounts:
    return request.app.state.customers


def optional_customer(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    customers: CustomerAccounts = Depends(get_customers),
) -> Optional[Customer]:
    if credentials is None:
        return None
    try:
        return customers.decode_token(credentials.credentials)
    except CustomerError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


def current_customer(customer: Optional[Customer] = Depends(optional_customer)) -> Customer:
    if customer is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return customer


def get_cart(request: Request, client_id: str = Depends(storefront_client)) -> CartStore:
    return CartStore(request.app.state.kv.namespace(client_id), request.app.state.settings.shipping_cost)


def get_checkout(request: Request, client_id: str = Depends(storefront_client)) -> Checkout:
    return request.app.state.checkouts.get(client_id)


def cart_response(cart: CartStore):
    return cart.summary().model_dump(mode="json", by_alias=True)


# Catalog / contact

@router.get("/catalog")
def list_catalog(request: Request):
    try:
        products = request.app.state.catalog.list()
    except StorageError:
        logger.exception("[API] Error reading products")
        raise HTTPException(status_code=500, detail="Failed to read products")
    return [p.model_dump(mode="json", by_alias=True) for p in products.values()]


@router.get("/contact")
def site_contact(request: Request):
    return request.app.state.kv.get(SITE_CONTACT_KEY) or {}


# Cart

@router.get("/cart")
def read_cart(cart: CartStore = Depends(get_cart)):
    return cart_response(cart)


@router.post("/cart/items")
def add_cart_item(payload: AddToCartRequest, request: Request, cart: CartStore = Depends(get_cart)):
    try:
        product = request.app.state.catalog.get(payload.product_id)
    except CatalogError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except StorageError:
        logger.exception("[API] Error reading products")
        raise HTTPException(status_code=500, detail="Failed to read products")
    if product.out_of_stock:
        raise HTTPException(status_code=409, detail="This product is currently out of stock.")
    if payload.size in product.unavailable_sizes:
        raise HTTPException(status_code=409, detail=f"Size {payload.size} is currently unavailable.")

    item = CartItem(
        id=product.id,
        name=product.name,
        image=product.images.front,
        size=payload.size,
        printing=payload.printing,
        customization=payload.customization.strip() if payload.printing != "none" else "",
        price=product.price,
        quantity=payload.quantity,
    )
    cart.add(item)
    request.app.state.events.record(ev.ADD_TO_CART, {"id": item.id, "name": item.name, "price": item.price})
    return cart_response(cart)


@router.patch("/cart/items/{index}")
def update_cart_item(index: int, payload: UpdateQuantityRequest, cart: CartStore = Depends(get_cart)):
    try:
        cart.update_quantity(index, payload.quantity)
    except CartError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return cart_response(cart)


@router.delete("/cart/items/{index}")
def remove_cart_item(index: int, request: Request, cart: CartStore = Depends(get_cart)):
    try:
        removed = cart.remove(index)
    except CartError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    request.app.state.events.record(ev.REMOVE_FROM_CART, {"id": removed.id, "name": removed.name})
    return cart_response(cart)


@router.delete("/cart")
def clear_cart(cart: CartStore = Depends(get_cart)):
    cart.clear()
    return cart_response(cart)


# Checkout

@router.get("/checkout")
def checkout_status(checkout: Checkout = Depends(get_checkout)):
    return checkout.snapshot()


@router.post("/checkout/shipping")
def submit_shipping(payload: ShippingAddress, checkout: Checkout = Depends(get_checkout)):
    try:
        checkout.submit_shipping(payload)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return checkout.snapshot()


@router.post("/checkout/place")
def place_order(
    payload: PlaceOrderRequest,
    checkout: Checkout = Depends(get_checkout),
    customer: Optional[Customer] = Depends(optional_customer),
):
    try:
        order = checkout.place_order(payload.payment, customer.email if customer else None)
    except PaymentValidationError as e:
        raise HTTPException(status_code=e.status_code, detail={"field": e.field, "message": e.message})
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except StorageError:
        logger.exception("[API] Error placing order")
        raise HTTPException(status_code=500, detail="Failed to place order")
    return {"order": order.model_dump(mode="json", by_alias=True), "checkout": checkout.snapshot()}


@router.post("/checkout/upi/confirm")
async def confirm_upi_payment(checkout: Checkout = Depends(get_checkout)):
    try:
        order = await checkout.confirm_external_payment()
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"order": order.model_dump(mode="json", by_alias=True), "checkout": await run_in_threadpool(checkout.snapshot)}


@router.post("/checkout/cancel")
def cancel_checkout(checkout: Checkout = Depends(get_checkout)):
    try:
        checkout.cancel()
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return checkout.snapshot()


@router.get("/checkout/last-order")
def last_order(request: Request, client_id: str = Depends(storefront_client)):
    order = load_last_order(request.app.state.session_kv.namespace(client_id))
    if order is None:
        raise HTTPException(status_code=404, detail="No recent order")
    return order.model_dump(mode="json", by_alias=True)


# Customer accounts

@router.post("/auth/register")
def register(payload: RegisterRequest, customers: CustomerAccounts = Depends(get_customers)):
    try:
        customer = customers.register(payload.name, str(payload.email), payload.password)
    except CustomerError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"token": customers.create_token(customer), "user": customer.public()}


@router.post("/auth/login")
def customer_login(payload: CustomerLoginRequest, customers: CustomerAccounts = Depends(get_customers)):
    try:
        customer = customers.authenticate(str(payload.email), payload.password)
    except CustomerError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"token": customers.create_token(customer), "user": customer.public()}


@router.get("/me")
def me(customer: Customer = Depends(current_customer)):
    return customer.public()


@router.get("/orders")
def my_orders(request: Request, customer: Customer = Depends(current_customer)):
    orders = request.app.state.orders.list(customer.email)
    return {"items": [o.model_dump(mode="json", by_alias=True) for o in orders]}
