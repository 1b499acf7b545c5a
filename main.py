import logging
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from passlib.context import CryptContext

import admin
import storefront
from admin_users import AdminUserStore
from cart import CartStore
from catalog import CATALOG_KEY, ProductCatalog
from checkout import Checkout, CheckoutRegistry
from customers import CustomerAccounts
from events import DashboardSummary, EventLog
from gate import AdminGate, RateLimiter, SessionStore
from orders import OrderHistory
from settings import Settings, configure_logging
from storage import ChangeFeed, MemoryStore, StorageError, build_store

logger = logging.getLogger(__name__)

# Paths that look like admin pages but are never served
BLOCKED_PATHS = [
    "/admin.html",
    "/admin-login",
    "/admin-login/",
    "/admin-login.html",
    "/admin.login",
    "/admin/admin-login.html",
    "/admin/admin-dashboard.html",
    "/admin/admin.html",
    "/views/admin-login.html",
    "/views/admin-dashboard.html",
]


def create_app(settings: Optional[Settings] = None, clock: Callable[[], float] = time.time) -> FastAPI:
    settings = settings or Settings.from_env()
    settings.warn_if_insecure()

    app = FastAPI(title="Storefront API", version="0.1.0")

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)
    feed = ChangeFeed()
    kv = build_store(settings.storage_backend, settings.data_dir, feed)
    session_kv = MemoryStore(feed)
    catalog = ProductCatalog(settings.data_dir / "products.json", feed)
    events = EventLog(kv, clock)
    orders = OrderHistory(kv)
    customers = CustomerAccounts(kv, password_ctx, settings.jwt_secret, settings.jwt_expires_min, clock)

    def new_checkout(client_id: str) -> Checkout:
        return Checkout(
            cart=CartStore(kv.namespace(client_id), settings.shipping_cost),
            session_store=session_kv.namespace(client_id),
            history=orders,
            customers=customers,
            clock=clock,
            store_name=settings.store_name,
            order_prefix=settings.order_prefix,
            verify_delay=settings.upi_verify_delay_seconds,
        )

    app.state.settings = settings
    app.state.clock = clock
    app.state.feed = feed
    app.state.kv = kv
    app.state.session_kv = session_kv
    app.state.catalog = catalog
    app.state.events = events
    app.state.orders = orders
    app.state.customers = customers
    app.state.checkouts = CheckoutRegistry(new_checkout)
    app.state.dashboard = DashboardSummary(events, catalog.count, CATALOG_KEY)
    app.state.admin_users = AdminUserStore(
        settings.data_dir / "admin-users.json",
        password_ctx,
        settings.default_admin_email,
        settings.default_admin_password,
    )
    app.state.gate = AdminGate(
        settings,
        SessionStore(settings.session_ttl_seconds, settings.session_max, clock),
        RateLimiter(settings.rate_limit_window_seconds, settings.rate_limit_max, settings.rate_limit_max_keys, clock),
    )

    @app.middleware("http")
    async def session_cookies(request: Request, call_next):
        response = await call_next(request)
        request.app.state.gate.apply_cookies(request, response)
        client_id = getattr(request.state, "new_client_id", None)
        if client_id:
            response.set_cookie(
                storefront.CLIENT_COOKIE,
                client_id,
                httponly=True,
                samesite="lax",
                secure=settings.is_production,
            )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = str(first.get("msg", "Invalid request"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        return JSONResponse(
            status_code=400,
            content={"detail": f"{field}: {message}" if field else message, "field": field or None},
        )

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        logger.error("[API] Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Storage unavailable. Please try again."})

    @app.get("/")
    def root():
        return {"message": "Storefront API running"}

    @app.get("/test")
    def test_storage():
        response = {
            "backend": "✅ Running",
            "storage_backend": settings.storage_backend,
            "storage": "❌ Not Available",
            "data_dir": str(settings.data_dir),
            "admin_enabled": settings.admin_enabled,
        }
        try:
            kv.get("siteContact")
            response["storage"] = "✅ Connected & Working"
        except Exception as e:
            response["storage"] = f"⚠️ Available but error: {str(e)[:80]}"
        return response

    def not_found():
        return PlainTextResponse("Not Found", status_code=404)

    for path in BLOCKED_PATHS:
        app.add_api_route(path, not_found, methods=["GET"], include_in_schema=False)

    app.include_router(admin.router)
    app.include_router(storefront.router)
    return app


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
