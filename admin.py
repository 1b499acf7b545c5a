import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

import events as ev
from catalog import CatalogError, ProductCatalog
from gate import AdminSession, admin_guard
from schemas import LoginRequest, ProductCreateRequest, SiteContact, StockUpdateRequest, is_valid_product_id
from storage import StorageError

logger = logging.getLogger(__name__)

VIEWS_DIR = Path(__file__).resolve().parent / "views"
SITE_CONTACT_KEY = "siteContact"

router = APIRouter()

admin_view = admin_guard()
admin_only = admin_guard(authenticated=True)
admin_csrf = admin_guard(csrf=True)
admin_write = admin_guard(csrf=True, authenticated=True)


def get_catalog(request: Request) -> ProductCatalog:
    return request.app.state.catalog


def get_events(request: Request) -> ev.EventLog:
    return request.app.state.events


def check_product_id(product_id: str) -> None:
    if not is_valid_product_id(product_id):
        raise HTTPException(status_code=400, detail="Invalid product ID")


# Views

@router.get("/admin")
async def admin_login_view(session: AdminSession = Depends(admin_view)):
    return FileResponse(VIEWS_DIR / "admin-login.html")


@router.get("/admin/dashboard")
async def admin_dashboard_view(session: AdminSession = Depends(admin_only)):
    return FileResponse(VIEWS_DIR / "admin-dashboard.html")


# Auth / CSRF / session

@router.get("/api/csrf")
async def csrf_token(session: AdminSession = Depends(admin_view)):
    return {"csrfToken": session.ensure_csrf()}


@router.get("/api/session")
async def session_status(session: AdminSession = Depends(admin_view)):
    return {"authenticated": session.authenticated}


@router.post("/api/login")
async def login(payload: LoginRequest, request: Request, session: AdminSession = Depends(admin_csrf)):
    email = str(payload.email).strip().lower()
    try:
        ok = await run_in_threadpool(request.app.state.admin_users.verify, email, payload.password)
    except StorageError:
        logger.exception("[AUTH] Error verifying admin user")
        raise HTTPException(status_code=500, detail="Login failed. Please try again.")
    if not ok:
        logger.info("[AUTH] Failed login attempt for: %s", email)
        raise HTTPException(status_code=401, detail="Invalid email or password")

    session.authenticated = True
    session.admin_email = email
    logger.info("[AUTH] Successful login for: %s", email)
    return {"ok": True}


@router.post("/api/logout")
async def logout(request: Request, session: AdminSession = Depends(admin_csrf)):
    request.app.state.gate.destroy(request, session)
    return {"ok": True}


# Products

@router.get("/api/products")
def list_products(catalog: ProductCatalog = Depends(get_catalog), session: AdminSession = Depends(admin_only)):
    try:
        products = catalog.list()
    except StorageError:
        logger.exception("[API] Error reading products")
        raise HTTPException(status_code=500, detail="Failed to read products")
    return {pid: p.model_dump(mode="json", by_alias=True) for pid, p in products.items()}


@router.post("/api/products")
def create_product(
    payload: ProductCreateRequest,
    catalog: ProductCatalog = Depends(get_catalog),
    events: ev.EventLog = Depends(get_events),
    session: AdminSession = Depends(admin_write),
):
    try:
        product = catalog.create(payload.to_product())
    except CatalogError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except StorageError:
        logger.exception("[API] Error adding product")
        raise HTTPException(status_code=500, detail="Failed to add product")
    events.record(ev.PRODUCT_ADDED, f"{product.name} (ID: {product.id})")
    return {"ok": True, "product": product.model_dump(mode="json", by_alias=True)}


@router.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    catalog: ProductCatalog = Depends(get_catalog),
    events: ev.EventLog = Depends(get_events),
    session: AdminSession = Depends(admin_write),
):
    check_product_id(product_id)
    try:
        product = catalog.delete(product_id)
    except CatalogError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except StorageError:
        logger.exception("[API] Error deleting product")
        raise HTTPException(status_code=500, detail="Failed to delete product")
    events.record(ev.PRODUCT_DELETED, f"{product.name} (ID: {product.id})")
    return {"ok": True}


@router.patch("/api/products/{product_id}/stock")
def update_stock(
    product_id: str,
    payload: StockUpdateRequest,
    catalog: ProductCatalog = Depends(get_catalog),
    events: ev.EventLog = Depends(get_events),
    session: AdminSession = Depends(admin_write),
):
    check_product_id(product_id)
    try:
        product = catalog.set_out_of_stock(product_id, payload.out_of_stock)
    except CatalogError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except StorageError:
        logger.exception("[API] Error updating stock")
        raise HTTPException(status_code=500, detail="Failed to update product")
    kind = ev.PRODUCT_OUT_OF_STOCK if product.out_of_stock else ev.PRODUCT_IN_STOCK
    events.record(kind, f"{product.name} (ID: {product.id})")
    return {"ok": True, "product": product.model_dump(mode="json", by_alias=True)}


def _change_size(request: Request, product_id: str, size: str, unavailable: bool):
    check_product_id(product_id)
    size = size.strip()
    if not size or len(size) > 10:
        raise HTTPException(status_code=400, detail="Invalid size")
    catalog = get_catalog(request)
    fn = catalog.mark_size_unavailable if unavailable else catalog.restore_size
    try:
        product = fn(product_id, size)
    except CatalogError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except StorageError:
        logger.exception("[API] Error updating sizes")
        raise HTTPException(status_code=500, detail="Failed to update product")
    if unavailable:
        get_events(request).record(ev.SIZE_UNAVAILABLE, f"{product.name} - Size {size}")
    else:
        get_events(request).record(ev.SIZE_RESTORED, f"{product.name} - Size {size} restored to available")
    return {"ok": True, "product": product.model_dump(mode="json", by_alias=True)}


@router.put("/api/products/{product_id}/sizes/{size}")
def mark_size_unavailable(product_id: str, size: str, request: Request,
                          session: AdminSession = Depends(admin_write)):
    return _change_size(request, product_id, size, unavailable=True)


@router.delete("/api/products/{product_id}/sizes/{size}")
def restore_size(product_id: str, size: str, request: Request,
                 session: AdminSession = Depends(admin_write)):
    return _change_size(request, product_id, size, unavailable=False)


# Events / dashboard / contact

@router.get("/api/events")
def list_events(limit: Optional[int] = None, events: ev.EventLog = Depends(get_events),
                session: AdminSession = Depends(admin_only)):
    items = events.list(limit=limit)
    return {"count": events.count(), "items": [e.model_dump(mode="json") for e in items]}


@router.delete("/api/events")
def clear_events(events: ev.EventLog = Depends(get_events), session: AdminSession = Depends(admin_write)):
    events.clear()
    return {"ok": True}


@router.get("/api/dashboard")
def dashboard(request: Request, session: AdminSession = Depends(admin_only)):
    try:
        return request.app.state.dashboard.get()
    except StorageError:
        logger.exception("[API] Error building dashboard")
        raise HTTPException(status_code=500, detail="Failed to load dashboard")


@router.put("/api/site-contact")
def update_site_contact(payload: SiteContact, request: Request,
                        events: ev.EventLog = Depends(get_events),
                        session: AdminSession = Depends(admin_write)):
    contact = payload.model_dump()
    request.app.state.kv.set(SITE_CONTACT_KEY, contact)
    events.record(ev.CONTACT_UPDATED, contact)
    return {"ok": True, "contact": contact}
