import json
import time

import pytest
from fastapi.testclient import TestClient

from main import create_app
from settings import Settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin@123"


class ManualClock:
    def __init__(self, start=None):
        self.now = time.time() if start is None else start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class PeerAddress:
    """Rewrites the connection's peer address; TestClient always reports 'testclient'."""

    def __init__(self, app, host):
        self.app = app
        self.host = host

    async def __call__(self, scope, receive, send):
        if scope["type"] in ("http", "websocket"):
            scope = dict(scope, client=(self.host, 50000))
        await self.app(scope, receive, send)


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=tmp_path,
        storage_backend="memory",
        default_admin_email=ADMIN_EMAIL,
        default_admin_password=ADMIN_PASSWORD,
        bcrypt_rounds=4,
        jwt_secret="test-secret",
        upi_verify_delay_seconds=0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def app(settings, clock):
    return create_app(settings, clock)


@pytest.fixture
def client(app):
    with TestClient(PeerAddress(app, "127.0.0.1")) as c:
        yield c


@pytest.fixture
def remote_client(app):
    with TestClient(PeerAddress(app, "203.0.113.7")) as c:
        yield c


def csrf_token(client):
    response = client.get("/api/csrf")
    assert response.status_code == 200
    return response.json()["csrfToken"]


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    token = csrf_token(client)
    response = client.post("/api/login", json={"email": email, "password": password}, headers={"X-CSRF-Token": token})
    return token, response


@pytest.fixture
def admin_client(client):
    token, response = login(client)
    assert response.status_code == 200
    client.headers["X-CSRF-Token"] = token
    return client


def write_products(data_dir, products):
    (data_dir / "products.json").write_text(json.dumps(products), encoding="utf-8")


def product_doc(product_id, name, price, **extra):
    doc = {"id": product_id, "name": name, "price": price, "description": "", "images": {"front": f"img/{product_id}.jpg"}}
    doc.update(extra)
    return doc


@pytest.fixture
def products(tmp_path):
    docs = {
        "tee-01": product_doc("tee-01", "Classic Tee", 750),
        "cap-01": product_doc("cap-01", "Logo Cap", 300),
        "hood-01": product_doc("hood-01", "Hoodie", 1500, outOfStock=True),
        "tee-02": product_doc("tee-02", "Raglan Tee", 900, unavailableSizes=["XL"]),
    }
    write_products(tmp_path, docs)
    return docs
