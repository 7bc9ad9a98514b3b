import dataclasses
import json
import time
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from services.product.app.main import create_app

PRODUCT = {
    "name": "Test Product CI",
    "description": "Description for CI test",
    "price": 99,
}


@pytest.fixture
def client(settings, broker):
    app = create_app(settings, broker=broker)
    with TestClient(app) as c:
        yield c


def _create_product(client, headers, body=PRODUCT) -> dict:
    r = client.post("/api/products", json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


# ── Authentication ──────────────────────────────


@pytest.mark.parametrize(
    "method,path,body",
    [
        ("post", "/api/products", PRODUCT),
        ("get", "/api/products", None),
        ("post", "/api/products/buy", {"ids": ["some_fallback_id_if_needed"]}),
        ("get", "/api/orders", None),
        ("get", f"/api/orders/{uuid4()}", None),
    ],
)
def test_protected_endpoints_require_token(client, method, path, body):
    r = client.request(method, path, json=body)
    assert r.status_code == 401
    assert r.headers["WWW-Authenticate"] == "Bearer"
    assert r.json()["error"] == "unauthorized"


def test_invalid_token_is_rejected(client, token_factory):
    headers = {"Authorization": f"Bearer {token_factory(secret='wrong')}"}
    assert client.get("/api/products", headers=headers).status_code == 401


# ── Catalog ─────────────────────────────────────


def test_create_product_echoes_fields(client, auth_headers):
    body = _create_product(client, auth_headers)

    assert body["_id"]
    assert body["name"] == PRODUCT["name"]
    assert body["description"] == PRODUCT["description"]
    assert body["price"] == PRODUCT["price"]


@pytest.mark.parametrize(
    "body",
    [
        {"description": "Description of Product 1", "price": 10.99},
        {"name": "Test No Price", "description": "Description of Product 1"},
        {"name": "", "price": 1},
        {"name": "   ", "price": 1},
        {"name": "Negative", "price": -1},
        {"name": "B", "price": True},
        {"name": "S", "price": "12"},
    ],
)
def test_create_product_validation_errors_are_400(client, auth_headers, body):
    r = client.post("/api/products", json=body, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"


@pytest.mark.parametrize("raw_price", ["Infinity", "-Infinity", "NaN"])
def test_non_finite_price_is_400_and_not_stored(client, auth_headers, raw_price):
    _create_product(client, auth_headers)
    before = client.get("/api/products", headers=auth_headers).json()

    r = client.post(
        "/api/products",
        content=f'{{"name": "Inf", "description": "", "price": {raw_price}}}',
        headers={**auth_headers, "Content-Type": "application/json"},
    )

    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"
    after = client.get("/api/products", headers=auth_headers)
    assert after.status_code == 200
    assert after.json() == before


def test_integer_price_is_accepted(client, auth_headers):
    body = _create_product(client, auth_headers, {"name": "Int", "price": 5})
    assert body["price"] == 5


def test_list_products(client, auth_headers):
    _create_product(client, auth_headers)

    r = client.get("/api/products", headers=auth_headers)

    assert r.status_code == 200
    assert isinstance(r.json(), list)
    assert [p["name"] for p in r.json()] == [PRODUCT["name"]]


# ── Purchase ────────────────────────────────────


def test_buy_returns_pending_immediately(client, auth_headers, broker):
    product = _create_product(client, auth_headers)

    r = client.post("/api/products/buy", json={"ids": [product["_id"]]}, headers=auth_headers)

    assert r.status_code == 201
    body = r.json()
    assert body["orderId"]
    assert body["status"] == "pending"
    assert isinstance(body["products"], list)
    assert body["products"][0]["_id"] == product["_id"]

    assert len(broker.messages) == 1
    payload = json.loads(broker.messages[0][1]["payload"])
    assert payload["orderId"] == body["orderId"]


def test_buy_with_malformed_id_is_400_and_creates_no_order(client, auth_headers, broker):
    r = client.post(
        "/api/products/buy", json={"ids": ["invalid_id_format"]}, headers=auth_headers
    )

    assert r.status_code == 400
    assert broker.messages == []
    assert client.get("/api/orders", headers=auth_headers).json() == []


def test_buy_with_unknown_id_is_404(client, auth_headers):
    r = client.post("/api/products/buy", json={"ids": [str(uuid4())]}, headers=auth_headers)
    assert r.status_code == 404


@pytest.mark.parametrize("body", [{"ids": []}, {}, {"ids": "not-a-list"}])
def test_buy_with_bad_body_is_400(client, auth_headers, body):
    r = client.post("/api/products/buy", json=body, headers=auth_headers)
    assert r.status_code == 400


def test_buy_when_broker_is_down_reports_order_id(client, auth_headers, broker):
    product = _create_product(client, auth_headers)
    broker.fail_adds = 100

    r = client.post("/api/products/buy", json={"ids": [product["_id"]]}, headers=auth_headers)

    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "publish_error"
    order = client.get(f"/api/orders/{body['orderId']}", headers=auth_headers).json()
    assert order["status"] == "pending"
    assert order["publishedAt"] is None


# ── Orders ──────────────────────────────────────


def test_orders_are_visible_only_to_their_buyer(client, auth_headers, token_factory):
    product = _create_product(client, auth_headers)
    order_id = client.post(
        "/api/products/buy", json={"ids": [product["_id"]]}, headers=auth_headers
    ).json()["orderId"]
    other = {"Authorization": f"Bearer {token_factory(username='someone-else')}"}

    mine = client.get(f"/api/orders/{order_id}", headers=auth_headers)
    theirs = client.get(f"/api/orders/{order_id}", headers=other)

    assert mine.status_code == 200
    assert mine.json()["productIds"] == [product["_id"]]
    assert theirs.status_code == 404
    assert client.get("/api/orders", headers=other).json() == []


def test_health_reports_broker_ready(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "product-service", "broker": "ready"}


def test_shutdown_releases_broker(settings, broker):
    with TestClient(create_app(settings, broker=broker)):
        assert broker.is_ready
    assert broker.closed


# ── End to end: purchase → consumer → completed ─


def test_purchase_is_completed_by_background_consumer(settings, broker, auth_headers):
    app = create_app(dataclasses.replace(settings, run_consumer=True), broker=broker)

    with TestClient(app) as client:
        product = _create_product(client, auth_headers)
        r = client.post(
            "/api/products/buy", json={"ids": [product["_id"]]}, headers=auth_headers
        )
        assert r.status_code == 201
        assert r.json()["status"] == "pending"
        order_id = r.json()["orderId"]

        order = None
        deadline = time.time() + 5
        while time.time() < deadline:
            order = client.get(f"/api/orders/{order_id}", headers=auth_headers).json()
            if order["status"] != "pending":
                break
            time.sleep(0.05)

    assert order["status"] == "completed"
    assert order["totalPrice"] == 99
    assert order["completedAt"] is not None
