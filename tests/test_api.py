import json

import httpx
import pytest
from fastapi.testclient import TestClient

from cartpay.gateway import ApiClient
from cartpay.main import app
from cartpay.sessions import SessionRegistry

HEADERS = {"X-Session-ID": "browser-abc"}

WIDGET = {"product_id": 1, "quantity": 1, "name": "Widget", "unit_price": "10.00", "stock_available": 2}


@pytest.fixture
def backend_calls():
    return []


@pytest.fixture
def client(storage, backend_calls):
    def handler(request: httpx.Request):
        backend_calls.append((request.method, request.url.path, json.loads(request.content or b"{}")))
        if request.url.path.endswith("/orders/"):
            return httpx.Response(201, json={"order_id": "ord-77"})
        return httpx.Response(404, json={"detail": "Not found."})

    api = ApiClient(base_url="https://backend.test/api", transport=httpx.MockTransport(handler))
    app.state.registry = SessionRegistry(storage, api, cart_sync=False)
    with TestClient(app) as test_client:
        yield test_client
    app.state.registry = None


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["redis"]["status"] == "healthy"


def test_session_header_required(client):
    assert client.get("/cart").status_code == 422


def test_add_and_read_cart(client):
    response = client.post("/cart/items", json=WIDGET, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["items"][0]["quantity"] == 1
    assert body["item_count"] == 1

    client.post("/cart/items", json={"product_id": 1}, headers=HEADERS)
    cart = client.get("/cart", headers=HEADERS).json()
    assert cart["items"][0]["quantity"] == 2
    assert cart["total_price"] == "20.00"


def test_stock_violation_names_available_quantity(client):
    client.post("/cart/items", json={**WIDGET, "quantity": 2}, headers=HEADERS)
    response = client.post("/cart/items", json={"product_id": 1}, headers=HEADERS)

    assert response.status_code == 409
    body = response.json()
    assert body["available"] == 2
    assert "Only 2" in body["message"]


def test_new_product_without_details(client):
    response = client.post("/cart/items", json={"product_id": 5}, headers=HEADERS)
    assert response.status_code == 400


def test_update_and_remove(client):
    client.post("/cart/items", json=WIDGET, headers=HEADERS)
    assert client.put("/cart/items/1", json={"quantity": 2}, headers=HEADERS).json()["items"][0]["quantity"] == 2
    assert client.put("/cart/items/9", json={"quantity": 2}, headers=HEADERS).status_code == 404
    assert client.delete("/cart/items/1", headers=HEADERS).json()["items"] == []
    assert client.delete("/cart", headers=HEADERS).json()["total_price"] == "0"


def test_sessions_are_isolated(client):
    client.post("/cart/items", json=WIDGET, headers=HEADERS)
    other = client.get("/cart", headers={"X-Session-ID": "browser-xyz"}).json()
    assert other["items"] == []


def test_checkout_empty_cart(client):
    response = client.post(
        "/checkout",
        json={"customer": {"name": "A", "phone": "0712345678", "address": "B"}, "payment_method": "cash"},
        headers=HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["outcome"] == "empty_cart"


def test_cash_checkout(client, backend_calls):
    client.post("/cart/items", json=WIDGET, headers=HEADERS)
    response = client.post(
        "/checkout",
        json={"customer": {"name": "A", "phone": "0712345678", "address": "B"}, "payment_method": "cash"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["order_id"] == "ord-77"
    assert client.get("/cart", headers=HEADERS).json()["items"] == []
    assert backend_calls[0][0:2] == ("POST", "/api/orders/")


def test_mobile_money_initiation_failure(client):
    client.post("/cart/items", json=WIDGET, headers=HEADERS)
    response = client.post(
        "/checkout",
        json={"customer": {"name": "A", "phone": "0712345678", "address": "B"}, "payment_method": "mobile_money"},
        headers=HEADERS,
    )

    assert response.status_code == 402
    assert response.json()["outcome"] == "payment_failed"
    assert client.get("/checkout/payment", headers=HEADERS).json()["status"] == "failed"
    assert len(client.get("/cart", headers=HEADERS).json()["items"]) == 1


def test_payment_endpoints_without_attempt(client):
    assert client.get("/checkout/payment", headers=HEADERS).json() is None
    assert client.post("/checkout/payment/cancel", headers=HEADERS).json() == {"cancelled": False}
    assert client.post("/checkout/payment/retry", json={}, headers=HEADERS).status_code == 400


def test_end_session_drops_cart(client):
    client.post("/cart/items", json=WIDGET, headers=HEADERS)
    assert client.delete("/session", headers=HEADERS).json() == {"ended": True}
    assert client.get("/cart", headers=HEADERS).json()["items"] == []
    assert client.delete("/session", headers={"X-Session-ID": "unknown"}).json() == {"ended": False}
