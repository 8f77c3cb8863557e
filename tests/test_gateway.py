import json
from decimal import Decimal

import httpx
import pytest

from cartpay.exceptions import GatewayError, GatewayUnavailable
from cartpay.gateway import ApiClient, CartSyncClient, OrderClient, PaymentClient
from cartpay.models import Cart, CartItem, CartSnapshot, CustomerInfo, PaymentMethod, PaymentStatus


def api_with(handler, token=None):
    return ApiClient(base_url="https://backend.test/api", token=token, transport=httpx.MockTransport(handler))


@pytest.fixture
def snapshot():
    items = (
        CartItem(product_id=1, name="Widget", unit_price=Decimal("250.00"), quantity=2, stock_available=5),
    )
    return CartSnapshot(session_id="s1", items=items, total_price=Decimal("500.00"))


async def test_create_order_posts_snapshot(snapshot, customer):
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"order_id": "9f1c"})

    order = await OrderClient(api_with(handler, token="tkn")).create_order(customer, snapshot, PaymentMethod.CARD)

    assert order.id == "9f1c"
    assert order.total_amount == Decimal("500.00")
    assert seen["path"] == "/api/orders/"
    assert seen["auth"] == "Bearer tkn"
    assert seen["body"]["total_amount"] == "500.00"
    assert seen["body"]["payment_method"] == "card"
    assert seen["body"]["items"] == [{"product_id": 1, "quantity": 2, "unit_price_at_sale": "250.00"}]
    assert seen["body"]["customer"]["name"] == customer.name


async def test_create_order_error_detail(snapshot, customer):
    def handler(request):
        return httpx.Response(400, json={"detail": "Insufficient stock for Widget"})

    with pytest.raises(GatewayError) as exc_info:
        await OrderClient(api_with(handler)).create_order(customer, snapshot, PaymentMethod.CASH)

    assert not isinstance(exc_info.value, GatewayUnavailable)
    assert exc_info.value.message == "Insufficient stock for Widget"
    assert exc_info.value.status_code == 400


async def test_field_errors_are_readable(snapshot, customer):
    def handler(request):
        return httpx.Response(400, json={"phone": ["This field is required."]})

    with pytest.raises(GatewayError, match="phone: This field is required."):
        await OrderClient(api_with(handler)).create_order(customer, snapshot, PaymentMethod.CASH)


async def test_create_order_without_id(snapshot, customer):
    def handler(request):
        return httpx.Response(200, json={"status": "ok"})

    with pytest.raises(GatewayError):
        await OrderClient(api_with(handler)).create_order(customer, snapshot, PaymentMethod.CASH)


@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_server_errors_are_transient(status_code):
    def handler(request):
        return httpx.Response(status_code, text="upstream unavailable")

    with pytest.raises(GatewayUnavailable):
        await PaymentClient(api_with(handler)).check_status("ws_CO_1")


async def test_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayUnavailable):
        await PaymentClient(api_with(handler)).initiate("ord-1", "254712345678", Decimal("10"))


async def test_initiate_returns_tracking_id():
    def handler(request):
        body = json.loads(request.content)
        assert body == {"order_id": "ord-1", "phone": "254712345678", "amount": "600.00"}
        return httpx.Response(200, json={"success": True, "checkout_request_id": "ws_CO_191220191020363925"})

    tracking_id = await PaymentClient(api_with(handler)).initiate("ord-1", "254712345678", Decimal("600.00"))
    assert tracking_id == "ws_CO_191220191020363925"


@pytest.mark.parametrize("body", [
    {"success": False, "message": "Subscriber locked"},
    {"success": True, "message": "queued"},
])
async def test_initiate_non_acknowledgment(body):
    def handler(request):
        return httpx.Response(200, json=body)

    with pytest.raises(GatewayError) as exc_info:
        await PaymentClient(api_with(handler)).initiate("ord-1", "254712345678", Decimal("1"))
    assert exc_info.value.message == body["message"] or "tracking id" in exc_info.value.message


@pytest.mark.parametrize("body,expected", [
    ({"status": "success"}, PaymentStatus.SUCCESS),
    ({"status": "COMPLETED"}, PaymentStatus.SUCCESS),
    ({"status": "failed"}, PaymentStatus.FAILED),
    ({"status": "pending"}, PaymentStatus.PENDING),
    ({"success": True, "payment": {"status": "completed"}}, PaymentStatus.SUCCESS),
    ({"status": "on_hold"}, PaymentStatus.PENDING),
])
async def test_check_status(body, expected):
    def handler(request):
        assert request.url.path == "/api/payments/status/ws_CO_1/"
        return httpx.Response(200, json=body)

    assert await PaymentClient(api_with(handler)).check_status("ws_CO_1") is expected


async def test_unknown_tracking_id_is_unrecoverable():
    def handler(request):
        return httpx.Response(404, json={"detail": "Not found."})

    with pytest.raises(GatewayError) as exc_info:
        await PaymentClient(api_with(handler)).check_status("nope")
    assert not isinstance(exc_info.value, GatewayUnavailable)


async def test_cart_sync_puts_items():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(204)

    cart = Cart.build("sess-9", [
        CartItem(product_id=3, name="Cable", unit_price=Decimal("5"), quantity=1, stock_available=2),
    ])
    await CartSyncClient(api_with(handler)).push(cart)

    assert seen["method"] == "PUT"
    assert seen["path"] == "/api/cart/sess-9/"
    assert seen["body"]["items"][0]["product_id"] == 3
