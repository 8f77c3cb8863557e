"""
REST collaborators: order creation, mobile money payment initiation and
status checks, and best-effort remote cart sync.

All calls share one httpx.AsyncClient. Transport errors, timeouts, 429 and
5xx responses raise GatewayUnavailable; other non-2xx responses raise
GatewayError carrying the backend's human-readable detail.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from cartpay.config import Config
from cartpay.exceptions import GatewayError, GatewayUnavailable
from cartpay.models import Cart, CartSnapshot, CustomerInfo, Order, OrderLine, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

_SUCCESS_STATUSES = {"success", "completed", "paid"}
_FAILED_STATUSES = {"failed", "cancelled", "canceled", "rejected"}
_PENDING_STATUSES = {"pending", "processing", "initiated"}


def _error_detail(response: httpx.Response) -> str:
    """Extract a human-readable message from an error response"""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or f"HTTP {response.status_code}: {response.reason_phrase}"

    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            if body.get(key):
                return str(body[key])
        # DRF field errors: {"phone": ["This field is required."]}
        for field, errors in body.items():
            if isinstance(errors, list) and errors:
                return f"{field}: {errors[0]}"
    return f"HTTP {response.status_code}: {response.reason_phrase}"


class ApiClient:
    """Thin JSON-over-HTTP wrapper around httpx.AsyncClient"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json", "Cache-Control": "no-cache"}
        token = token if token is not None else Config.API_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=(base_url or Config.API_BASE_URL).rstrip("/"),
            headers=headers,
            timeout=timeout if timeout is not None else Config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"{method} {path} timed out: {e}")
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"{method} {path} failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayUnavailable(_error_detail(response), status_code=response.status_code)
        if response.is_error:
            raise GatewayError(_error_detail(response), status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            raise GatewayError(f"{method} {path} returned a non-JSON body", status_code=response.status_code)
        return body if isinstance(body, dict) else {"data": body}

    async def aclose(self) -> None:
        await self._client.aclose()


class OrderClient:
    """Order creation collaborator"""

    def __init__(self, api: ApiClient):
        self.api = api

    async def create_order(
        self,
        customer: CustomerInfo,
        snapshot: CartSnapshot,
        payment_method: PaymentMethod,
    ) -> Order:
        lines = tuple(
            OrderLine(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price_at_sale=item.unit_price,
            )
            for item in snapshot.items
        )
        payload = {
            "customer": customer.model_dump(mode="json"),
            "items": [line.model_dump(mode="json") for line in lines],
            "total_amount": str(snapshot.total_price),
            "payment_method": payment_method.value,
        }
        body = await self.api.request("POST", "/orders/", json=payload)

        order_id = body.get("order_id") or body.get("id")
        if not order_id:
            raise GatewayError(body.get("detail") or "Order response did not include an order id")

        return Order(
            id=str(order_id),
            customer=customer,
            items=lines,
            total_amount=snapshot.total_price,
            payment_method=payment_method,
        )


class PaymentClient:
    """Mobile money initiation and status collaborator"""

    def __init__(self, api: ApiClient):
        self.api = api

    async def initiate(self, order_id: str, phone: str, amount: Decimal) -> str:
        """
        Ask the gateway to push a payment prompt to the customer's phone.

        Returns:
            The tracking identifier used for status checks

        Raises:
            GatewayError: If the gateway did not acknowledge the request
        """
        body = await self.api.request(
            "POST",
            "/payments/initiate/",
            json={"order_id": order_id, "phone": phone, "amount": str(amount)},
        )
        if body.get("success") is False:
            raise GatewayError(body.get("message") or body.get("detail") or "Payment request was not accepted")

        tracking_id = body.get("tracking_id") or body.get("checkout_request_id")
        if not tracking_id:
            raise GatewayError(body.get("message") or "Payment acknowledgment did not include a tracking id")
        return str(tracking_id)

    async def check_status(self, tracking_id: str) -> PaymentStatus:
        body = await self.api.request("GET", f"/payments/status/{tracking_id}/")

        raw = body.get("status")
        if raw is None and isinstance(body.get("payment"), dict):
            raw = body["payment"].get("status")
        status = str(raw or "").strip().lower()

        if status in _SUCCESS_STATUSES:
            return PaymentStatus.SUCCESS
        if status in _FAILED_STATUSES:
            return PaymentStatus.FAILED
        if status not in _PENDING_STATUSES:
            logger.warning(f"Unrecognised payment status {raw!r} for {tracking_id}, treating as pending")
        return PaymentStatus.PENDING


class CartSyncClient:
    """Best-effort remote copy of the cart"""

    def __init__(self, api: ApiClient):
        self.api = api

    async def push(self, cart: Cart) -> None:
        await self.api.request(
            "PUT",
            f"/cart/{cart.session_id}/",
            json={"items": [item.model_dump(mode="json") for item in cart.items]},
        )
