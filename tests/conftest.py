import asyncio
from decimal import Decimal
from typing import Callable, List, Optional

import fakeredis
import pytest

from cartpay.cart_store import CartStore
from cartpay.exceptions import GatewayError
from cartpay.models import (
    CartSnapshot,
    CustomerInfo,
    Order,
    OrderLine,
    PaymentMethod,
    PaymentStatus,
    ProductDetails,
)
from cartpay.redis_client import RedisClient


async def settle(rounds: int = 20) -> None:
    """Let ready tasks run to completion"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class VirtualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[[], None]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """Timer scheduler driven by advance() instead of the wall clock"""

    def __init__(self):
        self.now = 0.0
        self._seq = 0
        self._timers: List[VirtualTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> VirtualTimer:
        timer = VirtualTimer(self.now + delay, self._seq, callback)
        self._seq += 1
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> List[VirtualTimer]:
        return [t for t in self._timers if not t.cancelled]

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            await settle()
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback()
        self.now = target
        await settle()


class FakePaymentClient:
    """Scripted payment gateway; each status entry is a PaymentStatus or an exception"""

    def __init__(self, statuses=(), tracking_id: str = "ws_CO_0001", initiate_error: Optional[Exception] = None):
        self.statuses = list(statuses)
        self.tracking_id = tracking_id
        self.initiate_error = initiate_error
        self.initiate_calls = []
        self.status_calls = []
        self.clock: Optional[VirtualScheduler] = None
        self.initiate_gate: Optional[asyncio.Event] = None
        self.status_gate: Optional[asyncio.Event] = None
        self.on_initiate: Optional[Callable[[], None]] = None

    async def initiate(self, order_id: str, phone: str, amount: Decimal) -> str:
        self.initiate_calls.append({"order_id": order_id, "phone": phone, "amount": amount})
        if self.on_initiate is not None:
            self.on_initiate()
        if self.initiate_gate is not None:
            await self.initiate_gate.wait()
        if self.initiate_error is not None:
            raise self.initiate_error
        return self.tracking_id

    async def check_status(self, tracking_id: str) -> PaymentStatus:
        self.status_calls.append(self.clock.now if self.clock else None)
        if self.status_gate is not None:
            await self.status_gate.wait()
        result = self.statuses.pop(0) if self.statuses else PaymentStatus.PENDING
        if isinstance(result, Exception):
            raise result
        return result


class FakeOrderClient:
    def __init__(self, error: Optional[GatewayError] = None):
        self.error = error
        self.calls = []

    async def create_order(self, customer: CustomerInfo, snapshot: CartSnapshot, payment_method: PaymentMethod) -> Order:
        self.calls.append({"customer": customer, "snapshot": snapshot, "payment_method": payment_method})
        if self.error is not None:
            raise self.error
        return Order(
            id=f"ord-{len(self.calls)}",
            customer=customer,
            items=tuple(
                OrderLine(product_id=i.product_id, quantity=i.quantity, unit_price_at_sale=i.unit_price)
                for i in snapshot.items
            ),
            total_amount=snapshot.total_price,
            payment_method=payment_method,
        )


class FakeCartSync:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.pushes = []

    async def push(self, cart) -> None:
        self.pushes.append(cart)
        if self.error is not None:
            raise self.error


def product(name: str = "Widget", price: str = "10.00", stock: int = 3) -> ProductDetails:
    return ProductDetails(name=name, unit_price=Decimal(price), stock_available=stock)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def storage(fake_redis):
    return RedisClient(client=fake_redis)


@pytest.fixture
def store(storage):
    return CartStore("session-1", storage)


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def payment_client(scheduler):
    client = FakePaymentClient()
    client.clock = scheduler
    return client


@pytest.fixture
def customer():
    return CustomerInfo(name="Jane Wanjiku", phone="0712345678", email="jane@example.com", address="Moi Avenue, Nairobi")
