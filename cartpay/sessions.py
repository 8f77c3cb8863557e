"""
Explicit per-session lifecycle for cart stores and checkout services.
"""
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from cartpay.cart_store import CartStore
from cartpay.checkout_service import CheckoutService
from cartpay.config import Config
from cartpay.gateway import ApiClient, CartSyncClient, OrderClient, PaymentClient
from cartpay.middleware import hash_identifier
from cartpay.payment_confirmation import Scheduler
from cartpay.redis_client import RedisClient

logger = logging.getLogger(__name__)


@dataclass
class Session:
    session_id: str
    cart: CartStore
    checkout: CheckoutService
    last_seen: float = field(default=0.0)


class SessionRegistry:
    """Creates a cart store and checkout service on session start, destroys them on logout"""

    def __init__(
        self,
        storage: RedisClient,
        api: ApiClient,
        cart_sync: Optional[bool] = None,
        scheduler: Optional[Scheduler] = None,
        idle_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.api = api
        self.order_client = OrderClient(api)
        self.payment_client = PaymentClient(api)
        sync_enabled = Config.CART_SYNC_ENABLED if cart_sync is None else cart_sync
        self.cart_sync_client = CartSyncClient(api) if sync_enabled else None
        self.scheduler = scheduler
        self.idle_timeout = idle_timeout if idle_timeout is not None else Config.SESSION_IDLE_SECONDS
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._next_sweep = clock() + Config.SESSION_SWEEP_INTERVAL_SECONDS

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session:
        now = self._clock()
        if now >= self._next_sweep:
            self.evict_idle()

        session = self._sessions.get(session_id)
        if session is None:
            cart = CartStore(session_id, self.storage, remote_sync=self.cart_sync_client)
            checkout = CheckoutService(
                cart,
                self.order_client,
                self.payment_client,
                scheduler=self.scheduler,
            )
            session = Session(session_id=cart.session_id, cart=cart, checkout=checkout)
            self._sessions[session.session_id] = session
            logger.info(f"Session started: {hash_identifier(session_id)}")
        session.last_seen = now
        return session

    def evict_idle(self) -> List[str]:
        """
        Drop sessions not seen for idle_timeout seconds.

        The checkout of an evicted session is closed; its cart stays in Redis
        until CART_TTL_SECONDS and is reloaded if the session returns.
        Sessions with a payment awaiting confirmation are kept.
        """
        now = self._clock()
        self._next_sweep = now + Config.SESSION_SWEEP_INTERVAL_SECONDS
        evicted = [
            session_id for session_id, session in self._sessions.items()
            if now - session.last_seen >= self.idle_timeout and not session.checkout.in_progress
        ]
        for session_id in evicted:
            session = self._sessions.pop(session_id)
            session.checkout.close()
            logger.info(f"Session evicted after idling: {hash_identifier(session_id)}")
        return evicted

    def end(self, session_id: str) -> bool:
        """Logout: cancel any live payment attempt and drop the stored cart"""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.checkout.close()
        session.cart.destroy()
        logger.info(f"Session ended: {hash_identifier(session_id)}")
        return True

    async def aclose(self) -> None:
        """Shutdown: stop live payment attempts and flush pending cart syncs"""
        for session in self._sessions.values():
            session.checkout.close()
        await asyncio.gather(
            *(session.cart.drain() for session in self._sessions.values()),
            return_exceptions=True,
        )
        self._sessions.clear()
        await self.api.aclose()
        self.storage.close()
