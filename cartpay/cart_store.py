"""
Per-session cart store backed by Redis, with best-effort remote sync.
"""
import asyncio
import hashlib
import logging
from decimal import Decimal
from typing import List, Optional, Set

from cartpay.config import Config
from cartpay.exceptions import (
    GatewayError,
    InsufficientStock,
    LimitExceededError,
    ProductNotFoundError,
    ValidationError,
)
from cartpay.gateway import CartSyncClient
from cartpay.models import Cart, CartItem, CartSnapshot, ProductDetails, compute_total
from cartpay.redis_client import RedisClient

logger = logging.getLogger(__name__)


class CartStore:
    """
    Cart for one browsing session.

    Every mutation builds the new cart off to the side, writes it to Redis,
    and only then replaces the in-memory state, so a failed write leaves the
    cart as it was. After the local commit the full item list is pushed to
    the remote cart endpoint in a background task whose failure is only
    logged.
    """

    def __init__(
        self,
        session_id: str,
        storage: RedisClient,
        remote_sync: Optional[CartSyncClient] = None,
        ttl: Optional[int] = None,
        max_items: Optional[int] = None,
    ):
        if not session_id or not session_id.strip():
            raise ValidationError("Session ID is required")

        self.session_id = session_id.strip()
        self.storage = storage
        self.remote_sync = remote_sync
        self._ttl = ttl if ttl is not None else Config.CART_TTL_SECONDS
        self._max_items = max_items if max_items is not None else Config.MAX_ITEMS_PER_CART
        self._sync_tasks: Set[asyncio.Task] = set()
        self._version = 0
        self._cart = self._load()

    def _get_cart_key(self) -> str:
        """Generate Redis key for cart"""
        return f"cart:{self.session_id}"

    def _hash_session_id(self) -> str:
        """Hash session ID for logging (no PII)"""
        return hashlib.sha256(self.session_id.encode()).hexdigest()[:8]

    def _load(self) -> Cart:
        raw = self.storage.get(self._get_cart_key())
        if not raw:
            return Cart.build(self.session_id, [])

        try:
            stored = Cart.model_validate_json(raw)
        except ValueError as e:
            logger.warning(
                f"Discarding unreadable stored cart: {e}",
                extra={"hashed_session_id": self._hash_session_id()}
            )
            return Cart.build(self.session_id, [])

        return Cart(
            session_id=self.session_id,
            items=stored.items,
            total_price=compute_total(stored.items),
            updated_at=stored.updated_at,
        )

    # Read accessors

    @property
    def cart(self) -> Cart:
        return self._cart.model_copy(deep=True)

    @property
    def items(self) -> List[CartItem]:
        return list(self._cart.items)

    @property
    def total_price(self) -> Decimal:
        return self._cart.total_price

    def get_item(self, product_id: int) -> Optional[CartItem]:
        index = self._find(product_id)
        return None if index is None else self._cart.items[index]

    def get_snapshot(self) -> CartSnapshot:
        """Immutable copy of the current items and total"""
        return CartSnapshot(
            session_id=self.session_id,
            items=tuple(self._cart.items),
            total_price=self._cart.total_price,
        )

    def _find(self, product_id: int) -> Optional[int]:
        for index, item in enumerate(self._cart.items):
            if item.product_id == product_id:
                return index
        return None

    # Mutations

    def add_item(self, product_id: int, quantity: int = 1, details: Optional[ProductDetails] = None) -> Cart:
        """
        Add units of a product, merging into an existing line.

        Raises:
            ValidationError: quantity below 1, or details missing for a new line
            InsufficientStock: the resulting quantity would exceed the stock
            LimitExceededError: the cart already holds the maximum number of lines
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        items = list(self._cart.items)
        index = self._find(product_id)

        if index is not None:
            line = items[index]
            new_quantity = line.quantity + quantity
            if new_quantity > line.stock_available:
                raise InsufficientStock(product_id, new_quantity, line.stock_available, line.name)
            items[index] = line.model_copy(update={"quantity": new_quantity})
        else:
            if details is None:
                raise ValidationError(f"Product details are required to add product {product_id}")
            if len(items) >= self._max_items:
                raise LimitExceededError(f"Cart exceeds maximum items {self._max_items}")
            if quantity > details.stock_available:
                raise InsufficientStock(product_id, quantity, details.stock_available, details.name)
            items.append(CartItem(
                product_id=product_id,
                name=details.name,
                unit_price=details.unit_price,
                quantity=quantity,
                stock_available=details.stock_available,
            ))

        return self._commit(items)

    def update_item(self, product_id: int, quantity: int) -> Cart:
        """Set a line's quantity; zero or less removes the line"""
        if quantity <= 0:
            return self.remove_item(product_id)

        index = self._find(product_id)
        if index is None:
            raise ProductNotFoundError(product_id)

        items = list(self._cart.items)
        line = items[index]
        if quantity > line.stock_available:
            raise InsufficientStock(product_id, quantity, line.stock_available, line.name)

        items[index] = line.model_copy(update={"quantity": quantity})
        return self._commit(items)

    def remove_item(self, product_id: int) -> Cart:
        if self._find(product_id) is None:
            return self.cart
        return self._commit([item for item in self._cart.items if item.product_id != product_id])

    def clear(self) -> Cart:
        return self._commit([])

    def _commit(self, items: List[CartItem]) -> Cart:
        cart = Cart.build(self.session_id, items)

        # Local storage first; a failure here leaves self._cart untouched
        self.storage.set(self._get_cart_key(), cart.model_dump_json(), ex=self._ttl)
        self._cart = cart
        self._version += 1

        logger.info(
            "Cart updated",
            extra={
                "hashed_session_id": self._hash_session_id(),
                "lines": len(cart.items),
                "total_price": str(cart.total_price),
            }
        )

        self._schedule_remote_sync(cart)
        return self.cart

    # Remote sync

    def _schedule_remote_sync(self, cart: Cart) -> None:
        if self.remote_sync is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping remote cart sync")
            return

        task = loop.create_task(self._push_remote(cart, self._version))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _push_remote(self, cart: Cart, version: int) -> None:
        if version != self._version:
            return  # superseded by a newer mutation
        try:
            await self.remote_sync.push(cart)
        except GatewayError as e:
            logger.warning(
                f"Remote cart sync failed: {e}",
                extra={"hashed_session_id": self._hash_session_id()}
            )
        except Exception as e:
            logger.error(
                f"Remote cart sync error: {e}",
                extra={"hashed_session_id": self._hash_session_id()},
                exc_info=True
            )

    async def drain(self) -> None:
        """Wait for outstanding remote sync tasks"""
        if self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks), return_exceptions=True)

    def destroy(self) -> None:
        """Drop the cart on logout: cancel pending syncs and delete the stored copy"""
        for task in list(self._sync_tasks):
            task.cancel()
        self._sync_tasks.clear()
        self.storage.delete(self._get_cart_key())
        self._cart = Cart.build(self.session_id, [])
