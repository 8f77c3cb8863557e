"""
Pydantic models for the cart, orders, payments, requests and responses.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from cartpay.exceptions import (
    CartException,
    EmptyCart,
    OrderCreationFailed,
    PaymentCancelled,
    PaymentFailed,
    PaymentTimeout,
    ValidationError,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductDetails(BaseModel):
    """Product facts supplied when a product is first added to the cart"""
    name: str = Field(..., description="Product display name")
    unit_price: Decimal = Field(..., ge=0, description="Current unit price")
    stock_available: int = Field(..., ge=0, description="Units currently in stock")


class CartItem(BaseModel):
    """Cart line item"""
    model_config = ConfigDict(frozen=True)

    product_id: int = Field(..., description="Product identifier")
    name: str = Field(..., description="Product display name")
    unit_price: Decimal = Field(..., ge=0, description="Unit price at time of add")
    quantity: int = Field(..., ge=1, description="Item quantity")
    stock_available: int = Field(..., ge=0, description="Stock ceiling for this line")

    @model_validator(mode="after")
    def check_stock(self) -> "CartItem":
        if self.quantity > self.stock_available:
            raise ValueError(
                f"Quantity {self.quantity} exceeds stock {self.stock_available} "
                f"for product {self.product_id}"
            )
        return self

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


def compute_total(items: Iterable[CartItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


class Cart(BaseModel):
    """Cart state as persisted for a session"""
    session_id: str = Field(..., description="Browsing session identifier")
    items: List[CartItem] = Field(default_factory=list, description="Cart lines, unique by product_id")
    total_price: Decimal = Field(Decimal("0"), description="Sum of unit_price x quantity")
    updated_at: datetime = Field(default_factory=utcnow, description="Last mutation time")

    @field_validator("items")
    @classmethod
    def unique_products(cls, v: List[CartItem]) -> List[CartItem]:
        seen = set()
        for item in v:
            if item.product_id in seen:
                raise ValueError(f"Duplicate cart line for product {item.product_id}")
            seen.add(item.product_id)
        return v

    @classmethod
    def build(cls, session_id: str, items: Iterable[CartItem]) -> "Cart":
        """Create a cart with its total recomputed from the given items"""
        items = list(items)
        return cls(
            session_id=session_id,
            items=items,
            total_price=compute_total(items),
            updated_at=utcnow(),
        )

    @computed_field
    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


class CartSnapshot(BaseModel):
    """Immutable copy of the cart taken at checkout time"""
    model_config = ConfigDict(frozen=True)

    session_id: str
    items: Tuple[CartItem, ...] = ()
    total_price: Decimal = Decimal("0")
    taken_at: datetime = Field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.items


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE_MONEY = "mobile_money"

    @property
    def is_async(self) -> bool:
        return self is PaymentMethod.MOBILE_MONEY


class PaymentStatus(str, Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    PaymentStatus.SUCCESS,
    PaymentStatus.FAILED,
    PaymentStatus.TIMEOUT,
    PaymentStatus.CANCELLED,
})


class CustomerInfo(BaseModel):
    """Customer and delivery data collected at checkout"""
    name: str = Field("", description="Customer name")
    phone: str = Field("", description="Customer phone number")
    email: Optional[str] = Field(None, description="Customer email")
    address: str = Field("", description="Delivery address")


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: int
    quantity: int
    unit_price_at_sale: Decimal


class Order(BaseModel):
    """Order created by the backend for one checkout attempt"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Backend order identifier")
    customer: CustomerInfo
    items: Tuple[OrderLine, ...]
    total_amount: Decimal
    payment_method: PaymentMethod
    created_at: datetime = Field(default_factory=utcnow)


class PaymentRequest(BaseModel):
    """One mobile money payment attempt against an order"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_id: str
    phone: str
    amount: Decimal
    status: PaymentStatus = PaymentStatus.IDLE
    tracking_id: Optional[str] = None
    error: Optional[str] = None


class CheckoutOutcome(str, Enum):
    SUCCESS = "success"
    EMPTY_CART = "empty_cart"
    VALIDATION_ERROR = "validation_error"
    ORDER_CREATION_FAILED = "order_creation_failed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_TIMEOUT = "payment_timeout"
    CANCELLED = "cancelled"


_OUTCOME_ERRORS = {
    CheckoutOutcome.EMPTY_CART: EmptyCart,
    CheckoutOutcome.VALIDATION_ERROR: ValidationError,
    CheckoutOutcome.ORDER_CREATION_FAILED: OrderCreationFailed,
    CheckoutOutcome.PAYMENT_FAILED: PaymentFailed,
    CheckoutOutcome.PAYMENT_TIMEOUT: PaymentTimeout,
    CheckoutOutcome.CANCELLED: PaymentCancelled,
}


class CheckoutResult(BaseModel):
    """Tagged result of a checkout submit or payment retry"""
    outcome: CheckoutOutcome
    message: str
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None

    @computed_field
    @property
    def ok(self) -> bool:
        return self.outcome is CheckoutOutcome.SUCCESS

    def raise_for_outcome(self) -> None:
        """Raise the matching exception when the checkout did not succeed"""
        if self.ok:
            return
        error_cls = _OUTCOME_ERRORS.get(self.outcome, CartException)
        raise error_cls(self.message)


# Request models for the HTTP surface

class AddItemRequest(BaseModel):
    """Request model for adding items to the cart"""
    product_id: int = Field(..., description="Product identifier")
    quantity: int = Field(1, description="Units to add")
    name: Optional[str] = Field(None, description="Product name (required for new lines)")
    unit_price: Optional[Decimal] = Field(None, ge=0, description="Unit price (required for new lines)")
    stock_available: Optional[int] = Field(None, ge=0, description="Stock ceiling (required for new lines)")

    def details(self) -> Optional[ProductDetails]:
        if self.name is None or self.unit_price is None or self.stock_available is None:
            return None
        return ProductDetails(
            name=self.name,
            unit_price=self.unit_price,
            stock_available=self.stock_available,
        )


class UpdateItemRequest(BaseModel):
    """Request model for setting a line quantity"""
    quantity: int = Field(..., description="New quantity; 0 or less removes the line")


class CheckoutRequest(BaseModel):
    """Request model for checkout"""
    customer: CustomerInfo
    payment_method: PaymentMethod = Field(PaymentMethod.CASH, description="cash, card or mobile_money")


class RetryPaymentRequest(BaseModel):
    """Request model for retrying a mobile money payment"""
    phone: Optional[str] = Field(None, description="Phone override for the new attempt")
