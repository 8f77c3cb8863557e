"""
Custom exceptions for the cart-to-payment pipeline.
"""
from typing import Optional


class CartException(Exception):
    """Base exception for cart, checkout and payment operations"""
    pass


class ValidationError(CartException):
    """Raised when user input is missing or malformed"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InsufficientStock(CartException):
    """Raised when a cart mutation would exceed the available stock"""
    def __init__(self, product_id: int, requested: int, available: int, name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = f"'{name}'" if name else f"product {product_id}"
        super().__init__(
            f"Only {available} of {label} available (requested {requested})"
        )


class LimitExceededError(CartException):
    """Raised when cart limits are exceeded"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProductNotFoundError(CartException):
    """Raised when a product is not found in cart"""
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product not found in cart: {product_id}")


class StorageError(CartException):
    """Raised when the durable cart storage (Redis) fails"""
    pass


# Name used by the Redis wrapper
RedisConnectionError = StorageError


class EmptyCart(CartException):
    """Raised when checkout is attempted with no items"""
    def __init__(self, message: str = "Your cart is empty"):
        super().__init__(message)


class OrderCreationFailed(CartException):
    """Raised when the backend refuses or fails to create an order"""
    pass


class PaymentFailed(CartException):
    """Raised when the payment gateway reports a failed payment"""
    pass


class PaymentTimeout(CartException):
    """Raised when no terminal payment status arrived before the deadline"""
    pass


class PaymentCancelled(CartException):
    """Raised when the customer abandoned the payment confirmation"""
    pass


class PaymentStateError(CartException):
    """Raised when a payment confirmation is driven from the wrong state"""
    pass


class GatewayError(CartException):
    """Raised when a backend REST call fails"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GatewayUnavailable(GatewayError):
    """Transient backend failure (network error, timeout, 5xx, 429)"""
    pass
