"""
FastAPI application exposing the cart, checkout and payment confirmation
pipeline to the storefront.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cartpay.config import Config
from cartpay.exceptions import (
    InsufficientStock,
    LimitExceededError,
    ProductNotFoundError,
    StorageError,
    ValidationError,
)
from cartpay.gateway import ApiClient
from cartpay.middleware import SESSION_HEADER, MetricsMiddleware
from cartpay.models import (
    AddItemRequest,
    Cart,
    CheckoutOutcome,
    CheckoutRequest,
    CheckoutResult,
    PaymentRequest,
    RetryPaymentRequest,
    UpdateItemRequest,
)
from cartpay.redis_client import RedisClient
from cartpay.sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)

CHECKOUT_STATUS_CODES = {
    CheckoutOutcome.SUCCESS: 200,
    CheckoutOutcome.EMPTY_CART: 400,
    CheckoutOutcome.VALIDATION_ERROR: 400,
    CheckoutOutcome.ORDER_CREATION_FAILED: 502,
    CheckoutOutcome.PAYMENT_FAILED: 402,
    CheckoutOutcome.PAYMENT_TIMEOUT: 504,
    CheckoutOutcome.CANCELLED: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "registry", None) is None:
        app.state.registry = SessionRegistry(RedisClient(), ApiClient())
    try:
        yield
    finally:
        await app.state.registry.aclose()
        app.state.registry = None


app = FastAPI(
    title="Cart & Payment API",
    description="Session cart, checkout and mobile money confirmation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_session(
    session_id: str = Header(..., alias=SESSION_HEADER, description="Browsing session identifier"),
    registry: SessionRegistry = Depends(get_registry),
) -> Session:
    if not session_id or not session_id.strip():
        raise HTTPException(status_code=400, detail="Session ID is required")
    return registry.get(session_id.strip())


def checkout_response(result: CheckoutResult) -> JSONResponse:
    return JSONResponse(
        status_code=CHECKOUT_STATUS_CODES[result.outcome],
        content=result.model_dump(mode="json"),
    )


@app.get("/health")
async def health_check(registry: SessionRegistry = Depends(get_registry)):
    """
    Health check endpoint.
    Always returns HTTP 200 if the application is running and reports Redis
    connectivity separately.
    """
    ping_start = time.time()
    redis_ok = registry.storage.ping()
    redis_latency_ms = round((time.time() - ping_start) * 1000, 2)

    return {
        "status": "healthy",
        "service": "cart-payment-api",
        "redis": {
            "status": "healthy" if redis_ok else "unhealthy",
            "latency_ms": redis_latency_ms if redis_ok else None
        },
        "active_sessions": len(registry),
        "timestamp": time.time()
    }


# Cart endpoints

@app.get("/cart", response_model=Cart)
async def get_cart(session: Session = Depends(get_session)):
    return session.cart.cart


@app.post("/cart/items", response_model=Cart)
async def add_cart_item(request: AddItemRequest, session: Session = Depends(get_session)):
    """Add units of a product; product details are required for new lines"""
    return session.cart.add_item(request.product_id, request.quantity, request.details())


@app.put("/cart/items/{product_id}", response_model=Cart)
async def update_cart_item(product_id: int, request: UpdateItemRequest, session: Session = Depends(get_session)):
    return session.cart.update_item(product_id, request.quantity)


@app.delete("/cart/items/{product_id}", response_model=Cart)
async def remove_cart_item(product_id: int, session: Session = Depends(get_session)):
    return session.cart.remove_item(product_id)


@app.delete("/cart", response_model=Cart)
async def clear_cart(session: Session = Depends(get_session)):
    return session.cart.clear()


# Checkout endpoints

@app.post("/checkout")
async def checkout(request: CheckoutRequest, session: Session = Depends(get_session)):
    """
    Create the order and settle payment.
    For mobile money the response is sent once the payment reaches a
    terminal status (success, failed, timeout or cancelled).
    """
    result = await session.checkout.submit(request.customer, request.payment_method)
    return checkout_response(result)


@app.get("/checkout/payment", response_model=Optional[PaymentRequest])
async def get_payment(session: Session = Depends(get_session)):
    """Latest payment attempt of this session, including its recorded outcome"""
    return session.checkout.current_payment


@app.post("/checkout/payment/retry")
async def retry_payment(request: RetryPaymentRequest, session: Session = Depends(get_session)):
    result = await session.checkout.retry_payment(request.phone)
    return checkout_response(result)


@app.post("/checkout/payment/cancel")
async def cancel_payment(session: Session = Depends(get_session)):
    return {"cancelled": session.checkout.cancel_payment()}


@app.delete("/session")
async def end_session(
    session_id: str = Header(..., alias=SESSION_HEADER),
    registry: SessionRegistry = Depends(get_registry),
):
    """Logout: destroy the session's cart and stop any payment confirmation"""
    return {"ended": registry.end(session_id.strip())}


# Error handlers

@app.exception_handler(InsufficientStock)
async def insufficient_stock_handler(request, exc: InsufficientStock):
    return JSONResponse(
        status_code=409,
        content={
            "error": "Insufficient stock",
            "message": str(exc),
            "product_id": exc.product_id,
            "available": exc.available,
        }
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "message": str(exc)}
    )


@app.exception_handler(LimitExceededError)
async def limit_exceeded_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Limit exceeded", "message": str(exc)}
    )


@app.exception_handler(ProductNotFoundError)
async def product_not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={"error": "Product not found", "message": str(exc)}
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request, exc):
    logger.error(f"Cart storage failure: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "Service unavailable", "message": "Cart storage is unavailable"}
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
