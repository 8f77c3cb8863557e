"""
Checkout service: turns a cart snapshot into an order and confirms payment.
"""
import logging
from typing import Optional

from cartpay.cart_store import CartStore
from cartpay.config import Config
from cartpay.exceptions import GatewayError, StorageError, ValidationError
from cartpay.gateway import OrderClient, PaymentClient
from cartpay.models import (
    CheckoutOutcome,
    CheckoutResult,
    CustomerInfo,
    Order,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
)
from cartpay.payment_confirmation import PaymentConfirmation, PaymentListener, Scheduler
from cartpay.validators import require_valid_msisdn, validate_customer

logger = logging.getLogger(__name__)

_PAYMENT_OUTCOMES = {
    PaymentStatus.FAILED: CheckoutOutcome.PAYMENT_FAILED,
    PaymentStatus.TIMEOUT: CheckoutOutcome.PAYMENT_TIMEOUT,
    PaymentStatus.CANCELLED: CheckoutOutcome.CANCELLED,
}


class CheckoutService:
    """Service for checkout operations of one session"""

    def __init__(
        self,
        cart_store: CartStore,
        order_client: OrderClient,
        payment_client: PaymentClient,
        poll_interval: Optional[float] = None,
        payment_timeout: Optional[float] = None,
        scheduler: Optional[Scheduler] = None,
        payment_listener: Optional[PaymentListener] = None,
    ):
        self.cart_store = cart_store
        self.order_client = order_client
        self.payment_client = payment_client
        self.poll_interval = poll_interval if poll_interval is not None else Config.PAYMENT_POLL_INTERVAL_SECONDS
        self.payment_timeout = payment_timeout if payment_timeout is not None else Config.PAYMENT_TIMEOUT_SECONDS
        self.scheduler = scheduler
        self.payment_listener = payment_listener

        # Order awaiting payment, kept so a retry targets the same order
        self.order: Optional[Order] = None
        self.confirmation: Optional[PaymentConfirmation] = None
        self._in_progress = False

    @property
    def current_payment(self) -> Optional[PaymentRequest]:
        if self.confirmation is None:
            return None
        return self.confirmation.request.model_copy()

    @property
    def in_progress(self) -> bool:
        """True while a submit or retry is running or a payment awaits confirmation"""
        return self._in_progress or (self.confirmation is not None and self.confirmation.is_active)

    @property
    def payment_status(self) -> PaymentStatus:
        if self.confirmation is None:
            return PaymentStatus.IDLE
        return self.confirmation.status

    async def submit(self, customer: CustomerInfo, payment_method: PaymentMethod) -> CheckoutResult:
        """
        Start checkout process:
        1. Snapshot the cart and reject an empty one
        2. Validate customer fields (and the phone for mobile money)
        3. Create the order on the backend
        4. Complete immediately (cash/card) or confirm mobile money payment
        5. Clear the cart only once payment has succeeded

        Returns:
            CheckoutResult tagged with the outcome; never raises for
            checkout-level failures
        """
        if self.in_progress:
            return self._busy_result()

        self._in_progress = True
        try:
            return await self._submit(customer, payment_method)
        finally:
            self._in_progress = False

    async def retry_payment(self, phone: Optional[str] = None) -> CheckoutResult:
        """Start a fresh payment request against the order of the last attempt"""
        if self.payment_status is PaymentStatus.SUCCESS and self.order is None:
            return CheckoutResult(
                outcome=CheckoutOutcome.VALIDATION_ERROR,
                message="The last order has already been paid",
                order_id=self.confirmation.request.order_id,
                payment_status=PaymentStatus.SUCCESS,
            )
        if self.order is None:
            return CheckoutResult(
                outcome=CheckoutOutcome.VALIDATION_ERROR,
                message="There is no order awaiting payment",
            )
        if self.in_progress:
            return self._busy_result()

        try:
            phone = require_valid_msisdn(phone or self.order.customer.phone)
        except ValidationError as e:
            return CheckoutResult(
                outcome=CheckoutOutcome.VALIDATION_ERROR,
                message=e.message,
                order_id=self.order.id,
            )

        self._in_progress = True
        try:
            return await self._confirm_payment(self.order, phone)
        finally:
            self._in_progress = False

    def cancel_payment(self) -> bool:
        """Cancel the active payment attempt (e.g. the payment dialog was closed)"""
        if self.confirmation is None:
            return False
        return self.confirmation.cancel()

    def close(self) -> None:
        """Tear down any live attempt when the session ends"""
        if self.confirmation is not None:
            self.confirmation.detach_listener()
            self.confirmation.cancel()

    async def _submit(self, customer: CustomerInfo, payment_method: PaymentMethod) -> CheckoutResult:
        snapshot = self.cart_store.get_snapshot()
        if snapshot.is_empty:
            return CheckoutResult(outcome=CheckoutOutcome.EMPTY_CART, message="Your cart is empty")

        try:
            customer = validate_customer(customer, payment_method)
        except ValidationError as e:
            return CheckoutResult(outcome=CheckoutOutcome.VALIDATION_ERROR, message=e.message)

        try:
            order = await self.order_client.create_order(customer, snapshot, payment_method)
        except GatewayError as e:
            logger.warning(f"Order creation failed: {e}", extra={"status_code": e.status_code})
            return CheckoutResult(
                outcome=CheckoutOutcome.ORDER_CREATION_FAILED,
                message=e.message or "Could not create the order",
            )

        logger.info(
            f"Order created: {order.id}, Total: {order.total_amount}",
            extra={"order_id": order.id, "payment_method": payment_method.value}
        )
        self.order = order
        self.confirmation = None

        if not payment_method.is_async:
            self._settle_order(order)
            return CheckoutResult(
                outcome=CheckoutOutcome.SUCCESS,
                message=f"Order placed successfully ({payment_method.value}).",
                order_id=order.id,
            )

        return await self._confirm_payment(order, customer.phone)

    def _busy_result(self) -> CheckoutResult:
        order_id = self.order.id if self.order is not None else None
        return CheckoutResult(
            outcome=CheckoutOutcome.VALIDATION_ERROR,
            message="A checkout is already in progress",
            order_id=order_id,
            payment_status=self.payment_status if self.confirmation is not None else None,
        )

    async def _confirm_payment(self, order: Order, phone: str) -> CheckoutResult:
        confirmation = PaymentConfirmation(
            self.payment_client,
            order_id=order.id,
            phone=phone,
            amount=order.total_amount,
            listener=self._on_payment_finished,
            poll_interval=self.poll_interval,
            timeout=self.payment_timeout,
            scheduler=self.scheduler,
        )
        self.confirmation = confirmation

        status = await confirmation.run()

        if status is PaymentStatus.SUCCESS:
            return CheckoutResult(
                outcome=CheckoutOutcome.SUCCESS,
                message="Payment confirmed. Order placed successfully.",
                order_id=order.id,
                payment_status=status,
            )

        outcome = _PAYMENT_OUTCOMES[status]
        if status is PaymentStatus.TIMEOUT:
            message = (
                "We did not receive a payment confirmation in time. "
                "Check your phone for the payment prompt or SMS before trying again."
            )
        else:
            message = confirmation.request.error or f"Payment {status.value}"

        return CheckoutResult(
            outcome=outcome,
            message=message,
            order_id=order.id,
            payment_status=status,
        )

    def _on_payment_finished(self, request: PaymentRequest) -> None:
        """Commit a confirmed payment whether or not the submitting caller is still waiting"""
        if request.status is PaymentStatus.SUCCESS and self.order is not None and self.order.id == request.order_id:
            self._settle_order(self.order)
        if self.payment_listener is not None:
            self.payment_listener(request)

    def _settle_order(self, order: Order) -> None:
        self.order = None
        try:
            self.cart_store.clear()
        except StorageError as e:
            logger.error(f"Could not clear cart after order {order.id}: {e}")
