"""
Mobile money payment confirmation.

PaymentConfirmation drives one PaymentRequest through

    idle -> initiated -> pending -> success | failed | timeout

with ``cancelled`` reachable from initiated/pending. After the gateway
acknowledges the request it polls the status endpoint on a fixed interval
while an independent deadline timer bounds the whole attempt. Every terminal
path goes through ``_finish``, which tears down both timers and any
in-flight poll before notifying the listener, so exactly one notification
is delivered and nothing fires afterwards.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Callable, Optional, Protocol

from cartpay.config import Config
from cartpay.exceptions import GatewayError, GatewayUnavailable, PaymentStateError
from cartpay.models import PaymentRequest, PaymentStatus

logger = logging.getLogger(__name__)

PaymentListener = Callable[[PaymentRequest], None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Schedules timers on the running event loop"""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class PaymentConfirmation:
    """State machine for one mobile money payment attempt"""

    def __init__(
        self,
        payment_client,
        order_id: str,
        phone: str,
        amount: Decimal,
        listener: Optional[PaymentListener] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.payment_client = payment_client
        self.request = PaymentRequest(order_id=order_id, phone=phone, amount=amount)
        self.poll_interval = poll_interval if poll_interval is not None else Config.PAYMENT_POLL_INTERVAL_SECONDS
        self.timeout = timeout if timeout is not None else Config.PAYMENT_TIMEOUT_SECONDS
        self.poll_count = 0

        self._listener = listener
        self._scheduler = scheduler or AsyncioScheduler()
        self._interval_handle: Optional[TimerHandle] = None
        self._deadline_handle: Optional[TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._outcome: Optional[asyncio.Future] = None

    @property
    def status(self) -> PaymentStatus:
        return self.request.status

    @property
    def is_active(self) -> bool:
        return self.status in (PaymentStatus.INITIATED, PaymentStatus.PENDING)

    def detach_listener(self) -> None:
        """Stop delivering notifications; the outcome is still recorded"""
        self._listener = None

    async def start(self) -> PaymentStatus:
        """
        Send the payment request and, once acknowledged, begin polling.

        Returns:
            The status after initiation (pending, or failed/cancelled)

        Raises:
            PaymentStateError: If this attempt has already been started
        """
        if self.status is not PaymentStatus.IDLE:
            raise PaymentStateError(f"Payment attempt already {self.status.value}; create a new one to retry")

        self._get_outcome()
        self.request.status = PaymentStatus.INITIATED
        logger.info(
            "Payment initiated",
            extra={"payment_id": self.request.id, "order_id": self.request.order_id}
        )

        try:
            tracking_id = await self.payment_client.initiate(
                self.request.order_id, self.request.phone, self.request.amount
            )
        except GatewayError as e:
            self._finish(PaymentStatus.FAILED, error=e.message)
            return self.status
        except asyncio.CancelledError:
            self._finish(PaymentStatus.CANCELLED, error="Payment initiation was interrupted")
            raise

        if self.status.is_terminal:
            # cancelled while waiting for the acknowledgment
            return self.status

        self.request.tracking_id = tracking_id
        self.request.status = PaymentStatus.PENDING
        self._deadline_handle = self._scheduler.call_later(self.timeout, self._on_deadline)
        self._arm_interval()
        return self.status

    async def wait(self) -> PaymentStatus:
        """Wait for the terminal status of a started attempt"""
        if self.status.is_terminal:
            return self.status
        if self.status is PaymentStatus.IDLE:
            raise PaymentStateError("Payment attempt has not been started")
        return await asyncio.shield(self._get_outcome())

    async def run(self) -> PaymentStatus:
        await self.start()
        return await self.wait()

    def cancel(self) -> bool:
        """
        Abandon the attempt (e.g. the customer closed the payment dialog).

        Returns:
            True if the attempt was live and is now cancelled
        """
        return self._finish(PaymentStatus.CANCELLED, error="Payment cancelled by customer")

    def teardown(self) -> None:
        """Cancel the interval timer, the deadline timer and any in-flight poll"""
        if self._interval_handle is not None:
            self._interval_handle.cancel()
            self._interval_handle = None
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None

        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _get_outcome(self) -> asyncio.Future:
        if self._outcome is None:
            self._outcome = asyncio.get_running_loop().create_future()
        return self._outcome

    def _arm_interval(self) -> None:
        self._interval_handle = self._scheduler.call_later(self.poll_interval, self._on_interval)

    def _on_interval(self) -> None:
        self._interval_handle = None
        if self.status is not PaymentStatus.PENDING:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    def _on_deadline(self) -> None:
        self._deadline_handle = None
        if self.status is not PaymentStatus.PENDING:
            return
        self._finish(
            PaymentStatus.TIMEOUT,
            error=f"No payment confirmation received within {self.timeout:g} seconds"
        )

    async def _poll(self) -> None:
        self.poll_count += 1
        try:
            result = await self.payment_client.check_status(self.request.tracking_id)
        except GatewayUnavailable as e:
            logger.warning(
                f"Payment status check failed, will retry: {e}",
                extra={"payment_id": self.request.id, "poll": self.poll_count}
            )
            result = PaymentStatus.PENDING
        except GatewayError as e:
            self._finish(PaymentStatus.FAILED, error=e.message)
            return

        if self.status is not PaymentStatus.PENDING:
            logger.info(
                "Ignoring payment status received after completion",
                extra={"payment_id": self.request.id, "late_status": result.value}
            )
            return

        self._poll_task = None
        if result is PaymentStatus.SUCCESS:
            self._finish(PaymentStatus.SUCCESS)
        elif result is PaymentStatus.FAILED:
            self._finish(PaymentStatus.FAILED, error="Payment was declined or cancelled on the phone")
        else:
            self._arm_interval()

    def _finish(self, status: PaymentStatus, error: Optional[str] = None) -> bool:
        if self.status.is_terminal:
            return False

        self.request.status = status
        self.request.error = error
        self.teardown()

        logger.info(
            f"Payment {status.value}",
            extra={
                "payment_id": self.request.id,
                "order_id": self.request.order_id,
                "polls": self.poll_count,
                "error": error,
            }
        )

        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(status)
        self._notify()
        return True

    def _notify(self) -> None:
        listener = self._listener
        if listener is None:
            logger.info(
                "No listener attached; payment outcome recorded only",
                extra={"payment_id": self.request.id, "status": self.status.value}
            )
            return
        try:
            listener(self.request.model_copy())
        except Exception:
            logger.exception("Payment listener raised", extra={"payment_id": self.request.id})
