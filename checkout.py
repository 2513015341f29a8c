"""
Checkout Coordinator
====================
Turns a cart into a placed order.

This class:
- Validates checkout preconditions
- Drives the single-flight checkout state machine
- Snapshots cart lines into an immutable OrderDraft
- Optionally takes payment for exactly the draft total
- Awaits the simulated settlement step
- Hands the draft to the order sink and clears the cart on success

This class does NOT:
- Talk to a payment provider itself (the caller passes a charge step)
- Enforce stock policy
- Persist orders itself
"""

import asyncio
import time
import structlog
from typing import Optional, Dict, Any, Callable, Awaitable
from dataclasses import dataclass

from prometheus_client import Counter, Histogram

from cart import CartLineStore, CartError
from checkout_state import CheckoutPhase, CheckoutStateMachine, CheckoutStatus
from order_sink import OrderDraft, OrderSink, SubmissionError
from payment import PaymentDeclinedError

# Structured logging
logger = structlog.get_logger(__name__)


DEFAULT_SETTLEMENT_DELAY_SECONDS = 1.0
DEFAULT_SUCCESS_MESSAGE = "Order placed successfully!"
EMPTY_CART_MESSAGE = "Your cart is empty."
ZERO_QUANTITY_MESSAGE = "Some items have a quantity of 0. Update or remove them first."
IN_PROGRESS_MESSAGE = "Your order is already being placed."
UNEXPECTED_FAILURE_MESSAGE = "Checkout failed. Please try again."


# ============================================================================
# METRICS
# ============================================================================

checkout_attempts_total = Counter(
    'checkout_attempts_total',
    'Checkout attempts by result',
    ['result']
)
checkout_duration_seconds = Histogram(
    'checkout_duration_seconds',
    'Time from PROCESSING to a final status',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0]
)


@dataclass(frozen=True)
class CheckoutResult:
    """Outcome of one checkout call."""
    success: bool
    error: Optional[CartError] = None
    message: Optional[str] = None
    order_id: Optional[str] = None
    draft: Optional[OrderDraft] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "order_id": self.order_id,
            "draft_id": self.draft.draft_id if self.draft else None
        }


class CheckoutCoordinator:
    """
    One coordinator per cart.

    Precondition checks and the move to PROCESSING happen before the first
    await, so on a single event loop a second call can never slip in
    between them.
    """

    def __init__(
        self,
        store: CartLineStore,
        order_sink: OrderSink,
        settlement_delay_seconds: float = DEFAULT_SETTLEMENT_DELAY_SECONDS,
        success_message: str = DEFAULT_SUCCESS_MESSAGE
    ):
        if settlement_delay_seconds < 0:
            raise ValueError(
                f"settlement_delay_seconds must be >= 0: {settlement_delay_seconds}"
            )

        self.store = store
        self.order_sink = order_sink
        self.settlement_delay_seconds = settlement_delay_seconds
        self.success_message = success_message

        self.state_machine = CheckoutStateMachine(store.cart_id)
        self.last_order_id: Optional[str] = None

    @property
    def status(self) -> CheckoutStatus:
        return self.state_machine.status

    def is_processing(self) -> bool:
        return self.state_machine.phase == CheckoutPhase.PROCESSING

    def reset(self) -> bool:
        """Return to IDLE (used when the user clears the cart)."""
        return self.state_machine.reset()

    def get_history(self) -> list:
        return self.state_machine.get_history()

    async def checkout(
        self,
        user_id: str,
        charge: Optional[Callable[[OrderDraft], Awaitable[Any]]] = None
    ) -> CheckoutResult:
        """
        Place an order from the current cart contents.

        Args:
            user_id: Identity of the ordering user
            charge: Optional payment step, awaited with the draft while
                PROCESSING and before settlement. Raises
                PaymentDeclinedError to fail the checkout.

        Returns:
            CheckoutResult. Precondition failures return immediately with
            status unchanged. Payment and sink failures leave the cart
            lines untouched.
        """
        rejection = self.check_preconditions()
        if rejection is not None:
            return rejection

        self.state_machine.transition(CheckoutPhase.PROCESSING, reason="checkout")

        draft = OrderDraft.from_cart_lines(user_id, self.store.lines())
        started = time.monotonic()

        logger.info(
            "checkout_started",
            cart_id=self.store.cart_id,
            user_id=user_id,
            draft_id=draft.draft_id,
            line_count=len(draft.lines),
            total=str(draft.total_amount)
        )

        try:
            if charge is not None:
                await charge(draft)

            await self._settle(draft)
            order_id = await self.order_sink.submit(draft)

        except PaymentDeclinedError as e:
            message = str(e) or UNEXPECTED_FAILURE_MESSAGE
            logger.warning(
                "checkout_payment_declined",
                cart_id=self.store.cart_id,
                draft_id=draft.draft_id,
                error=message
            )
            return self._fail(draft, message, started, result='payment_declined')

        except SubmissionError as e:
            message = str(e) or UNEXPECTED_FAILURE_MESSAGE
            logger.warning(
                "checkout_submission_rejected",
                cart_id=self.store.cart_id,
                draft_id=draft.draft_id,
                error=message
            )
            return self._fail(draft, message, started, result='rejected')

        except asyncio.CancelledError:
            logger.warning(
                "checkout_interrupted",
                cart_id=self.store.cart_id,
                draft_id=draft.draft_id
            )
            self._fail(draft, UNEXPECTED_FAILURE_MESSAGE, started, result='interrupted')
            raise

        except Exception as e:
            logger.error(
                "checkout_submission_error",
                cart_id=self.store.cart_id,
                draft_id=draft.draft_id,
                error=str(e),
                exc_info=True
            )
            return self._fail(draft, UNEXPECTED_FAILURE_MESSAGE, started, result='error')

        self.store.clear()
        self.state_machine.transition(
            CheckoutPhase.SUCCEEDED,
            message=self.success_message,
            reason="order_submitted"
        )
        self.store.record_checkout_message(self.success_message)
        self.last_order_id = order_id

        checkout_attempts_total.labels(result='succeeded').inc()
        checkout_duration_seconds.observe(time.monotonic() - started)

        logger.info(
            "checkout_succeeded",
            cart_id=self.store.cart_id,
            user_id=user_id,
            order_id=order_id,
            draft_id=draft.draft_id
        )

        return CheckoutResult(
            success=True,
            message=self.success_message,
            order_id=order_id,
            draft=draft
        )

    def check_preconditions(self) -> Optional[CheckoutResult]:
        """Synchronous checks. Returns a rejection or None."""
        if len(self.store) == 0:
            return self._reject(CartError.EMPTY_CART, EMPTY_CART_MESSAGE)

        if self.store.has_zero_quantity_lines():
            return self._reject(CartError.ZERO_QUANTITY_LINES_PRESENT, ZERO_QUANTITY_MESSAGE)

        if self.is_processing():
            return self._reject(CartError.CHECKOUT_ALREADY_IN_PROGRESS, IN_PROGRESS_MESSAGE)

        return None

    def _reject(self, error: CartError, message: str) -> CheckoutResult:
        checkout_attempts_total.labels(result=error.value).inc()
        logger.warning(
            "checkout_rejected",
            cart_id=self.store.cart_id,
            error=error.value,
            phase=self.state_machine.phase.value
        )
        return CheckoutResult(success=False, error=error, message=message)

    def _fail(
        self,
        draft: OrderDraft,
        message: str,
        started: float,
        result: str
    ) -> CheckoutResult:
        """Move to FAILED, keep the cart lines, report the message."""
        self.state_machine.transition(
            CheckoutPhase.FAILED,
            message=message,
            reason=result
        )
        self.store.record_checkout_message(message)

        checkout_attempts_total.labels(result=result).inc()
        checkout_duration_seconds.observe(time.monotonic() - started)

        return CheckoutResult(success=False, message=message, draft=draft)

    async def _settle(self, draft: OrderDraft):
        """Simulated settlement. Always succeeds after the delay."""
        await asyncio.sleep(self.settlement_delay_seconds)

        logger.debug(
            "checkout_settled",
            cart_id=self.store.cart_id,
            draft_id=draft.draft_id
        )

    def __repr__(self):
        return (
            f"<CheckoutCoordinator cart_id={self.store.cart_id} "
            f"phase={self.state_machine.phase.value}>"
        )
