"""
Cart Session
============
Explicitly constructed cart scoped to one user session.

Each CartSession owns its own store, deferred-removal scheduler and
checkout coordinator. Nothing is shared between sessions, so carts for
different users can run concurrently on the same loop.
"""

import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Optional, Dict, Any

from catalog import ProductCatalog, default_catalog
from cart import CartLineStore, CartLine, CartState, CartError
from checkout import CheckoutCoordinator, CheckoutResult
from checkout_state import CheckoutStatus
from config import Config, get_config, configure_logging
from order_sink import OrderDraft, OrderSink, OrderHistory
from payment import PaymentSimulator, PaymentProvider, PaymentStatus
from removal_scheduler import DeferredRemovalScheduler

logger = logging.getLogger(__name__)


class CartSession:
    """
    Per-user cart session.

    Wires ProductCatalog lookups into the cart store, and exposes the
    mutation and checkout entry points plus read access to cart state
    and checkout status.
    """

    def __init__(
        self,
        user_id: str,
        catalog: ProductCatalog,
        order_sink: OrderSink,
        config: Optional[Config] = None,
        payment: Optional[PaymentSimulator] = None
    ):
        config = config or get_config()

        self.user_id = user_id
        self.catalog = catalog
        self.order_sink = order_sink

        cart_id = f"cart_{uuid.uuid4().hex[:12]}"
        self.scheduler = DeferredRemovalScheduler(
            grace_period_seconds=config.cart.grace_period_seconds,
            cart_id=cart_id
        )
        self.store = CartLineStore(cart_id=cart_id, scheduler=self.scheduler)

        self.coordinator = CheckoutCoordinator(
            self.store,
            order_sink,
            settlement_delay_seconds=config.checkout.settlement_delay_seconds,
            success_message=config.checkout.success_message
        )

        self.payment = payment or PaymentSimulator(
            provider=PaymentProvider.from_key(config.payment.default_provider),
            delay_seconds=config.payment.delay_seconds,
            success_rate=config.payment.success_rate
        )

        self.currency = config.cart.currency
        self._closed = False

        logger.info(
            "Cart session opened",
            extra={"user_id": user_id, "cart_id": self.store.cart_id}
        )

    @property
    def cart_id(self) -> str:
        return self.store.cart_id

    # ========================================================================
    # CART INTENTS
    # ========================================================================

    def add_product(self, product_id: str) -> Optional[CartError]:
        """Add one unit of a catalog product by id."""
        product = self.catalog.get(product_id)
        if product is None:
            logger.warning(
                f"Unknown product: {product_id}",
                extra={"cart_id": self.cart_id}
            )
            return CartError.UNKNOWN_PRODUCT

        self.store.add(product)
        return None

    def decrement_product(self, product_id: str) -> Optional[CartError]:
        """Remove one unit of a catalog product by id."""
        product = self.catalog.get(product_id)
        if product is None:
            return CartError.UNKNOWN_PRODUCT

        self.store.decrement(product)
        return None

    def set_quantity(self, line_id: str, quantity: int) -> Optional[CartError]:
        return self.store.set_quantity(line_id, quantity)

    def remove_line(self, line_id: str) -> bool:
        return self.store.remove_line(line_id)

    def remove_all_of_product(self, product_id: str) -> bool:
        return self.store.remove_all_of_product(product_id)

    def clear_cart(self) -> int:
        """Empty the cart and return checkout status to IDLE."""
        count = self.store.clear()
        self.coordinator.reset()
        return count

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    async def checkout(self) -> CheckoutResult:
        return await self.coordinator.checkout(self.user_id)

    async def pay_and_checkout(self, phone_number: str) -> CheckoutResult:
        """
        Take a simulated mobile money payment and place the order.

        The payment runs inside the checkout's PROCESSING window and is
        for exactly the draft total, so cart changes made while it is
        pending are neither charged nor ordered. A declined payment
        leaves checkout FAILED with the payment message and the cart
        lines untouched.
        """
        async def charge(draft: OrderDraft) -> str:
            return await self.payment.charge(draft.total_amount, phone_number)

        return await self.coordinator.checkout(self.user_id, charge=charge)

    # ========================================================================
    # READS
    # ========================================================================

    def state(self) -> CartState:
        return self.store.snapshot()

    def checkout_status(self) -> CheckoutStatus:
        return self.coordinator.status

    def payment_status(self) -> PaymentStatus:
        return self.payment.status

    def lines(self) -> list:
        return self.store.lines()

    def line_for_product(self, product_id: str) -> Optional[CartLine]:
        return self.store.line_for_product(product_id)

    def total_price(self) -> Decimal:
        return self.store.total_price()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "cart_id": self.cart_id,
            "currency": self.currency,
            "cart": self.state().to_dict(),
            "checkout": self.checkout_status().to_dict(),
            "payment": self.payment_status().to_dict(),
            "scheduler": self.scheduler.get_stats()
        }

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def close(self):
        """Stop all deferred-removal timers. Cart contents are kept."""
        if self._closed:
            return

        self._closed = True
        await self.scheduler.drain()

        logger.info(
            "Cart session closed",
            extra={"user_id": self.user_id, "cart_id": self.cart_id}
        )

    async def __aenter__(self) -> 'CartSession':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def __repr__(self):
        return f"<CartSession user_id={self.user_id} cart_id={self.cart_id}>"


# ============================================================================
# EXAMPLE USAGE
# ============================================================================

async def _demo():
    catalog = default_catalog()
    history = OrderHistory()

    async with CartSession("user_001", catalog, history) as session:
        session.add_product("prod_001")
        session.add_product("prod_001")
        session.add_product("prod_002")
        print(f"Cart total: {session.total_price()} {session.currency}")

        tomatoes = session.line_for_product("prod_002")
        session.set_quantity(tomatoes.line_id, 0)
        print(f"Tomatoes at 0, pending removal: {session.scheduler.is_pending(tomatoes.line_id)}")

        result = await session.checkout()
        print(f"Checkout with a zero line: {result.error}")

        session.set_quantity(tomatoes.line_id, 3)
        result = await session.checkout()
        print(f"Checkout: {result.message} (order {result.order_id})")

    for order in history.orders_for_user("user_001"):
        print(f"{order.order_id}: {order.status.value} total={order.total_amount}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_demo())
