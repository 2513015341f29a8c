"""
Order Sink Module
=================
Immutable order drafts and the append-only order store that receives
them at checkout.

- OrderDraft: price-snapshotted proposal built from cart lines
- OrderSink: protocol consumed by the checkout coordinator
- OrderHistory: in-memory OrderSink with per-user history and
  order status tracking (pending → confirmed → out for delivery →
  delivered, or cancelled)
"""

import asyncio
import logging
from typing import Dict, List, Any, Optional, Tuple, Iterable, Protocol
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
import uuid

from prometheus_client import Counter, Histogram


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

orders_submitted_total = Counter(
    'orders_submitted_total',
    'Order drafts submitted to the order store',
    ['result']
)
order_value = Histogram(
    'order_value',
    'Order value distribution (marketplace currency units)',
    buckets=[500, 1000, 2500, 5000, 10000, 25000, 50000, 100000]
)
order_status_transitions = Counter(
    'order_status_transitions_total',
    'Order status transitions',
    ['from_status', 'to_status']
)


# ============================================================================
# ERRORS
# ============================================================================

class SubmissionError(Exception):
    """Raised by an OrderSink that rejects a draft. Retry is safe."""
    pass


class OrderTransitionError(Exception):
    """Raised when an invalid order status update is attempted."""
    pass


# ============================================================================
# ORDER LINE / DRAFT (Immutable)
# ============================================================================

@dataclass(frozen=True)
class OrderLine:
    """Product id, name, quantity and unit price copied at checkout."""
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total": str(self.total)
        }


@dataclass(frozen=True)
class OrderDraft:
    """
    Proposed order built by the checkout coordinator.

    Values are copied at checkout time, so later catalog or cart changes
    never alter a draft.
    """
    user_id: str
    lines: Tuple[OrderLine, ...]
    draft_id: str = field(default_factory=lambda: f"draft_{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_cart_lines(cls, user_id: str, cart_lines: Iterable[Any]) -> 'OrderDraft':
        """Snapshot cart lines (anything with product and quantity)."""
        return cls(
            user_id=user_id,
            lines=tuple(
                OrderLine(
                    product_id=line.product.product_id,
                    name=line.product.name,
                    quantity=line.quantity,
                    unit_price=line.product.unit_price
                )
                for line in cart_lines
            )
        )

    @property
    def total_amount(self) -> Decimal:
        return sum((line.total for line in self.lines), Decimal("0"))

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft_id": self.draft_id,
            "user_id": self.user_id,
            "lines": [line.to_dict() for line in self.lines],
            "total_amount": str(self.total_amount),
            "created_at": self.created_at.isoformat()
        }


# ============================================================================
# PLACED ORDER
# ============================================================================

class OrderStatus(Enum):
    """
    Placed order lifecycle.

    PENDING → CONFIRMED → OUT_FOR_DELIVERY → DELIVERED
    PENDING/CONFIRMED → CANCELLED

    Terminal states: DELIVERED, CANCELLED
    """
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


VALID_ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED: set()  # Terminal
}


@dataclass(frozen=True)
class Order:
    """An accepted draft as recorded in order history."""
    order_id: str
    draft: OrderDraft
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delivery_address: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None

    @property
    def user_id(self) -> str:
        return self.draft.user_id

    @property
    def items(self) -> Tuple[OrderLine, ...]:
        return self.draft.lines

    @property
    def total_amount(self) -> Decimal:
        return self.draft.total_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "items": [line.to_dict() for line in self.items],
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "delivery_address": self.delivery_address,
            "estimated_delivery_time": (
                self.estimated_delivery_time.isoformat()
                if self.estimated_delivery_time else None
            )
        }


# ============================================================================
# SINK PROTOCOL
# ============================================================================

class OrderSink(Protocol):
    """Append-only order store consumed by checkout."""

    async def submit(self, draft: OrderDraft) -> str:
        """
        Record a draft.

        Returns:
            Order id

        Raises:
            SubmissionError: If the draft is rejected
        """
        ...


# ============================================================================
# IN-MEMORY ORDER HISTORY
# ============================================================================

class OrderHistory:
    """
    In-memory order store and per-user order history.

    Set `reject_with` to make every submission fail with that message
    (used to exercise the checkout failure path).
    """

    def __init__(
        self,
        reject_with: Optional[str] = None,
        delivery_days: int = 1
    ):
        self.reject_with = reject_with
        self.delivery_days = delivery_days

        # order_id -> Order (append-only, insertion order)
        self._orders: Dict[str, Order] = {}
        self.submission_count = 0
        self._lock = asyncio.Lock()

    async def submit(self, draft: OrderDraft) -> str:
        """Record a draft as a PENDING order."""
        async with self._lock:
            self.submission_count += 1

            if self.reject_with:
                orders_submitted_total.labels(result='rejected').inc()
                logger.warning(
                    f"Order submission rejected: {self.reject_with}",
                    extra={"draft_id": draft.draft_id, "user_id": draft.user_id}
                )
                raise SubmissionError(self.reject_with)

            if not draft.lines:
                orders_submitted_total.labels(result='rejected').inc()
                raise SubmissionError("Order has no items")

            now = datetime.now(timezone.utc)
            order = Order(
                order_id=f"ord_{uuid.uuid4().hex[:12]}",
                draft=draft,
                created_at=now,
                updated_at=now,
                estimated_delivery_time=now + timedelta(days=self.delivery_days)
            )
            self._orders[order.order_id] = order

        orders_submitted_total.labels(result='accepted').inc()
        order_value.observe(float(draft.total_amount))

        logger.info(
            f"Order recorded: {order.order_id} (total={draft.total_amount})",
            extra={"order_id": order.order_id, "user_id": draft.user_id}
        )

        return order.order_id

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def recent_orders(self) -> List[Order]:
        """All orders, most recent first."""
        return list(reversed(list(self._orders.values())))

    def orders_for_user(self, user_id: str) -> List[Order]:
        """Orders placed by one user, most recent first."""
        return [o for o in self.recent_orders() if o.user_id == user_id]

    def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        """
        Move an order to a new status.

        Raises:
            KeyError: If the order does not exist
            OrderTransitionError: If the transition is not allowed
        """
        order = self._orders[order_id]

        if new_status not in VALID_ORDER_TRANSITIONS[order.status]:
            raise OrderTransitionError(
                f"Invalid order transition: {order.status.value} → {new_status.value}"
            )

        updated = replace(order, status=new_status, updated_at=datetime.now(timezone.utc))
        self._orders[order_id] = updated

        order_status_transitions.labels(
            from_status=order.status.name.lower(),
            to_status=new_status.name.lower()
        ).inc()

        logger.info(
            f"Order {order_id}: {order.status.value} → {new_status.value}",
            extra={"order_id": order_id}
        )

        return updated

    def set_delivery_address(self, order_id: str, address: str) -> Order:
        """Attach a delivery address to a non-terminal order."""
        order = self._orders[order_id]

        if order.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            raise OrderTransitionError(
                f"Cannot change address of a {order.status.value} order"
            )

        updated = replace(
            order,
            delivery_address=address.strip(),
            updated_at=datetime.now(timezone.utc)
        )
        self._orders[order_id] = updated
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_count": len(self._orders),
            "submission_count": self.submission_count,
            "orders": [order.to_dict() for order in self.recent_orders()]
        }

    def __len__(self) -> int:
        return len(self._orders)
