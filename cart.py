"""
Cart Module
===========
Cart line store for a single user's shopping session.

State rules:
- At most one line per product id
- Lines keep insertion order for display stability
- Quantity 0 is transient: the line is revived or removed
- All mutations are synchronous, so on a single event loop each one is
  atomic with respect to timer callbacks and checkout

Removal paths:
- decrement() at quantity 1, remove_line(), remove_all_of_product(),
  clear(): immediate
- set_quantity(line, 0): deferred by the grace window
"""

import logging
from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
import uuid

from prometheus_client import Counter

from catalog import ProductRef
from removal_scheduler import DeferredRemovalScheduler, DEFAULT_GRACE_PERIOD_SECONDS


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

cart_mutations_total = Counter(
    'cart_mutations_total',
    'Cart line mutations',
    ['operation']
)
cart_rejections_total = Counter(
    'cart_rejections_total',
    'Rejected cart operations',
    ['reason']
)


# ============================================================================
# ERROR TAXONOMY
# ============================================================================

class CartError(Enum):
    """
    Expected rejection values returned by cart and checkout operations.

    These are returned, never raised.
    """
    INVALID_QUANTITY = "invalid_quantity"
    EMPTY_CART = "empty_cart"
    ZERO_QUANTITY_LINES_PRESENT = "zero_quantity_lines_present"
    CHECKOUT_ALREADY_IN_PROGRESS = "checkout_already_in_progress"
    UNKNOWN_PRODUCT = "unknown_product"


# ============================================================================
# CART LINE (Immutable)
# ============================================================================

@dataclass(frozen=True)
class CartLine:
    """
    One cart entry for a single product.

    Quantity changes produce a new CartLine with the same line_id.
    """
    line_id: str
    product: ProductRef
    quantity: int
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def product_id(self) -> str:
        return self.product.product_id

    @property
    def subtotal(self) -> Decimal:
        return self.product.unit_price * self.quantity

    def with_quantity(self, new_quantity: int) -> 'CartLine':
        """Create a copy with an updated quantity."""
        return replace(self, quantity=new_quantity)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "line_id": self.line_id,
            "product_id": self.product_id,
            "name": self.product.name,
            "farmer_name": self.product.farmer_name,
            "unit_price": str(self.product.unit_price),
            "quantity": self.quantity,
            "subtotal": str(self.subtotal),
            "added_at": self.added_at.isoformat()
        }


# ============================================================================
# CART STATE (Read snapshot)
# ============================================================================

@dataclass(frozen=True)
class CartState:
    """Consistent read-only view of the cart for rendering."""
    lines: Tuple[CartLine, ...]
    total_price: Decimal
    item_count: int
    last_checkout_message: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "total_price": str(self.total_price),
            "item_count": self.item_count,
            "last_checkout_message": self.last_checkout_message
        }


# ============================================================================
# CART LINE STORE
# ============================================================================

class CartLineStore:
    """
    Ordered cart lines keyed by line id, indexed by product id.

    Owns a DeferredRemovalScheduler whose expiry callback is
    expire_line(), so timer effects go through this store.
    """

    def __init__(
        self,
        cart_id: Optional[str] = None,
        scheduler: Optional[DeferredRemovalScheduler] = None,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS
    ):
        self.cart_id = cart_id or f"cart_{uuid.uuid4().hex[:12]}"

        self.scheduler = scheduler or DeferredRemovalScheduler(
            grace_period_seconds=grace_period_seconds,
            cart_id=self.cart_id
        )
        self.scheduler.bind(self.expire_line)

        # line_id -> CartLine (dict keeps insertion order)
        self._lines: Dict[str, CartLine] = {}
        # product_id -> line_id
        self._by_product: Dict[str, str] = {}

        self.last_checkout_message: Optional[str] = None
        self.modification_count = 0

        logger.info("Cart created", extra={"cart_id": self.cart_id})

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def add(self, product: ProductRef) -> CartLine:
        """
        Add one unit of a product.

        An existing line is incremented and any pending removal for it is
        cancelled. Otherwise a new line with quantity 1 is appended.
        """
        line_id = self._by_product.get(product.product_id)

        if line_id is not None:
            self.scheduler.cancel(line_id)
            line = self._lines[line_id].with_quantity(self._lines[line_id].quantity + 1)
            self._lines[line_id] = line
        else:
            line = CartLine(
                line_id=f"line_{uuid.uuid4().hex[:12]}",
                product=product,
                quantity=1
            )
            self._lines[line.line_id] = line
            self._by_product[product.product_id] = line.line_id

        if not product.in_stock:
            logger.warning(
                f"Out-of-stock product added: {product.name}",
                extra={"cart_id": self.cart_id, "product_id": product.product_id}
            )

        self._touch('add')

        logger.info(
            f"Added {product.name} (quantity={line.quantity})",
            extra={"cart_id": self.cart_id, "line_id": line.line_id}
        )

        return line

    def decrement(self, product: ProductRef) -> Optional[CartLine]:
        """
        Remove one unit of a product.

        At quantity 1 (or a line already at 0) the line is removed
        immediately, with no grace window.

        Returns:
            The updated line, or None if the line was removed or absent
        """
        line_id = self._by_product.get(product.product_id)
        if line_id is None:
            return None

        line = self._lines[line_id]

        if line.quantity > 1:
            line = line.with_quantity(line.quantity - 1)
            self._lines[line_id] = line
            self._touch('decrement')
            return line

        self._remove(line_id)
        self._touch('decrement_remove')
        return None

    def set_quantity(self, line_id: str, quantity: int) -> Optional[CartError]:
        """
        Set a line's quantity.

        - quantity < 0: rejected with INVALID_QUANTITY, no change
        - quantity == 0: line kept, deferred removal armed
        - quantity > 0: pending removal (if any) cancelled
        - unknown line_id: ignored (the line may already have expired)

        Returns:
            None on success or no-op, CartError on rejection
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            cart_rejections_total.labels(reason=CartError.INVALID_QUANTITY.value).inc()
            logger.warning(
                f"Invalid quantity rejected: {quantity!r}",
                extra={"cart_id": self.cart_id, "line_id": line_id}
            )
            return CartError.INVALID_QUANTITY

        line = self._lines.get(line_id)
        if line is None:
            logger.debug(
                "set_quantity on unknown line ignored",
                extra={"cart_id": self.cart_id, "line_id": line_id}
            )
            return None

        if quantity == 0:
            self.scheduler.arm(line_id)
        else:
            self.scheduler.cancel(line_id)

        previous = line.quantity
        self._lines[line_id] = line.with_quantity(quantity)
        self._touch('set_quantity')

        logger.info(
            f"Updated quantity: {line.product.name} {previous} → {quantity}",
            extra={"cart_id": self.cart_id, "line_id": line_id}
        )

        return None

    def remove_line(self, line_id: str) -> bool:
        """Remove a line immediately, bypassing the grace window."""
        if line_id not in self._lines:
            return False

        self._remove(line_id)
        self._touch('remove_line')
        return True

    def remove_all_of_product(self, product_id: str) -> bool:
        """Remove the line for a product, if present."""
        line_id = self._by_product.get(product_id)
        if line_id is None:
            return False

        self._remove(line_id)
        self._touch('remove_all_of_product')
        return True

    def clear(self) -> int:
        """
        Remove every line and cancel every pending removal.

        Returns:
            Number of lines removed
        """
        self.scheduler.cancel_all()

        count = len(self._lines)
        self._lines.clear()
        self._by_product.clear()
        self.last_checkout_message = None
        self._touch('clear')

        logger.info(f"Cleared {count} lines", extra={"cart_id": self.cart_id})

        return count

    def expire_line(self, line_id: str) -> bool:
        """
        Grace-window expiry path, invoked by the scheduler.

        Removes the line only if it still exists at quantity 0.
        """
        line = self._lines.get(line_id)

        if line is None:
            return False

        if line.quantity != 0:
            logger.warning(
                "Expiry skipped for revived line",
                extra={
                    "cart_id": self.cart_id,
                    "line_id": line_id,
                    "quantity": line.quantity
                }
            )
            return False

        self._remove(line_id)
        self._touch('expire')
        return True

    def record_checkout_message(self, message: Optional[str]):
        self.last_checkout_message = message

    def _remove(self, line_id: str):
        """Drop a line and its product index entry, cancelling its timer."""
        self.scheduler.cancel(line_id)
        line = self._lines.pop(line_id)
        self._by_product.pop(line.product_id, None)

        logger.info(
            f"Removed line: {line.product.name}",
            extra={"cart_id": self.cart_id, "line_id": line_id}
        )

    def _touch(self, operation: str):
        self.modification_count += 1
        cart_mutations_total.labels(operation=operation).inc()

    # ========================================================================
    # READS
    # ========================================================================

    def lines(self) -> List[CartLine]:
        """Lines in insertion order."""
        return list(self._lines.values())

    def get_line(self, line_id: str) -> Optional[CartLine]:
        return self._lines.get(line_id)

    def line_for_product(self, product_id: str) -> Optional[CartLine]:
        line_id = self._by_product.get(product_id)
        return self._lines[line_id] if line_id else None

    def total_price(self) -> Decimal:
        """Sum of quantity × unit price over all lines."""
        return sum((line.subtotal for line in self._lines.values()), Decimal("0"))

    def item_count(self) -> int:
        """Total units across all lines."""
        return sum(line.quantity for line in self._lines.values())

    def has_zero_quantity_lines(self) -> bool:
        return any(line.quantity == 0 for line in self._lines.values())

    def snapshot(self) -> CartState:
        """Consistent read of lines, total and checkout message."""
        return CartState(
            lines=tuple(self._lines.values()),
            total_price=self.total_price(),
            item_count=self.item_count(),
            last_checkout_message=self.last_checkout_message
        )

    def __len__(self) -> int:
        return len(self._lines)

    def __repr__(self):
        return f"<CartLineStore cart_id={self.cart_id} lines={len(self._lines)}>"
