"""
Deferred Removal Scheduler
==========================
Per-line one-shot timers that delay the deletion of a zero-quantity
cart line by a fixed grace window.

Guarantees:
- At most one pending timer per line (arming again replaces it)
- cancel() is idempotent
- A timer fires only if its entry is still the registered one
  (compare-and-clear on the pending map)
- The removal callback runs on the event loop that owns the cart,
  so it is serialized with every other cart mutation
"""

import asyncio
import logging
from typing import Dict, Optional, Callable, Any
from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

DEFAULT_GRACE_PERIOD_SECONDS = 3.0
DRAIN_TIMEOUT_SECONDS = 2.0


# ============================================================================
# METRICS
# ============================================================================

deferred_removals_total = Counter(
    'cart_deferred_removals_total',
    'Deferred removal timer events',
    ['outcome']
)
deferred_removals_pending = Gauge(
    'cart_deferred_removals_pending',
    'Deferred removal timers currently armed'
)


# ============================================================================
# PENDING REMOVAL
# ============================================================================

@dataclass(eq=False)
class PendingRemoval:
    """
    One armed removal timer.

    Identity matters: the scheduler compares entries with `is`, so a
    replaced or cancelled entry can never fire for its line.
    """
    line_id: str
    armed_at: float
    fire_at: float
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def remaining(self, now: float) -> float:
        """Seconds left before the timer fires."""
        return max(0.0, self.fire_at - now)


# ============================================================================
# SCHEDULER
# ============================================================================

class DeferredRemovalScheduler:
    """
    Timer registry keyed by cart line id.

    The removal callback receives the line id and returns True if it
    actually removed the line. The callback owner is expected to re-check
    that the line is still at quantity zero before removing it.
    """

    def __init__(
        self,
        on_expire: Optional[Callable[[str], bool]] = None,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        cart_id: str = ""
    ):
        if grace_period_seconds < 0:
            raise ValueError(
                f"grace_period_seconds must be >= 0: {grace_period_seconds}"
            )

        self.cart_id = cart_id
        self.grace_period_seconds = grace_period_seconds
        self._on_expire = on_expire
        self._pending: Dict[str, PendingRemoval] = {}

        # Cancelled tasks awaiting drain()
        self._retired: set = set()

    def bind(self, on_expire: Callable[[str], bool]):
        """Attach the removal callback (the owning cart's expiry path)."""
        self._on_expire = on_expire

    # ========================================================================
    # ARM / CANCEL
    # ========================================================================

    def arm(self, line_id: str, grace_duration: Optional[float] = None) -> PendingRemoval:
        """
        Start (or restart) the removal timer for a line.

        Args:
            line_id: Cart line identifier
            grace_duration: Override for the default grace window (seconds)

        Returns:
            The registered PendingRemoval

        Raises:
            RuntimeError: If called outside a running event loop
        """
        loop = asyncio.get_running_loop()

        delay = self.grace_period_seconds if grace_duration is None else grace_duration
        if delay < 0:
            raise ValueError(f"grace_duration must be >= 0: {delay}")

        replaced = self._discard(line_id)

        now = loop.time()
        entry = PendingRemoval(line_id=line_id, armed_at=now, fire_at=now + delay)
        entry.task = loop.create_task(self._run_timer(entry, delay))
        self._pending[line_id] = entry

        deferred_removals_total.labels(outcome='armed').inc()
        if not replaced:
            deferred_removals_pending.inc()

        logger.debug(
            "Deferred removal armed",
            extra={
                "cart_id": self.cart_id,
                "line_id": line_id,
                "grace_seconds": delay,
                "replaced": replaced
            }
        )

        return entry

    def cancel(self, line_id: str) -> bool:
        """
        Cancel the pending timer for a line.

        Safe to call when nothing is pending.

        Returns:
            True if a timer was pending and is now cancelled
        """
        if not self._discard(line_id):
            return False

        deferred_removals_total.labels(outcome='cancelled').inc()
        deferred_removals_pending.dec()

        logger.debug(
            "Deferred removal cancelled",
            extra={"cart_id": self.cart_id, "line_id": line_id}
        )

        return True

    def cancel_all(self) -> int:
        """
        Cancel every pending timer.

        Returns:
            Number of timers cancelled
        """
        line_ids = list(self._pending.keys())

        for line_id in line_ids:
            self.cancel(line_id)

        if line_ids:
            logger.info(
                "All deferred removals cancelled",
                extra={"cart_id": self.cart_id, "count": len(line_ids)}
            )

        return len(line_ids)

    async def drain(self):
        """Cancel all timers and wait for their tasks to finish."""
        self.cancel_all()

        tasks = [task for task in self._retired if not task.done()]
        self._retired.clear()

        if not tasks:
            return

        done, pending = await asyncio.wait(tasks, timeout=DRAIN_TIMEOUT_SECONDS)
        if pending:
            logger.warning(
                "Deferred removal tasks did not stop in time",
                extra={"cart_id": self.cart_id, "count": len(pending)}
            )

    def _discard(self, line_id: str) -> bool:
        """Unregister and cancel an entry. Returns True if one existed."""
        entry = self._pending.pop(line_id, None)
        if entry is None:
            return False

        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
            self._retired.add(entry.task)
            entry.task.add_done_callback(self._retired.discard)

        return True

    # ========================================================================
    # FIRING
    # ========================================================================

    async def _run_timer(self, entry: PendingRemoval, delay: float):
        """Sleep for the grace window, then fire."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug(
                "Deferred removal timer stopped",
                extra={"cart_id": self.cart_id, "line_id": entry.line_id}
            )
            return

        self._fire(entry)

    def _fire(self, entry: PendingRemoval):
        """Compare-and-clear the entry, then run the removal callback."""
        if self._pending.get(entry.line_id) is not entry:
            # Replaced or cancelled after the sleep completed
            deferred_removals_total.labels(outcome='stale').inc()
            return

        del self._pending[entry.line_id]
        deferred_removals_pending.dec()

        if self._on_expire is None:
            logger.warning(
                "Deferred removal fired with no callback bound",
                extra={"cart_id": self.cart_id, "line_id": entry.line_id}
            )
            deferred_removals_total.labels(outcome='skipped').inc()
            return

        try:
            removed = self._on_expire(entry.line_id)
        except Exception as e:
            logger.error(
                "Deferred removal callback failed",
                extra={
                    "cart_id": self.cart_id,
                    "line_id": entry.line_id,
                    "error": str(e)
                },
                exc_info=True
            )
            deferred_removals_total.labels(outcome='error').inc()
            return

        deferred_removals_total.labels(outcome='fired' if removed else 'skipped').inc()

        logger.info(
            "Deferred removal fired",
            extra={
                "cart_id": self.cart_id,
                "line_id": entry.line_id,
                "removed": removed
            }
        )

    # ========================================================================
    # INSPECTION
    # ========================================================================

    def is_pending(self, line_id: str) -> bool:
        return line_id in self._pending

    def pending_count(self) -> int:
        return len(self._pending)

    def fire_at(self, line_id: str) -> Optional[float]:
        """Loop time at which the line's timer fires, if armed."""
        entry = self._pending.get(line_id)
        return entry.fire_at if entry else None

    def get_stats(self) -> Dict[str, Any]:
        """Get scheduler status."""
        return {
            "cart_id": self.cart_id,
            "grace_period_seconds": self.grace_period_seconds,
            "pending": sorted(self._pending.keys()),
            "pending_count": len(self._pending)
        }

    def __repr__(self):
        return (
            f"<DeferredRemovalScheduler cart_id={self.cart_id} "
            f"pending={len(self._pending)}>"
        )
