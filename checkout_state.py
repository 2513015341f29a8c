"""
Checkout State Machine
======================
Formal status transitions for a cart's checkout attempts.

State flow:
    IDLE -> PROCESSING -> SUCCEEDED | FAILED
    SUCCEEDED | FAILED -> PROCESSING   (new attempt)
    SUCCEEDED | FAILED -> IDLE         (cart cleared)

PROCESSING is never re-entered from PROCESSING: checkout is
single-flight per cart.
"""

import logging
from enum import Enum
from typing import Optional
from dataclasses import dataclass
from datetime import datetime, timezone
from collections import deque

logger = logging.getLogger(__name__)

# Transitions kept for get_history()
MAX_HISTORY = 100


class CheckoutPhase(Enum):
    """Checkout lifecycle phases."""
    IDLE = "idle"               # No attempt in flight
    PROCESSING = "processing"   # Settlement in progress
    SUCCEEDED = "succeeded"     # Order placed
    FAILED = "failed"           # Order sink rejected the draft


@dataclass(frozen=True)
class CheckoutStatus:
    """Current phase plus the message shown to the user, if any."""
    phase: CheckoutPhase
    message: Optional[str] = None

    @property
    def is_processing(self) -> bool:
        return self.phase == CheckoutPhase.PROCESSING

    def to_dict(self) -> dict:
        return {"phase": self.phase.value, "message": self.message}


class StateTransitionError(Exception):
    """Raised when an invalid checkout transition is attempted."""
    pass


class CheckoutStateMachine:
    """
    Manages checkout status transitions with validation.

    Enforces:
    - Valid transition paths only
    - Single-flight PROCESSING
    - Transition logging and history
    """

    VALID_TRANSITIONS = {
        CheckoutPhase.IDLE: {CheckoutPhase.PROCESSING},
        CheckoutPhase.PROCESSING: {CheckoutPhase.SUCCEEDED, CheckoutPhase.FAILED},
        CheckoutPhase.SUCCEEDED: {CheckoutPhase.PROCESSING, CheckoutPhase.IDLE},
        CheckoutPhase.FAILED: {CheckoutPhase.PROCESSING, CheckoutPhase.IDLE},
    }

    def __init__(self, cart_id: str):
        self.cart_id = cart_id
        self._status = CheckoutStatus(CheckoutPhase.IDLE)
        self._history = deque(
            [(self._status, datetime.now(timezone.utc))],
            maxlen=MAX_HISTORY
        )
        self._transition_count = 0

    @property
    def status(self) -> CheckoutStatus:
        return self._status

    @property
    def phase(self) -> CheckoutPhase:
        return self._status.phase

    def can_transition_to(self, target: CheckoutPhase) -> bool:
        return target in self.VALID_TRANSITIONS.get(self._status.phase, set())

    def transition(
        self,
        target: CheckoutPhase,
        message: Optional[str] = None,
        reason: Optional[str] = None
    ) -> CheckoutStatus:
        """
        Attempt a status transition.

        Args:
            target: Desired next phase
            message: User-facing message attached to the new status
            reason: Optional reason, logged only

        Returns:
            The new status

        Raises:
            StateTransitionError: If the transition is invalid
        """
        if not self.can_transition_to(target):
            error_msg = (
                f"Invalid transition: {self._status.phase.value} -> {target.value}"
            )
            logger.error(
                error_msg,
                extra={
                    "cart_id": self.cart_id,
                    "from_state": self._status.phase.value,
                    "to_state": target.value,
                    "reason": reason
                }
            )
            raise StateTransitionError(error_msg)

        old_phase = self._status.phase
        self._status = CheckoutStatus(target, message)
        self._transition_count += 1
        self._history.append((self._status, datetime.now(timezone.utc)))

        logger.info(
            f"Checkout transition: {old_phase.value} -> {target.value}",
            extra={
                "cart_id": self.cart_id,
                "from_state": old_phase.value,
                "to_state": target.value,
                "reason": reason,
                "transition_count": self._transition_count
            }
        )

        return self._status

    def reset(self) -> bool:
        """
        Return to IDLE after a finished attempt.

        No-op when already IDLE. Refused while PROCESSING.

        Returns:
            True if the status is IDLE afterwards
        """
        if self._status.phase == CheckoutPhase.IDLE:
            return True

        if self._status.phase == CheckoutPhase.PROCESSING:
            logger.warning(
                "Checkout reset refused while processing",
                extra={"cart_id": self.cart_id}
            )
            return False

        self.transition(CheckoutPhase.IDLE, reason="reset")
        return True

    def get_history(self) -> list:
        """Get the most recent status transitions, oldest first."""
        return [
            {
                "phase": status.phase.value,
                "message": status.message,
                "timestamp": ts.isoformat()
            }
            for status, ts in self._history
        ]

    def __repr__(self):
        return f"<CheckoutStateMachine cart_id={self.cart_id} phase={self._status.phase.value}>"
