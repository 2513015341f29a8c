"""
Mobile Money Payment Simulator
==============================
Simulated MTN / Airtel mobile money payments for demos and tests.

No gateway is contacted. Each payment waits a fixed delay and then
succeeds or fails at random (seeded Random injectable for tests).
Payments are single-flight per simulator, like checkout.
"""

import asyncio
import logging
import random
import uuid
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from dataclasses import dataclass

from prometheus_client import Counter


logger = logging.getLogger(__name__)


DEFAULT_DELAY_SECONDS = 2.5
DEFAULT_SUCCESS_RATE = 0.5

MISSING_PHONE_MESSAGE = "Please enter your mobile number."
INVALID_AMOUNT_MESSAGE = "Payment amount must be greater than zero."
IN_PROGRESS_MESSAGE = "A payment is already being processed."
FAILURE_MESSAGE = "Payment failed. Please try again or use another method."


# ============================================================================
# METRICS
# ============================================================================

payment_attempts_total = Counter(
    'payment_attempts_total',
    'Simulated payment attempts',
    ['provider', 'result']
)


# ============================================================================
# ERRORS
# ============================================================================

class PaymentDeclinedError(Exception):
    """Raised when a charge taken during checkout does not succeed."""
    pass


# ============================================================================
# TYPES
# ============================================================================

class PaymentProvider(Enum):
    """Supported mobile money networks."""
    MTN = "MTN Mobile Money"
    AIRTEL = "Airtel Money"

    @classmethod
    def from_key(cls, key: str) -> 'PaymentProvider':
        """Map a short config key ('mtn', 'airtel') to a provider."""
        return cls[key.strip().upper()]

    @property
    def ussd_code(self) -> str:
        return "*165#" if self is PaymentProvider.MTN else "*185#"


class PaymentPhase(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class PaymentStatus:
    phase: PaymentPhase
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase.value, "message": self.message}


# ============================================================================
# SIMULATOR
# ============================================================================

class PaymentSimulator:
    """
    Simulated mobile money payment service.

    status is IDLE until pay() is called, PROCESSING while the simulated
    network delay runs, then SUCCESS or FAILURE until reset().
    """

    def __init__(
        self,
        provider: PaymentProvider = PaymentProvider.MTN,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        success_rate: float = DEFAULT_SUCCESS_RATE,
        rng: Optional[random.Random] = None
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError(f"success_rate must be between 0 and 1: {success_rate}")

        self.provider = provider
        self.delay_seconds = delay_seconds
        self.success_rate = success_rate
        self._rng = rng or random.Random()

        self.status = PaymentStatus(PaymentPhase.IDLE)
        self.last_transaction_id: Optional[str] = None

    async def pay(self, amount: Decimal, phone_number: str) -> PaymentStatus:
        """
        Simulate a payment.

        Args:
            amount: Amount in marketplace currency units
            phone_number: Payer's mobile number

        Returns:
            Final PaymentStatus
        """
        if self.status.phase == PaymentPhase.PROCESSING:
            payment_attempts_total.labels(
                provider=self.provider.name.lower(),
                result='in_progress'
            ).inc()
            return PaymentStatus(PaymentPhase.FAILURE, IN_PROGRESS_MESSAGE)

        if not phone_number or not phone_number.strip():
            return self._finish(PaymentPhase.FAILURE, MISSING_PHONE_MESSAGE, 'missing_phone')

        if Decimal(amount) <= 0:
            return self._finish(PaymentPhase.FAILURE, INVALID_AMOUNT_MESSAGE, 'invalid_amount')

        self.status = PaymentStatus(PaymentPhase.PROCESSING)

        logger.info(
            f"Processing {self.provider.value} payment of {amount}",
            extra={"provider": self.provider.name.lower()}
        )

        try:
            await asyncio.sleep(self.delay_seconds)
        except asyncio.CancelledError:
            self._finish(PaymentPhase.FAILURE, FAILURE_MESSAGE, 'interrupted')
            raise

        if self._rng.random() < self.success_rate:
            tx_id = uuid.uuid4().hex[:8].upper()
            self.last_transaction_id = tx_id
            return self._finish(
                PaymentPhase.SUCCESS,
                f"Payment successful via {self.provider.value} (Ref: {tx_id})",
                'success'
            )

        return self._finish(PaymentPhase.FAILURE, FAILURE_MESSAGE, 'failure')

    async def charge(self, amount: Decimal, phone_number: str) -> str:
        """
        pay() for callers that treat a decline as an error.

        Returns:
            The transaction reference

        Raises:
            PaymentDeclinedError: With the status message, if the payment
                did not succeed
        """
        status = await self.pay(amount, phone_number)
        if status.phase != PaymentPhase.SUCCESS:
            raise PaymentDeclinedError(status.message or FAILURE_MESSAGE)
        return self.last_transaction_id

    def reset(self):
        """Return to IDLE and forget the last transaction."""
        self.status = PaymentStatus(PaymentPhase.IDLE)
        self.last_transaction_id = None

    def _finish(self, phase: PaymentPhase, message: str, result: str) -> PaymentStatus:
        self.status = PaymentStatus(phase, message)

        payment_attempts_total.labels(
            provider=self.provider.name.lower(),
            result=result
        ).inc()

        log = logger.info if phase == PaymentPhase.SUCCESS else logger.warning
        log(
            f"Payment {result}: {message}",
            extra={
                "provider": self.provider.name.lower(),
                "transaction_id": self.last_transaction_id
            }
        )

        return self.status

    def __repr__(self):
        return f"<PaymentSimulator provider={self.provider.name} phase={self.status.phase.value}>"
