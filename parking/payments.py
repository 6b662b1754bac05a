"""
Payment authorization seam for billing.

Billing only ever talks to a ``PaymentAuthorizer``. The simulated gateway
approves a configurable share of attempts at random and stands in until a
real acquirer integration is plugged in.
"""

import logging
import random
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID, uuid4

logger = logging.getLogger("payments")


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of one authorization attempt."""
    approved: bool
    transaction_id: UUID
    authorization_code: Optional[str] = None
    reason: Optional[str] = None


class PaymentAuthorizer(Protocol):
    def authorize(self, amount: Decimal, method: str) -> AuthorizationResult:
        """Attempt to charge ``amount`` via ``method``."""
        ...


class SimulatedPaymentGateway:
    """
    Randomized stand-in for a payment gateway.

    Args:
        approval_rate: Probability of approval (0.0 to 1.0)
        rng: Random source; pass a seeded ``random.Random`` in tests
    """

    def __init__(self, approval_rate: float = 0.9, rng: Optional[random.Random] = None):
        if not 0.0 <= approval_rate <= 1.0:
            raise ValueError("approval_rate must be between 0 and 1")
        self.approval_rate = approval_rate
        self._rng = rng or random.Random()

    def authorize(self, amount: Decimal, method: str) -> AuthorizationResult:
        transaction_id = uuid4()
        if self._rng.random() < self.approval_rate:
            code = secrets.token_hex(4).upper()
            logger.info(f"[GATEWAY] Approved {amount} via {method} (auth {code})")
            return AuthorizationResult(approved=True, transaction_id=transaction_id, authorization_code=code)
        logger.warning(f"[GATEWAY] Declined {amount} via {method}")
        return AuthorizationResult(approved=False, transaction_id=transaction_id, reason="Payment declined by gateway")
