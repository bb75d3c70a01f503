"""In-process stub adapters for the storefront ports.

These stubs implement ``PaymentGatewayPort`` and ``KeyValueStore`` without
any network or session. They are intended for unit tests and local
development where deterministic behavior is useful and the payment
provider is not reachable.
"""

import uuid
from typing import Dict, List, Optional

from .cart import KeyValueStore
from .domain import (
    CURRENCY,
    InvalidTotalError,
    LineItem,
    PaymentGatewayPort,
    PaymentSession,
    PaymentStatus,
    compute_total_cents,
)


class PaymentGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Recomputes and validates the total exactly like the HTTP adapter, then
    returns a generated ``tr_`` id and a checkout URL under
    ``checkout_base``. Every status lookup reports the payment as ``paid``.
    """

    def __init__(self, checkout_base: str = "https://sandbox.invalid/checkout"):
        self.checkout_base = checkout_base.rstrip("/")

    def create_session(self, line_items: List[LineItem], customer: dict) -> PaymentSession:
        """Create a fake payment.

        Raises:
            InvalidTotalError: When the recomputed total is not positive.
        """
        total_cents = compute_total_cents(line_items)
        if total_cents <= 0:
            raise InvalidTotalError("INVALID_TOTAL")
        payment_id = f"tr_{uuid.uuid4().hex[:10]}"
        return PaymentSession(
            provider_payment_id=payment_id,
            checkout_url=f"{self.checkout_base}/{payment_id}",
            amount_cents=total_cents,
            currency=CURRENCY,
            metadata={"items": [li.to_metadata() for li in line_items], "customer": customer},
        )

    def get_status(self, payment_id: str) -> PaymentStatus:
        return PaymentStatus(payment_id=payment_id, status="paid", metadata={})


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed ``KeyValueStore``."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value
