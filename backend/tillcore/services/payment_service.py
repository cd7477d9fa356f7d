# Overview: Payment capture collaborator used by the checkout.

"""
Payment capture

The checkout only needs one call from its gateway:

    gateway.capture(kind, amount) -> Capture

SimulatedGateway is the default: cash is accepted as counted, card is
approved with a generated approval code. Tests (and demo tills) can make
it decline particular tender kinds.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Protocol

from ..errors import PaymentDeclined
from ..models import PAYMENT_TYPES
from ..time_utils import format_utc, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# TENDER TYPES (CONSTANTS)
# =============================================================================

TENDER_CASH = "cash"
TENDER_CARD = "card"

VALID_TENDER_TYPES = list(PAYMENT_TYPES)


@dataclass
class Capture:
    kind: str
    amount: Decimal
    reference: str
    approval_code: str | None = None
    captured_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "amount": str(self.amount),
            "reference": self.reference,
            "approval_code": self.approval_code,
            "captured_at": format_utc(self.captured_at),
        }


class PaymentGateway(Protocol):
    def capture(self, kind: str, amount: Decimal) -> Capture:
        ...


class SimulatedGateway:
    def __init__(self, decline_kinds: Iterable[str] = ()):
        self.decline_kinds = set(decline_kinds)
        self.captures: list[Capture] = []

    def capture(self, kind: str, amount: Decimal) -> Capture:
        if kind not in VALID_TENDER_TYPES:
            raise PaymentDeclined(f"Unsupported tender type: {kind}")
        if amount <= 0:
            raise PaymentDeclined(f"{kind} capture amount must be positive")
        if kind in self.decline_kinds:
            logger.info("Simulated %s decline for %s", kind, amount)
            raise PaymentDeclined(f"{kind.capitalize()} payment declined")

        token = uuid.uuid4().hex[:8].upper()
        capture = Capture(
            kind=kind,
            amount=amount,
            reference=f"{kind.upper()}-{token}",
            approval_code=token[:6] if kind != TENDER_CASH else None,
        )
        self.captures.append(capture)
        return capture
