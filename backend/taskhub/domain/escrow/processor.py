from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


INTENT_SUCCEEDED = "succeeded"
# Statuses after which the intent will never succeed without a new payment method.
INTENT_DECLINED = {"canceled", "requires_payment_method"}


@dataclass(frozen=True)
class ProcessorIntent:
    ref: str
    status: str
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    """Card processor seam used by the escrow ledger.

    Implementations raise ``PaymentProcessorError`` on any failure so callers
    can leave local state untouched.
    """

    async def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ProcessorIntent: ...

    async def retrieve_intent(self, intent_ref: str) -> ProcessorIntent: ...

    async def transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str: ...

    async def refund(
        self,
        *,
        intent_ref: str,
        amount_cents: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str: ...
