from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EscrowStatus(str, Enum):
    PENDING = "pending"
    HELD = "held"
    AWAITING_APPROVAL = "awaiting_approval"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"


ESCROW_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.PENDING: {EscrowStatus.HELD, EscrowStatus.FAILED},
    EscrowStatus.HELD: {EscrowStatus.AWAITING_APPROVAL},
    EscrowStatus.AWAITING_APPROVAL: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
    EscrowStatus.FAILED: set(),
}


class AccountType(str, Enum):
    CHECKING = "checking"
    SAVINGS = "savings"


class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request_id: str
    amount_cents: int = Field(gt=0)


class PaymentIntentResponse(BaseModel):
    payment_id: str
    client_secret: str | None = None
    amount_cents: int
    platform_fee_cents: int
    tax_cents: int
    total_amount_cents: int
    payout_amount_cents: int
    currency: str
    status: EscrowStatus


class PhotoInput(BaseModel):
    photo_url: str = Field(min_length=1, max_length=1024)
    original_name: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=2000)


class SubmitWorkRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    photos: list[PhotoInput] = Field(default_factory=list, max_length=20)


class RejectPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(max_length=2000)


class BankAccountRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    external_account_ref: str = Field(min_length=1, max_length=255)
    account_holder_name: str = Field(min_length=1, max_length=255)
    bank_name: str | None = Field(None, max_length=255)
    account_number: str = Field(min_length=4, max_length=34)
    account_type: AccountType = AccountType.CHECKING


class BankAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: str
    provider_id: str
    account_holder_name: str
    bank_name: str | None = None
    masked_account_number: str
    account_type: AccountType
    is_verified: bool


class EscrowPaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    request_id: str
    client_id: str
    provider_id: str
    amount_cents: int
    platform_fee_cents: int
    tax_cents: int
    total_amount_cents: int
    payout_amount_cents: int
    currency: str
    status: EscrowStatus
    held_at: datetime | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    refund_reason: str | None = None
    created_at: datetime
