"""Pydantic v2 schemas for payments and gateway signals."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketplace.models.payment import PaymentStatus, PaymentType


class SignalStatus(enum.Enum):
    CAPTURED = "captured"
    FAILED = "failed"


class GatewaySignal(BaseModel):
    """Opaque captured/failed event handed over by the gateway integration."""
    provider: str = "mercadopago"
    provider_transaction_id: str = Field(..., min_length=1, max_length=255)
    status: SignalStatus
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: str = Field("ARS", min_length=3, max_length=10)
    payer_id: uuid.UUID
    recipient_id: uuid.UUID | None = None
    contract_id: uuid.UUID | None = None
    payment_type: PaymentType = PaymentType.CONTRACT_PAYMENT
    is_escrow: bool = True
    platform_fee_percentage: Decimal = Field(Decimal("0.00"), ge=0, le=100)
    requires_verification: bool = False
    description: str | None = Field(None, max_length=2048)
    failure_reason: str | None = None


class ConfirmResponse(BaseModel):
    payment_id: uuid.UUID
    both_confirmed: bool


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2048)


class TransitionRequest(BaseModel):
    status: PaymentStatus


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    contract_id: uuid.UUID | None
    payer_id: uuid.UUID
    recipient_id: uuid.UUID | None
    amount: Decimal
    currency: str
    platform_fee: Decimal
    status: str
    is_escrow: bool
    worker_payment_amount: Decimal | None
    payer_confirmed: bool
    recipient_confirmed: bool
    escrow_released_at: datetime | None
    escrow_released_by: uuid.UUID | None
    dispute_id: uuid.UUID | None
    refunded_at: datetime | None
    refunded_amount: Decimal
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
