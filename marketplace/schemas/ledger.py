"""Pydantic v2 schemas for balance and ledger endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    entry_number: int
    type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    status: str
    contract_id: uuid.UUID | None
    payment_id: uuid.UUID | None
    created_at: datetime

    @field_validator("type", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class BalanceResponse(BaseModel):
    user_id: uuid.UUID
    balance: Decimal
    pending_withdrawals: Decimal
    totals: dict[str, Decimal]


class WithdrawalRequestBody(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    destination: str = Field(..., min_length=1, max_length=255)


class SettleRequest(BaseModel):
    """``reason`` marks the withdrawal failed; omit it to mark it completed."""
    reason: str | None = Field(None, max_length=500)


class StaffCreditRequest(BaseModel):
    user_id: uuid.UUID
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=500)


class LedgerReportResponse(BaseModel):
    user_id: uuid.UUID
    entries_checked: int
    balance: Decimal
    expected_balance: Decimal
    ok: bool
    problems: list[str]
