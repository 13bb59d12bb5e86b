"""Pydantic v2 schemas for the dispute endpoints."""

import base64
import binascii
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from marketplace.models.dispute import (
    DisputeCategory,
    DisputeImportance,
    DisputePriority,
    DisputeStatus,
    ResolutionType,
)


def _enum_value(v: object) -> object:
    if hasattr(v, "value"):
        return v.value
    return v


class EvidenceFile(BaseModel):
    """An uploaded file, carried inline as base64."""
    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: str | None = Field(None, max_length=255)
    content_base64: str = Field(..., min_length=1)

    @field_validator("content_base64")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("content_base64 is not valid base64")
        return v

    def content(self) -> bytes:
        return base64.b64decode(self.content_base64)


class DisputeCreate(BaseModel):
    contract_id: uuid.UUID
    category: DisputeCategory = DisputeCategory.OTHER
    reason: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1, max_length=10000)
    evidence: list[EvidenceFile] = Field(default_factory=list, max_length=10)


class EvidenceCreate(BaseModel):
    files: list[EvidenceFile] = Field(..., min_length=1, max_length=10)


class MessageCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)
    attachments: list[EvidenceFile] = Field(default_factory=list, max_length=5)


class AssignRequest(BaseModel):
    resolver_id: uuid.UUID


class PriorityUpdate(BaseModel):
    priority: DisputePriority


class ImportanceUpdate(BaseModel):
    importance: DisputeImportance


class StatusUpdate(BaseModel):
    status: DisputeStatus


class ResolveRequest(BaseModel):
    resolution_type: ResolutionType
    text: str = Field(..., min_length=1, max_length=5000)
    refund_amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)

    @model_validator(mode="after")
    def check_refund_amount(self) -> "ResolveRequest":
        if self.resolution_type == ResolutionType.PARTIAL_REFUND and self.refund_amount is None:
            raise ValueError("refund_amount is required for a partial refund")
        if self.resolution_type != ResolutionType.PARTIAL_REFUND and self.refund_amount is not None:
            raise ValueError("refund_amount only applies to a partial refund")
        return self


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    contract_id: uuid.UUID
    payment_id: uuid.UUID
    initiated_by: uuid.UUID
    against_user: uuid.UUID
    assigned_to: uuid.UUID | None
    assigned_at: datetime | None
    reason: str
    description: str
    category: str
    priority: str
    importance: str
    status: str
    resolution: str | None
    resolution_type: str | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    refund_amount: Decimal | None
    platform_fee_refunded: bool
    created_at: datetime

    @field_validator("category", "priority", "importance", "status", "resolution_type", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message_id: uuid.UUID
    author_id: uuid.UUID
    body: str
    created_at: datetime


class AttachmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attachment_id: uuid.UUID
    message_id: uuid.UUID | None
    uploaded_by: uuid.UUID
    file_name: str
    file_url: str
    file_type: str
    file_size: int
    created_at: datetime

    @field_validator("file_type", mode="before")
    @classmethod
    def serialize_type(cls, v: object) -> object:
        return _enum_value(v)


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    actor_id: uuid.UUID | None
    timestamp: datetime
    details: dict | None

    @field_validator("action", mode="before")
    @classmethod
    def serialize_action(cls, v: object) -> object:
        return _enum_value(v)


class DisputeDetailResponse(BaseModel):
    dispute: DisputeResponse
    messages: list[MessageResponse]
    attachments: list[AttachmentResponse]
    audit_log: list[AuditEntryResponse]
    requires_urgent_attention: bool
    age_in_days: int
