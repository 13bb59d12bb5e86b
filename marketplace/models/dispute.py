"""Dispute, dispute message, attachment and audit log models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base, JSONType


class DisputeStatus(enum.Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    AWAITING_INFO = "awaiting_info"
    RESOLVED_RELEASED = "resolved_released"
    RESOLVED_REFUNDED = "resolved_refunded"
    RESOLVED_PARTIAL = "resolved_partial"
    CANCELLED = "cancelled"


class DisputeCategory(enum.Enum):
    SERVICE_NOT_DELIVERED = "service_not_delivered"
    INCOMPLETE_WORK = "incomplete_work"
    QUALITY_ISSUES = "quality_issues"
    PAYMENT_ISSUES = "payment_issues"
    BREACH_OF_CONTRACT = "breach_of_contract"
    OTHER = "other"


class DisputePriority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DisputeImportance(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionType(enum.Enum):
    FULL_RELEASE = "full_release"
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    NO_ACTION = "no_action"


class AttachmentType(enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    PDF = "pdf"
    OTHER = "other"


class DisputeAction(enum.Enum):
    CREATED = "dispute_created"
    MESSAGE_ADDED = "message_added"
    EVIDENCE_ADDED = "evidence_added"
    ASSIGNED = "assigned"
    PRIORITY_CHANGED = "priority_changed"
    IMPORTANCE_CHANGED = "importance_changed"
    STATUS_CHANGED = "status_changed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    PLATFORM_FEE_REFUNDED = "platform_fee_refunded"
    ESCALATED = "escalated"


OPEN_DISPUTE_STATUSES = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.IN_REVIEW,
    DisputeStatus.AWAITING_INFO,
})

TERMINAL_DISPUTE_STATUSES = frozenset({
    DisputeStatus.RESOLVED_RELEASED,
    DisputeStatus.RESOLVED_REFUNDED,
    DisputeStatus.RESOLVED_PARTIAL,
    DisputeStatus.CANCELLED,
})

# Valid state transitions. Terminal states have no exits.
VALID_DISPUTE_TRANSITIONS: dict[DisputeStatus, set[DisputeStatus]] = {
    DisputeStatus.OPEN: {DisputeStatus.IN_REVIEW, DisputeStatus.AWAITING_INFO}
    | set(TERMINAL_DISPUTE_STATUSES),
    DisputeStatus.IN_REVIEW: {DisputeStatus.OPEN, DisputeStatus.AWAITING_INFO}
    | set(TERMINAL_DISPUTE_STATUSES),
    DisputeStatus.AWAITING_INFO: {DisputeStatus.OPEN, DisputeStatus.IN_REVIEW}
    | set(TERMINAL_DISPUTE_STATUSES),
    DisputeStatus.RESOLVED_RELEASED: set(),
    DisputeStatus.RESOLVED_REFUNDED: set(),
    DisputeStatus.RESOLVED_PARTIAL: set(),
    DisputeStatus.CANCELLED: set(),
}

_OPEN_STATUS_SQL = "status IN ('open', 'in_review', 'awaiting_info')"


class Dispute(Base):
    __tablename__ = "disputes"
    __table_args__ = (
        # At most one open dispute per contract.
        Index(
            "uq_disputes_open_contract",
            "contract_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_SQL),
            sqlite_where=text(_OPEN_STATUS_SQL),
        ),
    )

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.contract_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=False
    )
    initiated_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    against_user: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[DisputeCategory] = mapped_column(
        Enum(DisputeCategory, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeCategory.OTHER,
    )
    priority: Mapped[DisputePriority] = mapped_column(
        Enum(DisputePriority, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputePriority.MEDIUM,
    )
    importance: Mapped[DisputeImportance] = mapped_column(
        Enum(DisputeImportance, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeImportance.MEDIUM,
    )
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
        index=True,
    )

    # Resolution
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_type: Mapped[ResolutionType | None] = mapped_column(
        Enum(ResolutionType, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    platform_fee_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class DisputeMessage(Base):
    """Append-only. Never update or delete rows."""
    __tablename__ = "dispute_messages"

    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    author_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class DisputeAttachment(Base):
    """Evidence file metadata. The bytes live in file storage."""
    __tablename__ = "dispute_attachments"

    attachment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    # Set when the file was attached to a message rather than filed as evidence.
    message_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("dispute_messages.message_id", ondelete="RESTRICT"), nullable=True
    )
    uploaded_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_type: Mapped[AttachmentType] = mapped_column(
        Enum(AttachmentType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AttachmentType.OTHER,
    )
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class DisputeAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "dispute_audit_log"

    dispute_audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[DisputeAction] = mapped_column(
        Enum(DisputeAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    # Null for actions taken by the background sweeper.
    actor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
