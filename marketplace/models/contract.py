"""Contract SQLAlchemy model.

The contract lifecycle itself is owned elsewhere; escrow and dispute logic
only touch ``status`` and ``payment_status``, and only through the contract
status coordinator.
"""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base


class ContractStatus(enum.Enum):
    PENDING = "pending"
    READY = "ready"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    IN_REVIEW = "in_review"


class ContractPaymentStatus(enum.Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# A dispute may only be opened while the contract is in one of these.
ACTIVE_CONTRACT_STATUSES = frozenset({
    ContractStatus.ACCEPTED,
    ContractStatus.IN_PROGRESS,
    ContractStatus.AWAITING_CONFIRMATION,
    ContractStatus.IN_REVIEW,
})

INACTIVE_CONTRACT_STATUSES = frozenset({
    ContractStatus.CANCELLED,
    ContractStatus.REJECTED,
})


class Contract(Base):
    __tablename__ = "contracts"

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    doer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[ContractStatus] = mapped_column(
        Enum(ContractStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ContractStatus.PENDING,
    )
    payment_status: Mapped[ContractPaymentStatus] = mapped_column(
        Enum(ContractPaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ContractPaymentStatus.PENDING,
    )
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
