"""Payment SQLAlchemy model: one authorized money movement, escrowed or direct.

Payments are financial records: they are never deleted, and every status
change goes through the escrow service.
"""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base, JSONType


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    PROCESSING = "processing"
    HELD_ESCROW = "held_escrow"
    CONFIRMED_FOR_PAYOUT = "confirmed_for_payout"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentType(enum.Enum):
    CONTRACT_PAYMENT = "contract_payment"
    MEMBERSHIP = "membership"
    JOB_PUBLICATION = "job_publication"
    BUDGET_INCREASE = "budget_increase"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.CANCELLED,
})

# Exits reachable from every non-terminal state.
_EXITS = {
    PaymentStatus.DISPUTED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.CANCELLED,
}

# Valid state transitions. COMPLETED for an escrow payment is additionally
# restricted to the release primitive (see services.escrow).
VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PENDING_VERIFICATION, PaymentStatus.VERIFIED, PaymentStatus.PROCESSING,
    } | _EXITS,
    PaymentStatus.PENDING_VERIFICATION: {PaymentStatus.VERIFIED} | _EXITS,
    PaymentStatus.VERIFIED: {
        PaymentStatus.PROCESSING, PaymentStatus.HELD_ESCROW, PaymentStatus.COMPLETED,
    } | _EXITS,
    PaymentStatus.PROCESSING: {
        PaymentStatus.HELD_ESCROW,
        PaymentStatus.CONFIRMED_FOR_PAYOUT,
        PaymentStatus.AWAITING_CONFIRMATION,
        PaymentStatus.COMPLETED,
    } | _EXITS,
    PaymentStatus.HELD_ESCROW: {
        PaymentStatus.CONFIRMED_FOR_PAYOUT,
        PaymentStatus.AWAITING_CONFIRMATION,
        PaymentStatus.COMPLETED,
    } | _EXITS,
    PaymentStatus.CONFIRMED_FOR_PAYOUT: {
        PaymentStatus.HELD_ESCROW, PaymentStatus.COMPLETED,
    } | _EXITS,
    PaymentStatus.AWAITING_CONFIRMATION: {
        PaymentStatus.HELD_ESCROW, PaymentStatus.COMPLETED,
    } | _EXITS,
    PaymentStatus.DISPUTED: {
        PaymentStatus.HELD_ESCROW,
        PaymentStatus.CONFIRMED_FOR_PAYOUT,
        PaymentStatus.AWAITING_CONFIRMATION,
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
    } | (_EXITS - {PaymentStatus.DISPUTED}),
    PaymentStatus.COMPLETED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.CANCELLED: set(),
}


class Payment(Base):
    __tablename__ = "payments"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    contract_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("contracts.contract_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    # Absent for membership and publication fees.
    recipient_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True, index=True
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="mercadopago")
    provider_transaction_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payment_type: Mapped[PaymentType] = mapped_column(
        Enum(PaymentType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentType.CONTRACT_PAYMENT,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="ARS")
    platform_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    platform_fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("0.00")
    )

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )

    # Escrow
    is_escrow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    escrow_released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    escrow_released_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    # Multi-worker jobs: this worker's share, distinct from the gross amount.
    worker_payment_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True
    )

    # Bilateral confirmation
    payer_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payer_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recipient_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recipient_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Dispute linkage
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disputed_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    pre_dispute_status: Mapped[PaymentStatus | None] = mapped_column(
        Enum(PaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )

    # Refund linkage
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )

    # Manual verification (bank transfers with uploaded proof)
    verified_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
