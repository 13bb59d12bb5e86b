"""Create users, jobs, contracts, payments, disputes and balance ledger tables.

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_PAYMENT_STATUSES = (
    "pending", "pending_verification", "verified", "processing", "held_escrow",
    "confirmed_for_payout", "awaiting_confirmation", "disputed", "completed",
    "failed", "refunded", "cancelled",
)

_ENUM_TYPES = (
    "userrole", "jobstatus", "contractstatus", "contractpaymentstatus",
    "paymentstatus", "paymenttype", "disputestatus", "disputecategory",
    "disputepriority", "disputeimportance", "resolutiontype", "attachmenttype",
    "disputeaction", "transactiontype", "transactionstatus",
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), unique=True, nullable=True),
        sa.Column(
            "role",
            sa.Enum("member", "support", "admin", name="userrole"),
            nullable=False,
            server_default="member",
        ),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("client_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_workers", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "status",
            sa.Enum("open", "in_progress", "completed", "cancelled", name="jobstatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "contracts",
        sa.Column("contract_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("client_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("doer_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "ready", "accepted", "rejected", "in_progress",
                "awaiting_confirmation", "completed", "cancelled", "disputed", "in_review",
                name="contractstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "payment_status",
            sa.Enum(
                "pending", "held", "released", "refunded", "partially_refunded",
                name="contractpaymentstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("cancelled_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_contracts_job_id", "contracts", ["job_id"])

    payment_status = sa.Enum(*_PAYMENT_STATUSES, name="paymentstatus")
    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Uuid(), primary_key=True),
        sa.Column("contract_id", sa.Uuid(), sa.ForeignKey("contracts.contract_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("payer_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("recipient_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("provider", sa.String(32), nullable=False, server_default="mercadopago"),
        sa.Column("provider_transaction_id", sa.String(255), unique=True, nullable=True),
        sa.Column(
            "payment_type",
            sa.Enum("contract_payment", "membership", "job_publication", "budget_increase", name="paymenttype"),
            nullable=False,
            server_default="contract_payment",
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False, server_default="ARS"),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("platform_fee_percentage", sa.Numeric(5, 2), nullable=False, server_default="0.00"),
        sa.Column("status", payment_status, nullable=False, server_default="pending"),
        sa.Column("is_escrow", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("escrow_released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_released_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("worker_payment_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("payer_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payer_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recipient_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recipient_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_id", sa.Uuid(), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("pre_dispute_status", payment_status, nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("verified_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payments_contract_id", "payments", ["contract_id"])
    op.create_index("ix_payments_payer_id", "payments", ["payer_id"])
    op.create_index("ix_payments_recipient_id", "payments", ["recipient_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column("contract_id", sa.Uuid(), sa.ForeignKey("contracts.contract_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payment_id", sa.Uuid(), sa.ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("initiated_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("against_user", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("assigned_to", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column(
            "category",
            sa.Enum(
                "service_not_delivered", "incomplete_work", "quality_issues",
                "payment_issues", "breach_of_contract", "other",
                name="disputecategory",
            ),
            nullable=False,
            server_default="other",
        ),
        sa.Column(
            "priority",
            sa.Enum("low", "medium", "high", "urgent", name="disputepriority"),
            nullable=False,
            server_default="medium",
        ),
        sa.Column(
            "importance",
            sa.Enum("low", "medium", "high", "critical", name="disputeimportance"),
            nullable=False,
            server_default="medium",
        ),
        sa.Column(
            "status",
            sa.Enum(
                "open", "in_review", "awaiting_info", "resolved_released",
                "resolved_refunded", "resolved_partial", "cancelled",
                name="disputestatus",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column(
            "resolution_type",
            sa.Enum("full_release", "full_refund", "partial_refund", "no_action", name="resolutiontype"),
            nullable=True,
        ),
        sa.Column("resolved_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("platform_fee_refunded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_disputes_contract_id", "disputes", ["contract_id"])
    op.create_index("ix_disputes_assigned_to", "disputes", ["assigned_to"])
    op.create_index("ix_disputes_status", "disputes", ["status"])
    op.create_index(
        "uq_disputes_open_contract",
        "disputes",
        ["contract_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('open', 'in_review', 'awaiting_info')"),
    )

    op.create_table(
        "dispute_messages",
        sa.Column("message_id", sa.Uuid(), primary_key=True),
        sa.Column("dispute_id", sa.Uuid(), sa.ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("author_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_dispute_messages_dispute_id", "dispute_messages", ["dispute_id"])

    op.create_table(
        "dispute_attachments",
        sa.Column("attachment_id", sa.Uuid(), primary_key=True),
        sa.Column("dispute_id", sa.Uuid(), sa.ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("message_id", sa.Uuid(), sa.ForeignKey("dispute_messages.message_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("uploaded_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_url", sa.String(1024), nullable=False),
        sa.Column(
            "file_type",
            sa.Enum("image", "video", "pdf", "other", name="attachmenttype"),
            nullable=False,
            server_default="other",
        ),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_dispute_attachments_dispute_id", "dispute_attachments", ["dispute_id"])

    op.create_table(
        "dispute_audit_log",
        sa.Column("dispute_audit_id", sa.Uuid(), primary_key=True),
        sa.Column("dispute_id", sa.Uuid(), sa.ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "dispute_created", "message_added", "evidence_added", "assigned",
                "priority_changed", "importance_changed", "status_changed", "resolved",
                "cancelled", "platform_fee_refunded", "escalated",
                name="disputeaction",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("details", JSONB, nullable=True),
    )
    op.create_index("ix_dispute_audit_log_dispute_id", "dispute_audit_log", ["dispute_id"])

    op.create_table(
        "balance_transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("entry_number", sa.Integer(), nullable=False),
        sa.Column("contract_id", sa.Uuid(), sa.ForeignKey("contracts.contract_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("payment_id", sa.Uuid(), sa.ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=True),
        sa.Column(
            "type",
            sa.Enum("refund", "payment", "bonus", "adjustment", "withdrawal", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_before", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="transactionstatus"),
            nullable=False,
            server_default="completed",
        ),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "entry_number", name="uq_balance_transactions_user_entry"),
    )
    op.create_index("ix_balance_transactions_user_id", "balance_transactions", ["user_id"])


def downgrade() -> None:
    op.drop_table("balance_transactions")
    op.drop_table("dispute_audit_log")
    op.drop_table("dispute_attachments")
    op.drop_table("dispute_messages")
    op.drop_table("disputes")
    op.drop_table("payments")
    op.drop_table("contracts")
    op.drop_table("jobs")
    op.drop_table("users")
    for type_name in _ENUM_TYPES:
        op.execute(f"DROP TYPE IF EXISTS {type_name}")
