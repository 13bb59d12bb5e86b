"""Tests for the dispute workflow: filing, participation, administration, resolution."""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import (
    AlreadyResolvedError,
    DuplicateDisputeError,
    ForbiddenError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
    NotPartyError,
    ValidationError,
)
from marketplace.models.contract import Contract, ContractPaymentStatus, ContractStatus
from marketplace.models.dispute import (
    AttachmentType,
    Dispute,
    DisputeAction,
    DisputeAttachment,
    DisputeAuditLog,
    DisputeCategory,
    DisputeImportance,
    DisputePriority,
    DisputeStatus,
    ResolutionType,
)
from marketplace.models.payment import PaymentStatus
from marketplace.models.user import User, UserRole
from marketplace.services import disputes, escrow, ledger
from marketplace.services.storage import AttachmentMeta
from marketplace.utils.clock import utcnow
from tests.conftest import make_contract, make_held_contract, make_user

PHOTO = AttachmentMeta(
    file_name="wall.jpg",
    file_url="memory://evidence/0/wall.jpg",
    file_type=AttachmentType.IMAGE,
    file_size=2048,
)


async def _open_dispute(
    db: AsyncSession,
    platform_fee: Decimal = Decimal("0.00"),
    notifier=None,
):
    client, doer, contract, payment = await make_held_contract(db, platform_fee=platform_fee)
    dispute = await disputes.create_dispute(
        db, contract.contract_id, client.user_id, DisputeCategory.SERVICE_NOT_DELIVERED,
        "Work not delivered", "Nothing was done by the deadline.", [PHOTO], notifier,
    )
    return client, doer, contract, payment, dispute


async def _audit_actions(db: AsyncSession, dispute_id: uuid.UUID) -> list[DisputeAction]:
    result = await db.execute(
        select(DisputeAuditLog.action)
        .where(DisputeAuditLog.dispute_id == dispute_id)
        .order_by(DisputeAuditLog.timestamp)
    )
    return list(result.scalars().all())


async def _contract(db: AsyncSession, contract_id: uuid.UUID) -> Contract:
    result = await db.execute(select(Contract).where(Contract.contract_id == contract_id))
    return result.scalar_one()


async def _admin(db: AsyncSession) -> User:
    return await make_user(db, role=UserRole.ADMIN, name="Admin")


# ---------------------------------------------------------------------------
# Derived reads
# ---------------------------------------------------------------------------


def test_requires_urgent_attention() -> None:
    now = utcnow()
    dispute = Dispute(
        status=DisputeStatus.OPEN,
        priority=DisputePriority.MEDIUM,
        importance=DisputeImportance.MEDIUM,
        created_at=now - timedelta(days=3),
    )
    assert not disputes.requires_urgent_attention(dispute, now)

    dispute.importance = DisputeImportance.CRITICAL
    assert disputes.requires_urgent_attention(dispute, now)

    dispute.importance = DisputeImportance.MEDIUM
    dispute.created_at = now - timedelta(days=8)
    assert disputes.is_overdue(dispute, now)
    assert disputes.requires_urgent_attention(dispute, now)

    dispute.status = DisputeStatus.RESOLVED_RELEASED
    assert disputes.is_resolved(dispute)
    assert not disputes.is_overdue(dispute, now)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_dispute_freezes_payment(db_session: AsyncSession, notifier) -> None:
    client, doer, contract, payment, dispute = await _open_dispute(db_session, notifier=notifier)

    assert dispute.status == DisputeStatus.OPEN
    assert dispute.initiated_by == client.user_id
    assert dispute.against_user == doer.user_id
    assert dispute.payment_id == payment.payment_id

    assert payment.status == PaymentStatus.DISPUTED
    assert payment.pre_dispute_status == PaymentStatus.HELD_ESCROW
    assert payment.dispute_id == dispute.dispute_id
    contract = await _contract(db_session, contract.contract_id)
    assert contract.status == ContractStatus.DISPUTED

    result = await db_session.execute(
        select(DisputeAttachment).where(DisputeAttachment.dispute_id == dispute.dispute_id)
    )
    attachment = result.scalar_one()
    assert attachment.file_type == AttachmentType.IMAGE
    assert attachment.message_id is None
    assert await _audit_actions(db_session, dispute.dispute_id) == [DisputeAction.CREATED]
    notifier.redis.publish.assert_awaited()


@pytest.mark.asyncio
async def test_duplicate_dispute_rejected(db_session: AsyncSession) -> None:
    _, doer, contract, _, _ = await _open_dispute(db_session)
    with pytest.raises(DuplicateDisputeError):
        await disputes.create_dispute(
            db_session, contract.contract_id, doer.user_id, DisputeCategory.PAYMENT_ISSUES,
            "Counter claim", "The client is lying.",
        )


@pytest.mark.asyncio
async def test_create_by_non_party(db_session: AsyncSession) -> None:
    _, _, contract, _ = await make_held_contract(db_session)
    stranger = await make_user(db_session)
    with pytest.raises(NotPartyError):
        await disputes.create_dispute(
            db_session, contract.contract_id, stranger.user_id, DisputeCategory.OTHER,
            "Reason", "Description",
        )


@pytest.mark.asyncio
async def test_create_on_inactive_contract(db_session: AsyncSession) -> None:
    client = await make_user(db_session)
    doer = await make_user(db_session)
    contract = await make_contract(db_session, client, doer, status=ContractStatus.CANCELLED)
    with pytest.raises(InvalidStateError):
        await disputes.create_dispute(
            db_session, contract.contract_id, client.user_id, DisputeCategory.OTHER,
            "Reason", "Description",
        )


@pytest.mark.asyncio
async def test_create_without_payment(db_session: AsyncSession) -> None:
    client = await make_user(db_session)
    doer = await make_user(db_session)
    contract = await make_contract(db_session, client, doer)
    with pytest.raises(NotFoundError):
        await disputes.create_dispute(
            db_session, contract.contract_id, client.user_id, DisputeCategory.OTHER,
            "Reason", "Description",
        )


@pytest.mark.asyncio
async def test_create_on_unknown_contract(db_session: AsyncSession) -> None:
    client = await make_user(db_session)
    with pytest.raises(NotFoundError):
        await disputes.create_dispute(
            db_session, uuid.uuid4(), client.user_id, DisputeCategory.OTHER,
            "Reason", "Description",
        )


@pytest.mark.asyncio
async def test_open_checks_without_writing(db_session: AsyncSession) -> None:
    client, doer, contract, payment = await make_held_contract(db_session)
    stranger = await make_user(db_session)
    contract_id = contract.contract_id

    await disputes.check_can_open_dispute(
        db_session, contract_id, client.user_id, "Late", "Nothing delivered"
    )
    assert payment.status == PaymentStatus.HELD_ESCROW

    with pytest.raises(NotPartyError):
        await disputes.check_can_open_dispute(
            db_session, contract_id, stranger.user_id, "Late", "Nothing delivered"
        )
    with pytest.raises(ValidationError):
        await disputes.check_can_open_dispute(db_session, contract_id, client.user_id, " ", "x")
    with pytest.raises(NotFoundError):
        await disputes.check_can_open_dispute(
            db_session, uuid.uuid4(), client.user_id, "Late", "Nothing delivered"
        )

    await disputes.create_dispute(
        db_session, contract_id, client.user_id, DisputeCategory.OTHER, "Late", "Nothing delivered",
    )
    with pytest.raises(DuplicateDisputeError):
        await disputes.check_can_open_dispute(
            db_session, contract_id, doer.user_id, "Counter claim", "The client is lying."
        )


@pytest.mark.asyncio
async def test_contribution_checks(db_session: AsyncSession) -> None:
    client, _, _, _, dispute = await _open_dispute(db_session)
    stranger = await make_user(db_session)
    admin = await _admin(db_session)

    await disputes.check_can_contribute(db_session, dispute.dispute_id, client.user_id, "evidence")
    with pytest.raises(ForbiddenError):
        await disputes.check_can_contribute(
            db_session, dispute.dispute_id, stranger.user_id, "evidence"
        )

    await disputes.resolve_with_full_release(db_session, dispute.dispute_id, admin.user_id, "done")
    with pytest.raises(ForbiddenError):
        await disputes.check_can_contribute(
            db_session, dispute.dispute_id, client.user_id, "messages"
        )


@pytest.mark.asyncio
async def test_disputed_payment_cannot_be_released_normally(db_session: AsyncSession) -> None:
    client, doer, _, payment, _ = await _open_dispute(db_session)
    payment_id, client_id, doer_id = payment.payment_id, client.user_id, doer.user_id
    with pytest.raises(InvalidStateError):
        await escrow.release_escrow(db_session, payment_id, client_id)
    with pytest.raises(InvalidStateError):
        await escrow.refund_payment(db_session, payment_id, "giving up", doer_id)
    assert await escrow.confirm_payment(db_session, payment_id, client_id) is False
    assert await escrow.confirm_payment(db_session, payment_id, doer_id) is True

    payment = await escrow.get_payment(db_session, payment_id)
    assert payment.status == PaymentStatus.DISPUTED
    assert await ledger.get_balance(db_session, doer_id) == Decimal("0.00")


# ---------------------------------------------------------------------------
# Messages and evidence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_parties_can_message(db_session: AsyncSession) -> None:
    _, doer, _, _, dispute = await _open_dispute(db_session)
    receipt = AttachmentMeta("receipt.pdf", "memory://evidence/1/receipt.pdf", AttachmentType.PDF, 512)

    message = await disputes.add_message(
        db_session, dispute.dispute_id, doer.user_id, "I did deliver, see receipt.", [receipt]
    )
    assert message.author_id == doer.user_id

    result = await db_session.execute(
        select(DisputeAttachment).where(DisputeAttachment.message_id == message.message_id)
    )
    assert result.scalar_one().file_name == "receipt.pdf"
    assert (await _audit_actions(db_session, dispute.dispute_id))[-1] == DisputeAction.MESSAGE_ADDED


@pytest.mark.asyncio
async def test_stranger_cannot_message(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    stranger = await make_user(db_session)
    with pytest.raises(ForbiddenError):
        await disputes.add_message(db_session, dispute.dispute_id, stranger.user_id, "Hi")


@pytest.mark.asyncio
async def test_add_evidence(db_session: AsyncSession) -> None:
    client, _, _, _, dispute = await _open_dispute(db_session)
    rows = await disputes.add_evidence(db_session, dispute.dispute_id, client.user_id, [PHOTO, PHOTO])
    assert len(rows) == 2

    detail = await disputes.get_dispute_detail(db_session, dispute.dispute_id, client.user_id)
    assert len(detail.attachments) == 3
    assert detail.audit_log[-1].action == DisputeAction.EVIDENCE_ADDED


@pytest.mark.asyncio
async def test_no_messages_after_resolution(db_session: AsyncSession) -> None:
    client, _, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    await disputes.resolve_with_full_release(db_session, dispute.dispute_id, admin.user_id, "Delivered")

    dispute_id, client_id = dispute.dispute_id, client.user_id
    with pytest.raises(ForbiddenError):
        await disputes.add_message(db_session, dispute_id, client_id, "Wait!")
    with pytest.raises(ForbiddenError):
        await disputes.add_evidence(db_session, dispute_id, client_id, [PHOTO])


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_assign_keeps_status(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    support = await make_user(db_session, role=UserRole.SUPPORT)

    dispute = await disputes.assign_dispute(
        db_session, dispute.dispute_id, support.user_id, admin.user_id
    )
    assert dispute.assigned_to == support.user_id
    assert dispute.assigned_at is not None
    assert dispute.status == DisputeStatus.OPEN
    assert (await _audit_actions(db_session, dispute.dispute_id))[-1] == DisputeAction.ASSIGNED


@pytest.mark.asyncio
async def test_assign_requires_staff_on_both_sides(db_session: AsyncSession) -> None:
    client, _, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    dispute_id, admin_id, client_id = dispute.dispute_id, admin.user_id, client.user_id
    with pytest.raises(ForbiddenError):
        await disputes.assign_dispute(db_session, dispute_id, admin_id, client_id)
    with pytest.raises(ForbiddenError):
        await disputes.assign_dispute(db_session, dispute_id, client_id, admin_id)


@pytest.mark.asyncio
async def test_priority_importance_and_status_updates(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    support = await make_user(db_session, role=UserRole.SUPPORT)

    await disputes.update_priority(db_session, dispute.dispute_id, DisputePriority.HIGH, support.user_id)
    await disputes.update_importance(
        db_session, dispute.dispute_id, DisputeImportance.CRITICAL, support.user_id
    )
    dispute = await disputes.update_status(
        db_session, dispute.dispute_id, DisputeStatus.IN_REVIEW, support.user_id
    )
    assert dispute.priority == DisputePriority.HIGH
    assert dispute.importance == DisputeImportance.CRITICAL
    assert dispute.status == DisputeStatus.IN_REVIEW
    assert await _audit_actions(db_session, dispute.dispute_id) == [
        DisputeAction.CREATED,
        DisputeAction.PRIORITY_CHANGED,
        DisputeAction.IMPORTANCE_CHANGED,
        DisputeAction.STATUS_CHANGED,
    ]


@pytest.mark.asyncio
async def test_update_status_cannot_resolve(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    support = await make_user(db_session, role=UserRole.SUPPORT)
    with pytest.raises(InvalidStateError):
        await disputes.update_status(
            db_session, dispute.dispute_id, DisputeStatus.RESOLVED_REFUNDED, support.user_id
        )


@pytest.mark.asyncio
async def test_updates_after_resolution_rejected(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    await disputes.cancel_dispute(db_session, dispute.dispute_id, admin.user_id, "Settled privately")
    with pytest.raises(AlreadyResolvedError):
        await disputes.update_priority(
            db_session, dispute.dispute_id, DisputePriority.URGENT, admin.user_id
        )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_release(db_session: AsyncSession, notifier) -> None:
    _, doer, contract, payment, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)

    dispute = await disputes.resolve_dispute(
        db_session, dispute.dispute_id, admin.user_id, ResolutionType.FULL_RELEASE,
        "Work was delivered", notifier=notifier,
    )
    assert dispute.status == DisputeStatus.RESOLVED_RELEASED
    assert dispute.resolution_type == ResolutionType.FULL_RELEASE
    assert dispute.resolved_by == admin.user_id
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.escrow_released_by == admin.user_id
    assert await ledger.get_balance(db_session, doer.user_id) == Decimal("50000.00")

    contract = await _contract(db_session, contract.contract_id)
    assert contract.status == ContractStatus.COMPLETED
    assert contract.payment_status == ContractPaymentStatus.RELEASED
    bodies = [call.args[1] for call in notifier.redis.publish.await_args_list]
    assert any('"dispute.resolved"' in body for body in bodies)


@pytest.mark.asyncio
async def test_full_refund(db_session: AsyncSession) -> None:
    client, doer, contract, payment, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)

    dispute = await disputes.resolve_with_full_refund(
        db_session, dispute.dispute_id, admin.user_id, "not delivered"
    )
    assert dispute.status == DisputeStatus.RESOLVED_REFUNDED
    assert dispute.platform_fee_refunded is False
    assert payment.status == PaymentStatus.REFUNDED

    contract = await _contract(db_session, contract.contract_id)
    assert contract.status == ContractStatus.CANCELLED
    assert contract.payment_status == ContractPaymentStatus.REFUNDED

    entries = await ledger.list_transactions(db_session, client.user_id)
    assert len(entries) == 1
    assert entries[0].amount == Decimal("50000.00")
    assert entries[0].payment_id == payment.payment_id
    assert await ledger.get_balance(db_session, doer.user_id) == Decimal("0.00")


@pytest.mark.asyncio
async def test_partial_refund(db_session: AsyncSession) -> None:
    client, doer, contract, payment, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)

    dispute = await disputes.resolve_with_partial_refund(
        db_session, dispute.dispute_id, admin.user_id, "reason", Decimal("20000")
    )
    assert dispute.status == DisputeStatus.RESOLVED_PARTIAL
    assert dispute.refund_amount == Decimal("20000.00")
    assert dispute.platform_fee_refunded is False
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.refunded_amount == Decimal("20000.00")
    assert await ledger.get_balance(db_session, client.user_id) == Decimal("20000.00")
    assert await ledger.get_balance(db_session, doer.user_id) == Decimal("30000.00")

    contract = await _contract(db_session, contract.contract_id)
    assert contract.status == ContractStatus.DISPUTED
    assert contract.payment_status == ContractPaymentStatus.PARTIALLY_REFUNDED


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [Decimal("0.00"), Decimal("50000.00"), Decimal("60000.00")])
async def test_partial_refund_bounds(db_session: AsyncSession, amount: Decimal) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    with pytest.raises(InvalidAmountError):
        await disputes.resolve_with_partial_refund(
            db_session, dispute.dispute_id, admin.user_id, "reason", amount
        )
    dispute = await disputes.list_disputes(db_session)
    assert dispute[0].status == DisputeStatus.OPEN


@pytest.mark.asyncio
async def test_partial_refund_requires_amount(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    with pytest.raises(InvalidAmountError):
        await disputes.resolve_dispute(
            db_session, dispute.dispute_id, admin.user_id, ResolutionType.PARTIAL_REFUND, "split"
        )


@pytest.mark.asyncio
async def test_cancel_moves_no_money(db_session: AsyncSession) -> None:
    client, doer, contract, payment, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)

    dispute = await disputes.resolve_dispute(
        db_session, dispute.dispute_id, admin.user_id, ResolutionType.NO_ACTION, "Withdrawn"
    )
    assert dispute.status == DisputeStatus.CANCELLED
    assert dispute.resolution_type == ResolutionType.NO_ACTION
    assert payment.status == PaymentStatus.HELD_ESCROW
    assert payment.pre_dispute_status is None
    assert await ledger.get_balance(db_session, client.user_id) == Decimal("0.00")
    assert await ledger.get_balance(db_session, doer.user_id) == Decimal("0.00")

    contract = await _contract(db_session, contract.contract_id)
    assert contract.status == ContractStatus.CANCELLED
    assert contract.cancellation_reason == "Withdrawn"
    assert (await _audit_actions(db_session, dispute.dispute_id))[-1] == DisputeAction.CANCELLED


@pytest.mark.asyncio
async def test_cancelled_dispute_leaves_nothing_to_release(db_session: AsyncSession) -> None:
    client, doer, contract, payment, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    client_id, doer_id, admin_id = client.user_id, doer.user_id, admin.user_id
    payment_id, contract_id = payment.payment_id, contract.contract_id
    await disputes.cancel_dispute(db_session, dispute.dispute_id, admin_id, "Withdrawn")

    with pytest.raises(InvalidStateError):
        await escrow.release_escrow(db_session, payment_id, client_id)
    await escrow.confirm_payment(db_session, payment_id, client_id)
    with pytest.raises(InvalidStateError):
        await escrow.confirm_payment(db_session, payment_id, doer_id)

    assert await ledger.get_balance(db_session, doer_id) == Decimal("0.00")
    assert (await escrow.get_payment(db_session, payment_id)).status == PaymentStatus.HELD_ESCROW
    assert (await _contract(db_session, contract_id)).status == ContractStatus.CANCELLED

    # The held funds can still go back to the client.
    await escrow.refund_payment(db_session, payment_id, "Contract cancelled", admin_id)
    assert await ledger.get_balance(db_session, client_id) == Decimal("50000.00")
    contract = await _contract(db_session, contract_id)
    assert contract.status == ContractStatus.CANCELLED
    assert contract.payment_status == ContractPaymentStatus.REFUNDED


@pytest.mark.asyncio
@pytest.mark.parametrize("resolution_type,refund_amount", [
    (ResolutionType.FULL_RELEASE, None),
    (ResolutionType.FULL_REFUND, None),
    (ResolutionType.PARTIAL_REFUND, Decimal("100.00")),
    (ResolutionType.NO_ACTION, None),
])
async def test_resolving_twice_always_fails(
    db_session: AsyncSession, resolution_type: ResolutionType, refund_amount: Decimal | None
) -> None:
    _, doer, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    await disputes.resolve_with_full_release(db_session, dispute.dispute_id, admin.user_id, "done")

    doer_id = doer.user_id
    with pytest.raises(AlreadyResolvedError):
        await disputes.resolve_dispute(
            db_session, dispute.dispute_id, admin.user_id, resolution_type, "again", refund_amount
        )
    assert await ledger.get_balance(db_session, doer_id) == Decimal("50000.00")


@pytest.mark.asyncio
async def test_member_cannot_resolve(db_session: AsyncSession) -> None:
    client, _, _, _, dispute = await _open_dispute(db_session)
    with pytest.raises(ForbiddenError):
        await disputes.resolve_with_full_refund(
            db_session, dispute.dispute_id, client.user_id, "I win"
        )


@pytest.mark.asyncio
async def test_assigned_resolver_only(db_session: AsyncSession) -> None:
    _, doer, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    assignee = await make_user(db_session, role=UserRole.SUPPORT)
    other = await make_user(db_session, role=UserRole.SUPPORT)
    await disputes.assign_dispute(db_session, dispute.dispute_id, assignee.user_id, admin.user_id)

    dispute_id, assignee_id, doer_id = dispute.dispute_id, assignee.user_id, doer.user_id
    with pytest.raises(ForbiddenError):
        await disputes.resolve_with_full_release(
            db_session, dispute_id, other.user_id, "Delivered"
        )
    dispute = await disputes.resolve_with_full_release(
        db_session, dispute_id, assignee_id, "Delivered"
    )
    assert dispute.resolved_by == assignee_id
    assert await ledger.get_balance(db_session, doer_id) == Decimal("50000.00")


@pytest.mark.asyncio
async def test_admin_overrides_assignment(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session)
    admin = await _admin(db_session)
    assignee = await make_user(db_session, role=UserRole.SUPPORT)
    await disputes.assign_dispute(db_session, dispute.dispute_id, assignee.user_id, admin.user_id)

    dispute = await disputes.resolve_with_full_refund(
        db_session, dispute.dispute_id, admin.user_id, "Override"
    )
    assert dispute.resolved_by == admin.user_id


# ---------------------------------------------------------------------------
# Platform fee grant
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_platform_fee_refund_is_explicit(db_session: AsyncSession) -> None:
    client, _, _, payment, dispute = await _open_dispute(
        db_session, platform_fee=Decimal("5000.00")
    )
    admin = await _admin(db_session)
    support = await make_user(db_session, role=UserRole.SUPPORT)

    await disputes.resolve_with_full_refund(db_session, dispute.dispute_id, admin.user_id, "Refund")
    assert await ledger.get_balance(db_session, client.user_id) == Decimal("45000.00")

    dispute_id, admin_id, client_id = dispute.dispute_id, admin.user_id, client.user_id
    payment_id = payment.payment_id
    with pytest.raises(ForbiddenError):
        await disputes.grant_platform_fee_refund(db_session, dispute_id, support.user_id)

    dispute = await disputes.grant_platform_fee_refund(db_session, dispute_id, admin_id)
    assert dispute.platform_fee_refunded is True
    payment = await escrow.get_payment(db_session, payment_id)
    assert payment.refunded_amount == Decimal("50000.00")
    assert await ledger.get_balance(db_session, client_id) == Decimal("50000.00")

    with pytest.raises(InvalidStateError):
        await disputes.grant_platform_fee_refund(db_session, dispute_id, admin_id)


@pytest.mark.asyncio
async def test_platform_fee_refund_needs_refund_outcome(db_session: AsyncSession) -> None:
    _, _, _, _, dispute = await _open_dispute(db_session, platform_fee=Decimal("5000.00"))
    admin = await _admin(db_session)
    await disputes.resolve_with_full_release(db_session, dispute.dispute_id, admin.user_id, "Paid")
    with pytest.raises(InvalidStateError):
        await disputes.grant_platform_fee_refund(db_session, dispute.dispute_id, admin.user_id)


# ---------------------------------------------------------------------------
# Escalation and listing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_escalate_overdue(db_session: AsyncSession) -> None:
    _, _, _, _, old = await _open_dispute(db_session)
    _, _, _, _, recent = await _open_dispute(db_session)
    old.created_at = utcnow() - timedelta(days=10)
    await db_session.commit()

    escalated = await disputes.escalate_overdue_disputes(db_session)
    assert escalated == [old.dispute_id]
    assert old.priority == DisputePriority.URGENT
    assert recent.priority == DisputePriority.MEDIUM

    result = await db_session.execute(
        select(DisputeAuditLog)
        .where(DisputeAuditLog.dispute_id == old.dispute_id)
        .where(DisputeAuditLog.action == DisputeAction.ESCALATED)
    )
    entry = result.scalar_one()
    assert entry.actor_id is None
    assert entry.details["from"] == "medium"

    assert await disputes.escalate_overdue_disputes(db_session) == []
    urgent = await disputes.list_urgent_disputes(db_session)
    assert [d.dispute_id for d in urgent] == [old.dispute_id]


@pytest.mark.asyncio
async def test_list_disputes_by_party(db_session: AsyncSession) -> None:
    client, _, _, _, dispute = await _open_dispute(db_session)
    await _open_dispute(db_session)

    assert len(await disputes.list_disputes(db_session)) == 2
    own = await disputes.list_disputes(db_session, party_id=client.user_id)
    assert [d.dispute_id for d in own] == [dispute.dispute_id]
    assert await disputes.list_disputes(db_session, status=DisputeStatus.RESOLVED_PARTIAL) == []


@pytest.mark.asyncio
async def test_detail_visibility(db_session: AsyncSession) -> None:
    _, doer, _, _, dispute = await _open_dispute(db_session)
    stranger = await make_user(db_session)
    support = await make_user(db_session, role=UserRole.SUPPORT)

    detail = await disputes.get_dispute_detail(db_session, dispute.dispute_id, doer.user_id)
    assert detail.dispute.dispute_id == dispute.dispute_id
    await disputes.get_dispute_detail(db_session, dispute.dispute_id, support.user_id)
    with pytest.raises(ForbiddenError):
        await disputes.get_dispute_detail(db_session, dispute.dispute_id, stranger.user_id)
