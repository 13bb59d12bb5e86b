"""Dispute workflow engine.

A dispute freezes its payment's escrow from creation until a staff resolver
reaches a terminal outcome; the resolution handlers then call the escrow
primitives directly. Messages, evidence and the audit log are append-only
child rows.

Lock order for anything that touches money: contract, then payment, then
dispute.
"""

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import atomic
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
from marketplace.models.contract import ACTIVE_CONTRACT_STATUSES, Contract
from marketplace.models.dispute import (
    OPEN_DISPUTE_STATUSES,
    TERMINAL_DISPUTE_STATUSES,
    VALID_DISPUTE_TRANSITIONS,
    Dispute,
    DisputeAction,
    DisputeAttachment,
    DisputeAuditLog,
    DisputeCategory,
    DisputeImportance,
    DisputeMessage,
    DisputePriority,
    DisputeStatus,
    ResolutionType,
)
from marketplace.models.payment import Payment, PaymentStatus
from marketplace.models.user import STAFF_ROLES, User, UserRole
from marketplace.services import escrow, ledger
from marketplace.services.contract_status import ContractOutcome, apply_outcome, lock_contract
from marketplace.services.notifications import Notifier, notify
from marketplace.services.storage import AttachmentMeta
from marketplace.services.users import get_user, require_admin
from marketplace.utils.clock import as_utc, utcnow
from marketplace.utils.money import to_money

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 255

_RESOLUTION_STATUS = {
    ResolutionType.FULL_RELEASE: DisputeStatus.RESOLVED_RELEASED,
    ResolutionType.FULL_REFUND: DisputeStatus.RESOLVED_REFUNDED,
    ResolutionType.PARTIAL_REFUND: DisputeStatus.RESOLVED_PARTIAL,
    ResolutionType.NO_ACTION: DisputeStatus.CANCELLED,
}


# ---------------------------------------------------------------------------
# Derived reads
# ---------------------------------------------------------------------------


def is_open(dispute: Dispute) -> bool:
    return dispute.status in OPEN_DISPUTE_STATUSES


def is_resolved(dispute: Dispute) -> bool:
    return dispute.status in TERMINAL_DISPUTE_STATUSES


def age_in_days(dispute: Dispute, now: datetime | None = None) -> int:
    now = now or utcnow()
    return (now - as_utc(dispute.created_at)).days


def is_overdue(dispute: Dispute, now: datetime | None = None) -> bool:
    return not is_resolved(dispute) and age_in_days(dispute, now) > settings.dispute_overdue_days


def requires_urgent_attention(dispute: Dispute, now: datetime | None = None) -> bool:
    return (
        dispute.priority == DisputePriority.URGENT
        or dispute.importance == DisputeImportance.CRITICAL
        or is_overdue(dispute, now)
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _assert_transition(current: DisputeStatus, target: DisputeStatus) -> None:
    if target not in VALID_DISPUTE_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition dispute from {current.value} to {target.value}"
        )


def _require_text(value: str | None, label: str, max_length: int | None = None) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required")
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{label} exceeds {max_length} characters")
    return text


async def _log_audit(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    action: DisputeAction,
    actor_id: uuid.UUID | None,
    details: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    db.add(DisputeAuditLog(
        dispute_audit_id=uuid.uuid4(),
        dispute_id=dispute_id,
        action=action,
        actor_id=actor_id,
        timestamp=utcnow(),
        details=details,
    ))


async def _get_dispute(db: AsyncSession, dispute_id: uuid.UUID, lock: bool = False) -> Dispute:
    query = select(Dispute).where(Dispute.dispute_id == dispute_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFoundError("Dispute not found")
    return dispute


async def _lock_for_resolution(
    db: AsyncSession, dispute_id: uuid.UUID
) -> tuple[Dispute, Payment]:
    """Take contract, payment and dispute locks in that order."""
    dispute = await _get_dispute(db, dispute_id)
    await lock_contract(db, dispute.contract_id)
    payment = await escrow.lock_payment(db, dispute.payment_id)
    dispute = await _get_dispute(db, dispute_id, lock=True)
    return dispute, payment


def _is_party(dispute: Dispute, user_id: uuid.UUID) -> bool:
    return user_id in (dispute.initiated_by, dispute.against_user)


async def _assert_participant(db: AsyncSession, dispute: Dispute, user_id: uuid.UUID) -> User:
    """Parties, the assigned resolver and staff may take part in a dispute."""
    user = await get_user(db, user_id)
    if _is_party(dispute, user_id) or dispute.assigned_to == user_id or user.role in STAFF_ROLES:
        return user
    raise ForbiddenError("Not a participant in this dispute")


async def _assert_resolver(db: AsyncSession, dispute: Dispute, resolver_id: uuid.UUID) -> User:
    resolver = await get_user(db, resolver_id)
    if resolver.role not in STAFF_ROLES:
        raise ForbiddenError("Resolver role required")
    if (
        dispute.assigned_to is not None
        and dispute.assigned_to != resolver_id
        and resolver.role != UserRole.ADMIN
    ):
        raise ForbiddenError("Dispute is assigned to another resolver")
    return resolver


def _add_attachments(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    uploaded_by: uuid.UUID,
    files: Sequence[AttachmentMeta],
    message_id: uuid.UUID | None = None,
) -> list[DisputeAttachment]:
    rows = []
    for meta in files:
        row = DisputeAttachment(
            attachment_id=uuid.uuid4(),
            dispute_id=dispute_id,
            message_id=message_id,
            uploaded_by=uploaded_by,
            file_name=meta.file_name,
            file_url=meta.file_url,
            file_type=meta.file_type,
            file_size=meta.file_size,
            created_at=utcnow(),
        )
        db.add(row)
        rows.append(row)
    return rows


def _event_payload(dispute: Dispute, **extra) -> dict:
    return {
        "dispute_id": str(dispute.dispute_id),
        "contract_id": str(dispute.contract_id),
        "payment_id": str(dispute.payment_id),
        "initiated_by": str(dispute.initiated_by),
        "against_user": str(dispute.against_user),
        "status": dispute.status.value,
        **extra,
    }


# ---------------------------------------------------------------------------
# Creation and participation
# ---------------------------------------------------------------------------


async def _assert_can_open(db: AsyncSession, contract: Contract, initiator_id: uuid.UUID) -> None:
    if initiator_id not in (contract.client_id, contract.doer_id):
        raise NotPartyError("Not a party to this contract")

    existing = await db.execute(
        select(Dispute.dispute_id)
        .where(Dispute.contract_id == contract.contract_id)
        .where(Dispute.status.in_(OPEN_DISPUTE_STATUSES))
    )
    if existing.first() is not None:
        raise DuplicateDisputeError("An open dispute already exists for this contract")
    if contract.status not in ACTIVE_CONTRACT_STATUSES:
        raise InvalidStateError(
            f"Cannot dispute a contract in status {contract.status.value}"
        )


def _assert_accepts_input(dispute: Dispute, what: str) -> None:
    if is_resolved(dispute):
        raise ForbiddenError(f"Dispute is resolved; no further {what}")


async def check_can_open_dispute(
    db: AsyncSession,
    contract_id: uuid.UUID,
    initiator_id: uuid.UUID,
    reason: str,
    description: str,
) -> None:
    """Run ``create_dispute``'s checks without locking or writing anything.

    Upload handlers call this before storing evidence, so a request that
    would be refused leaves no files behind.
    """
    _require_text(reason, "Reason", MAX_REASON_LENGTH)
    _require_text(description, "Description")
    result = await db.execute(select(Contract).where(Contract.contract_id == contract_id))
    contract = result.scalar_one_or_none()
    if contract is None:
        raise NotFoundError("Contract not found")
    await _assert_can_open(db, contract, initiator_id)

    payment = await db.execute(
        select(Payment.payment_id)
        .where(Payment.contract_id == contract_id)
        .where(Payment.status.notin_([PaymentStatus.FAILED, PaymentStatus.CANCELLED]))
        .limit(1)
    )
    if payment.first() is None:
        raise NotFoundError("Payment not found for this contract")


async def check_can_contribute(
    db: AsyncSession, dispute_id: uuid.UUID, user_id: uuid.UUID, what: str
) -> None:
    """Read-only version of the participation checks on messages and evidence."""
    dispute = await _get_dispute(db, dispute_id)
    await _assert_participant(db, dispute, user_id)
    _assert_accepts_input(dispute, what)


async def create_dispute(
    db: AsyncSession,
    contract_id: uuid.UUID,
    initiator_id: uuid.UUID,
    category: DisputeCategory,
    reason: str,
    description: str,
    evidence: Sequence[AttachmentMeta] = (),
    notifier: Notifier | None = None,
) -> Dispute:
    """Open a dispute and freeze the contract's current payment."""
    reason = _require_text(reason, "Reason", MAX_REASON_LENGTH)
    description = _require_text(description, "Description")

    async with atomic(db):
        contract = await lock_contract(db, contract_id)
        await _assert_can_open(db, contract, initiator_id)

        payment = await escrow.current_contract_payment(db, contract_id)
        if payment is None:
            raise NotFoundError("Payment not found for this contract")

        against = contract.doer_id if initiator_id == contract.client_id else contract.client_id
        now = utcnow()
        dispute = Dispute(
            dispute_id=uuid.uuid4(),
            contract_id=contract_id,
            payment_id=payment.payment_id,
            initiated_by=initiator_id,
            against_user=against,
            reason=reason,
            description=description,
            category=category,
            priority=DisputePriority.MEDIUM,
            importance=DisputeImportance.MEDIUM,
            status=DisputeStatus.OPEN,
            created_at=now,
        )
        db.add(dispute)
        try:
            await db.flush()
        except IntegrityError as exc:
            # A concurrent request opened one between our check and insert.
            raise DuplicateDisputeError(
                "An open dispute already exists for this contract"
            ) from exc

        escrow.apply_changes(
            payment, escrow.dispute_update(payment, initiator_id, reason, dispute.dispute_id, now)
        )
        await apply_outcome(db, contract_id, ContractOutcome.DISPUTE_OPENED, actor_id=initiator_id)
        _add_attachments(db, dispute.dispute_id, initiator_id, evidence)
        await _log_audit(db, dispute.dispute_id, DisputeAction.CREATED, initiator_id, {
            "category": category.value,
            "evidence_count": len(evidence),
        })

    logger.info(
        "Dispute %s opened on contract %s by %s (payment %s frozen)",
        dispute.dispute_id, contract_id, initiator_id, payment.payment_id,
    )
    await notify(notifier, "dispute.opened", _event_payload(dispute, category=category.value))
    return dispute


async def add_message(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    user_id: uuid.UUID,
    text: str,
    attachments: Sequence[AttachmentMeta] = (),
    notifier: Notifier | None = None,
) -> DisputeMessage:
    body = _require_text(text, "Message")
    async with atomic(db):
        dispute = await _get_dispute(db, dispute_id, lock=True)
        await _assert_participant(db, dispute, user_id)
        _assert_accepts_input(dispute, "messages")

        message = DisputeMessage(
            message_id=uuid.uuid4(),
            dispute_id=dispute_id,
            author_id=user_id,
            body=body,
            created_at=utcnow(),
        )
        db.add(message)
        await db.flush()
        _add_attachments(db, dispute_id, user_id, attachments, message_id=message.message_id)
        await _log_audit(db, dispute_id, DisputeAction.MESSAGE_ADDED, user_id, {
            "message_id": str(message.message_id),
            "attachments": len(attachments),
        })

    await notify(notifier, "dispute.message_added", _event_payload(
        dispute, author_id=str(user_id), message_id=str(message.message_id),
    ))
    return message


async def add_evidence(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    user_id: uuid.UUID,
    files: Sequence[AttachmentMeta],
    notifier: Notifier | None = None,
) -> list[DisputeAttachment]:
    if not files:
        raise ValidationError("At least one file is required")
    async with atomic(db):
        dispute = await _get_dispute(db, dispute_id, lock=True)
        await _assert_participant(db, dispute, user_id)
        _assert_accepts_input(dispute, "evidence")

        rows = _add_attachments(db, dispute_id, user_id, files)
        await _log_audit(db, dispute_id, DisputeAction.EVIDENCE_ADDED, user_id, {
            "files": [meta.file_name for meta in files],
        })

    await notify(notifier, "dispute.evidence_added", _event_payload(
        dispute, uploaded_by=str(user_id), count=len(rows),
    ))
    return rows


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


async def _staff_update(
    db: AsyncSession, dispute_id: uuid.UUID, actor_id: uuid.UUID
) -> Dispute:
    actor = await get_user(db, actor_id)
    if actor.role not in STAFF_ROLES:
        raise ForbiddenError("Support or admin role required")
    dispute = await _get_dispute(db, dispute_id, lock=True)
    if is_resolved(dispute):
        raise AlreadyResolvedError(f"Dispute is already {dispute.status.value}")
    return dispute


async def assign_dispute(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    resolver_id: uuid.UUID,
    assigned_by: uuid.UUID,
    notifier: Notifier | None = None,
) -> Dispute:
    """Hand the dispute to a resolver. Status is left as it is."""
    async with atomic(db):
        dispute = await _staff_update(db, dispute_id, assigned_by)
        resolver = await get_user(db, resolver_id)
        if resolver.role not in STAFF_ROLES:
            raise ForbiddenError("Disputes can only be assigned to support or admin users")

        previous = dispute.assigned_to
        dispute.assigned_to = resolver_id
        dispute.assigned_at = utcnow()
        await _log_audit(db, dispute_id, DisputeAction.ASSIGNED, assigned_by, {
            "assigned_to": str(resolver_id),
            "previous": str(previous) if previous else None,
        })

    logger.info("Dispute %s assigned to %s by %s", dispute_id, resolver_id, assigned_by)
    await notify(notifier, "dispute.assigned", _event_payload(dispute, assigned_to=str(resolver_id)))
    return dispute


async def update_priority(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    priority: DisputePriority,
    actor_id: uuid.UUID,
) -> Dispute:
    async with atomic(db):
        dispute = await _staff_update(db, dispute_id, actor_id)
        previous = dispute.priority
        dispute.priority = priority
        await _log_audit(db, dispute_id, DisputeAction.PRIORITY_CHANGED, actor_id, {
            "from": previous.value, "to": priority.value,
        })
    return dispute


async def update_importance(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    importance: DisputeImportance,
    actor_id: uuid.UUID,
) -> Dispute:
    async with atomic(db):
        dispute = await _staff_update(db, dispute_id, actor_id)
        previous = dispute.importance
        dispute.importance = importance
        await _log_audit(db, dispute_id, DisputeAction.IMPORTANCE_CHANGED, actor_id, {
            "from": previous.value, "to": importance.value,
        })
    return dispute


async def update_status(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    status: DisputeStatus,
    actor_id: uuid.UUID,
) -> Dispute:
    """Move between the working states. Terminal states go through resolution."""
    if status not in OPEN_DISPUTE_STATUSES:
        raise InvalidStateError("Use a resolution to close a dispute")
    async with atomic(db):
        dispute = await _staff_update(db, dispute_id, actor_id)
        previous = dispute.status
        _assert_transition(previous, status)
        dispute.status = status
        await _log_audit(db, dispute_id, DisputeAction.STATUS_CHANGED, actor_id, {
            "from": previous.value, "to": status.value,
        })
    return dispute


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


async def resolve_dispute(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    resolver_id: uuid.UUID,
    resolution_type: ResolutionType,
    text: str,
    refund_amount: Decimal | None = None,
    notifier: Notifier | None = None,
) -> Dispute:
    if resolution_type == ResolutionType.FULL_RELEASE:
        return await resolve_with_full_release(db, dispute_id, resolver_id, text, notifier)
    if resolution_type == ResolutionType.FULL_REFUND:
        return await resolve_with_full_refund(db, dispute_id, resolver_id, text, notifier)
    if resolution_type == ResolutionType.PARTIAL_REFUND:
        if refund_amount is None:
            raise InvalidAmountError("refund_amount is required for a partial refund")
        return await resolve_with_partial_refund(
            db, dispute_id, resolver_id, text, refund_amount, notifier
        )
    return await cancel_dispute(db, dispute_id, resolver_id, text, notifier)


async def _begin_resolution(
    db: AsyncSession, dispute_id: uuid.UUID, resolver_id: uuid.UUID
) -> tuple[Dispute, Payment]:
    dispute, payment = await _lock_for_resolution(db, dispute_id)
    if is_resolved(dispute):
        raise AlreadyResolvedError(f"Dispute is already {dispute.status.value}")
    await _assert_resolver(db, dispute, resolver_id)
    return dispute, payment


async def _finish_resolution(
    db: AsyncSession,
    dispute: Dispute,
    resolver_id: uuid.UUID,
    resolution_type: ResolutionType,
    text: str,
    details: dict,
) -> None:
    target = _RESOLUTION_STATUS[resolution_type]
    _assert_transition(dispute.status, target)
    dispute.status = target
    dispute.resolution = text
    dispute.resolution_type = resolution_type
    dispute.resolved_by = resolver_id
    dispute.resolved_at = utcnow()
    action = (
        DisputeAction.CANCELLED if resolution_type == ResolutionType.NO_ACTION
        else DisputeAction.RESOLVED
    )
    await _log_audit(db, dispute.dispute_id, action, resolver_id, {
        "resolution_type": resolution_type.value, **details,
    })


async def _after_resolution(
    notifier: Notifier | None, dispute: Dispute, payment: Payment, **extra
) -> None:
    logger.info(
        "Dispute %s resolved as %s by %s",
        dispute.dispute_id, dispute.resolution_type.value, dispute.resolved_by,
    )
    await notify(notifier, "dispute.resolved", _event_payload(
        dispute,
        resolution_type=dispute.resolution_type.value,
        payment_status=payment.status.value,
        **extra,
    ))


async def resolve_with_full_release(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    resolver_id: uuid.UUID,
    text: str,
    notifier: Notifier | None = None,
) -> Dispute:
    """Release the whole payout to the recipient; the contract completes."""
    text = _require_text(text, "Resolution")
    async with atomic(db):
        dispute, payment = await _begin_resolution(db, dispute_id, resolver_id)
        released = await escrow._release(db, payment, resolver_id, via_dispute=True)
        await _finish_resolution(db, dispute, resolver_id, ResolutionType.FULL_RELEASE, text, {
            "released": str(released),
        })

    await _after_resolution(notifier, dispute, payment, released=str(released))
    return dispute


async def resolve_with_full_refund(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    resolver_id: uuid.UUID,
    text: str,
    notifier: Notifier | None = None,
) -> Dispute:
    """Refund the payer; the contract is cancelled. The platform fee is kept
    unless ``grant_platform_fee_refund`` is called afterwards."""
    text = _require_text(text, "Resolution")
    async with atomic(db):
        dispute, payment = await _begin_resolution(db, dispute_id, resolver_id)
        refunded = await escrow._refund(db, payment, text, resolver_id, via_dispute=True)
        await _finish_resolution(db, dispute, resolver_id, ResolutionType.FULL_REFUND, text, {
            "refunded": str(refunded),
        })

    await _after_resolution(notifier, dispute, payment, refunded=str(refunded))
    return dispute


async def resolve_with_partial_refund(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    resolver_id: uuid.UUID,
    text: str,
    refund_amount: Decimal,
    notifier: Notifier | None = None,
) -> Dispute:
    """Refund ``refund_amount`` to the payer and release the remainder of the
    payout to the recipient. Contract status is left unchanged."""
    text = _require_text(text, "Resolution")
    refund_amount = to_money(refund_amount)
    async with atomic(db):
        dispute, payment = await _begin_resolution(db, dispute_id, resolver_id)
        refunded, released = await escrow._partial_refund(
            db, payment, refund_amount, text, resolver_id
        )
        dispute.refund_amount = refunded
        await _finish_resolution(db, dispute, resolver_id, ResolutionType.PARTIAL_REFUND, text, {
            "refunded": str(refunded),
            "released": str(released),
        })

    await _after_resolution(
        notifier, dispute, payment, refunded=str(refunded), released=str(released),
    )
    return dispute


async def cancel_dispute(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    resolver_id: uuid.UUID,
    reason: str,
    notifier: Notifier | None = None,
) -> Dispute:
    """Close without moving money. The payment's freeze is lifted and the
    contract is cancelled."""
    reason = _require_text(reason, "Reason")
    async with atomic(db):
        dispute, payment = await _begin_resolution(db, dispute_id, resolver_id)
        if payment.status == PaymentStatus.DISPUTED:
            escrow.apply_changes(payment, escrow.dispute_cancel_update(payment))
        await apply_outcome(
            db, dispute.contract_id, ContractOutcome.DISPUTE_CANCELLED,
            actor_id=resolver_id, reason=reason,
        )
        await _finish_resolution(db, dispute, resolver_id, ResolutionType.NO_ACTION, reason, {
            "payment_status": payment.status.value,
        })

    await _after_resolution(notifier, dispute, payment)
    return dispute


async def grant_platform_fee_refund(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    admin_id: uuid.UUID,
    notifier: Notifier | None = None,
) -> Dispute:
    """Explicitly return the platform fee to the payer after a refund outcome."""
    async with atomic(db):
        await require_admin(db, admin_id)
        dispute, payment = await _lock_for_resolution(db, dispute_id)
        if dispute.status not in (DisputeStatus.RESOLVED_REFUNDED, DisputeStatus.RESOLVED_PARTIAL):
            raise InvalidStateError(
                "Platform fee can only be refunded after a full or partial refund"
            )
        if dispute.platform_fee_refunded:
            raise InvalidStateError("Platform fee already refunded")
        fee = to_money(payment.platform_fee)
        if fee <= 0:
            raise InvalidAmountError("Payment has no platform fee to refund")

        await ledger.create_refund(
            db, payment.payer_id, fee,
            f"Platform fee refund for dispute {dispute.dispute_id}",
            contract_id=dispute.contract_id, payment_id=payment.payment_id,
        )
        payment.refunded_amount = to_money(payment.refunded_amount) + fee
        dispute.platform_fee_refunded = True
        await _log_audit(db, dispute_id, DisputeAction.PLATFORM_FEE_REFUNDED, admin_id, {
            "amount": str(fee),
        })

    logger.info("Platform fee %s refunded for dispute %s by %s", fee, dispute_id, admin_id)
    await notify(notifier, "payment.refunded", {
        "payment_id": str(payment.payment_id),
        "dispute_id": str(dispute_id),
        "amount": str(fee),
        "platform_fee": True,
    })
    return dispute


async def escalate_overdue_disputes(
    db: AsyncSession,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> list[uuid.UUID]:
    """Raise every overdue unresolved dispute to urgent priority."""
    now = now or utcnow()
    async with atomic(db):
        result = await db.execute(
            select(Dispute)
            .where(Dispute.status.in_(OPEN_DISPUTE_STATUSES))
            .where(Dispute.priority != DisputePriority.URGENT)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        escalated = []
        for dispute in result.scalars().all():
            if not is_overdue(dispute, now):
                continue
            previous = dispute.priority
            dispute.priority = DisputePriority.URGENT
            await _log_audit(db, dispute.dispute_id, DisputeAction.ESCALATED, None, {
                "from": previous.value,
                "age_days": age_in_days(dispute, now),
            })
            escalated.append(dispute)

    for dispute in escalated:
        logger.warning("Dispute %s overdue, escalated to urgent", dispute.dispute_id)
        await notify(notifier, "dispute.escalated", _event_payload(dispute))
    return [dispute.dispute_id for dispute in escalated]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@dataclass
class DisputeDetail:
    dispute: Dispute
    messages: list[DisputeMessage]
    attachments: list[DisputeAttachment]
    audit_log: list[DisputeAuditLog]


async def get_dispute_detail(
    db: AsyncSession, dispute_id: uuid.UUID, user_id: uuid.UUID
) -> DisputeDetail:
    dispute = await _get_dispute(db, dispute_id)
    await _assert_participant(db, dispute, user_id)

    messages = await db.execute(
        select(DisputeMessage)
        .where(DisputeMessage.dispute_id == dispute_id)
        .order_by(DisputeMessage.created_at)
    )
    attachments = await db.execute(
        select(DisputeAttachment)
        .where(DisputeAttachment.dispute_id == dispute_id)
        .order_by(DisputeAttachment.created_at)
    )
    audit = await db.execute(
        select(DisputeAuditLog)
        .where(DisputeAuditLog.dispute_id == dispute_id)
        .order_by(DisputeAuditLog.timestamp)
    )
    return DisputeDetail(
        dispute=dispute,
        messages=list(messages.scalars().all()),
        attachments=list(attachments.scalars().all()),
        audit_log=list(audit.scalars().all()),
    )


async def list_disputes(
    db: AsyncSession,
    status: DisputeStatus | None = None,
    assigned_to: uuid.UUID | None = None,
    party_id: uuid.UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Dispute]:
    query = select(Dispute)
    if status is not None:
        query = query.where(Dispute.status == status)
    if assigned_to is not None:
        query = query.where(Dispute.assigned_to == assigned_to)
    if party_id is not None:
        query = query.where(
            or_(Dispute.initiated_by == party_id, Dispute.against_user == party_id)
        )
    result = await db.execute(
        query.order_by(Dispute.created_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def list_urgent_disputes(
    db: AsyncSession, now: datetime | None = None
) -> list[Dispute]:
    """Unresolved disputes needing attention, oldest first."""
    result = await db.execute(
        select(Dispute)
        .where(Dispute.status.in_(OPEN_DISPUTE_STATUSES))
        .order_by(Dispute.created_at)
    )
    return [d for d in result.scalars().all() if requires_urgent_attention(d, now)]
