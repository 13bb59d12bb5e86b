"""Escrow payment machine.

Two layers:

* Pure state functions take a ``Payment`` and return the field changes an
  operation would make (or raise ``InvalidStateError``). They never touch
  the session, so the state machine can be tested on unsaved records.
* Async operations lock the payment row, apply those changes, write the
  paired ledger entries, report the outcome to the contract coordinator and
  commit as one unit. Notifications go out after the commit.

Escrowed funds become spendable only through ``_release``: bilateral
confirmation, an explicit release, the auto-release sweep, or a dispute
resolution.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import atomic
from marketplace.errors import (
    ForbiddenError,
    InvalidAmountError,
    InvalidStateError,
    MarketplaceError,
    NotFoundError,
    NotPartyError,
)
from marketplace.models.payment import (
    TERMINAL_PAYMENT_STATUSES,
    VALID_PAYMENT_TRANSITIONS,
    Payment,
    PaymentStatus,
)
from marketplace.models.user import STAFF_ROLES
from marketplace.schemas.payment import GatewaySignal, SignalStatus
from marketplace.services import ledger
from marketplace.services.contract_status import ContractOutcome, apply_outcome
from marketplace.services.notifications import Notifier, notify
from marketplace.services.users import get_user, require_staff
from marketplace.utils.clock import as_utc, utcnow
from marketplace.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)

# Statuses in which the payer's money has been captured and can be returned.
CAPTURED_STATUSES = frozenset({
    PaymentStatus.VERIFIED,
    PaymentStatus.PROCESSING,
    PaymentStatus.HELD_ESCROW,
    PaymentStatus.CONFIRMED_FOR_PAYOUT,
    PaymentStatus.AWAITING_CONFIRMATION,
})

# Targets that only a dedicated operation may set.
_PRIMITIVE_TARGETS = frozenset({PaymentStatus.REFUNDED, PaymentStatus.DISPUTED})

# Money went back or never arrived; confirming these means nothing.
_UNCONFIRMABLE_STATUSES = frozenset({
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.CANCELLED,
})


# ---------------------------------------------------------------------------
# Pure state functions
# ---------------------------------------------------------------------------


def assert_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """Raise 409 if the state transition is not valid."""
    if target not in VALID_PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition payment from {current.value} to {target.value}"
        )


def is_in_escrow(payment: Payment) -> bool:
    return (
        payment.is_escrow
        and payment.status == PaymentStatus.HELD_ESCROW
        and payment.escrow_released_at is None
    )


def both_confirmed(payment: Payment) -> bool:
    return bool(payment.payer_confirmed and payment.recipient_confirmed)


def can_be_released(payment: Payment) -> bool:
    return is_in_escrow(payment) and both_confirmed(payment)


def payout_amount(payment: Payment) -> Decimal:
    """What the recipient receives: the worker allocation if one is set,
    otherwise the gross amount minus the platform fee."""
    if payment.worker_payment_amount is not None:
        return to_money(payment.worker_payment_amount)
    return to_money(payment.amount) - to_money(payment.platform_fee or ZERO)


def refundable_amount(payment: Payment) -> Decimal:
    """What a refund returns to the payer. The platform fee stays with the
    platform unless a dispute resolver grants it back separately."""
    return to_money(payment.amount) - to_money(payment.platform_fee or ZERO)


def _assert_funds_captured(payment: Payment) -> None:
    """A dispute may freeze a payment before its funds arrived."""
    if payment.pre_dispute_status is not None and payment.pre_dispute_status not in CAPTURED_STATUSES:
        raise InvalidStateError(
            f"Payment funds were never captured (was {payment.pre_dispute_status.value})"
        )


def confirmation_update(
    payment: Payment, user_id: uuid.UUID, now: datetime
) -> dict | None:
    """Changes for ``user_id`` confirming completion.

    ``None`` when the user is neither payer nor recipient; an empty dict when
    their side is already confirmed.
    """
    is_payer = payment.payer_id == user_id
    is_recipient = payment.recipient_id is not None and payment.recipient_id == user_id
    if not (is_payer or is_recipient):
        return None
    if payment.status in _UNCONFIRMABLE_STATUSES:
        raise InvalidStateError(
            f"Cannot confirm a payment in status {payment.status.value}"
        )

    changes: dict = {}
    if is_payer and not payment.payer_confirmed:
        changes["payer_confirmed"] = True
        changes["payer_confirmed_at"] = now
    if is_recipient and not payment.recipient_confirmed:
        changes["recipient_confirmed"] = True
        changes["recipient_confirmed_at"] = now
    return changes


def release_update(
    payment: Payment,
    released_by: uuid.UUID | None,
    now: datetime,
    *,
    via_dispute: bool = False,
) -> dict:
    """Changes for releasing escrowed funds to the recipient.

    A dispute freezes the normal path; a resolver releases from ``disputed``
    with ``via_dispute=True``.
    """
    if payment.escrow_released_at is not None:
        raise InvalidStateError("Escrow already released")
    if via_dispute:
        if not payment.is_escrow or payment.status != PaymentStatus.DISPUTED:
            raise InvalidStateError(
                f"Payment is not a disputed escrow payment (status {payment.status.value})"
            )
        _assert_funds_captured(payment)
    elif not is_in_escrow(payment):
        raise InvalidStateError(
            f"Payment is not held in escrow (status {payment.status.value})"
        )
    if payment.recipient_id is None:
        raise InvalidStateError("Payment has no recipient to release to")
    if (
        payment.worker_payment_amount is not None
        and to_money(payment.worker_payment_amount) > refundable_amount(payment)
    ):
        raise InvalidAmountError(
            f"Worker allocation {to_money(payment.worker_payment_amount)} exceeds "
            f"the captured amount net of fees {refundable_amount(payment)}"
        )
    return {
        "status": PaymentStatus.COMPLETED,
        "escrow_released_at": now,
        "escrow_released_by": released_by,
    }


def refund_update(
    payment: Payment,
    reason: str,
    refunded_by: uuid.UUID | None,
    now: datetime,
    *,
    via_dispute: bool = False,
) -> dict:
    if payment.status == PaymentStatus.REFUNDED:
        raise InvalidStateError("Payment already refunded")
    if payment.status == PaymentStatus.DISPUTED and not via_dispute:
        raise InvalidStateError("Payment is under dispute; resolve the dispute instead")
    if via_dispute:
        if payment.status != PaymentStatus.DISPUTED:
            raise InvalidStateError(
                f"Payment is not disputed (status {payment.status.value})"
            )
        _assert_funds_captured(payment)
    elif payment.status not in CAPTURED_STATUSES:
        raise InvalidStateError(
            f"Cannot refund a payment in status {payment.status.value}"
        )
    return {
        "status": PaymentStatus.REFUNDED,
        "refund_reason": reason,
        "refunded_at": now,
        "refunded_by": refunded_by,
        "refunded_amount": refundable_amount(payment),
    }


def partial_refund_update(
    payment: Payment,
    refund_amount: Decimal,
    reason: str,
    resolver_id: uuid.UUID,
    now: datetime,
) -> dict:
    """Split a disputed escrow: ``refund_amount`` back to the payer, the rest
    of the payout released to the recipient. The payment ends ``completed``."""
    refund_amount = to_money(refund_amount)
    payout = payout_amount(payment)
    if refund_amount <= 0 or refund_amount >= payout:
        raise InvalidAmountError(
            f"Partial refund must be between 0 and {payout} (exclusive)"
        )
    changes = release_update(payment, resolver_id, now, via_dispute=True)
    changes.update({
        "refund_reason": reason,
        "refunded_at": now,
        "refunded_by": resolver_id,
        "refunded_amount": refund_amount,
    })
    return changes


def dispute_update(
    payment: Payment,
    disputed_by: uuid.UUID,
    reason: str,
    dispute_id: uuid.UUID,
    now: datetime,
) -> dict:
    if payment.status in TERMINAL_PAYMENT_STATUSES:
        raise InvalidStateError(
            f"Cannot dispute a payment in status {payment.status.value}"
        )
    assert_payment_transition(payment.status, PaymentStatus.DISPUTED)
    return {
        "status": PaymentStatus.DISPUTED,
        "pre_dispute_status": payment.status,
        "dispute_id": dispute_id,
        "disputed_at": now,
        "disputed_by": disputed_by,
        "dispute_reason": reason,
    }


def dispute_cancel_update(payment: Payment) -> dict:
    """Lift the dispute freeze, putting the payment back where it was."""
    if payment.status != PaymentStatus.DISPUTED:
        raise InvalidStateError(
            f"Payment is not disputed (status {payment.status.value})"
        )
    restored = payment.pre_dispute_status or PaymentStatus.HELD_ESCROW
    assert_payment_transition(payment.status, restored)
    return {"status": restored, "pre_dispute_status": None}


def apply_changes(payment: Payment, changes: dict) -> None:
    for name, value in changes.items():
        setattr(payment, name, value)


# ---------------------------------------------------------------------------
# Persistence helpers
# ---------------------------------------------------------------------------


async def get_payment(db: AsyncSession, payment_id: uuid.UUID) -> Payment:
    result = await db.execute(select(Payment).where(Payment.payment_id == payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def lock_payment(db: AsyncSession, payment_id: uuid.UUID) -> Payment:
    """Load under ``FOR UPDATE``; confirmations and releases serialize here."""
    result = await db.execute(
        select(Payment)
        .where(Payment.payment_id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def current_contract_payment(db: AsyncSession, contract_id: uuid.UUID) -> Payment | None:
    """Latest payment of a contract that is not failed or cancelled."""
    result = await db.execute(
        select(Payment)
        .where(Payment.contract_id == contract_id)
        .where(Payment.status.notin_([PaymentStatus.FAILED, PaymentStatus.CANCELLED]))
        .order_by(Payment.created_at.desc())
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _event_payload(payment: Payment, **extra) -> dict:
    return {
        "payment_id": str(payment.payment_id),
        "contract_id": str(payment.contract_id) if payment.contract_id else None,
        "payer_id": str(payment.payer_id),
        "recipient_id": str(payment.recipient_id) if payment.recipient_id else None,
        "status": payment.status.value,
        **extra,
    }


# ---------------------------------------------------------------------------
# Money-moving primitives (caller holds the payment lock and commits)
# ---------------------------------------------------------------------------


async def _release(
    db: AsyncSession,
    payment: Payment,
    released_by: uuid.UUID | None,
    *,
    via_dispute: bool = False,
    metadata: dict | None = None,
) -> Decimal:
    changes = release_update(payment, released_by, utcnow(), via_dispute=via_dispute)
    amount = payout_amount(payment)
    apply_changes(payment, changes)
    if metadata:
        payment.metadata_ = {**(payment.metadata_ or {}), **metadata}

    if amount > 0:
        await ledger.create_payment(
            db, payment.recipient_id, amount,
            f"Escrow release for payment {payment.payment_id}",
            contract_id=payment.contract_id, payment_id=payment.payment_id,
        )
    if payment.contract_id is not None:
        await apply_outcome(
            db, payment.contract_id,
            ContractOutcome.DISPUTE_RELEASED if via_dispute else ContractOutcome.ESCROW_RELEASED,
            actor_id=released_by,
        )

    logger.info(
        "Escrow released: payment=%s recipient=%s amount=%s by=%s",
        payment.payment_id, payment.recipient_id, amount, released_by,
    )
    return amount


async def _refund(
    db: AsyncSession,
    payment: Payment,
    reason: str,
    refunded_by: uuid.UUID | None,
    *,
    via_dispute: bool = False,
) -> Decimal:
    changes = refund_update(payment, reason, refunded_by, utcnow(), via_dispute=via_dispute)
    apply_changes(payment, changes)
    amount = payment.refunded_amount

    if amount > 0:
        await ledger.create_refund(
            db, payment.payer_id, amount,
            f"Refund for payment {payment.payment_id}: {reason}"[:500],
            contract_id=payment.contract_id, payment_id=payment.payment_id,
        )
    if payment.contract_id is not None:
        await apply_outcome(
            db, payment.contract_id,
            ContractOutcome.DISPUTE_REFUNDED if via_dispute else ContractOutcome.PAYMENT_REFUNDED,
            actor_id=refunded_by, reason=reason,
        )

    logger.info(
        "Payment refunded: payment=%s payer=%s amount=%s by=%s",
        payment.payment_id, payment.payer_id, amount, refunded_by,
    )
    return amount


async def _withdraw(
    db: AsyncSession,
    payment: Payment,
    reason: str,
    actor_id: uuid.UUID,
) -> Decimal:
    """Take a payment out of play: refund it if the funds were captured,
    cancel it otherwise. Returns the amount refunded."""
    if payment.status in CAPTURED_STATUSES:
        return await _refund(db, payment, reason, actor_id)
    assert_payment_transition(payment.status, PaymentStatus.CANCELLED)
    payment.status = PaymentStatus.CANCELLED
    logger.info("Payment cancelled: payment=%s by=%s", payment.payment_id, actor_id)
    return ZERO


async def _partial_refund(
    db: AsyncSession,
    payment: Payment,
    refund_amount: Decimal,
    reason: str,
    resolver_id: uuid.UUID,
) -> tuple[Decimal, Decimal]:
    """Returns (refunded to payer, released to recipient)."""
    changes = partial_refund_update(payment, refund_amount, reason, resolver_id, utcnow())
    released = payout_amount(payment) - changes["refunded_amount"]
    apply_changes(payment, changes)

    await ledger.create_refund(
        db, payment.payer_id, payment.refunded_amount,
        f"Partial refund for payment {payment.payment_id}: {reason}"[:500],
        contract_id=payment.contract_id, payment_id=payment.payment_id,
    )
    await ledger.create_payment(
        db, payment.recipient_id, released,
        f"Partial escrow release for payment {payment.payment_id}",
        contract_id=payment.contract_id, payment_id=payment.payment_id,
    )
    if payment.contract_id is not None:
        await apply_outcome(
            db, payment.contract_id, ContractOutcome.DISPUTE_PARTIAL, actor_id=resolver_id,
        )

    logger.info(
        "Partial refund: payment=%s refunded=%s released=%s by=%s",
        payment.payment_id, payment.refunded_amount, released, resolver_id,
    )
    return payment.refunded_amount, released


async def _capture(db: AsyncSession, payment: Payment) -> None:
    """Move a payment whose funds arrived into escrow, or settle it directly."""
    if payment.status == PaymentStatus.PENDING:
        assert_payment_transition(payment.status, PaymentStatus.PROCESSING)
        payment.status = PaymentStatus.PROCESSING

    if payment.is_escrow:
        assert_payment_transition(payment.status, PaymentStatus.HELD_ESCROW)
        payment.status = PaymentStatus.HELD_ESCROW
        if payment.contract_id is not None:
            await apply_outcome(db, payment.contract_id, ContractOutcome.ESCROW_HELD)
        logger.info("Escrow held: payment=%s amount=%s", payment.payment_id, payment.amount)
        return

    assert_payment_transition(payment.status, PaymentStatus.COMPLETED)
    await _settle_direct(db, payment)


async def _settle_direct(db: AsyncSession, payment: Payment) -> None:
    """Complete a non-escrow payment, crediting the recipient if there is one."""
    payment.status = PaymentStatus.COMPLETED
    amount = payout_amount(payment)
    if payment.recipient_id is not None and amount > 0:
        await ledger.create_payment(
            db, payment.recipient_id, amount,
            f"Payment {payment.payment_id}",
            contract_id=payment.contract_id, payment_id=payment.payment_id,
        )
    logger.info("Direct payment settled: payment=%s amount=%s", payment.payment_id, amount)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def record_gateway_signal(
    db: AsyncSession,
    signal: GatewaySignal,
    notifier: Notifier | None = None,
) -> Payment:
    """Consume a captured/failed event from the payment gateway.

    Idempotent on ``provider_transaction_id``: a replayed signal for a payment
    that has already left ``pending`` returns it unchanged.
    """
    async with atomic(db):
        result = await db.execute(
            select(Payment)
            .where(Payment.provider_transaction_id == signal.provider_transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()

        if payment is not None and payment.status != PaymentStatus.PENDING:
            logger.info(
                "Duplicate gateway signal %s for payment %s ignored",
                signal.provider_transaction_id, payment.payment_id,
            )
            return payment

        amount = to_money(signal.amount)
        if payment is None:
            await get_user(db, signal.payer_id)
            payment = Payment(
                payment_id=uuid.uuid4(),
                contract_id=signal.contract_id,
                payer_id=signal.payer_id,
                recipient_id=signal.recipient_id,
                provider=signal.provider,
                provider_transaction_id=signal.provider_transaction_id,
                payment_type=signal.payment_type,
                amount=amount,
                currency=signal.currency,
                platform_fee_percentage=signal.platform_fee_percentage,
                platform_fee=to_money(amount * signal.platform_fee_percentage / 100),
                is_escrow=signal.is_escrow,
                description=signal.description,
                status=PaymentStatus.PENDING,
            )
            db.add(payment)
        elif payment.amount != amount or payment.currency != signal.currency:
            raise InvalidAmountError("Gateway signal does not match the payment amount")

        if signal.status == SignalStatus.FAILED:
            assert_payment_transition(payment.status, PaymentStatus.FAILED)
            payment.status = PaymentStatus.FAILED
            payment.metadata_ = {**(payment.metadata_ or {}), "failure_reason": signal.failure_reason}
        elif signal.requires_verification:
            assert_payment_transition(payment.status, PaymentStatus.PENDING_VERIFICATION)
            payment.status = PaymentStatus.PENDING_VERIFICATION
        else:
            await _capture(db, payment)
        await db.flush()

    logger.info(
        "Gateway signal %s: payment=%s status=%s",
        signal.provider_transaction_id, payment.payment_id, payment.status.value,
    )
    if payment.status == PaymentStatus.HELD_ESCROW:
        await notify(notifier, "payment.escrow_held", _event_payload(payment))
    return payment


async def verify_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    verified_by: uuid.UUID,
    notifier: Notifier | None = None,
) -> Payment:
    """Staff sign-off on a manually verified payment (e.g. bank transfer proof)."""
    async with atomic(db):
        await require_staff(db, verified_by)
        payment = await lock_payment(db, payment_id)
        if payment.status != PaymentStatus.PENDING_VERIFICATION:
            raise InvalidStateError("Payment is not awaiting verification")
        payment.status = PaymentStatus.VERIFIED
        payment.verified_by = verified_by
        payment.verified_at = utcnow()
        await _capture(db, payment)

    logger.info("Payment %s verified by %s", payment_id, verified_by)
    if payment.status == PaymentStatus.HELD_ESCROW:
        await notify(notifier, "payment.escrow_held", _event_payload(payment))
    return payment


async def confirm_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    user_id: uuid.UUID,
    notifier: Notifier | None = None,
) -> bool:
    """Record one side's confirmation; release when both sides have confirmed.

    Returns whether both parties have now confirmed. The payment row lock
    means only one of two racing confirmations can observe the held state
    with both flags set, so the release runs at most once.
    """
    released = False
    async with atomic(db):
        payment = await lock_payment(db, payment_id)
        changes = confirmation_update(payment, user_id, utcnow())
        if changes is None:
            raise NotPartyError("Only the payer or recipient can confirm this payment")
        apply_changes(payment, changes)

        if can_be_released(payment):
            await _release(db, payment, released_by=None, metadata={"released_via": "confirmation"})
            released = True
        confirmed = both_confirmed(payment)

    if changes:
        logger.info("Payment %s confirmed by %s", payment_id, user_id)
        await notify(notifier, "payment.confirmed", _event_payload(
            payment, user_id=str(user_id), both_confirmed=confirmed,
        ))
    if released:
        await notify(notifier, "payment.escrow_released", _event_payload(
            payment, amount=str(payout_amount(payment)),
        ))
    return confirmed


async def release_escrow(
    db: AsyncSession,
    payment_id: uuid.UUID,
    released_by: uuid.UUID | None = None,
    notifier: Notifier | None = None,
) -> Payment:
    """Release held funds to the recipient.

    ``released_by`` is the payer or a staff member; ``None`` means the
    platform itself. Fails on a second call.
    """
    async with atomic(db):
        payment = await lock_payment(db, payment_id)
        if released_by is not None and released_by != payment.payer_id:
            actor = await get_user(db, released_by)
            if actor.role not in STAFF_ROLES:
                raise ForbiddenError("Only the payer or staff can release escrow")
        amount = await _release(db, payment, released_by)

    await notify(notifier, "payment.escrow_released", _event_payload(payment, amount=str(amount)))
    return payment


async def refund_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    reason: str,
    refunded_by: uuid.UUID,
    notifier: Notifier | None = None,
) -> Payment:
    """Return the refundable amount to the payer and cancel the contract.

    Allowed for staff and for the recipient giving the money back.
    """
    async with atomic(db):
        payment = await lock_payment(db, payment_id)
        if refunded_by != payment.recipient_id:
            actor = await get_user(db, refunded_by)
            if actor.role not in STAFF_ROLES:
                raise ForbiddenError("Only the recipient or staff can refund this payment")
        amount = await _refund(db, payment, reason, refunded_by)

    await notify(notifier, "payment.refunded", _event_payload(
        payment, amount=str(amount), reason=reason,
    ))
    return payment


async def transition_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    target: PaymentStatus,
    actor_id: uuid.UUID,
) -> Payment:
    """Administrative move along the transition table.

    Refunds, disputes and escrow completion have dedicated operations and
    are refused here.
    """
    async with atomic(db):
        await require_staff(db, actor_id)
        payment = await lock_payment(db, payment_id)
        if target in _PRIMITIVE_TARGETS or (target == PaymentStatus.COMPLETED and payment.is_escrow):
            raise InvalidStateError(
                f"Use the dedicated operation to move a payment to {target.value}"
            )
        if payment.status == PaymentStatus.DISPUTED:
            raise InvalidStateError("Payment is under dispute; resolve the dispute instead")
        assert_payment_transition(payment.status, target)

        if target == PaymentStatus.COMPLETED:
            await _settle_direct(db, payment)
        else:
            payment.status = target

    logger.info("Payment %s moved to %s by %s", payment_id, target.value, actor_id)
    return payment


async def auto_release_stale_escrows(
    db: AsyncSession,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> list[uuid.UUID]:
    """Release escrows the recipient confirmed long ago and the payer never
    contested. Each payment is its own transaction; a failure skips it."""
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.escrow_auto_release_days)

    result = await db.execute(
        select(Payment.payment_id, Payment.recipient_confirmed_at)
        .where(Payment.is_escrow.is_(True))
        .where(Payment.status == PaymentStatus.HELD_ESCROW)
        .where(Payment.recipient_confirmed.is_(True))
        .where(Payment.dispute_id.is_(None))
    )
    due = [
        payment_id for payment_id, confirmed_at in result.all()
        if confirmed_at is not None and as_utc(confirmed_at) <= cutoff
    ]

    released: list[uuid.UUID] = []
    for payment_id in due:
        try:
            async with atomic(db):
                payment = await lock_payment(db, payment_id)
                if not is_in_escrow(payment) or payment.dispute_id is not None:
                    logger.warning("Payment %s changed before auto-release, skipping", payment_id)
                    continue
                amount = await _release(db, payment, None, metadata={"auto_released": True})
        except MarketplaceError as exc:
            logger.warning("Auto-release of payment %s skipped: %s", payment_id, exc.detail)
            continue
        released.append(payment_id)
        await notify(notifier, "payment.escrow_released", _event_payload(
            payment, amount=str(amount), auto_released=True,
        ))

    if released:
        logger.info("Auto-released %d stale escrow(s)", len(released))
    return released
