"""Balance ledger: append-only entries paired with every balance change.

The ``create_*`` primitives lock the user row, write the entry and the new
balance, and leave committing to the caller so they compose into larger
operations (escrow release, dispute resolution). The remaining operations
are complete units of work and commit through ``atomic``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import atomic
from marketplace.errors import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from marketplace.models.ledger import (
    BalanceTransaction,
    TransactionStatus,
    TransactionType,
    VALID_TRANSACTION_TRANSITIONS,
)
from marketplace.services.notifications import Notifier, notify
from marketplace.services.users import get_user, lock_user, require_staff
from marketplace.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500

_POSITIVE_TYPES = frozenset({
    TransactionType.REFUND,
    TransactionType.PAYMENT,
    TransactionType.BONUS,
})


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def check_sign(tx_type: TransactionType, amount: Decimal) -> None:
    if amount == 0:
        raise InvalidAmountError("Transaction amount cannot be zero")
    if tx_type == TransactionType.WITHDRAWAL and amount > 0:
        raise InvalidAmountError("Withdrawal amounts must be negative")
    if tx_type in _POSITIVE_TYPES and amount < 0:
        raise InvalidAmountError(f"{tx_type.value.capitalize()} amounts must be positive")


def validate_transaction(entry: BalanceTransaction) -> None:
    """Pre-commit checks for a ledger entry. Normalizes the description in place."""
    description = (entry.description or "").strip()
    if not description:
        raise ValidationError("Transaction description is required")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Transaction description exceeds {MAX_DESCRIPTION_LENGTH} characters"
        )
    entry.description = description

    check_sign(entry.type, entry.amount)

    drift = abs(entry.balance_before + entry.amount - entry.balance_after)
    if drift > settings.ledger_tolerance:
        raise InvalidAmountError(
            f"Balance arithmetic mismatch: {entry.balance_before} + {entry.amount} "
            f"!= {entry.balance_after}"
        )


def _assert_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    if target not in VALID_TRANSACTION_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition transaction from {current.value} to {target.value}"
        )


# ---------------------------------------------------------------------------
# Entry primitives (caller commits)
# ---------------------------------------------------------------------------


async def _next_entry_number(db: AsyncSession, user_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.coalesce(func.max(BalanceTransaction.entry_number), 0))
        .where(BalanceTransaction.user_id == user_id)
    )
    return result.scalar() + 1


async def _append_entry(
    db: AsyncSession,
    user_id: uuid.UUID,
    tx_type: TransactionType,
    amount: Decimal,
    description: str,
    *,
    contract_id: uuid.UUID | None = None,
    payment_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> BalanceTransaction:
    amount = to_money(amount)

    user = await lock_user(db, user_id)
    balance_before = to_money(user.balance)
    balance_after = balance_before + amount

    entry = BalanceTransaction(
        transaction_id=uuid.uuid4(),
        user_id=user_id,
        entry_number=await _next_entry_number(db, user_id),
        contract_id=contract_id,
        payment_id=payment_id,
        type=tx_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        description=description,
        status=(
            TransactionStatus.PENDING
            if tx_type == TransactionType.WITHDRAWAL
            else TransactionStatus.COMPLETED
        ),
        metadata_=metadata,
    )
    validate_transaction(entry)

    if balance_after < 0:
        raise InsufficientBalanceError(
            f"Insufficient balance: {balance_before} available, {-amount} required"
        )

    user.balance = balance_after
    db.add(entry)
    await db.flush()

    logger.info(
        "Ledger entry %s: user=%s type=%s amount=%s balance %s -> %s",
        entry.transaction_id, user_id, tx_type.value, amount, balance_before, balance_after,
    )
    return entry


async def create_refund(
    db: AsyncSession, user_id: uuid.UUID, amount: Decimal, description: str, **links
) -> BalanceTransaction:
    return await _append_entry(db, user_id, TransactionType.REFUND, amount, description, **links)


async def create_payment(
    db: AsyncSession, user_id: uuid.UUID, amount: Decimal, description: str, **links
) -> BalanceTransaction:
    return await _append_entry(db, user_id, TransactionType.PAYMENT, amount, description, **links)


async def create_bonus(
    db: AsyncSession, user_id: uuid.UUID, amount: Decimal, description: str, **links
) -> BalanceTransaction:
    return await _append_entry(db, user_id, TransactionType.BONUS, amount, description, **links)


async def create_adjustment(
    db: AsyncSession, user_id: uuid.UUID, amount: Decimal, description: str, **links
) -> BalanceTransaction:
    return await _append_entry(
        db, user_id, TransactionType.ADJUSTMENT, amount, description, **links
    )


async def create_withdrawal(
    db: AsyncSession, user_id: uuid.UUID, amount: Decimal, description: str, **links
) -> BalanceTransaction:
    """``amount`` must already be negative; it is never flipped."""
    return await _append_entry(
        db, user_id, TransactionType.WITHDRAWAL, amount, description, **links
    )


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


async def _lock_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> BalanceTransaction:
    result = await db.execute(
        select(BalanceTransaction)
        .where(BalanceTransaction.transaction_id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Transaction not found")
    return entry


async def mark_completed(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    notifier: Notifier | None = None,
) -> BalanceTransaction:
    async with atomic(db):
        entry = await _lock_transaction(db, transaction_id)
        _assert_transition(entry.status, TransactionStatus.COMPLETED)
        entry.status = TransactionStatus.COMPLETED

    logger.info("Transaction %s settled", transaction_id)
    if entry.type == TransactionType.WITHDRAWAL:
        await notify(notifier, "balance.withdrawal_settled", {
            "transaction_id": str(entry.transaction_id),
            "user_id": str(entry.user_id),
            "status": entry.status.value,
        })
    return entry


async def mark_failed(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    reason: str,
    notifier: Notifier | None = None,
) -> BalanceTransaction:
    """Fail a pending entry. A failed withdrawal is credited back by a new
    adjustment entry; the original row keeps its numbers."""
    async with atomic(db):
        entry = await _lock_transaction(db, transaction_id)
        _assert_transition(entry.status, TransactionStatus.FAILED)
        entry.status = TransactionStatus.FAILED
        entry.metadata_ = {**(entry.metadata_ or {}), "failure_reason": reason}

        if entry.type == TransactionType.WITHDRAWAL:
            await create_adjustment(
                db,
                entry.user_id,
                -entry.amount,
                f"Reversal of failed withdrawal {entry.transaction_id}",
                metadata={"reverses": str(entry.transaction_id)},
            )

    logger.info("Transaction %s failed: %s", transaction_id, reason)
    if entry.type == TransactionType.WITHDRAWAL:
        await notify(notifier, "balance.withdrawal_settled", {
            "transaction_id": str(entry.transaction_id),
            "user_id": str(entry.user_id),
            "status": entry.status.value,
            "reason": reason,
        })
    return entry


# ---------------------------------------------------------------------------
# Committed operations
# ---------------------------------------------------------------------------


async def request_withdrawal(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    destination: str,
    notifier: Notifier | None = None,
) -> BalanceTransaction:
    """Deduct immediately and leave a pending withdrawal for external settlement.

    ``amount`` is the positive sum the user asked for.
    """
    amount = to_money(amount)
    if amount < settings.min_withdrawal_amount:
        raise InvalidAmountError(
            f"Minimum withdrawal is {settings.min_withdrawal_amount}"
        )

    async with atomic(db):
        # Lock first so two requests cannot both see "no pending withdrawal"
        await lock_user(db, user_id)
        pending = await db.execute(
            select(BalanceTransaction.transaction_id)
            .where(BalanceTransaction.user_id == user_id)
            .where(BalanceTransaction.type == TransactionType.WITHDRAWAL)
            .where(BalanceTransaction.status == TransactionStatus.PENDING)
            .limit(1)
        )
        if pending.scalar_one_or_none() is not None:
            raise InvalidStateError("A withdrawal is already pending")

        entry = await create_withdrawal(
            db, user_id, -amount, f"Withdrawal to {destination}",
            metadata={"destination": destination},
        )

    await notify(notifier, "balance.withdrawal_requested", {
        "transaction_id": str(entry.transaction_id),
        "user_id": str(user_id),
        "amount": str(amount),
    })
    return entry


async def grant_bonus(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    description: str,
    granted_by: uuid.UUID,
) -> BalanceTransaction:
    async with atomic(db):
        await require_staff(db, granted_by)
        entry = await create_bonus(
            db, user_id, amount, description, metadata={"granted_by": str(granted_by)}
        )
    return entry


async def adjust_balance(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    description: str,
    adjusted_by: uuid.UUID,
) -> BalanceTransaction:
    async with atomic(db):
        await require_staff(db, adjusted_by)
        entry = await create_adjustment(
            db, user_id, amount, description, metadata={"adjusted_by": str(adjusted_by)}
        )
    return entry


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> Decimal:
    user = await get_user(db, user_id)
    return to_money(user.balance)


async def list_transactions(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> list[BalanceTransaction]:
    result = await db.execute(
        select(BalanceTransaction)
        .where(BalanceTransaction.user_id == user_id)
        .order_by(BalanceTransaction.entry_number.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def balance_summary(db: AsyncSession, user_id: uuid.UUID) -> dict:
    """Current balance plus the signed total per transaction type."""
    balance = await get_balance(db, user_id)
    result = await db.execute(
        select(BalanceTransaction.type, func.sum(BalanceTransaction.amount))
        .where(BalanceTransaction.user_id == user_id)
        .group_by(BalanceTransaction.type)
    )
    totals = {tx_type.value: ZERO for tx_type in TransactionType}
    for tx_type, total in result.all():
        totals[tx_type.value] = to_money(total)

    pending = await db.execute(
        select(func.coalesce(func.sum(BalanceTransaction.amount), 0))
        .where(BalanceTransaction.user_id == user_id)
        .where(BalanceTransaction.type == TransactionType.WITHDRAWAL)
        .where(BalanceTransaction.status == TransactionStatus.PENDING)
    )
    return {
        "balance": balance,
        "totals": totals,
        "pending_withdrawals": to_money(-pending.scalar()),
    }


@dataclass
class LedgerReport:
    user_id: uuid.UUID
    entries_checked: int
    balance: Decimal
    expected_balance: Decimal
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


async def verify_ledger(db: AsyncSession, user_id: uuid.UUID) -> LedgerReport:
    """Replay a user's chain and report every broken link.

    Checks per-entry arithmetic and sign discipline, continuity between
    consecutive entries, and that the last ``balance_after`` matches the
    stored balance.
    """
    balance = await get_balance(db, user_id)
    result = await db.execute(
        select(BalanceTransaction)
        .where(BalanceTransaction.user_id == user_id)
        .order_by(BalanceTransaction.entry_number)
    )
    entries = list(result.scalars().all())

    tolerance = settings.ledger_tolerance
    problems: list[str] = []
    previous_after = ZERO
    for entry in entries:
        label = f"entry #{entry.entry_number} ({entry.transaction_id})"
        if abs(entry.balance_before + entry.amount - entry.balance_after) > tolerance:
            problems.append(f"{label}: arithmetic mismatch")
        try:
            check_sign(entry.type, entry.amount)
        except InvalidAmountError as exc:
            problems.append(f"{label}: {exc.detail}")
        if abs(entry.balance_before - previous_after) > tolerance:
            problems.append(
                f"{label}: balance_before {entry.balance_before} does not follow "
                f"previous balance_after {previous_after}"
            )
        previous_after = entry.balance_after

    if abs(previous_after - balance) > tolerance:
        problems.append(
            f"stored balance {balance} does not match ledger balance {previous_after}"
        )

    if problems:
        logger.warning("Ledger verification for user %s found %d problem(s)", user_id, len(problems))
    return LedgerReport(
        user_id=user_id,
        entries_checked=len(entries),
        balance=balance,
        expected_balance=to_money(previous_after),
        problems=problems,
    )
