"""Contract status coordinator.

Payment and dispute logic never set contract statuses directly: they report
a ``ContractOutcome`` and this module translates it into the contract's own
vocabulary.
"""

import enum
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import InvalidStateError, NotFoundError
from marketplace.models.contract import Contract, ContractPaymentStatus, ContractStatus
from marketplace.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Once here, a contract never moves to another status.
FINISHED_CONTRACT_STATUSES = frozenset({
    ContractStatus.COMPLETED,
    ContractStatus.CANCELLED,
    ContractStatus.REJECTED,
})


class ContractOutcome(enum.Enum):
    ESCROW_HELD = "escrow_held"
    ESCROW_RELEASED = "escrow_released"
    PAYMENT_REFUNDED = "payment_refunded"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RELEASED = "dispute_released"
    DISPUTE_REFUNDED = "dispute_refunded"
    DISPUTE_PARTIAL = "dispute_partial"
    DISPUTE_CANCELLED = "dispute_cancelled"
    WORKER_REMOVED = "worker_removed"


@dataclass(frozen=True)
class ContractUpdate:
    """``None`` means leave the field as it is."""
    status: ContractStatus | None = None
    payment_status: ContractPaymentStatus | None = None


OUTCOME_UPDATES: dict[ContractOutcome, ContractUpdate] = {
    ContractOutcome.ESCROW_HELD: ContractUpdate(
        payment_status=ContractPaymentStatus.HELD,
    ),
    ContractOutcome.ESCROW_RELEASED: ContractUpdate(
        ContractStatus.COMPLETED, ContractPaymentStatus.RELEASED,
    ),
    ContractOutcome.PAYMENT_REFUNDED: ContractUpdate(
        ContractStatus.CANCELLED, ContractPaymentStatus.REFUNDED,
    ),
    ContractOutcome.DISPUTE_OPENED: ContractUpdate(status=ContractStatus.DISPUTED),
    ContractOutcome.DISPUTE_RELEASED: ContractUpdate(
        ContractStatus.COMPLETED, ContractPaymentStatus.RELEASED,
    ),
    ContractOutcome.DISPUTE_REFUNDED: ContractUpdate(
        ContractStatus.CANCELLED, ContractPaymentStatus.REFUNDED,
    ),
    # Status stays where it is until a business rule for partial outcomes exists.
    ContractOutcome.DISPUTE_PARTIAL: ContractUpdate(
        payment_status=ContractPaymentStatus.PARTIALLY_REFUNDED,
    ),
    ContractOutcome.DISPUTE_CANCELLED: ContractUpdate(status=ContractStatus.CANCELLED),
    ContractOutcome.WORKER_REMOVED: ContractUpdate(status=ContractStatus.CANCELLED),
}


def update_for(outcome: ContractOutcome) -> ContractUpdate:
    return OUTCOME_UPDATES[outcome]


async def lock_contract(db: AsyncSession, contract_id: uuid.UUID) -> Contract:
    result = await db.execute(
        select(Contract)
        .where(Contract.contract_id == contract_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    contract = result.scalar_one_or_none()
    if contract is None:
        raise NotFoundError("Contract not found")
    return contract


async def apply_outcome(
    db: AsyncSession,
    contract_id: uuid.UUID,
    outcome: ContractOutcome,
    actor_id: uuid.UUID | None = None,
    reason: str | None = None,
) -> Contract:
    """Apply ``outcome`` to the contract. Runs inside the caller's transaction."""
    contract = await lock_contract(db, contract_id)
    update = update_for(outcome)

    if (
        update.status is not None
        and update.status != contract.status
        and contract.status in FINISHED_CONTRACT_STATUSES
    ):
        raise InvalidStateError(
            f"Contract is already {contract.status.value}; cannot apply {outcome.value}"
        )
    if update.status is not None and update.status != contract.status:
        contract.status = update.status
        if update.status == ContractStatus.COMPLETED:
            contract.completed_at = utcnow()
        elif update.status == ContractStatus.CANCELLED:
            contract.cancelled_by = actor_id
            contract.cancellation_reason = reason[:500] if reason else None
    if update.payment_status is not None:
        contract.payment_status = update.payment_status

    logger.info(
        "Contract %s: %s -> status=%s payment_status=%s",
        contract_id, outcome.value, contract.status.value, contract.payment_status.value,
    )
    return contract
