"""Worker allocation splitter for multi-worker jobs.

A job's price is the authorized total. Each worker's share lives on the
payment of that worker's contract as ``worker_payment_amount``. Changes are
planned as a whole new assignment by the pure ``plan_*`` functions and then
written in one transaction, so the sum never exceeds the total at any point.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import atomic
from marketplace.errors import (
    ForbiddenError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
)
from marketplace.models.contract import INACTIVE_CONTRACT_STATUSES, Contract
from marketplace.models.job import Job
from marketplace.models.payment import TERMINAL_PAYMENT_STATUSES, Payment, PaymentStatus
from marketplace.services import escrow
from marketplace.services.contract_status import ContractOutcome, apply_outcome
from marketplace.services.notifications import Notifier, notify
from marketplace.utils.money import CENT, ZERO, to_money

logger = logging.getLogger(__name__)


class RedistributionMode(enum.Enum):
    PRO_RATA = "pro_rata"
    EXPLICIT = "explicit"
    NONE = "none"


# ---------------------------------------------------------------------------
# Planning (pure)
# ---------------------------------------------------------------------------


def distribute_pro_rata(amount: Decimal, weights: dict) -> dict:
    """Split ``amount`` across ``weights`` to the cent.

    Shares are rounded down and the leftover cents go to the largest weight,
    so the parts always add up to exactly ``amount``. All-zero weights split
    evenly.
    """
    amount = to_money(amount)
    if not weights:
        return {}
    if all(w <= 0 for w in weights.values()):
        weights = {key: Decimal(1) for key in weights}

    weight_total = sum(weights.values())
    shares = {
        key: (amount * weight / weight_total).quantize(CENT, rounding=ROUND_DOWN)
        for key, weight in weights.items()
    }
    leftover = amount - sum(shares.values())
    if leftover:
        largest = max(weights, key=lambda key: weights[key])
        shares[largest] += leftover
    return shares


def distribute_capped(amount: Decimal, weights: dict, headroom: dict) -> dict:
    """Pro rata split where no key receives more than its ``headroom``.

    Keys that fill up drop out and the rest is split again among the others.
    Whatever fits nowhere is left out, so the shares may sum to less than
    ``amount``.
    """
    left = to_money(amount)
    shares = {key: ZERO for key in weights}
    open_keys = {key for key in weights if headroom.get(key, ZERO) > 0}
    while left > 0 and open_keys:
        split = distribute_pro_rata(left, {key: weights[key] for key in open_keys})
        for key, share in split.items():
            room = headroom[key] - shares[key]
            given = min(share, room)
            shares[key] += given
            left -= given
            if given == room:
                open_keys.discard(key)
    return {key: share for key, share in shares.items() if share > 0}


def plan_update(
    total: Decimal,
    current: dict[uuid.UUID, Decimal],
    updates: dict[uuid.UUID, Decimal],
    minimum: Decimal = ZERO,
    frozen: frozenset = frozenset(),
    caps: dict[uuid.UUID, Decimal] | None = None,
) -> dict[uuid.UUID, Decimal]:
    """Return the full assignment after ``updates``, or raise.

    ``caps`` bounds each worker by what their payment can actually pay out.
    """
    unknown = set(updates) - set(current)
    if unknown:
        raise InvalidAmountError(
            f"Not workers on this job: {', '.join(sorted(str(w) for w in unknown))}"
        )
    touched_frozen = set(updates) & set(frozen)
    if touched_frozen:
        raise InvalidStateError("Cannot re-allocate a worker whose payment is settled or disputed")

    plan = dict(current)
    for worker_id, amount in updates.items():
        amount = to_money(amount)
        if amount < 0:
            raise InvalidAmountError("Allocations cannot be negative")
        if amount < minimum:
            raise InvalidAmountError(f"Minimum allocation per worker is {minimum}")
        if caps is not None and worker_id in caps and amount > caps[worker_id]:
            raise InvalidAmountError(
                f"Allocation {amount} exceeds the {caps[worker_id]} held for worker {worker_id}"
            )
        plan[worker_id] = amount

    allocated = sum(plan.values(), ZERO)
    if allocated > to_money(total):
        raise InvalidAmountError(
            f"Allocations total {allocated} exceeds the job total {to_money(total)}"
        )
    return plan


def plan_removal(
    total: Decimal,
    current: dict[uuid.UUID, Decimal],
    worker_id: uuid.UUID,
    mode: RedistributionMode,
    explicit: dict[uuid.UUID, Decimal] | None = None,
    minimum: Decimal = ZERO,
    frozen: frozenset = frozenset(),
    caps: dict[uuid.UUID, Decimal] | None = None,
) -> dict[uuid.UUID, Decimal]:
    """Assignment for the remaining workers once ``worker_id`` leaves.

    Pro rata shares stop at each worker's cap; the part nobody can absorb
    stays unallocated.
    """
    if worker_id not in current:
        raise NotFoundError("Worker has no allocation on this job")
    removed = current[worker_id]
    remaining = {w: amount for w, amount in current.items() if w != worker_id}

    if mode == RedistributionMode.NONE:
        return remaining

    if mode == RedistributionMode.EXPLICIT:
        if explicit is None:
            raise InvalidAmountError("Explicit redistribution needs the new allocations")
        return plan_update(total, remaining, explicit, minimum, frozen, caps)

    open_workers = {w: amount for w, amount in remaining.items() if w not in frozen}
    if not open_workers or removed <= 0:
        return remaining
    if caps is None:
        shares = distribute_pro_rata(removed, open_workers)
    else:
        headroom = {
            w: max(caps.get(w, amount) - amount, ZERO) for w, amount in open_workers.items()
        }
        shares = distribute_capped(removed, open_workers, headroom)
    plan = {w: amount + shares.get(w, ZERO) for w, amount in remaining.items()}
    # Sum never grows past what it was before the removal, so it still fits the total.
    return plan_update(total, plan, {}, minimum, frozen)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@dataclass
class WorkerAllocation:
    worker_id: uuid.UUID
    contract_id: uuid.UUID
    payment_id: uuid.UUID
    amount: Decimal
    percentage: Decimal
    locked: bool


@dataclass
class AllocationSummary:
    job_id: uuid.UUID
    total: Decimal
    allocated: Decimal
    remaining: Decimal
    workers: list[WorkerAllocation]


def _is_locked(payment: Payment) -> bool:
    return payment.status in TERMINAL_PAYMENT_STATUSES or payment.status == PaymentStatus.DISPUTED


async def _get_job(db: AsyncSession, job_id: uuid.UUID, lock: bool = False) -> Job:
    query = select(Job).where(Job.job_id == job_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFoundError("Job not found")
    return job


async def _worker_rows(
    db: AsyncSession, job_id: uuid.UUID, lock: bool = False
) -> list[tuple[Contract, Payment]]:
    """Active contracts of the job paired with their current payment.

    With ``lock`` the contracts are taken ``FOR UPDATE`` before their
    payments, the same order the escrow and dispute paths use.
    """
    query = (
        select(Contract)
        .where(Contract.job_id == job_id)
        .where(Contract.status.notin_(INACTIVE_CONTRACT_STATUSES))
        .order_by(Contract.created_at)
    )
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    rows = []
    for contract in result.scalars().all():
        payment = await escrow.current_contract_payment(db, contract.contract_id)
        if payment is not None:
            rows.append((contract, payment))
    return rows


def _caps(rows: list[tuple[Contract, Payment]]) -> dict[uuid.UUID, Decimal]:
    """Most each worker's payment can release: its amount net of the fee."""
    return {contract.doer_id: escrow.refundable_amount(payment) for contract, payment in rows}


def _summarize(job: Job, rows: list[tuple[Contract, Payment]]) -> AllocationSummary:
    total = to_money(job.price)
    workers = []
    for contract, payment in rows:
        amount = to_money(payment.worker_payment_amount or ZERO)
        workers.append(WorkerAllocation(
            worker_id=contract.doer_id,
            contract_id=contract.contract_id,
            payment_id=payment.payment_id,
            amount=amount,
            percentage=(amount * 100 / total).quantize(CENT) if total else ZERO,
            locked=_is_locked(payment),
        ))
    allocated = sum((w.amount for w in workers), ZERO)
    return AllocationSummary(
        job_id=job.job_id,
        total=total,
        allocated=allocated,
        remaining=total - allocated,
        workers=workers,
    )


def _assert_client(job: Job, user_id: uuid.UUID) -> None:
    if job.client_id != user_id:
        raise ForbiddenError("Only the client can manage worker allocations")


def _write_plan(
    rows: list[tuple[Contract, Payment]], plan: dict[uuid.UUID, Decimal]
) -> list[uuid.UUID]:
    changed = []
    for contract, payment in rows:
        if contract.doer_id not in plan:
            continue
        amount = plan[contract.doer_id]
        if payment.worker_payment_amount is None or to_money(payment.worker_payment_amount) != amount:
            payment.worker_payment_amount = amount
            changed.append(contract.doer_id)
    return changed


async def get_allocations(
    db: AsyncSession, job_id: uuid.UUID, viewer_id: uuid.UUID | None = None
) -> AllocationSummary:
    job = await _get_job(db, job_id)
    rows = await _worker_rows(db, job_id)
    if viewer_id is not None and viewer_id != job.client_id:
        if viewer_id not in {contract.doer_id for contract, _ in rows}:
            raise ForbiddenError("Not a party to this job")
    return _summarize(job, rows)


async def set_allocations(
    db: AsyncSession,
    job_id: uuid.UUID,
    client_id: uuid.UUID,
    allocations: dict[uuid.UUID, Decimal],
    notifier: Notifier | None = None,
) -> AllocationSummary:
    """Apply a new assignment for some or all workers in one step."""
    async with atomic(db):
        job = await _get_job(db, job_id, lock=True)
        _assert_client(job, client_id)
        rows = await _worker_rows(db, job_id, lock=True)
        current = {c.doer_id: to_money(p.worker_payment_amount or ZERO) for c, p in rows}
        frozen = frozenset(c.doer_id for c, p in rows if _is_locked(p))

        plan = plan_update(
            job.price, current, allocations, settings.min_worker_allocation, frozen,
            _caps(rows),
        )
        changed = _write_plan(rows, plan)
        summary = _summarize(job, rows)

    logger.info(
        "Allocations for job %s updated by %s: %d changed, %s of %s allocated",
        job_id, client_id, len(changed), summary.allocated, summary.total,
    )
    await notify(notifier, "allocation.updated", {
        "job_id": str(job_id),
        "allocated": str(summary.allocated),
        "changed": [str(w) for w in changed],
    })
    return summary


async def remove_worker(
    db: AsyncSession,
    job_id: uuid.UUID,
    client_id: uuid.UUID,
    worker_id: uuid.UUID,
    mode: RedistributionMode = RedistributionMode.PRO_RATA,
    explicit: dict[uuid.UUID, Decimal] | None = None,
    reason: str | None = None,
    notifier: Notifier | None = None,
) -> AllocationSummary:
    """Drop a worker, take their payment out of play and redistribute their share.

    A captured payment is refunded to the client; one whose funds never
    arrived is cancelled. Either way the contract ends cancelled and the
    payment can no longer be released.
    """
    reason = reason or "Worker removed from job"
    async with atomic(db):
        job = await _get_job(db, job_id, lock=True)
        _assert_client(job, client_id)
        rows = await _worker_rows(db, job_id, lock=True)
        current = {c.doer_id: to_money(p.worker_payment_amount or ZERO) for c, p in rows}
        frozen = frozenset(c.doer_id for c, p in rows if _is_locked(p))

        if worker_id in frozen:
            raise InvalidStateError("Cannot remove a worker whose payment is settled or disputed")
        plan = plan_removal(
            job.price, current, worker_id, mode, explicit,
            settings.min_worker_allocation, frozen, _caps(rows),
        )

        removed_contract, removed_payment = next(
            (c, p) for c, p in rows if c.doer_id == worker_id
        )
        removed_payment.worker_payment_amount = None
        refunded = await escrow._withdraw(db, removed_payment, reason, client_id)
        await apply_outcome(
            db, removed_contract.contract_id, ContractOutcome.WORKER_REMOVED,
            actor_id=client_id, reason=reason,
        )
        remaining_rows = [(c, p) for c, p in rows if c.doer_id != worker_id]
        changed = _write_plan(remaining_rows, plan)
        summary = _summarize(job, remaining_rows)

    logger.info(
        "Worker %s removed from job %s (%s): %s redistributed to %d worker(s), %s refunded",
        worker_id, job_id, mode.value, current[worker_id], len(changed), refunded,
    )
    await notify(notifier, "allocation.updated", {
        "job_id": str(job_id),
        "removed_worker": str(worker_id),
        "mode": mode.value,
        "allocated": str(summary.allocated),
        "refunded": str(refunded),
    })
    return summary
