"""Balance and ledger endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import AuthenticatedUser, current_user, staff_user
from marketplace.database import get_db
from marketplace.dependencies import get_notifier
from marketplace.schemas.ledger import (
    BalanceResponse,
    LedgerReportResponse,
    SettleRequest,
    StaffCreditRequest,
    TransactionResponse,
    WithdrawalRequestBody,
)
from marketplace.services import ledger as ledger_service
from marketplace.services.notifications import Notifier

router = APIRouter(prefix="/balance", tags=["balance"])


@router.get("", response_model=BalanceResponse)
async def get_balance(
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    summary = await ledger_service.balance_summary(db, auth.user_id)
    return BalanceResponse(user_id=auth.user_id, **summary)


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    limit: int = 50,
    offset: int = 0,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> list[TransactionResponse]:
    """Own ledger entries, newest first."""
    entries = await ledger_service.list_transactions(
        db, auth.user_id, limit=min(limit, 100), offset=offset
    )
    return [TransactionResponse.model_validate(e) for e in entries]


@router.post("/withdrawals", response_model=TransactionResponse, status_code=201)
async def request_withdrawal(
    data: WithdrawalRequestBody,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> TransactionResponse:
    """Deducts immediately; the entry stays pending until settlement."""
    entry = await ledger_service.request_withdrawal(
        db, auth.user_id, data.amount, data.destination, notifier
    )
    return TransactionResponse.model_validate(entry)


@router.post("/transactions/{transaction_id}/settle", response_model=TransactionResponse)
async def settle_transaction(
    transaction_id: uuid.UUID,
    data: SettleRequest,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> TransactionResponse:
    """Record the external settlement outcome of a pending entry."""
    if data.reason:
        entry = await ledger_service.mark_failed(db, transaction_id, data.reason, notifier)
    else:
        entry = await ledger_service.mark_completed(db, transaction_id, notifier)
    return TransactionResponse.model_validate(entry)


@router.post("/bonuses", response_model=TransactionResponse, status_code=201)
async def grant_bonus(
    data: StaffCreditRequest,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    entry = await ledger_service.grant_bonus(
        db, data.user_id, data.amount, data.description, auth.user_id
    )
    return TransactionResponse.model_validate(entry)


@router.post("/adjustments", response_model=TransactionResponse, status_code=201)
async def adjust_balance(
    data: StaffCreditRequest,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    entry = await ledger_service.adjust_balance(
        db, data.user_id, data.amount, data.description, auth.user_id
    )
    return TransactionResponse.model_validate(entry)


@router.get("/users/{user_id}/verify", response_model=LedgerReportResponse)
async def verify_ledger(
    user_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> LedgerReportResponse:
    """Replay a user's ledger and report any inconsistency."""
    report = await ledger_service.verify_ledger(db, user_id)
    return LedgerReportResponse(
        user_id=report.user_id,
        entries_checked=report.entries_checked,
        balance=report.balance,
        expected_balance=report.expected_balance,
        ok=report.ok,
        problems=report.problems,
    )
