"""Payment and escrow endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import AuthenticatedUser, current_user, staff_user
from marketplace.database import get_db
from marketplace.dependencies import get_notifier
from marketplace.errors import ForbiddenError
from marketplace.schemas.payment import (
    ConfirmResponse,
    GatewaySignal,
    PaymentResponse,
    RefundRequest,
    TransitionRequest,
)
from marketplace.services import escrow as escrow_service
from marketplace.services.notifications import Notifier

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/signals", response_model=PaymentResponse)
async def record_signal(
    data: GatewaySignal,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentResponse:
    """Gateway integration reports a captured or failed payment."""
    payment = await escrow_service.record_gateway_signal(db, data, notifier)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    payment = await escrow_service.get_payment(db, payment_id)
    if auth.user_id not in (payment.payer_id, payment.recipient_id) and not auth.is_staff:
        raise ForbiddenError("Not a party to this payment")
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/confirm", response_model=ConfirmResponse)
async def confirm_payment(
    payment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ConfirmResponse:
    """Payer or recipient confirms completion. Both confirmations release escrow."""
    both = await escrow_service.confirm_payment(db, payment_id, auth.user_id, notifier)
    return ConfirmResponse(payment_id=payment_id, both_confirmed=both)


@router.post("/{payment_id}/release", response_model=PaymentResponse)
async def release_escrow(
    payment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentResponse:
    payment = await escrow_service.release_escrow(db, payment_id, auth.user_id, notifier)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: uuid.UUID,
    data: RefundRequest,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentResponse:
    payment = await escrow_service.refund_payment(
        db, payment_id, data.reason, auth.user_id, notifier
    )
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/verify", response_model=PaymentResponse)
async def verify_payment(
    payment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentResponse:
    """Staff approve a manually verified payment."""
    payment = await escrow_service.verify_payment(db, payment_id, auth.user_id, notifier)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/transition", response_model=PaymentResponse)
async def transition_payment(
    payment_id: uuid.UUID,
    data: TransitionRequest,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    payment = await escrow_service.transition_payment(db, payment_id, data.status, auth.user_id)
    return PaymentResponse.model_validate(payment)
