"""Dispute endpoints: filing, conversation, evidence, administration, resolution."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import AuthenticatedUser, current_user, staff_user
from marketplace.database import get_db
from marketplace.dependencies import get_notifier, get_storage
from marketplace.models.dispute import DisputeStatus
from marketplace.schemas.dispute import (
    AssignRequest,
    AttachmentResponse,
    AuditEntryResponse,
    DisputeCreate,
    DisputeDetailResponse,
    DisputeResponse,
    EvidenceCreate,
    EvidenceFile,
    ImportanceUpdate,
    MessageCreate,
    MessageResponse,
    PriorityUpdate,
    ResolveRequest,
    StatusUpdate,
)
from marketplace.services import disputes as dispute_service
from marketplace.services.notifications import Notifier
from marketplace.services.storage import AttachmentMeta, FileStorage, attachment_from_upload

router = APIRouter(prefix="/disputes", tags=["disputes"])


async def _store_files(storage: FileStorage, files: list[EvidenceFile]) -> list[AttachmentMeta]:
    return [
        await attachment_from_upload(storage, f.file_name, f.content(), f.content_type)
        for f in files
    ]


@router.post("", response_model=DisputeResponse, status_code=201)
async def create_dispute(
    data: DisputeCreate,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    storage: FileStorage = Depends(get_storage),
) -> DisputeResponse:
    """Either contract party opens a dispute; the payment is frozen."""
    await dispute_service.check_can_open_dispute(
        db, data.contract_id, auth.user_id, data.reason, data.description
    )
    evidence = await _store_files(storage, data.evidence)
    dispute = await dispute_service.create_dispute(
        db, data.contract_id, auth.user_id, data.category,
        data.reason, data.description, evidence, notifier,
    )
    return DisputeResponse.model_validate(dispute)


@router.get("", response_model=list[DisputeResponse])
async def list_disputes(
    status: DisputeStatus | None = None,
    assigned_to: uuid.UUID | None = None,
    limit: int = 50,
    offset: int = 0,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    """Staff see every dispute; parties see their own."""
    party_id = None if auth.is_staff else auth.user_id
    disputes = await dispute_service.list_disputes(
        db, status=status, assigned_to=assigned_to, party_id=party_id,
        limit=min(limit, 100), offset=offset,
    )
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get("/urgent", response_model=list[DisputeResponse])
async def list_urgent_disputes(
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    disputes = await dispute_service.list_urgent_disputes(db)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeDetailResponse)
async def get_dispute(
    dispute_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> DisputeDetailResponse:
    detail = await dispute_service.get_dispute_detail(db, dispute_id, auth.user_id)
    return DisputeDetailResponse(
        dispute=DisputeResponse.model_validate(detail.dispute),
        messages=[MessageResponse.model_validate(m) for m in detail.messages],
        attachments=[AttachmentResponse.model_validate(a) for a in detail.attachments],
        audit_log=[AuditEntryResponse.model_validate(e) for e in detail.audit_log],
        requires_urgent_attention=dispute_service.requires_urgent_attention(detail.dispute),
        age_in_days=dispute_service.age_in_days(detail.dispute),
    )


@router.post("/{dispute_id}/messages", response_model=MessageResponse, status_code=201)
async def add_message(
    dispute_id: uuid.UUID,
    data: MessageCreate,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    storage: FileStorage = Depends(get_storage),
) -> MessageResponse:
    await dispute_service.check_can_contribute(db, dispute_id, auth.user_id, "messages")
    attachments = await _store_files(storage, data.attachments)
    message = await dispute_service.add_message(
        db, dispute_id, auth.user_id, data.text, attachments, notifier
    )
    return MessageResponse.model_validate(message)


@router.post("/{dispute_id}/evidence", response_model=list[AttachmentResponse], status_code=201)
async def add_evidence(
    dispute_id: uuid.UUID,
    data: EvidenceCreate,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    storage: FileStorage = Depends(get_storage),
) -> list[AttachmentResponse]:
    await dispute_service.check_can_contribute(db, dispute_id, auth.user_id, "evidence")
    files = await _store_files(storage, data.files)
    rows = await dispute_service.add_evidence(db, dispute_id, auth.user_id, files, notifier)
    return [AttachmentResponse.model_validate(r) for r in rows]


@router.post("/{dispute_id}/assign", response_model=DisputeResponse)
async def assign_dispute(
    dispute_id: uuid.UUID,
    data: AssignRequest,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> DisputeResponse:
    dispute = await dispute_service.assign_dispute(
        db, dispute_id, data.resolver_id, auth.user_id, notifier
    )
    return DisputeResponse.model_validate(dispute)


@router.patch("/{dispute_id}/priority", response_model=DisputeResponse)
async def update_priority(
    dispute_id: uuid.UUID,
    data: PriorityUpdate,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.update_priority(db, dispute_id, data.priority, auth.user_id)
    return DisputeResponse.model_validate(dispute)


@router.patch("/{dispute_id}/importance", response_model=DisputeResponse)
async def update_importance(
    dispute_id: uuid.UUID,
    data: ImportanceUpdate,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.update_importance(
        db, dispute_id, data.importance, auth.user_id
    )
    return DisputeResponse.model_validate(dispute)


@router.patch("/{dispute_id}/status", response_model=DisputeResponse)
async def update_status(
    dispute_id: uuid.UUID,
    data: StatusUpdate,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.update_status(db, dispute_id, data.status, auth.user_id)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: ResolveRequest,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> DisputeResponse:
    """Terminal resolution. The service enforces the resolver role."""
    dispute = await dispute_service.resolve_dispute(
        db, dispute_id, auth.user_id, data.resolution_type, data.text,
        data.refund_amount, notifier,
    )
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/platform-fee-refund", response_model=DisputeResponse)
async def grant_platform_fee_refund(
    dispute_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(staff_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> DisputeResponse:
    dispute = await dispute_service.grant_platform_fee_refund(
        db, dispute_id, auth.user_id, notifier
    )
    return DisputeResponse.model_validate(dispute)
