"""Worker allocation endpoints for multi-worker jobs."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import AuthenticatedUser, current_user
from marketplace.database import get_db
from marketplace.dependencies import get_notifier
from marketplace.schemas.allocation import (
    AllocationSummaryResponse,
    AllocationUpdate,
    WorkerRemoval,
)
from marketplace.services import allocation as allocation_service
from marketplace.services.notifications import Notifier

router = APIRouter(prefix="/jobs/{job_id}/allocations", tags=["allocations"])


@router.get("", response_model=AllocationSummaryResponse)
async def get_allocations(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
) -> AllocationSummaryResponse:
    """Client and workers of the job can view the split."""
    viewer = None if auth.is_staff else auth.user_id
    summary = await allocation_service.get_allocations(db, job_id, viewer)
    return AllocationSummaryResponse.model_validate(summary)


@router.put("", response_model=AllocationSummaryResponse)
async def set_allocations(
    job_id: uuid.UUID,
    data: AllocationUpdate,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> AllocationSummaryResponse:
    """Client re-assigns worker shares in one step."""
    summary = await allocation_service.set_allocations(
        db, job_id, auth.user_id, data.as_mapping(), notifier
    )
    return AllocationSummaryResponse.model_validate(summary)


@router.post("/{worker_id}/remove", response_model=AllocationSummaryResponse)
async def remove_worker(
    job_id: uuid.UUID,
    worker_id: uuid.UUID,
    data: WorkerRemoval,
    auth: AuthenticatedUser = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> AllocationSummaryResponse:
    summary = await allocation_service.remove_worker(
        db, job_id, auth.user_id, worker_id, data.mode,
        data.explicit_mapping(), data.reason, notifier,
    )
    return AllocationSummaryResponse.model_validate(summary)
