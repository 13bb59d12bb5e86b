"""Pydantic v2 schemas for worker allocation endpoints."""

import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketplace.services.allocation import RedistributionMode


class AllocationEntry(BaseModel):
    worker_id: uuid.UUID
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class AllocationUpdate(BaseModel):
    allocations: list[AllocationEntry] = Field(..., min_length=1)

    def as_mapping(self) -> dict[uuid.UUID, Decimal]:
        return {entry.worker_id: entry.amount for entry in self.allocations}

    @model_validator(mode="after")
    def check_unique_workers(self) -> "AllocationUpdate":
        ids = [entry.worker_id for entry in self.allocations]
        if len(ids) != len(set(ids)):
            raise ValueError("Each worker may appear only once")
        return self


class WorkerRemoval(BaseModel):
    mode: RedistributionMode = RedistributionMode.PRO_RATA
    allocations: list[AllocationEntry] | None = None
    reason: str | None = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_explicit(self) -> "WorkerRemoval":
        if self.mode == RedistributionMode.EXPLICIT and not self.allocations:
            raise ValueError("Explicit redistribution requires allocations")
        return self

    def explicit_mapping(self) -> dict[uuid.UUID, Decimal] | None:
        if self.allocations is None:
            return None
        return {entry.worker_id: entry.amount for entry in self.allocations}


class WorkerAllocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    worker_id: uuid.UUID
    contract_id: uuid.UUID
    payment_id: uuid.UUID
    amount: Decimal
    percentage: Decimal
    locked: bool


class AllocationSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    total: Decimal
    allocated: Decimal
    remaining: Decimal
    workers: list[WorkerAllocationResponse]
