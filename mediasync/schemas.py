"""Pydantic views of sync jobs handed to the outer surfaces."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mediasync.models import JobStatus, JobType


class SyncJobCreate(BaseModel):
    job_type: JobType = Field(JobType.FULL_SYNC, description="Kind of job to run")
    owner_id: int | None = Field(default=None, description="Owner the job runs for")
    metadata: dict[str, Any] | None = None

    @field_validator("owner_id")
    @classmethod
    def _validate_owner(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("owner_id must be a positive integer")
        return value


class JobView(BaseModel):
    id: int
    type: JobType
    status: JobStatus
    owner_id: int | None = None
    progress: int = 0
    current_step: str | None = None
    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class JobCreatedResponse(BaseModel):
    job_id: int
    status: JobStatus
    created_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Any) -> "JobCreatedResponse":
        return cls(job_id=job.id, status=job.status, created_at=job.created_at)


class JobListResponse(BaseModel):
    items: list[JobView]


class EngineStats(BaseModel):
    jobs: dict[str, Any]
    rate_limiter: dict[str, Any]
    library: dict[str, int]


__all__ = [
    "EngineStats",
    "JobCreatedResponse",
    "JobListResponse",
    "JobView",
    "SyncJobCreate",
]
