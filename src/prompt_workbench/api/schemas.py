"""Request and response schemas for the HTTP API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProjectCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None


class RunCreateRequest(BaseModel):
    project_id: int
    chain_id: int | None = None
    dataset_id: int | None = None
    test_case_id: int | None = None
    input: dict[str, Any] = Field(default_factory=dict)


class DatasetRunRequest(BaseModel):
    """Run a chain once per test case of a dataset."""

    project_id: int
    chain_id: int | None = None


class RunStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chain_node_id: int | None
    order_index: int
    status: str
    response_content: str | None
    tokens_in: int | None
    tokens_out: int | None
    duration_ms: int | None
    validation_errors: list[Any] | None


class RunResponse(BaseModel):
    """Run state as seen by the owning tenant."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    chain_id: int | None
    dataset_id: int | None
    test_case_id: int | None
    status: str
    error_message: str | None
    arq_job_id: str | None
    total_tokens_in: int | None
    total_tokens_out: int | None
    duration_ms: int | None
    started_at: datetime | None
    finished_at: datetime | None


class RunDetailResponse(RunResponse):
    steps: list[RunStepResponse] = []


class QuotaResponse(BaseModel):
    quota: str
    allowed: bool
    limit: int | None
    used: int
    remaining: int | None
    reason: str | None
    explanation: str


class UsageSummaryResponse(BaseModel):
    period_start: datetime
    totals: dict[str, int]
