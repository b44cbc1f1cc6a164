# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# The shapes the workflow endpoints return. Built from the store's records
# (from_attributes=True) so internal columns such as file paths and raw
# extracted text stay server-side.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.db.models import WorkflowStatus


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    service: str


class WorkflowResponse(BaseModel):
    id: str
    status: WorkflowStatus
    current_step: str | None = None
    progress: int = 0
    project_context: dict[str, Any] = Field(default_factory=dict)
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration: int | None = Field(default=None, description="Run time in milliseconds")
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class WorkflowSubmitResponse(BaseModel):
    """
    Response for POST /workflows (202 Accepted).

    The pipeline runs in the background; follow it with
    GET /workflows/{id} or the SSE stream at /workflows/{id}/events.
    """

    workflow: WorkflowResponse
    documents: int = Field(description="Number of uploaded documents")
    message: str = "Workflow accepted. Processing in progress."


class WorkflowListResponse(BaseModel):
    workflows: list[WorkflowResponse]
    limit: int
    offset: int


class StepResultResponse(BaseModel):
    step_name: str
    result_data: Any = None
    confidence_score: float | None = None
    processing_time: int | None = Field(default=None, description="Milliseconds since run start")
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class AnswerSource(BaseModel):
    document_name: str | None = None
    excerpt: str | None = None
    relevance_score: float | None = None


class AnswerResponse(BaseModel):
    question_id: str
    answer_text: str
    confidence_score: float
    answer_type: str
    completeness: str
    sources: list[AnswerSource] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class StatisticsResponse(BaseModel):
    total: int = 0
    completed: int = 0
    running: int = 0
    failed: int = 0
    cancelled: int = 0
    avg_duration: float | None = None
    total_documents: int = 0
    total_requirements: int = 0
    total_questions: int = 0

    model_config = ConfigDict(from_attributes=True)


class SummaryResponse(BaseModel):
    """Headline counts plus follow-up recommendations for one workflow."""

    workflow_id: str = Field(alias="workflowId")
    status: str
    duration: int | None = None
    summary: dict[str, Any]
    recommendations: list[dict[str, str]] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ReprocessResponse(BaseModel):
    workflow_id: str
    answered: int
    unanswered: int
    answer_summary: dict[str, Any] = Field(default_factory=dict)
