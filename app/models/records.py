# =============================================================================
# Workflow Records — Pydantic V2 Value Objects
# =============================================================================
#
# The shapes WorkflowStore hands back to the orchestrator and API. Built from
# ORM rows with `model_validate(row)` (from_attributes=True) and from cache
# hits with `model_validate(dict)`; written to the cache with
# `model_dump(mode="json")`.
#
# DESIGN DECISION: Records are detached from SQLAlchemy sessions, so the
# pipeline never triggers lazy loads outside a session, and the same type
# comes back whether the read hit Redis or PostgreSQL.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.db.models import DocumentStatus, DocumentType, WorkflowStatus


class WorkflowRecord(BaseModel):
    """Snapshot of one workflow row."""

    id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_step: str | None = None
    progress: int = 0
    project_context: dict[str, Any] = Field(default_factory=dict)
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration: int | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        )


class DocumentRecord(BaseModel):
    """An uploaded document and whatever ingestion extracted from it."""

    id: int
    workflow_id: str
    original_name: str
    file_path: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    document_type: DocumentType = DocumentType.RFP
    processing_status: DocumentStatus = DocumentStatus.PENDING
    content: str | None = None
    # ORM attribute is metadata_ (DeclarativeBase reserves .metadata)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    structured_data: dict[str, Any] | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class NewDocument(BaseModel):
    """Document fields supplied at submission time."""

    original_name: str
    file_path: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    document_type: DocumentType = DocumentType.RFP
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RequirementRecord(BaseModel):
    requirement_id: str
    category: str = "other"
    description: str = ""
    priority: str = "medium"
    complexity: str | None = None
    mandatory: bool = False
    source_document_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class QuestionRecord(BaseModel):
    question_id: str
    category: str = "general"
    question_text: str
    rationale: str | None = None
    priority: str = "medium"
    impact: str | None = None
    related_requirements: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class AnswerRecord(BaseModel):
    question_id: str
    answer_text: str = ""
    confidence_score: float = 0.0
    answer_type: str = "inferred"
    completeness: str = "partial"
    sources: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class WorkflowResultRecord(BaseModel):
    """One step's persisted output."""

    step_name: str
    result_data: Any = None
    confidence_score: float | None = None
    processing_time: int | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class WorkflowStatistics(BaseModel):
    """Aggregate counters across all workflows."""

    total: int = 0
    completed: int = 0
    running: int = 0
    failed: int = 0
    cancelled: int = 0
    avg_duration: float | None = None
    total_documents: int = 0
    total_requirements: int = 0
    total_questions: int = 0
