# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Durable store for RFP workflows and everything each pipeline stage produces.
#
# SCHEMA OVERVIEW:
#
# ┌────────────────┐
# │  workflows     │  id = "rfp_{epoch_ms}_{9 base36 chars}"
# ├────────────────┤
# │ status         │──1:N─▶ documents        (uploaded files, extracted text)
# │ current_step   │──1:N─▶ requirements     (bulk-inserted per analysis)
# │ progress       │──1:N─▶ questions        (bulk-inserted per generation)
# │ project_context│──1:N─▶ answers          (replaced per extraction run)
# │ start/end_time │──1:N─▶ workflow_results (one row per step_name)
# └────────────────┘
#
# Every child table has ForeignKey(..., ondelete="CASCADE"). The ORM
# relationships are passive_deletes, so a workflow delete never loads its
# dependents; the database cascade removes them. Only documents are ever
# loaded (selectin); the other collections are lazy="raise".
#
# DESIGN DECISIONS:
#
# 1. JSON columns use JSON().with_variant(JSONB, "postgresql"): JSONB in
#    production, plain JSON for any other dialect.
#
# 2. answers.question_id is the caller-assigned question id string, not a
#    foreign key to questions.id. A question has zero or one current answer.
#
# 3. workflow_results has a unique (workflow_id, step_name) constraint; a
#    step rerun overwrites its row.
# =============================================================================

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all RFP workflow tables."""

    pass


class WorkflowStatus(str, enum.Enum):
    """
    Workflow lifecycle.

    State machine:
        PENDING → RUNNING → COMPLETED
                          → FAILED
                          → CANCELLED
    An operator retry moves FAILED/CANCELLED (or a stuck RUNNING) back to
    RUNNING and starts a new run.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
)


class DocumentStatus(str, enum.Enum):
    """Per-document ingestion state."""

    PENDING = "pending"          # Uploaded, waiting for the ingestion step
    PROCESSING = "processing"    # Ingestion agent is running on it
    COMPLETED = "completed"      # Structured data extracted; row is frozen
    FAILED = "failed"            # Extraction or agent call failed


class DocumentType(str, enum.Enum):
    RFP = "rfp"
    COMPANY = "company"


class Workflow(Base):
    """One end-to-end analysis of an RFP submission."""

    __tablename__ = "workflows"
    # Server-side timestamps come back via RETURNING; no lazy refresh in async
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    status: Mapped[WorkflowStatus] = mapped_column(
        Enum(WorkflowStatus),
        nullable=False,
        default=WorkflowStatus.PENDING,
    )

    # Name of the step currently executing (or "completed")
    current_step: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # 0–100; never decreases while status == running
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Caller-supplied project context (title, client, deadline, ...)
    project_context: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, default=dict,
    )

    start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Run duration in milliseconds, set together with end_time
    duration: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    documents: Mapped[list["Document"]] = relationship(
        "Document",
        back_populates="workflow",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )
    requirements: Mapped[list["Requirement"]] = relationship(
        "Requirement", cascade="all, delete-orphan", passive_deletes=True, lazy="raise",
    )
    questions: Mapped[list["Question"]] = relationship(
        "Question", cascade="all, delete-orphan", passive_deletes=True, lazy="raise",
    )
    answers: Mapped[list["Answer"]] = relationship(
        "Answer", cascade="all, delete-orphan", passive_deletes=True, lazy="raise",
    )
    results: Mapped[list["WorkflowResult"]] = relationship(
        "WorkflowResult", cascade="all, delete-orphan", passive_deletes=True, lazy="raise",
    )

    def __repr__(self) -> str:
        return (
            f"<Workflow(id='{self.id}', status={self.status}, "
            f"step={self.current_step}, progress={self.progress})>"
        )


class Document(Base):
    """An uploaded RFP or company document attached to a workflow."""

    __tablename__ = "documents"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    workflow_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
    )

    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(200), nullable=True)

    document_type: Mapped[DocumentType] = mapped_column(
        Enum(DocumentType),
        nullable=False,
        default=DocumentType.RFP,
    )

    processing_status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus),
        nullable=False,
        default=DocumentStatus.PENDING,
    )

    # Extracted plain text, filled before the ingestion agent runs
    content: Mapped[str | None] = mapped_column(Text, nullable=True)

    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=dict,
    )

    # Ingestion agent output for this document
    structured_data: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="documents",
    )

    def __repr__(self) -> str:
        return (
            f"<Document(id={self.id}, name='{self.original_name}', "
            f"status={self.processing_status})>"
        )


class Requirement(Base):
    """A requirement extracted by the requirements analysis step."""

    __tablename__ = "requirements"
    __table_args__ = (
        UniqueConstraint("workflow_id", "requirement_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    requirement_id: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="other")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    complexity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    mandatory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source_document_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("documents.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Question(Base):
    """A clarification question generated for the RFP issuer."""

    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    question_id: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    impact: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_requirements: Mapped[list | None] = mapped_column(
        JSONType, nullable=True, default=list,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Answer(Base):
    """The current answer to one question; replaced on every extraction run."""

    __tablename__ = "answers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    question_id: Mapped[str] = mapped_column(String(100), nullable=False)
    answer_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    answer_type: Mapped[str] = mapped_column(String(20), nullable=False, default="inferred")
    completeness: Mapped[str] = mapped_column(String(20), nullable=False, default="partial")

    # [{document_name, excerpt, relevance_score}, ...] in ranked order
    sources: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class WorkflowResult(Base):
    """Per-step result blob; the audit trail and resumption context."""

    __tablename__ = "workflow_results"
    __table_args__ = (
        UniqueConstraint("workflow_id", "step_name"),
    )
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(64), nullable=False)
    result_data: Mapped[dict | list | None] = mapped_column(JSONType, nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Milliseconds since the run started
    processing_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# =============================================================================
# Database Indexes
# =============================================================================
# Listing sorts by created_at; the retention sweep filters on status +
# end_time; every child read filters by workflow_id.
# =============================================================================

workflow_created_idx = Index("idx_workflow_created_at", Workflow.created_at)
workflow_status_end_idx = Index(
    "idx_workflow_status_end_time", Workflow.status, Workflow.end_time,
)
document_workflow_idx = Index("idx_document_workflow_id", Document.workflow_id)
requirement_workflow_idx = Index("idx_requirement_workflow_id", Requirement.workflow_id)
question_workflow_idx = Index("idx_question_workflow_id", Question.workflow_id)
answer_workflow_idx = Index("idx_answer_workflow_id", Answer.workflow_id)
