# =============================================================================
# Workflow Repository — SQL Access for the RFP Pipeline
# =============================================================================
#
# Every read and write against the six workflow tables goes through here.
# Each method opens its own session from the injected factory, commits before
# returning, and hands back detached Pydantic records (app/models/records.py).
#
# The repository knows nothing about caching. WorkflowStore wraps it and
# applies the cache-aside rules after each committed write.
#
# ANSWER REPLACEMENT:
# replace_answers() deletes every answer for the workflow and inserts the new
# set inside ONE transaction. Running it twice with the same input leaves one
# row per question.
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Select, case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import (
    Answer,
    Document,
    DocumentStatus,
    Question,
    Requirement,
    TERMINAL_STATUSES,
    Workflow,
    WorkflowResult,
    WorkflowStatus,
)
from app.models.records import (
    AnswerRecord,
    DocumentRecord,
    NewDocument,
    QuestionRecord,
    RequirementRecord,
    WorkflowRecord,
    WorkflowResultRecord,
    WorkflowStatistics,
)

logger = logging.getLogger(__name__)


def expired_workflows(cutoff: datetime) -> Select:
    """Ids of terminal workflows that ended before cutoff.

    Shared by the async repository and the sync retention task so both
    sweeps pick the same rows.
    """
    return select(Workflow.id).where(
        Workflow.status.in_(TERMINAL_STATUSES),
        Workflow.end_time.is_not(None),
        Workflow.end_time < cutoff,
    )


class WorkflowRepository:
    """Async SQLAlchemy access to workflows and their dependents."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # -----------------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------------

    async def create_workflow(
        self, workflow_id: str, project_context: dict[str, Any] | None = None,
    ) -> WorkflowRecord:
        async with self._session_factory() as session:
            workflow = Workflow(
                id=workflow_id,
                status=WorkflowStatus.PENDING,
                progress=0,
                project_context=project_context or {},
            )
            session.add(workflow)
            await session.commit()
            return WorkflowRecord.model_validate(workflow)

    async def update_workflow(
        self, workflow_id: str, **fields: Any,
    ) -> WorkflowRecord | None:
        """
        Apply column updates to one workflow.

        Returns:
            The updated record, or None if the workflow does not exist.
        """
        async with self._session_factory() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                return None
            for name, value in fields.items():
                setattr(workflow, name, value)
            await session.commit()
            return WorkflowRecord.model_validate(workflow)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        async with self._session_factory() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                return None
            return WorkflowRecord.model_validate(workflow)

    async def list_workflows(self, limit: int, offset: int) -> list[WorkflowRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Workflow)
                .order_by(Workflow.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [WorkflowRecord.model_validate(w) for w in result.scalars().all()]

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete one workflow; dependents go via ON DELETE CASCADE."""
        async with self._session_factory() as session:
            result = await session.execute(delete(Workflow).where(Workflow.id == workflow_id))
            await session.commit()
            return result.rowcount > 0

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    async def create_documents(
        self, workflow_id: str, documents: list[NewDocument],
    ) -> list[DocumentRecord]:
        async with self._session_factory() as session:
            rows = [
                Document(
                    workflow_id=workflow_id,
                    original_name=doc.original_name,
                    file_path=doc.file_path,
                    file_size=doc.file_size,
                    mime_type=doc.mime_type,
                    document_type=doc.document_type,
                    processing_status=DocumentStatus.PENDING,
                    content=doc.content,
                    metadata_=doc.metadata,
                )
                for doc in documents
            ]
            session.add_all(rows)
            await session.commit()
            return [DocumentRecord.model_validate(row) for row in rows]

    async def update_document(
        self, document_id: int, **fields: Any,
    ) -> DocumentRecord | None:
        """
        Update one document row.

        Completed documents are frozen; updates to them are ignored with a
        warning and the stored record is returned unchanged.
        """
        async with self._session_factory() as session:
            document = await session.get(Document, document_id)
            if document is None:
                return None
            if document.processing_status == DocumentStatus.COMPLETED:
                logger.warning(
                    "Ignoring update to completed document %d (%s)",
                    document_id, ", ".join(fields),
                )
                return DocumentRecord.model_validate(document)
            for name, value in fields.items():
                setattr(document, "metadata_" if name == "metadata" else name, value)
            await session.commit()
            return DocumentRecord.model_validate(document)

    async def get_documents(self, workflow_id: str) -> list[DocumentRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document)
                .where(Document.workflow_id == workflow_id)
                .order_by(Document.id)
            )
            return [DocumentRecord.model_validate(d) for d in result.scalars().all()]

    # -----------------------------------------------------------------------
    # Requirements & Questions (write-once per batch)
    # -----------------------------------------------------------------------

    async def save_requirements(
        self, workflow_id: str, requirements: list[RequirementRecord],
    ) -> None:
        """Insert a batch, replacing any batch left by an earlier run."""
        async with self._session_factory() as session:
            await session.execute(
                delete(Requirement).where(Requirement.workflow_id == workflow_id)
            )
            session.add_all(
                Requirement(workflow_id=workflow_id, **req.model_dump())
                for req in requirements
            )
            await session.commit()

    async def get_requirements(self, workflow_id: str) -> list[RequirementRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Requirement)
                .where(Requirement.workflow_id == workflow_id)
                .order_by(Requirement.id)
            )
            return [RequirementRecord.model_validate(r) for r in result.scalars().all()]

    async def save_questions(
        self, workflow_id: str, questions: list[QuestionRecord],
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(Question).where(Question.workflow_id == workflow_id))
            session.add_all(
                Question(workflow_id=workflow_id, **q.model_dump())
                for q in questions
            )
            await session.commit()

    async def get_questions(self, workflow_id: str) -> list[QuestionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Question)
                .where(Question.workflow_id == workflow_id)
                .order_by(Question.id)
            )
            return [QuestionRecord.model_validate(q) for q in result.scalars().all()]

    # -----------------------------------------------------------------------
    # Answers (latest-wins replacement)
    # -----------------------------------------------------------------------

    async def replace_answers(
        self, workflow_id: str, answers: list[AnswerRecord],
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(Answer).where(Answer.workflow_id == workflow_id))
            session.add_all(
                Answer(workflow_id=workflow_id, **a.model_dump())
                for a in answers
            )
            await session.commit()

    async def get_answers(self, workflow_id: str) -> list[AnswerRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Answer)
                .where(Answer.workflow_id == workflow_id)
                .order_by(Answer.id)
            )
            return [AnswerRecord.model_validate(a) for a in result.scalars().all()]

    # -----------------------------------------------------------------------
    # Step Results (upsert on step_name)
    # -----------------------------------------------------------------------

    async def save_result(
        self,
        workflow_id: str,
        step_name: str,
        result_data: Any,
        confidence_score: float | None = None,
        processing_time: int | None = None,
    ) -> None:
        async with self._session_factory() as session:
            existing = (
                await session.execute(
                    select(WorkflowResult).where(
                        WorkflowResult.workflow_id == workflow_id,
                        WorkflowResult.step_name == step_name,
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                session.add(WorkflowResult(
                    workflow_id=workflow_id,
                    step_name=step_name,
                    result_data=result_data,
                    confidence_score=confidence_score,
                    processing_time=processing_time,
                ))
            else:
                existing.result_data = result_data
                existing.confidence_score = confidence_score
                existing.processing_time = processing_time
            await session.commit()

    async def get_results(self, workflow_id: str) -> list[WorkflowResultRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkflowResult)
                .where(WorkflowResult.workflow_id == workflow_id)
                .order_by(WorkflowResult.created_at, WorkflowResult.id)
            )
            return [
                WorkflowResultRecord.model_validate(r) for r in result.scalars().all()
            ]

    # -----------------------------------------------------------------------
    # Aggregates & Housekeeping
    # -----------------------------------------------------------------------

    async def get_statistics(self) -> WorkflowStatistics:
        def _count_status(status: WorkflowStatus):
            return func.coalesce(func.sum(case((Workflow.status == status, 1), else_=0)), 0)

        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.count(Workflow.id),
                        _count_status(WorkflowStatus.COMPLETED),
                        _count_status(WorkflowStatus.RUNNING),
                        _count_status(WorkflowStatus.FAILED),
                        _count_status(WorkflowStatus.CANCELLED),
                        func.avg(Workflow.duration),
                    )
                )
            ).one()
            documents = (await session.execute(select(func.count(Document.id)))).scalar_one()
            requirements = (
                await session.execute(select(func.count(Requirement.id)))
            ).scalar_one()
            questions = (await session.execute(select(func.count(Question.id)))).scalar_one()

        total, completed, running, failed, cancelled, avg_duration = row
        return WorkflowStatistics(
            total=total or 0,
            completed=completed or 0,
            running=running or 0,
            failed=failed or 0,
            cancelled=cancelled or 0,
            avg_duration=float(avg_duration) if avg_duration is not None else None,
            total_documents=documents or 0,
            total_requirements=requirements or 0,
            total_questions=questions or 0,
        )

    async def cleanup_old_workflows(self, cutoff: datetime) -> list[str]:
        """
        Delete terminal workflows that ended before `cutoff`.

        Returns:
            The ids of the deleted workflows (dependents go via cascade).
        """
        async with self._session_factory() as session:
            ids = (await session.execute(expired_workflows(cutoff))).scalars().all()
            if ids:
                await session.execute(delete(Workflow).where(Workflow.id.in_(ids)))
                await session.commit()
            return list(ids)

    async def find_corrupted_workflows(self, stale_before: datetime) -> list[WorkflowRecord]:
        """
        Workflows whose stored state cannot be right.

        Matches progress outside 0–100, running rows that already have an
        end_time, and running rows not updated since `stale_before`.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Workflow).where(
                    or_(
                        Workflow.progress < 0,
                        Workflow.progress > 100,
                        (Workflow.status == WorkflowStatus.RUNNING)
                        & Workflow.end_time.is_not(None),
                        (Workflow.status == WorkflowStatus.RUNNING)
                        & (Workflow.updated_at < stale_before),
                    )
                )
            )
            return [WorkflowRecord.model_validate(w) for w in result.scalars().all()]
