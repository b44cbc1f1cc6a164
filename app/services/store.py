# =============================================================================
# Workflow Store — Cache-Aside Facade over WorkflowRepository
# =============================================================================
#
# READ PATH:
#   cache.get(key) ──hit──▶ record
#        │ miss / cache error
#        ▼
#   repository ──▶ cache.set(key, ttl from CachePolicy) ──▶ record
#
# WRITE PATH:
#   repository (commit) ──▶ cache.delete(stale keys from CachePolicy)
#
# A read repopulates only the key it missed on. Writes never populate the
# cache, they only invalidate it. All keys, TTLs and invalidation targets
# come from the injected CachePolicy.
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel

from app.db.repository import WorkflowRepository
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
from app.services.cache import (
    ANSWERS,
    DOCUMENTS,
    LIST,
    LIST_PATTERN,
    QUESTIONS,
    REQUIREMENTS,
    RESULTS,
    STATISTICS,
    WORKFLOW,
    CacheBackend,
    CachePolicy,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class WorkflowStore:
    """Durable workflow storage with an invalidating read cache in front."""

    def __init__(
        self,
        repository: WorkflowRepository,
        cache: CacheBackend,
        policy: CachePolicy | None = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.policy = policy or CachePolicy()

    # -----------------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------------

    async def create_workflow(
        self, workflow_id: str, project_context: dict[str, Any] | None = None,
    ) -> WorkflowRecord:
        record = await self.repository.create_workflow(workflow_id, project_context)
        await self._invalidate(WORKFLOW, workflow_id)
        return record

    async def update_workflow(self, workflow_id: str, **fields: Any) -> WorkflowRecord | None:
        record = await self.repository.update_workflow(workflow_id, **fields)
        await self._invalidate(WORKFLOW, workflow_id)
        return record

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        key = self.policy.key(WORKFLOW, workflow_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return WorkflowRecord.model_validate(cached)

        record = await self.repository.get_workflow(workflow_id)
        if record is not None:
            await self.cache.set(key, record.model_dump(mode="json"), self.policy.ttl[WORKFLOW])
        return record

    async def list_workflows(self, limit: int = 50, offset: int = 0) -> list[WorkflowRecord]:
        key = self.policy.list_key(limit, offset)
        cached = await self.cache.get(key)
        if cached is not None:
            return [WorkflowRecord.model_validate(item) for item in cached]

        records = await self.repository.list_workflows(limit, offset)
        await self.cache.set(
            key, [r.model_dump(mode="json") for r in records], self.policy.ttl[LIST],
        )
        return records

    async def delete_workflow(self, workflow_id: str) -> bool:
        deleted = await self.repository.delete_workflow(workflow_id)
        await self.cache.delete(*self.policy.all_keys_for(workflow_id))
        await self.cache.delete_pattern(LIST_PATTERN)
        return deleted

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    async def create_documents(
        self, workflow_id: str, documents: list[NewDocument],
    ) -> list[DocumentRecord]:
        records = await self.repository.create_documents(workflow_id, documents)
        await self._invalidate(DOCUMENTS, workflow_id)
        return records

    async def update_document(
        self, workflow_id: str, document_id: int, **fields: Any,
    ) -> DocumentRecord | None:
        record = await self.repository.update_document(document_id, **fields)
        await self._invalidate(DOCUMENTS, workflow_id)
        return record

    async def get_documents(self, workflow_id: str) -> list[DocumentRecord]:
        return await self._cached_list(
            DOCUMENTS, workflow_id, DocumentRecord, self.repository.get_documents,
        )

    # -----------------------------------------------------------------------
    # Requirements, Questions, Answers
    # -----------------------------------------------------------------------

    async def save_requirements(
        self, workflow_id: str, requirements: list[RequirementRecord],
    ) -> None:
        await self.repository.save_requirements(workflow_id, requirements)
        await self._invalidate(REQUIREMENTS, workflow_id)

    async def get_requirements(self, workflow_id: str) -> list[RequirementRecord]:
        return await self._cached_list(
            REQUIREMENTS, workflow_id, RequirementRecord, self.repository.get_requirements,
        )

    async def save_questions(self, workflow_id: str, questions: list[QuestionRecord]) -> None:
        await self.repository.save_questions(workflow_id, questions)
        await self._invalidate(QUESTIONS, workflow_id)

    async def get_questions(self, workflow_id: str) -> list[QuestionRecord]:
        return await self._cached_list(
            QUESTIONS, workflow_id, QuestionRecord, self.repository.get_questions,
        )

    async def replace_answers(self, workflow_id: str, answers: list[AnswerRecord]) -> None:
        await self.repository.replace_answers(workflow_id, answers)
        await self._invalidate(ANSWERS, workflow_id)

    async def get_answers(self, workflow_id: str) -> list[AnswerRecord]:
        return await self._cached_list(
            ANSWERS, workflow_id, AnswerRecord, self.repository.get_answers,
        )

    # -----------------------------------------------------------------------
    # Step Results
    # -----------------------------------------------------------------------

    async def save_result(
        self,
        workflow_id: str,
        step_name: str,
        result_data: Any,
        confidence_score: float | None = None,
        processing_time: int | None = None,
    ) -> None:
        await self.repository.save_result(
            workflow_id, step_name, result_data, confidence_score, processing_time,
        )
        await self._invalidate(RESULTS, workflow_id)

    async def get_results(self, workflow_id: str) -> list[WorkflowResultRecord]:
        return await self._cached_list(
            RESULTS, workflow_id, WorkflowResultRecord, self.repository.get_results,
        )

    async def get_result_map(self, workflow_id: str) -> dict[str, Any]:
        """Step name → result_data, for resumption and summaries."""
        return {r.step_name: r.result_data for r in await self.get_results(workflow_id)}

    # -----------------------------------------------------------------------
    # Aggregates & Housekeeping
    # -----------------------------------------------------------------------

    async def get_statistics(self) -> WorkflowStatistics:
        key = self.policy.statistics_key()
        cached = await self.cache.get(key)
        if cached is not None:
            return WorkflowStatistics.model_validate(cached)

        stats = await self.repository.get_statistics()
        await self.cache.set(key, stats.model_dump(mode="json"), self.policy.ttl[STATISTICS])
        return stats

    async def cleanup_old_workflows(self, cutoff: datetime) -> list[str]:
        deleted = await self.repository.cleanup_old_workflows(cutoff)
        for workflow_id in deleted:
            await self.cache.delete(*self.policy.all_keys_for(workflow_id))
        if deleted:
            await self.cache.delete_pattern(LIST_PATTERN)
            logger.info("Retention sweep removed %d workflows", len(deleted))
        return deleted

    async def find_corrupted_workflows(self, stale_before: datetime) -> list[WorkflowRecord]:
        return await self.repository.find_corrupted_workflows(stale_before)

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _cached_list(
        self, kind: str, workflow_id: str, model: type[RecordT], load,
    ) -> list[RecordT]:
        key = self.policy.key(kind, workflow_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return [model.model_validate(item) for item in cached]

        records = await load(workflow_id)
        await self.cache.set(
            key, [r.model_dump(mode="json") for r in records], self.policy.ttl[kind],
        )
        return records

    async def _invalidate(self, written: str, workflow_id: str) -> None:
        keys, patterns = self.policy.stale_keys(written, workflow_id)
        await self.cache.delete(*keys)
        for pattern in patterns:
            await self.cache.delete_pattern(pattern)
