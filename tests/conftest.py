# =============================================================================
# Shared Test Fixtures — In-Memory Workflow Repository
# =============================================================================
#
# FakeRepository mirrors WorkflowRepository's async interface over plain
# dicts: write-once requirement/question batches, latest-wins answers,
# step-result upsert, frozen completed documents. Every call is recorded so
# tests can assert on read-through and write order without PostgreSQL.
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.db.models import TERMINAL_STATUSES, DocumentStatus, WorkflowStatus
from app.models.records import (
    DocumentRecord,
    WorkflowRecord,
    WorkflowResultRecord,
    WorkflowStatistics,
)
from app.services.cache import MemoryCache
from app.services.store import WorkflowStore


class FakeRepository:

    def __init__(self):
        self.workflows: dict[str, WorkflowRecord] = {}
        self.documents: dict[int, DocumentRecord] = {}
        self.requirements: dict[str, list] = {}
        self.questions: dict[str, list] = {}
        self.answers: dict[str, list] = {}
        self.results: dict[str, dict[str, WorkflowResultRecord]] = {}
        self.calls: list[str] = []
        self.progress_log: list[int] = []

    # --- Workflows ---

    async def create_workflow(self, workflow_id, project_context=None):
        self.calls.append("create_workflow")
        now = datetime.now(timezone.utc)
        record = WorkflowRecord(
            id=workflow_id,
            project_context=project_context or {},
            created_at=now,
            updated_at=now,
        )
        self.workflows[workflow_id] = record
        return record

    async def update_workflow(self, workflow_id, **fields):
        self.calls.append("update_workflow")
        current = self.workflows.get(workflow_id)
        if current is None:
            return None
        fields.setdefault("updated_at", datetime.now(timezone.utc))
        updated = current.model_copy(update=fields)
        self.workflows[workflow_id] = updated
        if "progress" in fields:
            self.progress_log.append(fields["progress"])
        return updated

    async def get_workflow(self, workflow_id):
        self.calls.append("get_workflow")
        return self.workflows.get(workflow_id)

    async def list_workflows(self, limit, offset):
        self.calls.append("list_workflows")
        ordered = sorted(self.workflows.values(), key=lambda w: w.created_at, reverse=True)
        return ordered[offset:offset + limit]

    async def delete_workflow(self, workflow_id):
        self.calls.append("delete_workflow")
        if self.workflows.pop(workflow_id, None) is None:
            return False
        self.documents = {
            k: d for k, d in self.documents.items() if d.workflow_id != workflow_id
        }
        for table in (self.requirements, self.questions, self.answers, self.results):
            table.pop(workflow_id, None)
        return True

    # --- Documents ---

    async def create_documents(self, workflow_id, documents):
        self.calls.append("create_documents")
        created = []
        for doc in documents:
            record = DocumentRecord(
                id=len(self.documents) + 1,
                workflow_id=workflow_id,
                **doc.model_dump(),
            )
            self.documents[record.id] = record
            created.append(record)
        return created

    async def update_document(self, document_id, **fields):
        self.calls.append("update_document")
        current = self.documents.get(document_id)
        if current is None:
            return None
        if current.processing_status == DocumentStatus.COMPLETED:
            return current
        self.documents[document_id] = current.model_copy(update=fields)
        return self.documents[document_id]

    async def get_documents(self, workflow_id):
        self.calls.append("get_documents")
        return [d for d in self.documents.values() if d.workflow_id == workflow_id]

    # --- Requirements, Questions, Answers ---

    async def save_requirements(self, workflow_id, requirements):
        self.requirements[workflow_id] = list(requirements)

    async def get_requirements(self, workflow_id):
        return list(self.requirements.get(workflow_id, []))

    async def save_questions(self, workflow_id, questions):
        self.questions[workflow_id] = list(questions)

    async def get_questions(self, workflow_id):
        self.calls.append("get_questions")
        return list(self.questions.get(workflow_id, []))

    async def replace_answers(self, workflow_id, answers):
        self.calls.append("replace_answers")
        self.answers[workflow_id] = list(answers)

    async def get_answers(self, workflow_id):
        self.calls.append("get_answers")
        return list(self.answers.get(workflow_id, []))

    # --- Step Results ---

    async def save_result(
        self, workflow_id, step_name, result_data,
        confidence_score=None, processing_time=None,
    ):
        self.results.setdefault(workflow_id, {})[step_name] = WorkflowResultRecord(
            step_name=step_name,
            result_data=result_data,
            confidence_score=confidence_score,
            processing_time=processing_time,
        )

    async def get_results(self, workflow_id):
        return list(self.results.get(workflow_id, {}).values())

    # --- Aggregates & Housekeeping ---

    async def get_statistics(self):
        self.calls.append("get_statistics")
        statuses = [w.status for w in self.workflows.values()]
        return WorkflowStatistics(
            total=len(statuses),
            completed=statuses.count(WorkflowStatus.COMPLETED),
            running=statuses.count(WorkflowStatus.RUNNING),
            failed=statuses.count(WorkflowStatus.FAILED),
            cancelled=statuses.count(WorkflowStatus.CANCELLED),
            total_documents=len(self.documents),
        )

    async def cleanup_old_workflows(self, cutoff):
        expired = [
            w.id for w in self.workflows.values()
            if w.status in TERMINAL_STATUSES and w.end_time is not None and w.end_time < cutoff
        ]
        for workflow_id in expired:
            await self.delete_workflow(workflow_id)
        return expired

    async def find_corrupted_workflows(self, stale_before):
        return [
            w for w in self.workflows.values()
            if w.progress < 0
            or w.progress > 100
            or (w.status == WorkflowStatus.RUNNING and w.end_time is not None)
            or (w.status == WorkflowStatus.RUNNING and w.updated_at < stale_before)
        ]


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def store(repository, cache):
    return WorkflowStore(repository, cache)
