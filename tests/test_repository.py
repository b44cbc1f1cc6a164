# =============================================================================
# Integration Tests — WorkflowRepository on SQLite
# =============================================================================
#
# Runs the real repository against a file-backed SQLite database (aiosqlite)
# with foreign keys switched on, so ON DELETE CASCADE behaves as it does in
# PostgreSQL. Each test builds its engine inside one event loop and disposes
# it before the loop closes.
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import create_async_engine

from app.db.engine import create_session_factory, create_tables
from app.db.models import (
    Answer,
    Document,
    DocumentStatus,
    Question,
    Requirement,
    WorkflowResult,
    WorkflowStatus,
)
from app.db.repository import WorkflowRepository
from app.models.records import (
    AnswerRecord,
    NewDocument,
    QuestionRecord,
    RequirementRecord,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _with_repository(tmp_path, scenario):
    """Create the schema, hand a repository to `scenario`, then dispose."""
    async def wrapper():
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rfp.db'}")

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        try:
            await create_tables(engine)
            factory = create_session_factory(engine)
            return await scenario(WorkflowRepository(factory), factory)
        finally:
            await engine.dispose()

    return _run(wrapper())


async def _count(factory, model, workflow_id):
    async with factory() as session:
        return (
            await session.execute(
                select(func.count(model.id)).where(model.workflow_id == workflow_id)
            )
        ).scalar_one()


def _ago(**delta) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**delta)


# ---------------------------------------------------------------------------
# Test: workflows
# ---------------------------------------------------------------------------


class TestWorkflows:

    def test_create_fills_server_timestamps(self, tmp_path):
        async def scenario(repo, _factory):
            created = await repo.create_workflow("rfp_1", {"title": "Platform"})
            updated = await repo.update_workflow(
                "rfp_1", status=WorkflowStatus.RUNNING, progress=30,
            )
            return created, updated

        created, updated = _with_repository(tmp_path, scenario)

        assert created.status == WorkflowStatus.PENDING
        assert created.project_context == {"title": "Platform"}
        assert created.created_at is not None
        assert updated.status == WorkflowStatus.RUNNING
        assert updated.progress == 30
        assert updated.updated_at is not None

    def test_update_unknown_workflow_returns_none(self, tmp_path):
        async def scenario(repo, _factory):
            return await repo.update_workflow("rfp_missing", progress=10)

        assert _with_repository(tmp_path, scenario) is None

    def test_delete_cascades_to_every_dependent(self, tmp_path):
        async def scenario(repo, factory):
            await repo.create_workflow("rfp_1")
            await repo.create_workflow("rfp_2")
            for workflow_id in ("rfp_1", "rfp_2"):
                await repo.create_documents(workflow_id, [NewDocument(original_name="rfp.pdf")])
                await repo.save_requirements(
                    workflow_id, [RequirementRecord(requirement_id="REQ-1")],
                )
                await repo.save_questions(
                    workflow_id, [QuestionRecord(question_id="q1", question_text="Scope?")],
                )
                await repo.replace_answers(workflow_id, [AnswerRecord(question_id="q1")])
                await repo.save_result(workflow_id, "document_ingestion", [])

            deleted = await repo.delete_workflow("rfp_1")
            deleted_again = await repo.delete_workflow("rfp_1")

            counts = {}
            for model in (Document, Requirement, Question, Answer, WorkflowResult):
                counts[model.__name__] = (
                    await _count(factory, model, "rfp_1"),
                    await _count(factory, model, "rfp_2"),
                )
            return deleted, deleted_again, await repo.get_workflow("rfp_1"), counts

        deleted, deleted_again, gone, counts = _with_repository(tmp_path, scenario)

        assert deleted is True
        assert deleted_again is False
        assert gone is None
        assert all(pair == (0, 1) for pair in counts.values()), counts


# ---------------------------------------------------------------------------
# Test: documents
# ---------------------------------------------------------------------------


class TestDocuments:

    def test_completed_document_is_frozen(self, tmp_path):
        async def scenario(repo, _factory):
            await repo.create_workflow("rfp_1")
            [doc] = await repo.create_documents(
                "rfp_1", [NewDocument(original_name="rfp.pdf", metadata={"pages": 3})],
            )
            await repo.update_document(
                doc.id, processing_status=DocumentStatus.COMPLETED, content="final",
            )
            ignored = await repo.update_document(doc.id, content="overwritten")
            return doc, ignored, await repo.get_documents("rfp_1")

        doc, ignored, stored = _with_repository(tmp_path, scenario)

        assert doc.metadata == {"pages": 3}
        assert ignored.content == "final"
        assert stored[0].content == "final"
        assert stored[0].processing_status == DocumentStatus.COMPLETED


# ---------------------------------------------------------------------------
# Test: batch replacement & upsert
# ---------------------------------------------------------------------------


class TestReplacement:

    def test_replace_answers_twice_keeps_one_set(self, tmp_path):
        answers = [
            AnswerRecord(question_id="q1", answer_text="Yes", confidence_score=0.9),
            AnswerRecord(question_id="q2", answer_text="No", sources=[{"document_name": "a"}]),
        ]

        async def scenario(repo, _factory):
            await repo.create_workflow("rfp_1")
            await repo.replace_answers("rfp_1", answers)
            await repo.replace_answers("rfp_1", answers)
            return await repo.get_answers("rfp_1")

        stored = _with_repository(tmp_path, scenario)

        assert [a.question_id for a in stored] == ["q1", "q2"]
        assert stored[1].sources == [{"document_name": "a"}]

    def test_requirement_batch_is_replaced(self, tmp_path):
        async def scenario(repo, _factory):
            await repo.create_workflow("rfp_1")
            await repo.save_requirements("rfp_1", [
                RequirementRecord(requirement_id="REQ-1"),
                RequirementRecord(requirement_id="REQ-2"),
            ])
            await repo.save_requirements("rfp_1", [
                RequirementRecord(requirement_id="REQ-9", mandatory=True),
            ])
            return await repo.get_requirements("rfp_1")

        stored = _with_repository(tmp_path, scenario)

        assert [(r.requirement_id, r.mandatory) for r in stored] == [("REQ-9", True)]

    def test_save_result_overwrites_same_step(self, tmp_path):
        async def scenario(repo, factory):
            await repo.create_workflow("rfp_1")
            await repo.save_result("rfp_1", "answer_extraction", {"run": 1}, 0.5, 10)
            await repo.save_result("rfp_1", "answer_extraction", {"run": 2}, 0.8, 20)
            await repo.save_result("rfp_1", "response_compilation", {"draft": True})
            return await repo.get_results("rfp_1"), await _count(factory, WorkflowResult, "rfp_1")

        results, rows = _with_repository(tmp_path, scenario)

        assert rows == 2
        by_step = {r.step_name: r for r in results}
        assert by_step["answer_extraction"].result_data == {"run": 2}
        assert by_step["answer_extraction"].confidence_score == 0.8
        assert by_step["answer_extraction"].processing_time == 20


# ---------------------------------------------------------------------------
# Test: aggregates & housekeeping
# ---------------------------------------------------------------------------


class TestHousekeeping:

    def test_statistics_count_by_status(self, tmp_path):
        async def scenario(repo, _factory):
            for workflow_id, status, duration in (
                ("rfp_1", WorkflowStatus.COMPLETED, 1000),
                ("rfp_2", WorkflowStatus.COMPLETED, 3000),
                ("rfp_3", WorkflowStatus.FAILED, None),
                ("rfp_4", WorkflowStatus.RUNNING, None),
            ):
                await repo.create_workflow(workflow_id)
                await repo.update_workflow(workflow_id, status=status, duration=duration)
            await repo.create_documents("rfp_1", [
                NewDocument(original_name="a.pdf"), NewDocument(original_name="b.pdf"),
            ])
            await repo.save_questions(
                "rfp_1", [QuestionRecord(question_id="q1", question_text="Scope?")],
            )
            return await repo.get_statistics()

        stats = _with_repository(tmp_path, scenario)

        assert (stats.total, stats.completed, stats.failed, stats.running) == (4, 2, 1, 1)
        assert stats.cancelled == 0
        assert stats.avg_duration == 2000.0
        assert stats.total_documents == 2
        assert stats.total_questions == 1
        assert stats.total_requirements == 0

    def test_empty_statistics(self, tmp_path):
        async def scenario(repo, _factory):
            return await repo.get_statistics()

        stats = _with_repository(tmp_path, scenario)

        assert stats.total == 0
        assert stats.avg_duration is None

    def test_cleanup_removes_only_expired_terminal_workflows(self, tmp_path):
        async def scenario(repo, factory):
            await repo.create_workflow("rfp_old_done")
            await repo.update_workflow(
                "rfp_old_done", status=WorkflowStatus.COMPLETED, end_time=_ago(days=10),
            )
            await repo.create_documents("rfp_old_done", [NewDocument(original_name="a.pdf")])
            await repo.create_workflow("rfp_old_failed")
            await repo.update_workflow(
                "rfp_old_failed", status=WorkflowStatus.FAILED, end_time=_ago(days=8),
            )
            await repo.create_workflow("rfp_recent")
            await repo.update_workflow(
                "rfp_recent", status=WorkflowStatus.COMPLETED, end_time=_ago(days=1),
            )
            await repo.create_workflow("rfp_running")
            await repo.update_workflow(
                "rfp_running", status=WorkflowStatus.RUNNING, end_time=_ago(days=30),
            )
            await repo.create_workflow("rfp_no_end")
            await repo.update_workflow("rfp_no_end", status=WorkflowStatus.CANCELLED)

            deleted = await repo.cleanup_old_workflows(_ago(days=7))
            remaining = [w.id for w in await repo.list_workflows(50, 0)]
            return deleted, remaining, await _count(factory, Document, "rfp_old_done")

        deleted, remaining, orphan_docs = _with_repository(tmp_path, scenario)

        assert sorted(deleted) == ["rfp_old_done", "rfp_old_failed"]
        assert sorted(remaining) == ["rfp_no_end", "rfp_recent", "rfp_running"]
        assert orphan_docs == 0

    def test_corrupted_workflows(self, tmp_path):
        async def scenario(repo, _factory):
            await repo.create_workflow("rfp_ok")
            await repo.update_workflow("rfp_ok", status=WorkflowStatus.RUNNING, progress=50)
            await repo.create_workflow("rfp_over")
            await repo.update_workflow("rfp_over", progress=120)
            await repo.create_workflow("rfp_ended")
            await repo.update_workflow(
                "rfp_ended", status=WorkflowStatus.RUNNING, end_time=_ago(minutes=1),
            )
            await repo.create_workflow("rfp_stale")
            await repo.update_workflow(
                "rfp_stale", status=WorkflowStatus.RUNNING, updated_at=_ago(hours=3),
            )
            await repo.create_workflow("rfp_old_done")
            await repo.update_workflow(
                "rfp_old_done", status=WorkflowStatus.COMPLETED, updated_at=_ago(hours=3),
            )
            return await repo.find_corrupted_workflows(_ago(hours=1))

        found = _with_repository(tmp_path, scenario)

        assert sorted(w.id for w in found) == ["rfp_ended", "rfp_over", "rfp_stale"]
