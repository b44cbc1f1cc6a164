# =============================================================================
# Unit Tests — Workflow Orchestrator
# =============================================================================
#
# Runs the real LangGraph pipeline with scripted agents, a mock indexer and
# the in-memory store from conftest.py. Uploads are small .txt files, so
# extraction needs no Docling models.
# =============================================================================

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.agents.base import InvalidInputError, ParsedResult
from app.agents.orchestrator import (
    NO_QUESTIONS_MESSAGE,
    STEPS,
    WorkflowNotFoundError,
    WorkflowOrchestrator,
    WorkflowStateError,
    answer_records,
    generate_workflow_id,
    requirement_records,
    summary_recommendations,
)
from app.config import Settings
from app.db.models import DocumentStatus, WorkflowStatus
from app.models.records import NewDocument
from app.services.progress import ProgressChannel


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


INGESTED = {"documentType": "rfp", "overview": "Platform RFP", "keyRequirements": ["SSO"]}
ANALYSIS = {
    "requirements": {
        "technical": [{"id": "T1", "description": "Single sign-on", "priority": "high"}],
        "business": [],
        "compliance": [],
    },
}
QUESTIONS = {
    "questionCategories": {
        "technical": [{"id": "t1", "question": "Which IdP do you use?", "priority": "high"}],
    },
    "questionSummary": {"totalQuestions": 1},
}
ANSWERS = {
    "answeredQuestions": [{
        "questionId": "t1",
        "question": "Which IdP do you use?",
        "answer": "We integrate with Azure AD.",
        "confidence": 0.9,
        "sources": [{
            "documentName": "company.txt", "excerpt": "Azure AD", "relevanceScore": 0.9,
        }],
        "answerType": "direct",
        "completeness": "complete",
    }],
    "unansweredQuestions": [],
    "answerSummary": {"averageConfidence": 0.9},
}
COMPILED = {
    "qualityAssurance": {"completenessScore": 0.85},
    "gapsAndActions": {"criticalGaps": []},
}


def _result(data, agent="FakeAgent"):
    return ParsedResult(data, 0.9, agent)


def _agents(**overrides):
    agents = SimpleNamespace(
        ingestion=SimpleNamespace(execute=AsyncMock(return_value=_result(INGESTED))),
        requirements=SimpleNamespace(analyze=AsyncMock(return_value=_result(ANALYSIS))),
        clarification=SimpleNamespace(
            generate_questions=AsyncMock(return_value=_result(QUESTIONS)),
        ),
        answers=SimpleNamespace(extract_answers=AsyncMock(return_value=_result(ANSWERS))),
        compilation=SimpleNamespace(compile_response=AsyncMock(return_value=_result(COMPILED))),
    )
    for name, agent in overrides.items():
        setattr(agents, name, agent)
    return agents


def _orchestrator(store, agents=None):
    return WorkflowOrchestrator(
        store, agents or _agents(), MagicMock(), ProgressChannel(), config=Settings(),
    )


@pytest.fixture
def uploads(tmp_path):
    rfp = tmp_path / "city_rfp.txt"
    rfp.write_text("The city requires single sign-on for all staff.\n")
    company = tmp_path / "company.txt"
    company.write_text("We integrate with Azure AD and Okta.\n")
    return (
        [NewDocument(original_name="city_rfp.txt", file_path=str(rfp), file_size=48)],
        [NewDocument(original_name="company.txt", file_path=str(company), file_size=37)],
    )


async def _drain(queue):
    events = []
    while (event := await queue.get()) is not None:
        events.append(event)
    return events


# ---------------------------------------------------------------------------
# Test: full pipeline
# ---------------------------------------------------------------------------


class TestPipelineRun:

    def test_completes_with_monotonic_progress(self, store, repository, uploads):
        async def scenario():
            orchestrator = _orchestrator(store)
            workflow = await orchestrator.submit(*uploads, {"title": "Platform"})
            queue = orchestrator.progress.subscribe(workflow.id)
            await orchestrator.wait(workflow.id)
            return orchestrator, workflow, await _drain(queue)

        orchestrator, workflow, events = _run(scenario())

        final = repository.workflows[workflow.id]
        assert final.status == WorkflowStatus.COMPLETED
        assert final.current_step == "completed"
        assert final.progress == 100
        assert final.end_time is not None
        assert final.duration is not None
        assert repository.progress_log == [10, 30, 50, 70, 90, 100]
        assert [e.step for e in events] == [*STEPS, "completed"]
        assert set(repository.results[workflow.id]) == set(STEPS)

    def test_entity_rows_written(self, store, repository, uploads):
        async def scenario():
            orchestrator = _orchestrator(store)
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            return workflow

        workflow = _run(scenario())

        assert [r.requirement_id for r in repository.requirements[workflow.id]] == ["T1"]
        assert [q.question_id for q in repository.questions[workflow.id]] == ["t1"]
        answers = repository.answers[workflow.id]
        assert answers[0].sources[0]["document_name"] == "company.txt"
        documents = repository.documents.values()
        assert all(d.processing_status == DocumentStatus.COMPLETED for d in documents)

    def test_requirements_use_rfp_documents_and_answers_use_scope(
        self, store, uploads,
    ):
        agents = _agents()

        async def scenario():
            orchestrator = _orchestrator(store, agents)
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            return orchestrator, workflow

        orchestrator, workflow = _run(scenario())

        analysed = agents.requirements.analyze.call_args.args[0]
        assert [d["fileName"] for d in analysed] == ["city_rfp.txt"]
        assert agents.answers.extract_answers.call_args.kwargs["scope"] == workflow.id
        indexed_scopes = {c.args[1] for c in orchestrator.indexer.index_extracted.call_args_list}
        assert indexed_scopes == {workflow.id}

    def test_indexing_failure_is_not_fatal(self, store, repository, uploads):
        async def scenario():
            orchestrator = _orchestrator(store)
            orchestrator.indexer.index_extracted.side_effect = RuntimeError("chroma down")
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            return workflow

        workflow = _run(scenario())

        assert repository.workflows[workflow.id].status == WorkflowStatus.COMPLETED
        ingested = repository.results[workflow.id]["document_ingestion"].result_data
        assert all(d["indexed"] is False for d in ingested)

    def test_zero_questions_fails_workflow(self, store, repository, uploads):
        clarification = SimpleNamespace(
            generate_questions=AsyncMock(return_value=_result({"questionCategories": {}})),
        )
        agents = _agents(clarification=clarification)

        async def scenario():
            orchestrator = _orchestrator(store, agents)
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            return workflow

        workflow = _run(scenario())

        final = repository.workflows[workflow.id]
        assert final.status == WorkflowStatus.FAILED
        assert final.error_message == NO_QUESTIONS_MESSAGE
        assert final.current_step == "clarification_questions"
        assert "clarification_questions" not in repository.results[workflow.id]
        agents.answers.extract_answers.assert_not_called()

    def test_agent_error_fails_workflow(self, store, repository, uploads):
        requirements = SimpleNamespace(analyze=AsyncMock(side_effect=RuntimeError("model down")))

        async def scenario():
            orchestrator = _orchestrator(store, _agents(requirements=requirements))
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            return workflow

        workflow = _run(scenario())

        final = repository.workflows[workflow.id]
        assert final.status == WorkflowStatus.FAILED
        assert final.error_message == "model down"
        assert "document_ingestion" in repository.results[workflow.id]

    def test_submit_without_rfp_documents_rejected(self, store):
        with pytest.raises(InvalidInputError):
            _run(_orchestrator(store).submit([], []))


# ---------------------------------------------------------------------------
# Test: cancellation
# ---------------------------------------------------------------------------


class TestCancellation:

    def test_cancel_honoured_before_next_step(self, store, repository, uploads):
        async def scenario():
            gate = asyncio.Event()

            async def slow_analyze(documents):
                await gate.wait()
                return _result(ANALYSIS)

            agents = _agents(requirements=SimpleNamespace(analyze=slow_analyze))
            orchestrator = _orchestrator(store, agents)
            workflow = await orchestrator.submit(*uploads)
            while repository.workflows[workflow.id].current_step != "requirements_analysis":
                await asyncio.sleep(0.01)

            await orchestrator.cancel_workflow(workflow.id)
            gate.set()
            await orchestrator.wait(workflow.id)
            return agents, workflow

        agents, workflow = _run(scenario())

        final = repository.workflows[workflow.id]
        assert final.status == WorkflowStatus.CANCELLED
        assert final.end_time is not None
        # The in-flight step still completes and is stored
        assert "requirements_analysis" in repository.results[workflow.id]
        agents.clarification.generate_questions.assert_not_called()

    def test_cancel_without_live_run_is_immediate(self, store, repository):
        async def scenario():
            orchestrator = _orchestrator(store)
            await store.create_workflow("rfp_idle")
            return await orchestrator.cancel_workflow("rfp_idle")

        record = _run(scenario())

        assert record.status == WorkflowStatus.CANCELLED
        assert repository.workflows["rfp_idle"].status == WorkflowStatus.CANCELLED

    def test_cancel_terminal_workflow_rejected(self, store):
        async def scenario():
            orchestrator = _orchestrator(store)
            await store.create_workflow("rfp_done")
            await store.update_workflow("rfp_done", status=WorkflowStatus.COMPLETED)
            await orchestrator.cancel_workflow("rfp_done")

        with pytest.raises(WorkflowStateError):
            _run(scenario())


# ---------------------------------------------------------------------------
# Test: retry & reprocess
# ---------------------------------------------------------------------------


class TestRetry:

    def _failed_at_questions(self, store, uploads):
        """Run a workflow that fails at clarification; returns (agents, id)."""
        empty = _result({"questionCategories": {}})
        agents = _agents(
            clarification=SimpleNamespace(generate_questions=AsyncMock(return_value=empty)),
        )

        async def scenario():
            orchestrator = _orchestrator(store, agents)
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            return workflow.id

        return agents, _run(scenario())

    def test_resume_reuses_earlier_results(self, store, repository, uploads):
        agents, workflow_id = self._failed_at_questions(store, uploads)
        agents.clarification.generate_questions.return_value = _result(QUESTIONS)
        repository.progress_log.clear()

        async def scenario():
            orchestrator = _orchestrator(store, agents)
            record = await orchestrator.retry_workflow(workflow_id, "clarification_questions")
            await orchestrator.wait(workflow_id)
            return record

        record = _run(scenario())

        assert record.status == WorkflowStatus.RUNNING
        assert record.error_message is None
        assert record.end_time is None
        final = repository.workflows[workflow_id]
        assert final.status == WorkflowStatus.COMPLETED
        assert agents.ingestion.execute.await_count == 2
        assert agents.requirements.analyze.await_count == 1
        assert repository.progress_log == [50, 50, 70, 90, 100]

    def test_resume_without_prerequisite_results(self, store, uploads):
        _, workflow_id = self._failed_at_questions(store, uploads)

        with pytest.raises(WorkflowStateError, match="no clarification questions results"):
            _run(_orchestrator(store).retry_workflow(workflow_id, "answer_extraction"))

    def test_unknown_step_rejected(self, store):
        _run(store.create_workflow("rfp_1"))
        with pytest.raises(WorkflowStateError):
            _run(_orchestrator(store).retry_workflow("rfp_1", "proofreading"))

    def test_completed_workflow_not_retried(self, store):
        async def scenario():
            await store.create_workflow("rfp_1")
            await store.update_workflow("rfp_1", status=WorkflowStatus.COMPLETED)
            await _orchestrator(store).retry_workflow("rfp_1")

        with pytest.raises(WorkflowStateError):
            _run(scenario())

    def test_active_running_workflow_not_retried(self, store):
        async def scenario():
            await store.create_workflow("rfp_1")
            await store.update_workflow("rfp_1", status=WorkflowStatus.RUNNING)
            await _orchestrator(store).retry_workflow("rfp_1")

        with pytest.raises(WorkflowStateError, match="actively processing"):
            _run(scenario())

    def test_stuck_running_workflow_is_retried(self, store, repository, uploads):
        async def scenario():
            await repository.create_workflow("rfp_stuck")
            await repository.create_documents("rfp_stuck", uploads[0])
            stale = datetime.now(timezone.utc) - timedelta(minutes=10)
            repository.workflows["rfp_stuck"] = repository.workflows["rfp_stuck"].model_copy(
                update={"status": WorkflowStatus.RUNNING, "updated_at": stale},
            )
            orchestrator = _orchestrator(store)
            await orchestrator.retry_workflow("rfp_stuck")
            await orchestrator.wait("rfp_stuck")

        _run(scenario())

        assert repository.workflows["rfp_stuck"].status == WorkflowStatus.COMPLETED

    def test_stuck_run_ends_before_progress_restarts(self, store, repository, uploads):
        writes = []
        update = repository.update_workflow

        async def recording_update(workflow_id, **fields):
            record = await update(workflow_id, **fields)
            writes.append((record.status, record.progress, record.error_message))
            return record

        repository.update_workflow = recording_update

        async def scenario():
            await repository.create_workflow("rfp_stuck")
            await repository.create_documents("rfp_stuck", uploads[0])
            stale = datetime.now(timezone.utc) - timedelta(minutes=10)
            repository.workflows["rfp_stuck"] = repository.workflows["rfp_stuck"].model_copy(
                update={"status": WorkflowStatus.RUNNING, "progress": 70, "updated_at": stale},
            )
            orchestrator = _orchestrator(store)
            await orchestrator.retry_workflow("rfp_stuck")
            await orchestrator.wait("rfp_stuck")

        _run(scenario())

        status, progress, error = writes[0]
        assert (status, progress) == (WorkflowStatus.FAILED, 70)
        assert "stuck" in error
        assert writes[1][:2] == (WorkflowStatus.RUNNING, 0)
        for (prev_status, prev_progress, _), (cur_status, cur_progress, _) in zip(writes, writes[1:]):
            if prev_status == cur_status == WorkflowStatus.RUNNING:
                assert cur_progress >= prev_progress
        assert writes[-1][:2] == (WorkflowStatus.COMPLETED, 100)

    def test_unknown_workflow(self, store):
        with pytest.raises(WorkflowNotFoundError):
            _run(_orchestrator(store).retry_workflow("rfp_missing"))

    def test_reprocess_replaces_answers(self, store, repository, uploads):
        agents = _agents()

        async def scenario():
            orchestrator = _orchestrator(store, agents)
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            agents.answers.extract_answers.return_value = _result({
                "answeredQuestions": [{
                    "questionId": "t1", "answer": "Okta and Azure AD.", "confidence": 0.95,
                }],
                "unansweredQuestions": [],
            })
            data = await orchestrator.reprocess_answers(workflow.id)
            return workflow, data

        workflow, data = _run(scenario())

        assert data["answeredQuestions"][0]["answer"] == "Okta and Azure AD."
        questions = agents.answers.extract_answers.call_args.args[0]
        assert questions[0]["id"] == "t1"
        assert questions[0]["question"] == "Which IdP do you use?"
        stored = repository.answers[workflow.id]
        assert [a.answer_text for a in stored] == ["Okta and Azure AD."]

    def test_reprocess_without_questions(self, store):
        _run(store.create_workflow("rfp_1"))
        with pytest.raises(WorkflowStateError):
            _run(_orchestrator(store).reprocess_answers("rfp_1"))


# ---------------------------------------------------------------------------
# Test: summary, delete & housekeeping
# ---------------------------------------------------------------------------


class TestLifecycleOperations:

    def test_summary_after_completion(self, store, uploads):
        async def scenario():
            orchestrator = _orchestrator(store)
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            return workflow, await orchestrator.get_workflow_summary(workflow.id)

        workflow, summary = _run(scenario())

        assert summary["workflowId"] == workflow.id
        assert summary["status"] == "completed"
        assert summary["summary"] == {
            "documentsProcessed": 2,
            "requirementsIdentified": 1,
            "questionsGenerated": 1,
            "questionsAnswered": 1,
            "completenessScore": 0.85,
            "criticalGaps": 0,
        }
        assert summary["recommendations"] == []

    def test_delete_forgets_vector_scope(self, store, repository, uploads):
        async def scenario():
            orchestrator = _orchestrator(store)
            workflow = await orchestrator.submit(*uploads)
            await orchestrator.wait(workflow.id)
            await orchestrator.delete_workflow(workflow.id)
            return orchestrator, workflow

        orchestrator, workflow = _run(scenario())

        assert workflow.id not in repository.workflows
        orchestrator.indexer.forget_scope.assert_called_once_with(workflow.id)

    def test_corrupted_workflows_marked_failed(self, store, repository):
        async def scenario():
            await repository.create_workflow("rfp_bad")
            await repository.update_workflow("rfp_bad", progress=150)
            await repository.create_workflow("rfp_ok")
            return await _orchestrator(store).cleanup_corrupted_workflows()

        repaired = _run(scenario())

        assert repaired == ["rfp_bad"]
        bad = repository.workflows["rfp_bad"]
        assert bad.status == WorkflowStatus.FAILED
        assert bad.progress == 100
        assert "invalid_progress" in bad.error_message
        assert repository.workflows["rfp_ok"].status == WorkflowStatus.PENDING

    def test_retention_sweep(self, store, repository):
        async def scenario():
            old = datetime.now(timezone.utc) - timedelta(days=10)
            for workflow_id, status in (
                ("rfp_old", WorkflowStatus.COMPLETED),
                ("rfp_running", WorkflowStatus.RUNNING),
            ):
                await repository.create_workflow(workflow_id)
                await repository.update_workflow(workflow_id, status=status, end_time=old)
            return await _orchestrator(store).cleanup_old_workflows(retention_days=7)

        assert _run(scenario()) == ["rfp_old"]
        assert list(repository.workflows) == ["rfp_running"]


# ---------------------------------------------------------------------------
# Test: flatten helpers
# ---------------------------------------------------------------------------


class TestHelpers:

    def test_workflow_id_format(self):
        workflow_id = generate_workflow_id()
        assert re.fullmatch(r"rfp_\d{13}_[0-9a-z]{9}", workflow_id)
        assert generate_workflow_id() != workflow_id

    def test_requirement_ids_generated_and_deduplicated(self):
        records = requirement_records({
            "requirements": {
                "technical": [{"id": "R1", "description": "a"}, {"id": "R1", "description": "b"}],
                "business": ["Fixed price contract"],
            },
        })
        assert [r.requirement_id for r in records] == ["R1", "R1_2", "business_req_1"]
        assert records[2].description == "Fixed price contract"
        assert records[2].category == "business"

    def test_answer_sources_stored_snake_case(self):
        records = answer_records({
            "answeredQuestions": [
                {
                    "questionId": "q1",
                    "answer": "Yes",
                    "confidence": "0.8",
                    "sources": [{"documentName": "a.pdf", "excerpt": "x", "relevanceScore": 0.8}],
                },
                {"answer": "no id"},
            ],
        })
        assert len(records) == 1
        assert records[0].confidence_score == 0.8
        assert records[0].sources == [
            {"document_name": "a.pdf", "excerpt": "x", "relevance_score": 0.8},
        ]

    def test_recommendations(self):
        recommendations = summary_recommendations(
            {"unansweredQuestions": [{}, {}], "answerSummary": {"averageConfidence": 0.5}},
            {"qualityAssurance": {"completenessScore": 0.4}},
        )
        assert [r["type"] for r in recommendations] == ["completeness", "gaps", "confidence"]
        assert "2 questions remain unanswered" in recommendations[1]["message"]
