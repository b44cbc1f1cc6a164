# =============================================================================
# Workflow Orchestrator — LangGraph Pipeline over the Five RFP Agents
# =============================================================================
#
# Drives one RFP workflow from uploaded files to a compiled proposal draft and
# owns the workflow lifecycle: pending → running → completed|failed|cancelled.
#
# GRAPH TOPOLOGY:
#
#              ┌──────────── route_start (resume step) ──────────────┐
#              ▼                  ▼                 ▼        ▼       ▼
#   START ─▶ document_ingestion ─▶ requirements_analysis ─▶ clarification_questions
#                                                               │
#                 END ◀─ response_compilation ◀─ answer_extraction
#
# Each node:
#   1. checks for a pending cancel (honoured only between steps)
#   2. sets current_step + progress (10/30/50/70/90) and publishes an event
#   3. runs its agent with the accumulated state
#   4. saves a WorkflowResult (fixed step confidence, ms since run start)
#      and the step's entity rows
#
# DESIGN DECISION: One asyncio task per workflow, created by submit() and
# retry_workflow(). Independent workflows interleave on the event loop; a
# workflow's own steps are strictly sequential.
#
# DESIGN DECISION: Every service (store, agents, indexer, progress channel)
# is injected. Nothing on the pipeline path reaches for a module global, so
# tests build an orchestrator from fakes.
#
# FAILURE:
# Any exception escaping a node marks the workflow failed with the message;
# prior WorkflowResults stay, and retry_workflow(id, from_step) resumes from
# them.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.answer_extraction import AnswerExtractionAgent
from app.agents.base import InvalidInputError
from app.agents.clarification import ClarificationQuestionsAgent, flatten_questions
from app.agents.compilation import ResponseCompilationAgent
from app.agents.ingestion import LIST_FIELDS, DocumentIngestionAgent
from app.agents.requirements import RequirementsAnalysisAgent, count_requirements
from app.config import Settings, settings
from app.db.models import DocumentStatus, DocumentType, WorkflowStatus
from app.models.records import (
    AnswerRecord,
    DocumentRecord,
    NewDocument,
    QuestionRecord,
    RequirementRecord,
    WorkflowRecord,
)
from app.services.indexing import DocumentIndexer
from app.services.parser import extract_document
from app.services.progress import ProgressChannel, ProgressEvent
from app.services.store import WorkflowStore

logger = logging.getLogger(__name__)

DOCUMENT_INGESTION = "document_ingestion"
REQUIREMENTS_ANALYSIS = "requirements_analysis"
CLARIFICATION_QUESTIONS = "clarification_questions"
ANSWER_EXTRACTION = "answer_extraction"
RESPONSE_COMPILATION = "response_compilation"
COMPLETED = "completed"

STEPS = (
    DOCUMENT_INGESTION,
    REQUIREMENTS_ANALYSIS,
    CLARIFICATION_QUESTIONS,
    ANSWER_EXTRACTION,
    RESPONSE_COMPILATION,
)

STEP_PROGRESS = {
    DOCUMENT_INGESTION: 10,
    REQUIREMENTS_ANALYSIS: 30,
    CLARIFICATION_QUESTIONS: 50,
    ANSWER_EXTRACTION: 70,
    RESPONSE_COMPILATION: 90,
    COMPLETED: 100,
}

STEP_CONFIDENCE = {
    DOCUMENT_INGESTION: 0.9,
    REQUIREMENTS_ANALYSIS: 0.85,
    CLARIFICATION_QUESTIONS: 0.88,
    ANSWER_EXTRACTION: 0.82,
    RESPONSE_COMPILATION: 0.95,
}

STEP_MESSAGES = {
    DOCUMENT_INGESTION: "Processing RFP documents...",
    REQUIREMENTS_ANALYSIS: "Analyzing requirements...",
    CLARIFICATION_QUESTIONS: "Generating clarification questions...",
    ANSWER_EXTRACTION: "Extracting answers from company documents...",
    RESPONSE_COMPILATION: "Compiling final response...",
}

# Results a resumed step needs from earlier runs
RESUME_PREREQUISITES = {
    DOCUMENT_INGESTION: (),
    REQUIREMENTS_ANALYSIS: (DOCUMENT_INGESTION,),
    CLARIFICATION_QUESTIONS: (REQUIREMENTS_ANALYSIS,),
    ANSWER_EXTRACTION: (CLARIFICATION_QUESTIONS,),
    RESPONSE_COMPILATION: (ANSWER_EXTRACTION,),
}

NO_QUESTIONS_MESSAGE = (
    "Clarification questions generation failed - no valid questions produced"
)

_ID_ALPHABET = string.digits + string.ascii_lowercase


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WorkflowNotFoundError(LookupError):
    """No workflow with the given id."""


class WorkflowStateError(RuntimeError):
    """The operation is not allowed in the workflow's current state."""


class StageError(RuntimeError):
    """A step finished but produced output the pipeline cannot continue from."""


class _CancelRequested(Exception):
    """Raised between steps when a cancel is pending."""


# ---------------------------------------------------------------------------
# Graph State
# ---------------------------------------------------------------------------


class PipelineState(TypedDict, total=False):
    """
    State that flows through the workflow graph.

    total=False so nodes only return the keys they produce; LangGraph merges
    partial updates into the full state.
    """

    # --- Input (set by the runner) ---
    workflow_id: str
    start_step: str
    run_started: float  # time.monotonic() at run start
    project_context: dict[str, Any]

    # --- Step outputs (set by nodes or restored from WorkflowResults) ---
    ingested_documents: list[dict[str, Any]]
    requirements_analysis: dict[str, Any]
    clarification_questions: dict[str, Any]
    extracted_answers: dict[str, Any]
    compiled_response: dict[str, Any]


RESULT_STATE_KEYS = {
    DOCUMENT_INGESTION: "ingested_documents",
    REQUIREMENTS_ANALYSIS: "requirements_analysis",
    CLARIFICATION_QUESTIONS: "clarification_questions",
    ANSWER_EXTRACTION: "extracted_answers",
    RESPONSE_COMPILATION: "compiled_response",
}


@dataclass
class PipelineAgents:
    ingestion: DocumentIngestionAgent
    requirements: RequirementsAnalysisAgent
    clarification: ClarificationQuestionsAgent
    answers: AnswerExtractionAgent
    compilation: ResponseCompilationAgent


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class WorkflowOrchestrator:
    """Runs RFP workflows as background tasks and manages their lifecycle."""

    def __init__(
        self,
        store: WorkflowStore,
        agents: PipelineAgents,
        indexer: DocumentIndexer,
        progress: ProgressChannel,
        config: Settings | None = None,
    ) -> None:
        self.store = store
        self.agents = agents
        self.indexer = indexer
        self.progress = progress
        self.config = config or settings
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()
        self._graph = self._build_graph()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def submit(
        self,
        rfp_documents: list[NewDocument],
        company_documents: list[NewDocument] | None = None,
        project_context: dict[str, Any] | None = None,
    ) -> WorkflowRecord:
        """
        Create a workflow for the uploads and start it in the background.

        Raises:
            InvalidInputError: If no RFP documents were supplied.
        """
        company_documents = company_documents or []
        validation = DocumentIngestionAgent.validate_document_set(
            rfp_documents, self.config.large_file_warning_bytes,
        )

        workflow_id = generate_workflow_id()
        logger.info(
            "Submitting workflow %s (rfp=%d, company=%d, warnings=%d)",
            workflow_id, len(rfp_documents), len(company_documents), len(validation.warnings),
        )

        await self.store.create_workflow(workflow_id, project_context)
        await self.store.create_documents(
            workflow_id,
            [d.model_copy(update={"document_type": DocumentType.RFP}) for d in rfp_documents]
            + [
                d.model_copy(update={"document_type": DocumentType.COMPANY})
                for d in company_documents
            ],
        )
        record = await self.store.update_workflow(
            workflow_id,
            status=WorkflowStatus.RUNNING,
            current_step=DOCUMENT_INGESTION,
            start_time=_now(),
        )

        self._launch(workflow_id, {
            "workflow_id": workflow_id,
            "start_step": DOCUMENT_INGESTION,
            "project_context": project_context or {},
        })
        return record

    async def retry_workflow(
        self, workflow_id: str, from_step: str | None = None,
    ) -> WorkflowRecord:
        """
        Re-run a failed, cancelled or stuck workflow.

        With `from_step`, earlier steps are restored from their stored
        results; otherwise the whole pipeline reruns over the stored
        documents.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowStateError: Unknown step, completed workflow, an active
                running workflow, or missing results for the resume step.
        """
        workflow = await self._require_workflow(workflow_id)
        step = from_step or DOCUMENT_INGESTION
        if step not in STEPS:
            raise WorkflowStateError(f"Unknown step: {step}")
        if workflow.status == WorkflowStatus.COMPLETED:
            raise WorkflowStateError("Completed workflows cannot be retried")

        if workflow.status == WorkflowStatus.RUNNING:
            stuck_before = _now() - timedelta(minutes=self.config.stuck_after_minutes)
            if workflow.updated_at and _aware(workflow.updated_at) > stuck_before:
                raise WorkflowStateError(
                    "Cannot retry running workflow - workflow is still actively processing"
                )
            logger.warning("Retrying stuck workflow %s", workflow_id)
            await self._abandon_task(workflow_id)
            # Close the dead run before the new one starts from a lower progress
            current = await self.store.get_workflow(workflow_id)
            if current is not None and current.status == WorkflowStatus.RUNNING:
                await self._finish(
                    workflow_id,
                    WorkflowStatus.FAILED,
                    "Workflow stuck",
                    error=f"Workflow stuck - no update for "
                    f"{self.config.stuck_after_minutes} minutes",
                )

        state: PipelineState = {
            "workflow_id": workflow_id,
            "start_step": step,
            "project_context": workflow.project_context,
        }
        if from_step:
            state.update(await self._restore_state(workflow_id, step))

        logger.info(
            "Retrying workflow %s from %s (was %s)", workflow_id, step, workflow.status.value,
        )
        record = await self.store.update_workflow(
            workflow_id,
            status=WorkflowStatus.RUNNING,
            current_step=step,
            progress=STEP_PROGRESS[step] if from_step else 0,
            error_message=None,
            end_time=None,
            duration=None,
            start_time=_now(),
        )
        self._cancel_requested.discard(workflow_id)
        self._launch(workflow_id, state)
        return record

    async def reprocess_answers(self, workflow_id: str) -> dict[str, Any]:
        """
        Rerun answer extraction over the stored questions.

        Replaces the answer rows and the answer_extraction result.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowStateError: The workflow is running or has no questions.
        """
        workflow = await self._require_workflow(workflow_id)
        if workflow.status == WorkflowStatus.RUNNING and workflow_id in self._tasks:
            raise WorkflowStateError("Cannot reprocess answers while the workflow is running")

        stored_questions = await self.store.get_questions(workflow_id)
        if not stored_questions:
            raise WorkflowStateError("No questions found in workflow")

        results = await self.store.get_result_map(workflow_id)
        questions = [
            {
                "id": q.question_id,
                "question": q.question_text,
                "category": q.category,
                "priority": q.priority,
                "rationale": q.rationale,
                "impact": q.impact,
                "relatedRequirements": q.related_requirements,
            }
            for q in stored_questions
        ]

        logger.info("Reprocessing %d answers for workflow %s", len(questions), workflow_id)
        started = time.monotonic()
        result = await self.agents.answers.extract_answers(
            questions,
            answer_documents(results.get(DOCUMENT_INGESTION) or []),
            results.get(REQUIREMENTS_ANALYSIS) or {},
            scope=workflow_id,
        )
        await self.store.save_result(
            workflow_id, ANSWER_EXTRACTION, result.data,
            STEP_CONFIDENCE[ANSWER_EXTRACTION], _elapsed_ms(started),
        )
        await self.store.replace_answers(workflow_id, answer_records(result.data))
        return result.data

    async def cancel_workflow(self, workflow_id: str) -> WorkflowRecord:
        """
        Request cancellation; honoured before the next step starts.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowStateError: The workflow is not pending or running.
        """
        workflow = await self._require_workflow(workflow_id)
        if workflow.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
            raise WorkflowStateError(
                f"Cannot cancel workflow in status {workflow.status.value}"
            )

        task = self._tasks.get(workflow_id)
        if task is not None and not task.done():
            self._cancel_requested.add(workflow_id)
            logger.info("Cancel requested for workflow %s", workflow_id)
            return workflow

        # No live run in this process; cancel immediately
        return await self._finish(workflow_id, WorkflowStatus.CANCELLED, "Workflow cancelled")

    async def delete_workflow(self, workflow_id: str) -> None:
        """
        Delete a workflow, its rows (cascade) and its indexed chunks.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowStateError: The workflow has a live run.
        """
        await self._require_workflow(workflow_id)
        task = self._tasks.get(workflow_id)
        if task is not None and not task.done():
            raise WorkflowStateError("Cannot delete a running workflow; cancel it first")

        await self.store.delete_workflow(workflow_id)
        try:
            await asyncio.to_thread(self.indexer.forget_scope, workflow_id)
        except Exception as e:
            logger.warning("Could not delete vector chunks for %s: %s", workflow_id, e)

    async def get_workflow_summary(self, workflow_id: str) -> dict[str, Any]:
        workflow = await self._require_workflow(workflow_id)
        results = await self.store.get_result_map(workflow_id)

        ingested = results.get(DOCUMENT_INGESTION) or []
        analysis = results.get(REQUIREMENTS_ANALYSIS) or {}
        questions = results.get(CLARIFICATION_QUESTIONS) or {}
        answers = results.get(ANSWER_EXTRACTION) or {}
        compiled = results.get(RESPONSE_COMPILATION) or {}

        return {
            "workflowId": workflow_id,
            "status": workflow.status.value,
            "duration": workflow.duration,
            "summary": {
                "documentsProcessed": sum(1 for d in ingested if d.get("processed", True)),
                "requirementsIdentified": count_requirements(analysis),
                "questionsGenerated": (questions.get("questionSummary") or {}).get(
                    "totalQuestions", 0,
                ),
                "questionsAnswered": len(answers.get("answeredQuestions") or []),
                "completenessScore": _completeness(compiled),
                "criticalGaps": len(
                    (compiled.get("gapsAndActions") or {}).get("criticalGaps") or []
                ),
            },
            "recommendations": summary_recommendations(answers, compiled),
        }

    async def cleanup_corrupted_workflows(self) -> list[str]:
        """Mark impossible workflow states failed; returns the ids touched."""
        stale_before = _now() - timedelta(minutes=self.config.corrupted_after_minutes)
        corrupted = await self.store.find_corrupted_workflows(stale_before)

        repaired: list[str] = []
        for workflow in corrupted:
            issues = _corruption_issues(workflow, stale_before)
            logger.warning("Workflow %s corrupted: %s", workflow.id, ", ".join(issues))
            await self._abandon_task(workflow.id)
            await self.store.update_workflow(
                workflow.id,
                status=WorkflowStatus.FAILED,
                progress=max(0, min(100, workflow.progress)),
                error_message=f"Workflow state corrupted: {', '.join(issues)}",
                end_time=workflow.end_time or _now(),
            )
            repaired.append(workflow.id)
        return repaired

    async def cleanup_old_workflows(self, retention_days: int | None = None) -> list[str]:
        days = retention_days if retention_days is not None else self.config.retention_days
        return await self.store.cleanup_old_workflows(_now() - timedelta(days=days))

    def is_active(self, workflow_id: str) -> bool:
        task = self._tasks.get(workflow_id)
        return task is not None and not task.done()

    async def wait(self, workflow_id: str) -> None:
        """Await the live run of a workflow, if any."""
        task = self._tasks.get(workflow_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every live run (application shutdown)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -----------------------------------------------------------------------
    # Graph Assembly
    # -----------------------------------------------------------------------

    def _build_graph(self):
        builder = StateGraph(PipelineState)
        builder.add_node(DOCUMENT_INGESTION, self._ingestion_node)
        builder.add_node(REQUIREMENTS_ANALYSIS, self._requirements_node)
        builder.add_node(CLARIFICATION_QUESTIONS, self._clarification_node)
        builder.add_node(ANSWER_EXTRACTION, self._answers_node)
        builder.add_node(RESPONSE_COMPILATION, self._compilation_node)

        builder.add_conditional_edges(
            START, lambda state: state["start_step"], {step: step for step in STEPS},
        )
        for current, following in zip(STEPS, STEPS[1:]):
            builder.add_edge(current, following)
        builder.add_edge(RESPONSE_COMPILATION, END)
        return builder.compile()

    # -----------------------------------------------------------------------
    # Node Functions
    # -----------------------------------------------------------------------

    async def _ingestion_node(self, state: PipelineState) -> dict:
        workflow_id = await self._begin_step(state, DOCUMENT_INGESTION)
        documents = await self.store.get_documents(workflow_id)

        ingested = [await self._ingest_one(workflow_id, doc) for doc in documents]
        if not any(d.get("processed") for d in ingested):
            raise StageError("Document ingestion failed for every document")

        await self._save_step(state, DOCUMENT_INGESTION, ingested)
        return {"ingested_documents": ingested}

    async def _requirements_node(self, state: PipelineState) -> dict:
        workflow_id = await self._begin_step(state, REQUIREMENTS_ANALYSIS)
        processed = [d for d in state.get("ingested_documents") or [] if d.get("processed", True)]
        rfp_only = [d for d in processed if d.get("source") != DocumentType.COMPANY.value]

        result = await self.agents.requirements.analyze(rfp_only or processed)
        await self._save_step(state, REQUIREMENTS_ANALYSIS, result.data)
        await self.store.save_requirements(workflow_id, requirement_records(result.data))
        return {"requirements_analysis": result.data}

    async def _clarification_node(self, state: PipelineState) -> dict:
        workflow_id = await self._begin_step(state, CLARIFICATION_QUESTIONS)
        result = await self.agents.clarification.generate_questions(
            state.get("requirements_analysis") or {}, state.get("ingested_documents") or [],
        )

        flat = flatten_questions(result.data)
        if not flat:
            raise StageError(NO_QUESTIONS_MESSAGE)

        await self._save_step(state, CLARIFICATION_QUESTIONS, result.data)
        await self.store.save_questions(workflow_id, question_records(flat))
        return {"clarification_questions": result.data}

    async def _answers_node(self, state: PipelineState) -> dict:
        workflow_id = await self._begin_step(state, ANSWER_EXTRACTION)
        questions = flatten_questions(state.get("clarification_questions") or {})

        result = await self.agents.answers.extract_answers(
            questions,
            answer_documents(state.get("ingested_documents") or []),
            state.get("requirements_analysis") or {},
            scope=workflow_id,
        )
        if not result.data.get("answeredQuestions"):
            logger.warning("Answer extraction produced no answers for %s", workflow_id)

        await self._save_step(state, ANSWER_EXTRACTION, result.data)
        await self.store.replace_answers(workflow_id, answer_records(result.data))
        return {"extracted_answers": result.data}

    async def _compilation_node(self, state: PipelineState) -> dict:
        await self._begin_step(state, RESPONSE_COMPILATION)
        result = await self.agents.compilation.compile_response(
            state.get("requirements_analysis") or {},
            state.get("clarification_questions") or {},
            state.get("extracted_answers") or {},
            state.get("project_context") or {},
        )
        await self._save_step(state, RESPONSE_COMPILATION, result.data)
        return {"compiled_response": result.data}

    # -----------------------------------------------------------------------
    # Run Lifecycle
    # -----------------------------------------------------------------------

    def _launch(self, workflow_id: str, state: PipelineState) -> None:
        task = asyncio.create_task(self._run(workflow_id, state), name=f"workflow:{workflow_id}")
        self._tasks[workflow_id] = task
        task.add_done_callback(lambda t: self._forget_task(workflow_id, t))

    def _forget_task(self, workflow_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(workflow_id) is task:
            del self._tasks[workflow_id]

    async def _abandon_task(self, workflow_id: str) -> None:
        task = self._tasks.pop(workflow_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self, workflow_id: str, state: PipelineState) -> None:
        state["run_started"] = time.monotonic()
        try:
            await self._graph.ainvoke(state)
        except _CancelRequested:
            logger.info("Workflow %s cancelled", workflow_id)
            await self._finish(workflow_id, WorkflowStatus.CANCELLED, "Workflow cancelled")
        except asyncio.CancelledError:
            current = await self.store.get_workflow(workflow_id)
            if current is not None and current.status == WorkflowStatus.RUNNING:
                await self._finish(workflow_id, WorkflowStatus.CANCELLED, "Workflow cancelled")
            raise
        except Exception as e:
            logger.exception("Workflow %s failed: %s", workflow_id, e)
            await self._finish(
                workflow_id, WorkflowStatus.FAILED, f"Workflow failed: {e}", error=str(e),
            )
        else:
            logger.info("Workflow %s completed", workflow_id)
            await self._finish(
                workflow_id, WorkflowStatus.COMPLETED, "RFP processing completed successfully",
            )
        finally:
            self._cancel_requested.discard(workflow_id)
            self.progress.close(workflow_id)

    async def _begin_step(self, state: PipelineState, step: str) -> str:
        workflow_id = state["workflow_id"]
        if workflow_id in self._cancel_requested:
            raise _CancelRequested()

        progress = STEP_PROGRESS[step]
        await self.store.update_workflow(workflow_id, current_step=step, progress=progress)
        self.progress.publish(ProgressEvent(
            workflow_id=workflow_id,
            step=step,
            progress=progress,
            status=WorkflowStatus.RUNNING.value,
            message=STEP_MESSAGES[step],
        ))
        logger.info("Workflow %s: %s (%d%%)", workflow_id, step, progress)
        return workflow_id

    async def _save_step(self, state: PipelineState, step: str, data: Any) -> None:
        await self.store.save_result(
            state["workflow_id"],
            step,
            data,
            STEP_CONFIDENCE[step],
            _elapsed_ms(state["run_started"]),
        )

    async def _finish(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        message: str,
        error: str | None = None,
    ) -> WorkflowRecord | None:
        now = _now()
        workflow = await self.store.get_workflow(workflow_id)
        fields: dict[str, Any] = {"status": status, "end_time": now}
        if workflow is not None and workflow.start_time is not None:
            fields["duration"] = int((now - _aware(workflow.start_time)).total_seconds() * 1000)
        if status == WorkflowStatus.COMPLETED:
            fields.update(current_step=COMPLETED, progress=STEP_PROGRESS[COMPLETED])
        if error is not None:
            fields["error_message"] = error

        record = await self.store.update_workflow(workflow_id, **fields)
        self.progress.publish(ProgressEvent(
            workflow_id=workflow_id,
            step=COMPLETED if status == WorkflowStatus.COMPLETED else status.value,
            progress=record.progress if record else 0,
            status=status.value,
            message=message,
        ))
        return record

    async def _restore_state(self, workflow_id: str, step: str) -> PipelineState:
        results = await self.store.get_result_map(workflow_id)
        missing = [name for name in RESUME_PREREQUISITES[step] if name not in results]
        if missing:
            raise WorkflowStateError(
                f"Cannot resume from {step} - no {missing[0].replace('_', ' ')} results found"
            )

        restored: PipelineState = {}
        for name in STEPS[: STEPS.index(step)]:
            if name in results:
                restored[RESULT_STATE_KEYS[name]] = results[name]
        return restored

    async def _require_workflow(self, workflow_id: str) -> WorkflowRecord:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    async def _ingest_one(self, workflow_id: str, document: DocumentRecord) -> dict[str, Any]:
        """Extract, analyse and index one uploaded document."""
        base = {
            "documentId": document.id,
            "fileName": document.original_name,
            "source": document.document_type.value,
        }
        frozen = document.processing_status == DocumentStatus.COMPLETED
        try:
            if not frozen:
                await self.store.update_document(
                    workflow_id, document.id, processing_status=DocumentStatus.PROCESSING,
                )
            if not document.file_path:
                raise InvalidInputError(f"Document {document.original_name} has no stored file")

            extracted = await asyncio.to_thread(
                extract_document, document.file_path, document.original_name,
            )
            if not extracted.content.strip():
                raise InvalidInputError(f"No text extracted from {document.original_name}")

            analysis = await self.agents.ingestion.execute(
                extracted.content,
                {"metadata": extracted.metadata, "structuredData": extracted.structured_data},
            )
        except Exception as e:
            logger.error("Error processing document %s: %s", document.original_name, e)
            if not frozen:
                await self.store.update_document(
                    workflow_id, document.id, processing_status=DocumentStatus.FAILED,
                )
            return {**base, "processed": False, "error": str(e)}

        indexed = True
        try:
            await asyncio.to_thread(
                self.indexer.index_extracted, extracted, workflow_id, str(document.id),
            )
        except Exception as e:
            # Retrieval misses fall back to whole-document extraction
            indexed = False
            logger.warning("Indexing failed for %s: %s", document.original_name, e)

        if not frozen:
            await self.store.update_document(
                workflow_id,
                document.id,
                processing_status=DocumentStatus.COMPLETED,
                content=extracted.content,
                metadata=extracted.metadata,
                structured_data=analysis.data,
            )

        return {
            **analysis.data,
            **base,
            "processed": True,
            "indexed": indexed,
            "fallback": analysis.fallback,
            "processedContent": extracted.content,
            "metadata": extracted.metadata,
            "structuredData": extracted.structured_data,
        }


# ---------------------------------------------------------------------------
# Flatten Helpers
# ---------------------------------------------------------------------------


def generate_workflow_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"rfp_{int(time.time() * 1000)}_{suffix}"


def requirement_records(analysis: dict[str, Any]) -> list[RequirementRecord]:
    records: list[RequirementRecord] = []
    seen: set[str] = set()
    for category, items in (analysis.get("requirements") or {}).items():
        if not isinstance(items, list):
            continue
        for index, item in enumerate(items):
            req = item if isinstance(item, dict) else {"description": str(item)}
            requirement_id = str(req.get("id") or f"{category}_req_{index + 1}")
            if requirement_id in seen:
                requirement_id = f"{requirement_id}_{index + 1}"
            seen.add(requirement_id)
            records.append(RequirementRecord(
                requirement_id=requirement_id,
                category=category,
                description=str(req.get("description") or req.get("text") or ""),
                priority=str(req.get("priority") or "medium"),
                complexity=str(req.get("complexity") or "medium"),
                mandatory=bool(req.get("mandatory")),
            ))
    return records


def question_records(questions: list[dict[str, Any]]) -> list[QuestionRecord]:
    return [
        QuestionRecord(
            question_id=str(q["id"]),
            category=q["category"],
            question_text=q["question"],
            rationale=q.get("rationale"),
            priority=str(q.get("priority") or "medium"),
            impact=q.get("impact"),
            related_requirements=[str(r) for r in q.get("relatedRequirements") or []],
        )
        for q in questions
    ]


def answer_records(answers: dict[str, Any]) -> list[AnswerRecord]:
    records = []
    for answer in answers.get("answeredQuestions") or []:
        if not isinstance(answer, dict) or not answer.get("questionId"):
            continue
        try:
            confidence = float(answer.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        records.append(AnswerRecord(
            question_id=str(answer["questionId"]),
            answer_text=str(answer.get("answer") or ""),
            confidence_score=confidence,
            answer_type=str(answer.get("answerType") or "direct"),
            completeness=str(answer.get("completeness") or "complete"),
            sources=[
                {
                    "document_name": source.get("documentName"),
                    "excerpt": source.get("excerpt"),
                    "relevance_score": source.get("relevanceScore"),
                }
                for source in answer.get("sources") or []
                if isinstance(source, dict)
            ],
        ))
    return records


def answer_documents(ingested: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Ingested documents in the shape the answer-extraction fallback reads."""
    return [
        {
            "fileName": doc.get("fileName"),
            "documentType": doc.get("documentType"),
            "overview": doc.get("overview"),
            "processedContent": doc.get("processedContent") or "",
            "structuredData": {
                name: doc[name]
                for name in (*LIST_FIELDS, "budgetInfo", "contactInfo")
                if doc.get(name)
            },
        }
        for doc in ingested
        if doc.get("processed", True)
    ]


def summary_recommendations(
    answers: dict[str, Any], compiled: dict[str, Any],
) -> list[dict[str, str]]:
    recommendations = []
    if _completeness(compiled) < 0.7:
        recommendations.append({
            "type": "completeness",
            "priority": "high",
            "message": "Response completeness is below 70%. Focus on filling gaps.",
        })

    unanswered = len(answers.get("unansweredQuestions") or [])
    if unanswered:
        recommendations.append({
            "type": "gaps",
            "priority": "medium",
            "message": f"{unanswered} questions remain unanswered. Consider additional research.",
        })

    average = (answers.get("answerSummary") or {}).get("averageConfidence") or 0
    if average < 0.7:
        recommendations.append({
            "type": "confidence",
            "priority": "medium",
            "message": "Average answer confidence is low. Review and strengthen responses.",
        })
    return recommendations


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _completeness(compiled: dict[str, Any]) -> float:
    value = (compiled.get("qualityAssurance") or {}).get("completenessScore") or 0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _corruption_issues(workflow: WorkflowRecord, stale_before: datetime) -> list[str]:
    issues = []
    if workflow.progress < 0 or workflow.progress > 100:
        issues.append("invalid_progress")
    if workflow.status == WorkflowStatus.RUNNING and workflow.end_time is not None:
        issues.append("running_with_end_time")
    if (
        workflow.status == WorkflowStatus.RUNNING
        and workflow.updated_at is not None
        and _aware(workflow.updated_at) < stale_before
    ):
        issues.append("stale_running")
    return issues or ["unknown"]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
