# =============================================================================
# Workflows API — Submit, Track, Steer and Inspect RFP Workflows
# =============================================================================
#
# ENDPOINTS:
#   POST   /workflows                          — upload RFP + company files (202)
#   GET    /workflows                          — paginated list
#   GET    /workflows/statistics               — aggregate counters
#   GET    /workflows/{id}                     — one workflow
#   GET    /workflows/{id}/results             — per-step results
#   GET    /workflows/{id}/answers             — extracted answers
#   GET    /workflows/{id}/summary             — headline counts + recommendations
#   GET    /workflows/{id}/events              — SSE progress stream
#   POST   /workflows/{id}/retry               — rerun / resume from a step
#   POST   /workflows/{id}/cancel              — cancel between steps
#   POST   /workflows/{id}/reprocess-answers   — rerun answer extraction
#   DELETE /workflows/{id}                     — delete workflow + chunks
#
# DESIGN DECISION: 202 Accepted for submission. The pipeline runs as an
# asyncio task inside this process; the response carries the workflow id for
# polling or streaming.
#
# ERROR MAPPING:
#   WorkflowNotFoundError → 404, WorkflowStateError → 409,
#   InvalidInputError → 400 (unsupported file, empty upload set)
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import ValidationError
from starlette.responses import StreamingResponse

from app.agents.base import InvalidInputError
from app.agents.orchestrator import (
    WorkflowNotFoundError,
    WorkflowOrchestrator,
    WorkflowStateError,
)
from app.api.deps import get_orchestrator, get_progress, get_store
from app.config import settings
from app.db.models import DocumentType
from app.models.records import NewDocument
from app.models.requests import ProjectContext, RetryRequest
from app.models.responses import (
    AnswerResponse,
    ReprocessResponse,
    StatisticsResponse,
    StepResultResponse,
    SummaryResponse,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowSubmitResponse,
)
from app.services.parser import SUPPORTED_SUFFIXES
from app.services.progress import ProgressChannel
from app.services.store import WorkflowStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["Workflows"])

KEEPALIVE_SECONDS = 30


# ---------------------------------------------------------------------------
# POST /workflows — Submit documents
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=WorkflowSubmitResponse,
    status_code=202,
    summary="Submit RFP and company documents for processing",
)
async def submit_workflow(
    rfp_files: list[UploadFile] = File(..., description="RFP documents (pdf, docx, txt, md)"),
    company_files: list[UploadFile] | None = File(
        default=None, description="Company knowledge documents used to answer questions",
    ),
    project_context: str | None = Form(
        default=None, description='JSON object, e.g. {"title": "...", "client": "..."}',
    ),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowSubmitResponse:
    context = _parse_project_context(project_context)

    rfp_documents: list[NewDocument] = []
    company_documents: list[NewDocument] = []
    try:
        for f in rfp_files:
            rfp_documents.append(await _save_upload(f, DocumentType.RFP))
        for f in company_files or []:
            company_documents.append(await _save_upload(f, DocumentType.COMPANY))
        workflow = await orchestrator.submit(rfp_documents, company_documents, context)
    except InvalidInputError as e:
        _discard_uploads(rfp_documents + company_documents)
        raise HTTPException(status_code=400, detail=str(e)) from e
    except HTTPException:
        # A later file was rejected; files saved before it have no workflow
        _discard_uploads(rfp_documents + company_documents)
        raise

    return WorkflowSubmitResponse(
        workflow=WorkflowResponse.model_validate(workflow),
        documents=len(rfp_documents) + len(company_documents),
    )


# ---------------------------------------------------------------------------
# Read Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=WorkflowListResponse, summary="List workflows")
async def list_workflows(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    store: WorkflowStore = Depends(get_store),
) -> WorkflowListResponse:
    records = await store.list_workflows(limit, offset)
    return WorkflowListResponse(
        workflows=[WorkflowResponse.model_validate(r) for r in records],
        limit=limit,
        offset=offset,
    )


@router.get("/statistics", response_model=StatisticsResponse, summary="Workflow statistics")
async def workflow_statistics(store: WorkflowStore = Depends(get_store)) -> StatisticsResponse:
    return StatisticsResponse.model_validate(await store.get_statistics())


@router.get("/{workflow_id}", response_model=WorkflowResponse, summary="Get one workflow")
async def get_workflow(
    workflow_id: str, store: WorkflowStore = Depends(get_store),
) -> WorkflowResponse:
    workflow = await store.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    return WorkflowResponse.model_validate(workflow)


@router.get(
    "/{workflow_id}/results",
    response_model=list[StepResultResponse],
    summary="Per-step results",
)
async def get_results(
    workflow_id: str, store: WorkflowStore = Depends(get_store),
) -> list[StepResultResponse]:
    await _require(store, workflow_id)
    return [StepResultResponse.model_validate(r) for r in await store.get_results(workflow_id)]


@router.get(
    "/{workflow_id}/answers",
    response_model=list[AnswerResponse],
    summary="Extracted answers",
)
async def get_answers(
    workflow_id: str, store: WorkflowStore = Depends(get_store),
) -> list[AnswerResponse]:
    await _require(store, workflow_id)
    return [AnswerResponse.model_validate(a) for a in await store.get_answers(workflow_id)]


@router.get(
    "/{workflow_id}/summary",
    response_model=SummaryResponse,
    response_model_by_alias=True,
    summary="Workflow summary and recommendations",
)
async def get_summary(
    workflow_id: str, orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> SummaryResponse:
    try:
        summary = await orchestrator.get_workflow_summary(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return SummaryResponse.model_validate(summary)


# ---------------------------------------------------------------------------
# GET /workflows/{id}/events — Server-Sent Events
# ---------------------------------------------------------------------------


@router.get("/{workflow_id}/events", summary="Stream workflow progress via SSE")
async def stream_events(
    workflow_id: str,
    store: WorkflowStore = Depends(get_store),
    progress: ProgressChannel = Depends(get_progress),
) -> StreamingResponse:
    """
    Live progress events for a workflow.

    Events published before the connection opened are not replayed; the
    first event is the workflow's current snapshot. The stream ends when the
    workflow reaches a terminal state.
    """
    workflow = await _require(store, workflow_id)
    queue = progress.subscribe(workflow_id)

    async def generate():
        try:
            snapshot = WorkflowResponse.model_validate(workflow).model_dump(mode="json")
            yield f"event: snapshot\ndata: {json.dumps(snapshot)}\n\n"
            if workflow.is_terminal:
                return

            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    yield "event: end\ndata: {}\n\n"
                    return
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            progress.unsubscribe(workflow_id, queue)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Lifecycle Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/{workflow_id}/retry",
    response_model=WorkflowResponse,
    status_code=202,
    summary="Retry a workflow, optionally from a step",
)
async def retry_workflow(
    workflow_id: str,
    request: RetryRequest | None = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowResponse:
    from_step = request.from_step if request else None
    try:
        workflow = await orchestrator.retry_workflow(workflow_id, from_step)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return WorkflowResponse.model_validate(workflow)


@router.post(
    "/{workflow_id}/cancel",
    response_model=WorkflowResponse,
    summary="Cancel a pending or running workflow",
)
async def cancel_workflow(
    workflow_id: str, orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowResponse:
    try:
        workflow = await orchestrator.cancel_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return WorkflowResponse.model_validate(workflow)


@router.post(
    "/{workflow_id}/reprocess-answers",
    response_model=ReprocessResponse,
    summary="Rerun answer extraction over the stored questions",
)
async def reprocess_answers(
    workflow_id: str, orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> ReprocessResponse:
    try:
        data = await orchestrator.reprocess_answers(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.exception("Answer reprocessing failed for %s: %s", workflow_id, e)
        raise HTTPException(status_code=502, detail=f"LLM service error: {e}") from e

    return ReprocessResponse(
        workflow_id=workflow_id,
        answered=len(data.get("answeredQuestions") or []),
        unanswered=len(data.get("unansweredQuestions") or []),
        answer_summary=data.get("answerSummary") or {},
    )


@router.delete("/{workflow_id}", status_code=204, summary="Delete a workflow")
async def delete_workflow(
    workflow_id: str, orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> None:
    try:
        await orchestrator.delete_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _require(store: WorkflowStore, workflow_id: str):
    workflow = await store.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    return workflow


def _parse_project_context(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        return ProjectContext.model_validate_json(raw).model_dump(exclude_none=True)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid project_context: {e}") from e


async def _save_upload(file: UploadFile, document_type: DocumentType) -> NewDocument:
    """Persist one upload under upload_dir and describe it for the workflow."""
    filename = file.filename or ""
    suffix = Path(filename).suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type for '{filename}'. "
            f"Accepted: {', '.join(sorted(SUPPORTED_SUFFIXES))}",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail=f"Uploaded file '{filename}' is empty.")

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    # Prefix avoids collisions between identically named uploads
    file_path = upload_dir / f"{uuid.uuid4().hex}_{Path(filename).name}"
    file_path.write_bytes(content)

    logger.info(
        "Saved %s upload: %s (%d bytes) → %s",
        document_type.value, filename, len(content), file_path,
    )
    return NewDocument(
        original_name=filename,
        file_path=str(file_path),
        file_size=len(content),
        mime_type=file.content_type,
        document_type=document_type,
    )


def _discard_uploads(documents: list[NewDocument]) -> None:
    for doc in documents:
        if doc.file_path:
            Path(doc.file_path).unlink(missing_ok=True)
    if documents:
        logger.info("Removed %d uploads of a rejected submission", len(documents))
