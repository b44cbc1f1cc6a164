# =============================================================================
# Application Container — Explicit Service Wiring + FastAPI Dependencies
# =============================================================================
#
# Builds every service once at startup and hands them to each other:
#
#   engine → session factory → WorkflowRepository ─┐
#   cache (Redis | memory) ────────────────────────┴→ WorkflowStore
#   LLM provider → ModelClient ──→ agents
#   Embedder + ChromaVectorStore → VectorRetrievalService → AnswerExtractionAgent
#                                 → DocumentIndexer ────────→ WorkflowOrchestrator
#
# DESIGN DECISION: One container on app.state instead of module-level
# singletons. Route handlers reach it through get_container(); tests
# replace it with dependency_overrides or build one from fakes.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from app.agents.answer_extraction import AnswerExtractionAgent
from app.agents.clarification import ClarificationQuestionsAgent
from app.agents.compilation import ResponseCompilationAgent
from app.agents.ingestion import DocumentIngestionAgent
from app.agents.orchestrator import PipelineAgents, WorkflowOrchestrator
from app.agents.requirements import RequirementsAnalysisAgent
from app.config import Settings
from app.db.engine import create_async_db_engine, create_session_factory
from app.db.repository import WorkflowRepository
from app.services.cache import CachePolicy, create_cache
from app.services.embedder import Embedder
from app.services.indexing import DocumentIndexer
from app.services.llm import ModelClient, create_llm_provider
from app.services.progress import ProgressChannel
from app.services.retrieval import VectorRetrievalService
from app.services.store import WorkflowStore
from app.services.vectorstore import ChromaVectorStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    config: Settings
    engine: AsyncEngine | None
    store: WorkflowStore
    progress: ProgressChannel
    orchestrator: WorkflowOrchestrator

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        close_cache = getattr(self.store.cache, "close", None)
        if close_cache is not None:
            await close_cache()
        if self.engine is not None:
            await self.engine.dispose()


def build_container(config: Settings) -> Container:
    """Wire the production services from settings."""
    engine = create_async_db_engine(config)
    store = WorkflowStore(
        WorkflowRepository(create_session_factory(engine)),
        create_cache(config.cache_backend, config.redis_url),
        CachePolicy(),
    )

    client = ModelClient(create_llm_provider(config))
    embedder = Embedder(config)
    vector_store = ChromaVectorStore(config)
    retry = {
        "retry_attempts": config.agent_retry_attempts,
        "retry_base_delay": config.agent_retry_base_delay,
    }

    retrieval = VectorRetrievalService(
        vector_store,
        embedder,
        client,
        top_k=config.retrieval_top_k,
        confidence_boost=config.retrieval_confidence_boost,
        excerpt_chars=config.retrieval_excerpt_chars,
    )
    agents = PipelineAgents(
        ingestion=DocumentIngestionAgent(client, **retry),
        requirements=RequirementsAnalysisAgent(client, **retry),
        clarification=ClarificationQuestionsAgent(client, **retry),
        answers=AnswerExtractionAgent(
            client,
            retrieval,
            min_confidence=config.answer_min_confidence,
            direct_confidence=config.answer_direct_confidence,
            complete_confidence=config.answer_complete_confidence,
            critical_gap_confidence=config.critical_gap_confidence,
            truncation_max_chars=config.truncation_max_chars,
            **retry,
        ),
        compilation=ResponseCompilationAgent(client, **retry),
    )
    indexer = DocumentIndexer(
        vector_store,
        embedder,
        chunk_size=config.chunk_size,
        chunk_overlap=config.chunk_overlap,
    )
    progress = ProgressChannel(config.progress_queue_size)

    logger.info(
        "Container ready (llm=%s/%s, cache=%s)",
        config.llm_provider, config.llm_model, config.cache_backend,
    )
    return Container(
        config=config,
        engine=engine,
        store=store,
        progress=progress,
        orchestrator=WorkflowOrchestrator(store, agents, indexer, progress, config),
    )


# ---------------------------------------------------------------------------
# FastAPI Dependencies
# ---------------------------------------------------------------------------


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_store(request: Request) -> WorkflowStore:
    return get_container(request).store


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    return get_container(request).orchestrator


def get_progress(request: Request) -> ProgressChannel:
    return get_container(request).progress
