# =============================================================================
# Retrieval Service — Scoped Question Answering over Indexed Chunks
# =============================================================================
#
# The answer-extraction stage asks one question at a time:
#
#   question ──→ embed (OpenAI) ──→ Chroma top-k within scope
#                                        │
#                          no chunks ────┼──→ confidence 0.0
#                                        ▼
#                     LLM answers from the retrieved context only
#                                        │
#                                        ▼
#   RetrievalAnswer(answer, confidence = min(mean similarity × boost, 1.0),
#                   sources = [{document_id, document_name, content, similarity}])
#
# DESIGN DECISION: Confidence comes from retrieval similarity, not from the
# model's self-assessment. Downstream thresholds (0.3 / 0.7 / 0.8) therefore
# measure how well the uploads cover the question.
#
# Any exception inside answer() is logged and reported as confidence 0.0, so
# a flaky embedding call degrades one question instead of the whole stage.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Protocol

from app.services.embedder import Embedder
from app.services.llm import ModelClient
from app.services.vectorstore import VectorStore

logger = logging.getLogger(__name__)

NO_CONTEXT_ANSWER = (
    "I couldn't find relevant information in the uploaded documents "
    "to answer this question."
)
ERROR_ANSWER = "An error occurred while trying to answer this question."

ANSWER_PROMPT = """Based on the following context from the RFP document, please answer the question. If the information is not available in the context, say so clearly.

Context:
{context}

Question: {question}

Please provide a clear, concise answer based only on the information provided in the context above."""


@dataclass
class RetrievedSource:
    document_id: str
    document_name: str
    content: str  # excerpt
    similarity: float


@dataclass
class RetrievalAnswer:
    answer: str
    confidence: float
    sources: list[RetrievedSource] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class RetrievalService(Protocol):
    async def answer(self, question: str, scope: str) -> RetrievalAnswer:
        ...


class VectorRetrievalService:
    """Embed → search within scope → answer from context."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        client: ModelClient,
        *,
        top_k: int = 3,
        confidence_boost: float = 1.2,
        excerpt_chars: int = 200,
    ) -> None:
        self._store = vector_store
        self._embedder = embedder
        self._client = client
        self._top_k = top_k
        self._boost = confidence_boost
        self._excerpt_chars = excerpt_chars

    async def answer(self, question: str, scope: str) -> RetrievalAnswer:
        try:
            embedding = await asyncio.to_thread(self._embedder.embed_query, question)
            chunks = await self._store.search(embedding, scope=scope, top_k=self._top_k)

            if not chunks:
                return RetrievalAnswer(answer=NO_CONTEXT_ANSWER, confidence=0.0)

            context = "\n\n".join(chunk.content for chunk in chunks)
            reply = await self._client.invoke(
                ANSWER_PROMPT.format(context=context, question=question)
            )

            mean_similarity = sum(c.similarity_score for c in chunks) / len(chunks)
            confidence = max(0.0, min(mean_similarity * self._boost, 1.0))

            return RetrievalAnswer(
                answer=reply,
                confidence=confidence,
                sources=[
                    RetrievedSource(
                        document_id=chunk.document_id,
                        document_name=chunk.document_name,
                        content=chunk.content[: self._excerpt_chars] + "...",
                        similarity=chunk.similarity_score,
                    )
                    for chunk in chunks
                ],
            )
        except Exception as exc:
            logger.error("Error answering question in scope %s: %s", scope, exc)
            return RetrievalAnswer(answer=ERROR_ANSWER, confidence=0.0)
