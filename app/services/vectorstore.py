# =============================================================================
# Vector Store — ChromaDB, Scoped by Workflow
# =============================================================================
#
# Holds embedded chunks of RFP and company documents. Every chunk carries a
# `scope` metadata value (the workflow id, or a knowledge-base name for
# standing company documents) and every search is filtered to one scope, so
# answers for one RFP are never drawn from another RFP's uploads.
#
# DESIGN DECISION: Protocol (structural typing) over ABC, so tests hand the
# retrieval service an in-memory fake without inheriting from anything.
#
# DESIGN DECISION: Mixed sync/async interface.
# - add_chunks() is sync → called from Celery tasks and from worker threads
# - search() is async → called from the answer-extraction stage
# The ChromaDB client is sync; search wraps it in asyncio.to_thread().
#
# ARCHITECTURE:
#   VectorStore (Protocol)
#   └── ChromaVectorStore — in-process (default) or client/server (CHROMA_URL)
#       ├── add_chunks()   — upsert with scope/document metadata
#       ├── search()       — cosine similarity within one scope
#       └── delete_scope() — drop every chunk of a deleted workflow
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import chromadb

from app.config import Settings, settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class VectorSearchResult:
    """A chunk returned by similarity search."""

    chunk_id: str
    document_id: str
    document_name: str
    content: str
    similarity_score: float  # 1 - cosine distance, higher = more relevant
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    def add_chunks(
        self,
        scope: str,
        document_id: str,
        document_name: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        ...

    async def search(
        self,
        query_embedding: list[float],
        scope: str,
        top_k: int = 3,
    ) -> list[VectorSearchResult]:
        ...

    def delete_scope(self, scope: str) -> None:
        ...


# ---------------------------------------------------------------------------
# ChromaDB Implementation
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed vector store.

    A single collection (CHROMA_COLLECTION) holds every scope; per-scope
    search uses ChromaDB's metadata where clause.

    ChromaDB supports both in-process and client/server modes:
    - In-process (default): No extra infra, data held in memory
    - Client/server: Set CHROMA_URL for Docker deployment
    """

    def __init__(self, config: Settings | None = None, client: object | None = None) -> None:
        config = config or settings
        if client is not None:
            self._client = client
        elif config.chroma_url:
            self._client = chromadb.HttpClient(host=config.chroma_url)
        else:
            self._client = chromadb.Client()

        self._collection = self._client.get_or_create_collection(
            name=config.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    def add_chunks(
        self,
        scope: str,
        document_id: str,
        document_name: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        """Upsert chunks for one document; returns the Chroma ids."""
        if not contents:
            return []

        ids = [
            f"{scope}:{document_id}:chunk{meta.get('chunk_index', i)}"
            for i, meta in enumerate(metadatas)
        ]
        enriched = [
            _sanitise_chroma_metadata({
                **meta,
                "scope": scope,
                "document_id": document_id,
                "document_name": document_name,
            })
            for meta in metadatas
        ]

        self._collection.upsert(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=enriched,
        )

        logger.info(
            "Stored %d chunks for document '%s' in scope %s",
            len(ids), document_name, scope,
        )
        return ids

    async def search(
        self,
        query_embedding: list[float],
        scope: str,
        top_k: int = 3,
    ) -> list[VectorSearchResult]:
        def _sync_search() -> list[VectorSearchResult]:
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=top_k,
                where={"scope": scope},
                include=["documents", "metadatas", "distances"],
            )

            found: list[VectorSearchResult] = []
            if not (results and results["ids"] and results["ids"][0]):
                return found

            for i, chroma_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i] if results["distances"] else 0.0
                metadata = results["metadatas"][0][i] if results["metadatas"] else {}
                content = results["documents"][0][i] if results["documents"] else ""
                found.append(VectorSearchResult(
                    chunk_id=chroma_id,
                    document_id=str(metadata.get("document_id", "")),
                    document_name=str(metadata.get("document_name", "")),
                    content=content,
                    similarity_score=round(1.0 - distance, 4),
                    metadata=metadata,
                ))
            return found

        return await asyncio.to_thread(_sync_search)

    def delete_scope(self, scope: str) -> None:
        self._collection.delete(where={"scope": scope})
        logger.info("Deleted vector chunks for scope %s", scope)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    ChromaDB metadata values must be str, int, float, or bool.

    list → comma-separated string, None → empty string, anything else → str.
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
