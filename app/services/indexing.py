# =============================================================================
# Knowledge Indexing — chunk → embed → store
# =============================================================================
#
# Shared by two callers:
#   - the workflow ingestion step (RFP + company uploads, scope = workflow id),
#     run through asyncio.to_thread because every step below is sync
#   - the Celery task index_knowledge_document (standing company knowledge)
#
# PIPELINE:
#   1. Chunk text with tiktoken → token windows with section/page metadata
#   2. Generate embeddings with OpenAI → batch API calls
#   3. Upsert chunks + embeddings into Chroma under the scope
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.services.chunker import chunk_document
from app.services.embedder import Embedder
from app.services.parser import ExtractedDocument, extract_document
from app.services.vectorstore import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class IndexingSummary:
    scope: str
    document_id: str
    document_name: str
    chunk_count: int


class DocumentIndexer:
    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        *,
        chunk_size: int = 512,
        chunk_overlap: int = 50,
    ) -> None:
        self._store = vector_store
        self._embedder = embedder
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap

    def index_extracted(
        self, document: ExtractedDocument, scope: str, document_id: str,
    ) -> IndexingSummary:
        """Index an already-extracted document. Empty documents index nothing."""
        chunks = chunk_document(
            document, chunk_size=self._chunk_size, chunk_overlap=self._chunk_overlap,
        )
        if not chunks:
            logger.warning("Nothing to index for '%s' in scope %s", document.filename, scope)
            return IndexingSummary(scope, document_id, document.filename, 0)

        embeddings = self._embedder.embed_batch([c.content for c in chunks])
        metadatas = [
            {
                "page_number": c.page_number,
                "chunk_index": c.chunk_index,
                "token_count": c.token_count,
                **c.metadata,
            }
            for c in chunks
        ]
        self._store.add_chunks(
            scope=scope,
            document_id=document_id,
            document_name=document.filename,
            contents=[c.content for c in chunks],
            embeddings=embeddings,
            metadatas=metadatas,
        )
        return IndexingSummary(scope, document_id, document.filename, len(chunks))

    def forget_scope(self, scope: str) -> None:
        self._store.delete_scope(scope)

    def index_file(
        self,
        file_path: str,
        scope: str,
        document_id: str,
        document_name: str | None = None,
    ) -> IndexingSummary:
        document = extract_document(file_path, original_name=document_name)
        return self.index_extracted(document, scope, document_id)
