# =============================================================================
# Celery Task Definitions — Retention Sweep & Knowledge Indexing
# =============================================================================
#
# cleanup_old_workflows:
#   1. Select terminal workflows whose end_time is older than retention_days
#   2. Delete them (documents, requirements, questions, answers and results
#      go with them via ON DELETE CASCADE)
#   3. Invalidate their cache keys + every cached list page
#   4. Drop their chunks from the vector store
#
# index_knowledge_document:
#   parse (Docling / plain text) → chunk (tiktoken) → embed (OpenAI)
#   → upsert into Chroma under the given scope
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# - No async/await here; use the psycopg2 engine via get_sync_session()
# - Cache invalidation uses the sync redis client with the same CachePolicy
#   keys the API process reads
#
# RETRY STRATEGY:
# Indexing retries up to 3 times (60s delay) for transient OpenAI / Chroma
# errors. The retention sweep is idempotent and simply runs again tomorrow.
# =============================================================================

import logging
from datetime import datetime, timedelta, timezone

import redis
from redis.exceptions import RedisError
from sqlalchemy import delete

from app.config import settings
from app.db.engine import get_sync_session
from app.db.models import Workflow
from app.db.repository import expired_workflows
from app.services.cache import LIST_PATTERN, CachePolicy
from app.services.embedder import Embedder
from app.services.indexing import DocumentIndexer
from app.services.vectorstore import ChromaVectorStore
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _build_indexer() -> DocumentIndexer:
    return DocumentIndexer(
        ChromaVectorStore(settings),
        Embedder(settings),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )


def _invalidate_cache(workflow_ids: list[str]) -> None:
    """Drop cached entries for deleted workflows (sync Redis client)."""
    if settings.cache_backend != "redis" or not workflow_ids:
        return

    policy = CachePolicy()
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        for workflow_id in workflow_ids:
            client.delete(*policy.all_keys_for(workflow_id))
        stale_lists = list(client.scan_iter(match=LIST_PATTERN))
        if stale_lists:
            client.delete(*stale_lists)
    except RedisError as e:
        # Entries expire on their own TTL
        logger.warning("Cache invalidation after retention sweep failed: %s", e)
    finally:
        client.close()


# ---------------------------------------------------------------------------
# Retention Sweep
# ---------------------------------------------------------------------------


@celery_app.task(name="cleanup_old_workflows")
def cleanup_old_workflows(retention_days: int | None = None) -> dict:
    """
    Delete terminal workflows older than the retention window.

    Args:
        retention_days: Override settings.retention_days (default 7).

    Returns:
        dict with the cutoff and the deleted workflow ids.
    """
    days = retention_days if retention_days is not None else settings.retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    logger.info("Retention sweep: deleting terminal workflows ended before %s", cutoff)

    with get_sync_session() as session:
        ids = list(session.execute(expired_workflows(cutoff)).scalars())
        if ids:
            session.execute(delete(Workflow).where(Workflow.id.in_(ids)))

    _invalidate_cache(ids)

    if ids:
        indexer = _build_indexer()
        for workflow_id in ids:
            try:
                indexer.forget_scope(workflow_id)
            except Exception as e:
                logger.warning("Could not delete vector chunks for %s: %s", workflow_id, e)

    logger.info("Retention sweep removed %d workflows", len(ids))
    return {"cutoff": cutoff.isoformat(), "deleted": ids}


# ---------------------------------------------------------------------------
# Knowledge Indexing
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="index_knowledge_document",
    max_retries=3,
    default_retry_delay=60,
)
def index_knowledge_document(
    self,
    file_path: str,
    scope: str,
    document_name: str | None = None,
) -> dict:
    """
    Index a company knowledge document for retrieval under `scope`.

    Args:
        self: Bound task (provides self.request.id).
        file_path: Path to a pdf, docx, txt or md file.
        scope: Retrieval scope; a workflow id, or a shared knowledge scope.
        document_name: Display name for citations (defaults to the file name).

    Returns:
        dict with scope, document name and chunk count.
    """
    task_id = self.request.id
    logger.info("[%s] Indexing %s into scope %s", task_id, file_path, scope)

    try:
        summary = _build_indexer().index_file(
            file_path, scope, document_id=str(task_id), document_name=document_name,
        )
    except Exception as exc:
        logger.exception("[%s] Indexing failed for %s: %s", task_id, file_path, exc)
        raise self.retry(exc=exc)

    if summary.chunk_count == 0:
        logger.warning("[%s] No chunks produced from %s", task_id, file_path)

    result = {
        "scope": summary.scope,
        "document_id": summary.document_id,
        "document_name": summary.document_name,
        "chunk_count": summary.chunk_count,
    }
    logger.info("[%s] Indexing complete: %s", task_id, result)
    return result
