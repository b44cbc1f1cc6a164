# =============================================================================
# Embedding Service — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API
# (OpenAI, DashScope, ...). Used in two places:
#   - indexing: chunk texts of RFP/company documents, in batches
#   - retrieval: one embedding per clarification question
#
# DESIGN DECISION: An Embedder instance per application container instead
# of a module-level client, so the retrieval service receives it explicitly
# and tests can hand in a stub.
#
# The OpenAI client here is sync; async callers go through asyncio.to_thread
# (see app/services/retrieval.py).
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens
# - 100 texts per API call by default (EMBEDDING_BATCH_SIZE)
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from app.config import Settings, settings

logger = logging.getLogger(__name__)


class Embedder:
    """
    Batch embedder over the OpenAI embeddings endpoint.

    API key resolution order: OPENAI_API_KEY, then LLM_API_KEY (one shared
    key for LLM + embeddings on compatible providers).
    """

    def __init__(self, config: Settings | None = None, client: OpenAI | None = None) -> None:
        self._config = config or settings
        self._client = client

    def _get_client(self) -> OpenAI:
        """Lazily initialize and cache the embedding client."""
        if self._client is None:
            resolved_key = self._config.openai_api_key or self._config.llm_api_key
            if not resolved_key:
                raise ValueError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )

            client_kwargs: dict = {"api_key": resolved_key}
            if self._config.embedding_base_url:
                client_kwargs["base_url"] = self._config.embedding_base_url

            self._client = OpenAI(**client_kwargs)
            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self._config.embedding_model,
                self._config.embedding_base_url or "https://api.openai.com/v1",
            )
        return self._client

    def embed_batch(
        self,
        texts: Sequence[str],
        batch_size: int | None = None,
    ) -> list[list[float]]:
        """
        Embed texts in sub-batches, returning vectors in input order.

        Raises:
            ValueError: If no API key is configured.
            openai.APIError: If the API call fails.
        """
        if not texts:
            return []

        client = self._get_client()
        _batch_size = batch_size or self._config.embedding_batch_size
        all_embeddings: list[list[float]] = [[] for _ in texts]

        for i in range(0, len(texts), _batch_size):
            batch = list(texts[i : i + _batch_size])
            logger.info(
                "Embedding batch %d–%d of %d texts (model=%s)",
                i + 1,
                min(i + _batch_size, len(texts)),
                len(texts),
                self._config.embedding_model,
            )

            create_kwargs: dict = {
                "model": self._config.embedding_model,
                "input": batch,
            }
            if self._config.embedding_dimensions:
                create_kwargs["dimensions"] = self._config.embedding_dimensions

            response = client.embeddings.create(**create_kwargs)

            # Items carry their input index; place each one explicitly
            for item in sorted(response.data, key=lambda x: x.index):
                all_embeddings[i + item.index] = item.embedding

        return all_embeddings

    def embed_query(self, text: str) -> list[float]:
        """Embed a single question string."""
        return self.embed_batch([text], batch_size=1)[0]
