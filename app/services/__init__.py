# =============================================================================
# Services Package — Infrastructure Behind the Agents
# =============================================================================
#   - llm.py: multi-provider LLM abstraction + ModelClient
#   - cache.py / store.py: cache-aside WorkflowStore over the repository
#   - parser.py: Docling / plain-text extraction
#   - chunker.py: token-based chunking (tiktoken)
#   - embedder.py: OpenAI embeddings
#   - vectorstore.py: scoped Chroma vector store
#   - indexing.py: chunk → embed → store
#   - retrieval.py: question answering over a workflow's chunks
#   - progress.py: best-effort progress fan-out for SSE
# =============================================================================
