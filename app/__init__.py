# =============================================================================
# RFP Response Agent
# =============================================================================
# A five-stage agent pipeline that turns RFP documents and company knowledge
# into requirements, clarification questions, sourced answers and a proposal
# draft: ingestion → requirements → questions → answers → compilation.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI routes (workflows, SSE progress) + container
#   ├── agents/       → agent contract, the five agents, LangGraph orchestrator
#   ├── db/           → async/sync engines, ORM models, WorkflowRepository
#   ├── models/       → Pydantic records (store) and API schemas
#   ├── services/     → LLM client, cache/store, parsing, chunking, embedding,
#   │                    vector store, retrieval, progress channel
#   └── workers/      → Celery retention sweep and knowledge indexing
# =============================================================================
