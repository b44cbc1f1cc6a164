# =============================================================================
# Agents Package — RFP Pipeline Agents and Orchestration
# =============================================================================
#   - base.py: execution contract (prompt → invoke with retry → parse or
#     fall back), shared JSON helpers
#   - ingestion.py, requirements.py, clarification.py,
#     answer_extraction.py, compilation.py: the five pipeline agents
#   - truncation.py: question-aware content truncation
#   - orchestrator.py: LangGraph workflow graph + lifecycle operations
# =============================================================================
