# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine factory, sync engine for Celery, ORM models and the
# WorkflowRepository (all SQL access for workflows and their artefacts).
# =============================================================================
