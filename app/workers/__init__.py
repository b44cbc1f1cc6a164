# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery configuration + beat schedule
#   - tasks.py: retention sweep, knowledge document indexing
# =============================================================================
