# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - records.py: detached values returned by WorkflowStore (cacheable)
#   - requests.py / responses.py: the public API contract
#
# These are separate from the ORM models in app/db/models.py so raw file
# paths and extracted text never leave the server.
# =============================================================================
