# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - workflows.py: submit, inspect, steer and stream RFP workflows
#   - deps.py: application container + dependency accessors
# =============================================================================
