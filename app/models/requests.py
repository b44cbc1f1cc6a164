# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# JSON bodies accepted by the workflow endpoints. Workflow submission itself
# is multipart (files + a project_context form field) and is parsed in the
# route; ProjectContext validates that field once decoded.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

StepName = Literal[
    "document_ingestion",
    "requirements_analysis",
    "clarification_questions",
    "answer_extraction",
    "response_compilation",
]


class ProjectContext(BaseModel):
    """
    Free-form project metadata passed through to response compilation.

    Only title, client and deadline are read by the pipeline; anything else
    is stored with the workflow unchanged.

    Example:
        {"title": "Data Platform Modernisation", "client": "City of Example",
         "deadline": "2026-12-01"}
    """

    title: str | None = Field(default=None, max_length=500)
    client: str | None = Field(default=None, max_length=500)
    deadline: str | None = None

    model_config = ConfigDict(extra="allow")


class RetryRequest(BaseModel):
    """Body for POST /workflows/{id}/retry. Omit from_step to rerun everything."""

    from_step: StepName | None = Field(
        default=None,
        description="Step to resume from; earlier steps are restored from stored results",
    )
