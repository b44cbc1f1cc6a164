# =============================================================================
# Document Ingestion Agent — Per-Document Structured Extraction
# =============================================================================
#
# Runs once per uploaded document. Text extraction (Docling / plain read)
# happens before this agent; the agent turns the extracted text into the
# structured record the rest of the pipeline consumes:
#
#   documentType, title, overview, keyRequirements, questions, deadlines,
#   technicalSpecs, businessRequirements, complianceRequirements, budgetInfo,
#   contactInfo, submissionRequirements, evaluationCriteria, confidence
#
# When the reply has no parseable JSON, a regex pass over the reply text
# recovers what it can (confidence 0.5, fallbackExtraction=True).
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from app.agents.base import (
    AgentContext,
    AgentResult,
    BaseAgent,
    InvalidInputError,
    ensure_list,
    parse_json_object,
)

logger = logging.getLogger(__name__)

LIST_FIELDS = (
    "keyRequirements",
    "questions",
    "deadlines",
    "technicalSpecs",
    "businessRequirements",
    "complianceRequirements",
    "submissionRequirements",
    "evaluationCriteria",
)
REQUIRED_FIELDS = ("documentType", "overview", "confidence")

RFP_NAME_HINTS = ("rfp", "request", "proposal")

_PATTERNS = {
    "keyRequirements": re.compile(r"requirements?[:\s]([^\n]+)", re.IGNORECASE),
    "questions": re.compile(r"questions?[:\s]([^\n]+)", re.IGNORECASE),
    "deadlines": re.compile(r"deadlines?[:\s]([^\n]+)", re.IGNORECASE),
    "budgetInfo": re.compile(r"budget[:\s]([^\n]+)", re.IGNORECASE),
    "contactInfo": re.compile(r"contact[:\s]([^\n]+)", re.IGNORECASE),
}


@dataclass
class DocumentSetValidation:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class DocumentIngestionAgent(BaseAgent):
    name = "DocumentIngestionAgent"
    system_prompt = """
You are a Document Ingestion Agent specialized in analyzing RFP (Request for Proposal) documents.

Your responsibilities:
1. Extract and identify RFP requirements, questions, and specifications
2. Categorize content by type (technical, business, compliance, timeline, budget)
3. Identify key sections and structure
4. Flag important deadlines and submission requirements
5. Extract contact information and submission details

Return your analysis in the following JSON format:
{
  "documentType": "rfp|supporting|other",
  "title": "extracted document title",
  "overview": "brief summary of the document",
  "keyRequirements": ["requirement1", "requirement2"],
  "questions": ["question1", "question2"],
  "deadlines": ["deadline1", "deadline2"],
  "technicalSpecs": ["spec1", "spec2"],
  "businessRequirements": ["req1", "req2"],
  "complianceRequirements": ["comp1", "comp2"],
  "budgetInfo": "budget information if found",
  "contactInfo": "contact details",
  "submissionRequirements": ["req1", "req2"],
  "evaluationCriteria": ["criteria1", "criteria2"],
  "confidence": 0.95
}
"""

    def process_result(self, raw: str, context: AgentContext) -> AgentResult:
        try:
            data = parse_json_object(raw)
        except ValueError as e:
            logger.warning("Could not parse ingestion reply: %s", e)
            logger.debug("Raw reply: %s", raw[:500])
            return self.fallback(self.extract_basic_info(raw, context), str(e))

        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            logger.warning("Ingestion reply missing fields: %s", ", ".join(missing))

        for name in LIST_FIELDS:
            ensure_list(data, name)

        return self.parsed(data, default_confidence=0.5)

    def extract_basic_info(self, text: str, context: AgentContext) -> dict[str, Any]:
        """Regex recovery used when the reply carries no JSON."""
        lines = [line for line in text.split("\n") if line.strip()]
        metadata = context.get("metadata") or {}

        return {
            "documentType": "unknown",
            "title": metadata.get("fileName") or "Unknown Document",
            "overview": " ".join(lines[:3]),
            "keyRequirements": _matches(text, "keyRequirements"),
            "questions": _matches(text, "questions"),
            "deadlines": _matches(text, "deadlines"),
            "technicalSpecs": [],
            "businessRequirements": [],
            "complianceRequirements": [],
            "budgetInfo": next(iter(_matches(text, "budgetInfo")), ""),
            "contactInfo": next(iter(_matches(text, "contactInfo")), ""),
            "submissionRequirements": [],
            "evaluationCriteria": [],
            "confidence": 0.5,
        }

    @staticmethod
    def validate_document_set(
        documents: list[Any], large_file_bytes: int = 10 * 1024 * 1024,
    ) -> DocumentSetValidation:
        """
        Check an upload set before a workflow is created.

        Each document needs `original_name` and `file_size` attributes.

        Raises:
            InvalidInputError: If the set is empty.
        """
        if not documents:
            raise InvalidInputError("No documents provided")

        validation = DocumentSetValidation()

        if not any(
            hint in doc.original_name.lower()
            for doc in documents
            for hint in RFP_NAME_HINTS
        ):
            validation.warnings.append("No obvious RFP document detected in file names")

        large = [doc.original_name for doc in documents if (doc.file_size or 0) > large_file_bytes]
        if large:
            validation.warnings.append(f"Large documents detected: {', '.join(large)}")

        for warning in validation.warnings:
            logger.warning("Document set: %s", warning)
        return validation


def _matches(text: str, key: str) -> list[str]:
    return [m.strip() for m in _PATTERNS[key].findall(text) if m.strip()]
