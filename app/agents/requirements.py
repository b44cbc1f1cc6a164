# =============================================================================
# Requirements Analysis Agent — Cross-Document Requirement Synthesis
# =============================================================================
#
# Input: the ingestion records of every successfully processed document.
# Output: one project-level analysis (overview, categorised requirements,
# timeline, budget, risks, evaluation criteria, recommendations) enriched
# with deterministic cross-document insights:
#
#   documentInsights.documentTypes      — count per ingested documentType
#   documentInsights.consistencyCheck   — deadlines (≤ 2 unique), budget
#                                         (≤ 1 mention), requirement overlap
#   documentInsights.completenessScore  — share of 6 expected sections found
#   requirements.*[].frequency/sources  — how many document items, and which
#                                         files, mention each requirement
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from app.agents.base import (
    AgentContext,
    AgentResult,
    BaseAgent,
    as_dict,
    dict_items,
    parse_json_object,
)

logger = logging.getLogger(__name__)

CATEGORIES = ("technical", "business", "compliance")

COMPLETENESS_SECTIONS = (
    "keyRequirements",
    "technicalSpecs",
    "businessRequirements",
    "deadlines",
    "evaluationCriteria",
    "budgetInfo",
)

_SECTION_MAIN_FIELDS = {
    "projectOverview": "description",
    "timeline": "projectDuration",
    "budget": "estimatedRange",
}

_COMBINED_SECTIONS = (
    ("keyRequirements", "Key Requirements"),
    ("technicalSpecs", "Technical Specifications"),
    ("businessRequirements", "Business Requirements"),
    ("deadlines", "Deadlines"),
    ("evaluationCriteria", "Evaluation Criteria"),
)


class RequirementsAnalysisAgent(BaseAgent):
    name = "RequirementsAnalysisAgent"
    system_prompt = """
You are a Requirements Analysis Agent specialized in analyzing RFP requirements and generating comprehensive overviews.

Your responsibilities:
1. Analyze all ingested RFP documents to identify key requirements
2. Categorize requirements by type and priority
3. Generate comprehensive project overview
4. Identify evaluation criteria and success metrics
5. Assess project complexity and risk factors

Analyze the provided RFP data and return a JSON response with this structure:
{
  "projectOverview": {
    "title": "project title",
    "description": "comprehensive project description",
    "scope": "project scope summary",
    "objectives": ["objective1", "objective2"]
  },
  "requirements": {
    "technical": [
      {"id": "tech_001", "description": "requirement description",
       "priority": "high|medium|low", "complexity": "high|medium|low",
       "category": "infrastructure|development|integration|security"}
    ],
    "business": [
      {"id": "bus_001", "description": "business requirement",
       "priority": "high|medium|low", "impact": "high|medium|low"}
    ],
    "compliance": [
      {"id": "comp_001", "description": "compliance requirement",
       "mandatory": true, "standard": "regulation or standard name"}
    ]
  },
  "timeline": {
    "projectDuration": "estimated duration",
    "keyMilestones": [
      {"name": "milestone name", "deadline": "date or timeframe",
       "deliverables": ["deliverable1", "deliverable2"]}
    ],
    "criticalPath": ["milestone1", "milestone2"]
  },
  "budget": {
    "estimatedRange": "budget range if mentioned",
    "costFactors": ["factor1", "factor2"],
    "budgetConstraints": "any budget limitations"
  },
  "riskAssessment": {
    "overallComplexity": "high|medium|low",
    "technicalRisks": ["risk1", "risk2"],
    "businessRisks": ["risk1", "risk2"],
    "mitigationStrategies": ["strategy1", "strategy2"]
  },
  "evaluationCriteria": [
    {"criterion": "evaluation criterion", "weight": "percentage or importance",
     "description": "what will be evaluated"}
  ],
  "recommendations": {
    "approachSuggestions": ["suggestion1", "suggestion2"],
    "focusAreas": ["area1", "area2"],
    "successFactors": ["factor1", "factor2"]
  },
  "confidence": 0.95
}
"""

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def analyze(self, documents: list[dict[str, Any]]) -> AgentResult:
        """Run the analysis over ingested document records and enhance it."""
        logger.info("Starting requirements analysis (documents=%d)", len(documents))

        result = await self.execute(
            self.combine_document_data(documents),
            {
                "documentCount": len(documents),
                "documentTypes": [d.get("documentType") for d in documents],
            },
        )
        self.enhance_analysis(result.data, documents)

        logger.info(
            "Requirements analysis completed (requirements=%d, complexity=%s)",
            count_requirements(result.data),
            as_dict(result.data.get("riskAssessment")).get("overallComplexity"),
        )
        return result

    def combine_document_data(self, documents: list[dict[str, Any]]) -> str:
        parts = ["=== RFP DOCUMENTS ANALYSIS ===\n\n"]
        for index, doc in enumerate(documents, start=1):
            parts.append(f"--- Document {index}: {doc.get('fileName')} ---\n")
            parts.append(f"Type: {doc.get('documentType')}\n")
            parts.append(f"Overview: {doc.get('overview')}\n\n")
            for key, heading in _COMBINED_SECTIONS:
                items = doc.get(key) or []
                if items:
                    parts.append(f"{heading}:\n")
                    parts.extend(f"- {item}\n" for item in items)
                    parts.append("\n")
            parts.append("---\n\n")
        return "".join(parts)

    def process_result(self, raw: str, context: AgentContext) -> AgentResult:
        try:
            data = parse_json_object(raw)
        except ValueError as e:
            logger.debug("Raw reply: %s", raw[:500])
            return self.fallback(_basic_structure(str(e)), str(e))

        normalize_analysis(data)
        return self.parsed(data, default_confidence=0.5)

    # -----------------------------------------------------------------------
    # Enhancement
    # -----------------------------------------------------------------------

    def enhance_analysis(
        self, analysis: dict[str, Any], documents: list[dict[str, Any]],
    ) -> dict[str, Any]:
        analysis["documentInsights"] = {
            "totalDocuments": len(documents),
            "documentTypes": categorize_documents(documents),
            "consistencyCheck": check_consistency(documents),
            "completenessScore": assess_completeness(documents),
        }

        requirements = as_dict(analysis.get("requirements"))
        for category in CATEGORIES:
            for requirement in dict_items(requirements.get(category)):
                description = str(requirement.get("description") or "")
                requirement["frequency"] = requirement_frequency(description, documents)
                requirement["sources"] = requirement_sources(description, documents)
        return analysis


# ---------------------------------------------------------------------------
# Insight Helpers
# ---------------------------------------------------------------------------


def categorize_documents(documents: list[dict[str, Any]]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for doc in documents:
        doc_type = doc.get("documentType") or "unknown"
        counts[doc_type] = counts.get(doc_type, 0) + 1
    return counts


def check_consistency(documents: list[dict[str, Any]]) -> dict[str, Any]:
    deadlines = [d for doc in documents for d in doc.get("deadlines") or []]
    budget_mentions = [doc.get("budgetInfo") for doc in documents if doc.get("budgetInfo")]
    key_requirements = [r for doc in documents for r in doc.get("keyRequirements") or []]

    overlap = (
        len(set(map(str, key_requirements))) / len(key_requirements)
        if key_requirements else 1
    )
    return {
        "deadlineConsistency": len(set(map(str, deadlines))) <= 2,
        "budgetConsistency": len(budget_mentions) <= 1,
        "requirementOverlap": overlap,
    }


def assess_completeness(documents: list[dict[str, Any]]) -> float:
    total = 0
    found = 0
    for doc in documents:
        for section in COMPLETENESS_SECTIONS:
            total += 1
            value = doc.get(section)
            if isinstance(value, list):
                found += bool(value)
            elif isinstance(value, str):
                found += bool(value.strip())
            elif value:
                found += 1
    return found / total if total else 0


def _document_items(doc: dict[str, Any]) -> list[str]:
    return [
        str(item).lower()
        for key in ("keyRequirements", "technicalSpecs", "businessRequirements")
        for item in doc.get(key) or []
    ]


def _mentions(needle: str, item: str) -> bool:
    return needle in item or item in needle


def requirement_frequency(description: str, documents: list[dict[str, Any]]) -> int:
    needle = description.lower()
    return sum(
        1 for doc in documents for item in _document_items(doc) if _mentions(needle, item)
    )


def requirement_sources(description: str, documents: list[dict[str, Any]]) -> list[str]:
    needle = description.lower()
    return [
        doc.get("fileName")
        for doc in documents
        if any(_mentions(needle, item) for item in _document_items(doc))
    ]


def normalize_analysis(data: dict[str, Any]) -> dict[str, Any]:
    """
    Coerce a parsed analysis into the shape downstream prompts read.

    Requirement items given as bare strings become {"description": s};
    other non-dict items are dropped. A string projectOverview, timeline or
    budget is kept under its main field; any other non-dict value is
    removed. Evaluation criteria and milestones get the same treatment.
    """
    requirements = data.get("requirements")
    if not isinstance(requirements, dict):
        requirements = data["requirements"] = {}
    for category in CATEGORIES:
        items = requirements.get(category)
        requirements[category] = _dict_entries(
            items if isinstance(items, list) else [], "description",
        )

    for key, main_field in _SECTION_MAIN_FIELDS.items():
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            data[key] = {main_field: value}
        elif key in data and not isinstance(value, dict):
            del data[key]

    timeline = data.get("timeline")
    if isinstance(timeline, dict) and "keyMilestones" in timeline:
        milestones = timeline["keyMilestones"]
        timeline["keyMilestones"] = _dict_entries(
            milestones if isinstance(milestones, list) else [], "name",
        )

    criteria = data.get("evaluationCriteria")
    if criteria is not None:
        data["evaluationCriteria"] = _dict_entries(
            criteria if isinstance(criteria, list) else [criteria], "criterion",
        )
    return data


def _dict_entries(items: list, text_field: str) -> list[dict[str, Any]]:
    entries = []
    for item in items:
        if isinstance(item, dict):
            entries.append(item)
        elif isinstance(item, str) and item.strip():
            entries.append({text_field: item})
    return entries


def count_requirements(analysis: dict[str, Any]) -> int:
    requirements = as_dict(analysis.get("requirements"))
    return sum(len(dict_items(requirements.get(c))) for c in CATEGORIES)


def _basic_structure(error: str) -> dict[str, Any]:
    return {
        "projectOverview": {
            "title": "Unable to parse project title",
            "description": "Requirements analysis parsing failed",
            "scope": "Unknown scope",
            "objectives": [],
        },
        "requirements": {category: [] for category in CATEGORIES},
        "timeline": {
            "projectDuration": "Not specified",
            "keyMilestones": [],
            "criticalDeadlines": [],
        },
        "budget": {
            "estimatedRange": "Not specified",
            "budgetConstraints": [],
            "costFactors": [],
        },
        "evaluationCriteria": [],
        "riskAssessment": {
            "identifiedRisks": ["Requirements parsing failed"],
            "riskMitigation": [],
        },
        "confidence": 0.1,
        "error": error,
    }
