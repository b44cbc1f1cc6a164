# =============================================================================
# Clarification Questions Agent — Gaps and Ambiguities to Raise with the Issuer
# =============================================================================
#
# Input: the requirements analysis, rendered as a plain-text brief that also
# lists missing information (no budget range, no duration, no technical
# requirements, no evaluation criteria) and requirements phrased vaguely.
#
# Output: questionCategories.{technical,business,timeline,budget,compliance}
# plus deterministic enhancements:
#
#   questionSummary     — recounted from questionCategories (model totals
#                         are not trusted)
#   crossReferences     — per question: category, related requirements,
#                         impacted project areas by keyword
#   questionMetrics     — category and priority distributions
#   recommendedOrder    — priority + category weights, +5 for "critical"
#   qualityAssessment   — coverage of the five areas, strengths, gaps
#
# Model replies here are often almost-JSON, so a failed strict parse is
# retried after a cleanup pass (trailing commas, bare keys, control chars).
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from typing import Any

from app.agents.base import (
    AgentContext,
    AgentResult,
    BaseAgent,
    as_dict,
    dict_items,
    extract_json_block,
)

logger = logging.getLogger(__name__)

STANDARD_CATEGORIES = ("technical", "business", "timeline", "budget", "compliance")
REQUIREMENT_CATEGORIES = ("technical", "business", "compliance")

VAGUE_PHRASES = ("as needed", "appropriate", "suitable", "adequate", "reasonable")

PRIORITY_WEIGHTS = {"high": 10, "medium": 5, "low": 1}
CATEGORY_WEIGHTS = {
    "business": 8,
    "technical": 7,
    "timeline": 6,
    "budget": 5,
    "compliance": 4,
}

IMPACT_KEYWORDS = (
    ("timeline", ("timeline", "schedule")),
    ("budget", ("budget", "cost")),
    ("technical", ("technical", "technology")),
    ("compliance", ("compliance", "regulation")),
    ("business", ("business", "process")),
)

_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BARE_KEY = re.compile(r"([{,]\s*)([a-zA-Z_][a-zA-Z0-9_]*)\s*:")
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")


class ClarificationQuestionsAgent(BaseAgent):
    name = "ClarificationQuestionsAgent"
    system_prompt = """
You are a Clarification Questions Agent specialized in identifying gaps and ambiguities in RFP requirements.

Your responsibilities:
1. Identify ambiguous, incomplete, or unclear requirements
2. Generate intelligent clarification questions
3. Prioritize questions by impact on proposal quality
4. Categorize questions by domain area
5. Suggest follow-up questions based on typical RFP patterns

Analyze the provided requirements analysis and generate clarification questions in this JSON format:
{
  "questionCategories": {
    "technical": [
      {"id": "tech_q_001", "question": "specific technical question",
       "rationale": "why this question is important", "priority": "high|medium|low",
       "impact": "description of impact if not clarified",
       "relatedRequirements": ["req_id_1", "req_id_2"],
       "suggestedFollowups": ["follow-up question 1"]}
    ],
    "business": [
      {"id": "bus_q_001", "question": "business process question",
       "rationale": "reasoning for the question", "priority": "high|medium|low",
       "impact": "business impact description", "relatedRequirements": ["req_id_1"]}
    ],
    "timeline": [
      {"id": "time_q_001", "question": "timeline or milestone question",
       "rationale": "why timeline clarity is needed", "priority": "high|medium|low",
       "impact": "scheduling impact", "relatedRequirements": ["req_id_1"]}
    ],
    "budget": [
      {"id": "budget_q_001", "question": "budget or resource question",
       "rationale": "financial clarity needed", "priority": "high|medium|low",
       "impact": "cost impact description"}
    ],
    "compliance": [
      {"id": "comp_q_001", "question": "compliance or regulatory question",
       "rationale": "compliance clarity needed", "priority": "high|medium|low",
       "impact": "regulatory risk description", "regulations": ["regulation name"]}
    ]
  },
  "prioritizedQuestions": [
    {"questionId": "tech_q_001", "category": "technical",
     "overallPriority": 1, "criticalityScore": 0.95}
  ],
  "gapAnalysis": {
    "majorGaps": ["gap description 1"],
    "assumptionsMade": ["assumption 1"],
    "riskAreas": ["risk area 1"],
    "recommendedActions": ["action 1"]
  },
  "questionSummary": {
    "totalQuestions": 15, "highPriority": 5, "mediumPriority": 7, "lowPriority": 3,
    "categoryCounts": {"technical": 6, "business": 4, "timeline": 2, "budget": 2, "compliance": 1}
  },
  "confidence": 0.90
}
"""

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def generate_questions(
        self, analysis: dict[str, Any], documents: list[dict[str, Any]],
    ) -> AgentResult:
        logger.info(
            "Generating clarification questions (requirements=%d)",
            _count_all_requirements(analysis),
        )
        result = await self.execute(
            self.prepare_analysis_input(analysis),
            {"analysisType": "clarification_questions", "documentCount": len(documents)},
        )
        self.enhance_questions(result.data)

        summary = result.data["questionSummary"]
        logger.info(
            "Clarification questions generated (total=%d, high=%d, fallback=%s)",
            summary["totalQuestions"], summary["highPriority"], result.fallback,
        )
        return result

    def prepare_analysis_input(self, analysis: dict[str, Any]) -> str:
        parts = ["=== REQUIREMENTS ANALYSIS FOR CLARIFICATION ===\n\n"]

        overview = as_dict(analysis.get("projectOverview"))
        if overview:
            parts.append("PROJECT OVERVIEW:\n")
            parts.append(f"Title: {overview.get('title') or 'Not specified'}\n")
            parts.append(f"Description: {overview.get('description') or 'Not provided'}\n")
            parts.append(f"Scope: {overview.get('scope') or 'Unclear'}\n\n")

        requirements = as_dict(analysis.get("requirements"))
        for category in REQUIREMENT_CATEGORIES:
            reqs = dict_items(requirements.get(category))
            if not reqs:
                continue
            parts.append(f"{category.upper()} REQUIREMENTS:\n")
            for index, req in enumerate(reqs):
                parts.append(
                    f"{index + 1}. [{req.get('id') or f'ID_{index}'}] {req.get('description')}\n"
                )
                parts.append(f"   Priority: {req.get('priority') or 'Not specified'}\n")
                if req.get("complexity"):
                    parts.append(f"   Complexity: {req['complexity']}\n")
                if "mandatory" in req:
                    parts.append(f"   Mandatory: {json.dumps(req['mandatory'])}\n")
                parts.append("\n")

        timeline = as_dict(analysis.get("timeline"))
        if timeline:
            parts.append("TIMELINE INFORMATION:\n")
            parts.append(f"Duration: {timeline.get('projectDuration') or 'Not specified'}\n")
            milestones = dict_items(timeline.get("keyMilestones"))
            if milestones:
                parts.append("Key Milestones:\n")
                for milestone in milestones:
                    parts.append(
                        f"- {milestone.get('name')}: "
                        f"{milestone.get('deadline') or 'No deadline specified'}\n"
                    )
            parts.append("\n")

        budget = as_dict(analysis.get("budget"))
        if budget:
            parts.append("BUDGET INFORMATION:\n")
            parts.append(f"Range: {budget.get('estimatedRange') or 'Not provided'}\n")
            parts.append(f"Constraints: {budget.get('budgetConstraints') or 'None specified'}\n\n")

        criteria = dict_items(analysis.get("evaluationCriteria"))
        if criteria:
            parts.append("EVALUATION CRITERIA:\n")
            for criterion in criteria:
                parts.append(
                    f"- {criterion.get('criterion')}: "
                    f"{criterion.get('weight') or 'Weight not specified'}\n"
                )
            parts.append("\n")

        insights = as_dict(analysis.get("documentInsights"))
        if insights:
            parts.append("DOCUMENT COMPLETENESS:\n")
            parts.append(f"Completeness Score: {insights.get('completenessScore') or 'Unknown'}\n")
            parts.append(f"Document Types: {json.dumps(insights.get('documentTypes'))}\n\n")

        parts.append("POTENTIAL AREAS NEEDING CLARIFICATION:\n")
        parts.append(identify_unclear_areas(analysis))
        return "".join(parts)

    def process_result(self, raw: str, context: AgentContext) -> AgentResult:
        try:
            data = _parse_lenient(raw)
        except ValueError as e:
            logger.debug("Raw reply: %s", raw[:500])
            return self.fallback(_questions_from_text(raw, str(e)), str(e))

        categories = data.get("questionCategories")
        if not isinstance(categories, dict):
            categories = data["questionCategories"] = {}
        data["questionSummary"] = summarize_questions(categories)
        return self.parsed(data, default_confidence=0.5)

    # -----------------------------------------------------------------------
    # Enhancement
    # -----------------------------------------------------------------------

    def enhance_questions(self, questions: dict[str, Any]) -> dict[str, Any]:
        categories = _category_lists(questions)
        questions["crossReferences"] = build_cross_references(categories)
        questions["questionMetrics"] = question_metrics(categories)
        questions["recommendedOrder"] = recommended_order(categories)
        questions["qualityAssessment"] = assess_quality(
            categories, questions.get("questionSummary") or {},
        )
        return questions


# ---------------------------------------------------------------------------
# Input Helpers
# ---------------------------------------------------------------------------


def identify_unclear_areas(analysis: dict[str, Any]) -> str:
    missing: list[str] = []
    if not as_dict(analysis.get("budget")).get("estimatedRange"):
        missing.append("Budget range not specified")
    if not as_dict(analysis.get("timeline")).get("projectDuration"):
        missing.append("Project duration unclear")
    requirements = as_dict(analysis.get("requirements"))
    if not requirements.get("technical"):
        missing.append("Technical requirements not detailed")
    if not analysis.get("evaluationCriteria"):
        missing.append("Evaluation criteria not provided")

    vague: list[str] = []
    for category in REQUIREMENT_CATEGORIES:
        for req in dict_items(requirements.get(category)):
            description = str(req.get("description") or "")
            if any(phrase in description.lower() for phrase in VAGUE_PHRASES):
                vague.append(f"{category}: {description}")

    text = ""
    if missing:
        text += "Missing Information:\n" + "".join(f"- {m}\n" for m in missing) + "\n"
    if vague:
        text += "Vague Requirements:\n" + "".join(f"- {v}\n" for v in vague) + "\n"
    return text


# ---------------------------------------------------------------------------
# Parsing Helpers
# ---------------------------------------------------------------------------


def clean_json_string(text: str) -> str:
    """Repair the JSON defects models commonly produce."""
    text = _TRAILING_COMMA.sub(r"\1", text)
    text = _BARE_KEY.sub(r'\1"\2":', text)
    text = _CONTROL_CHARS.sub("", text)
    text = text.strip()
    if not text.startswith("{"):
        brace = text.find("{")
        if brace != -1:
            text = text[brace:]
    return text


def _parse_lenient(raw: str) -> dict[str, Any]:
    block = extract_json_block(raw)
    if block is None:
        # A truncated reply has no balanced object; cleanup may still trim it
        block = raw
    try:
        data = json.loads(block)
    except ValueError:
        data = json.loads(clean_json_string(block))
    if not isinstance(data, dict):
        raise ValueError("embedded JSON is not an object")
    return data


def _questions_from_text(raw: str, error: str) -> dict[str, Any]:
    general = [
        {
            "id": f"gen_q_{index:03d}",
            "question": line,
            "rationale": "Recovered from unstructured model output",
            "priority": "medium",
            "impact": "",
            "relatedRequirements": [],
        }
        for index, line in enumerate(
            (ln.strip().lstrip("-*0123456789.) ").strip() for ln in raw.splitlines()),
            start=1,
        )
        if line.endswith("?") and len(line) > 1
    ]
    categories: dict[str, list] = {category: [] for category in STANDARD_CATEGORIES}
    if general:
        categories["general"] = general

    return {
        "questionCategories": categories,
        "prioritizedQuestions": [],
        "gapAnalysis": {
            "majorGaps": ["Unable to parse AI response"],
            "assumptionsMade": [],
            "riskAreas": ["Response parsing failed"],
            "recommendedActions": ["Review AI model output format"],
        },
        "questionSummary": summarize_questions(categories),
        "confidence": 0.1,
        "error": error,
    }


# ---------------------------------------------------------------------------
# Summary & Enhancement Helpers
# ---------------------------------------------------------------------------


def _category_lists(questions: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    return {
        category: [q for q in items if isinstance(q, dict)]
        for category, items in (questions.get("questionCategories") or {}).items()
        if isinstance(items, list)
    }


def summarize_questions(categories: dict[str, Any]) -> dict[str, Any]:
    summary = {
        "totalQuestions": 0,
        "highPriority": 0,
        "mediumPriority": 0,
        "lowPriority": 0,
        "categoryCounts": {},
    }
    for category, items in categories.items():
        if not isinstance(items, list):
            continue
        summary["categoryCounts"][category] = len(items)
        summary["totalQuestions"] += len(items)
        for question in items:
            priority = question.get("priority") if isinstance(question, dict) else None
            if priority in ("high", "medium", "low"):
                summary[f"{priority}Priority"] += 1
    return summary


def flatten_questions(questions: dict[str, Any]) -> list[dict[str, Any]]:
    """
    One dict per question with its category attached, in category order.

    Questions without an id get `{category}_q_{n:03d}`; priority defaults
    to medium.
    """
    flat: list[dict[str, Any]] = []
    for category, items in _category_lists(questions).items():
        for index, question in enumerate(items, start=1):
            flat.append({
                **question,
                "id": question.get("id") or f"{category}_q_{index:03d}",
                "question": str(question.get("question") or question.get("questionText") or ""),
                "category": category,
                "priority": question.get("priority") or "medium",
                "relatedRequirements": question.get("relatedRequirements") or [],
            })
    return flat


def impacted_areas(question_text: str) -> list[str]:
    text = question_text.lower()
    return [
        area for area, keywords in IMPACT_KEYWORDS
        if any(keyword in text for keyword in keywords)
    ]


def build_cross_references(categories: dict[str, list[dict[str, Any]]]) -> dict[str, Any]:
    return {
        question.get("id"): {
            "category": category,
            "relatedRequirements": question.get("relatedRequirements") or [],
            "impactedAreas": impacted_areas(str(question.get("question") or "")),
        }
        for category, items in categories.items()
        for question in items
    }


def question_metrics(categories: dict[str, list[dict[str, Any]]]) -> dict[str, Any]:
    metrics: dict[str, Any] = {
        "totalQuestions": 0,
        "avgPriorityScore": 0,
        "categoryDistribution": {},
        "priorityDistribution": {"high": 0, "medium": 0, "low": 0},
    }
    scores: list[int] = []
    for category, items in categories.items():
        metrics["categoryDistribution"][category] = len(items)
        metrics["totalQuestions"] += len(items)
        for question in items:
            priority = question.get("priority")
            distribution = metrics["priorityDistribution"]
            distribution[priority] = distribution.get(priority, 0) + 1
            scores.append(PRIORITY_WEIGHTS.get(priority, 0))
    if scores:
        metrics["avgPriorityScore"] = sum(scores) / len(scores)
    return metrics


def order_score(question: dict[str, Any], category: str) -> int:
    score = PRIORITY_WEIGHTS.get(question.get("priority"), 0)
    score += CATEGORY_WEIGHTS.get(category, 0)
    if "critical" in str(question.get("impact") or "").lower():
        score += 5
    return score


def recommended_order(categories: dict[str, list[dict[str, Any]]]) -> list[dict[str, Any]]:
    scored = [
        (order_score(question, category), question.get("id"), category)
        for category, items in categories.items()
        for question in items
    ]
    # Stable sort keeps the reply's order among equal scores
    scored.sort(key=lambda item: item[0], reverse=True)
    return [
        {
            "questionId": question_id,
            "category": category,
            "suggestedOrder": position,
            "orderScore": score,
        }
        for position, (score, question_id, category) in enumerate(scored, start=1)
    ]


def assess_quality(
    categories: dict[str, list[dict[str, Any]]], summary: dict[str, Any],
) -> dict[str, Any]:
    assessment: dict[str, Any] = {
        "overallQuality": "good",
        "strengths": [],
        "improvements": [],
        "coverage": {},
    }
    for area in STANDARD_CATEGORIES:
        covered = bool(categories.get(area))
        assessment["coverage"][area] = covered
        if not covered:
            assessment["improvements"].append(f"Consider adding {area} questions")

    high = summary.get("highPriority") or 0
    if high > 0:
        assessment["strengths"].append(f"{high} high-priority questions identified")

    total = summary.get("totalQuestions") or 0
    if total > 10:
        assessment["strengths"].append("Comprehensive question coverage")
    elif total < 5:
        assessment["improvements"].append("Consider generating more detailed questions")
    return assessment


def _count_all_requirements(analysis: dict[str, Any]) -> int:
    requirements = as_dict(analysis.get("requirements"))
    return sum(len(v) for v in requirements.values() if isinstance(v, list))
