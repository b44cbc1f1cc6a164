# =============================================================================
# Response Compilation Agent — Proposal Draft from Analysis + Answers
# =============================================================================
#
# Last pipeline stage. Input brings together the project context, the
# requirements analysis, answered and unanswered questions, a sample of
# high-priority clarification questions, and the evaluation criteria.
#
# Output: executiveSummary, proposalStructure.sections, questionResponses,
# gapsAndActions, qualityAssurance, nextSteps, appendices; plus the
# deterministic checks below.
#
#   crossValidation       — compiled vs extracted answers: confidence drift
#                           > 0.3 (medium), no shared source (low)
#   completenessAnalysis  — per section 0.5 for content + 0.5 complete /
#                           0.25 partial; critical sections must exist
#   consistencyCheck      — spelling variants of common proposal terms
#   improvementSuggestions, sectionMetrics, timelineAnalysis
#
# An unparseable reply becomes a draft whose executive summary is the raw
# text (confidence 0.3), so the workflow still finishes with something the
# bid team can edit.
# =============================================================================

from __future__ import annotations

import logging
import re
from typing import Any

from app.agents.base import (
    AgentContext,
    AgentResult,
    BaseAgent,
    as_dict,
    dict_items,
    ensure_list,
    parse_json_object,
)
from app.agents.requirements import CATEGORIES, count_requirements

logger = logging.getLogger(__name__)

CRITICAL_SECTIONS = ("exec_summary", "technical_approach", "project_timeline", "budget")
CONSISTENCY_TERMS = ("project", "solution", "implementation", "delivery")
CONFIDENCE_DRIFT = 0.3
LOW_RESPONSE_CONFIDENCE = 0.6

_WORD = re.compile(r"\b\w+\b")


class ResponseCompilationAgent(BaseAgent):
    name = "ResponseCompilationAgent"
    system_prompt = """
You are a Response Compilation Agent specialized in organizing and structuring RFP responses into a comprehensive proposal format.

Your responsibilities:
1. Match RFP questions with extracted answers
2. Organize responses in a structured, professional format
3. Include source references and confidence indicators
4. Highlight gaps requiring manual input
5. Generate executive summary and proposal outline
6. Ensure consistency and flow across all sections

Compile the provided information into a structured RFP response in this JSON format:
{
  "executiveSummary": {
    "projectTitle": "RFP project title",
    "companyResponse": "our understanding and approach summary",
    "keyStrengths": ["strength 1", "strength 2"],
    "valueProposition": "what we bring to this project",
    "confidenceLevel": "high|medium|low",
    "overallReadiness": 0.85
  },
  "proposalStructure": {
    "sections": [
      {"sectionId": "exec_summary", "title": "Executive Summary", "order": 1,
       "status": "complete|partial|needs_input", "content": "section content", "subsections": []},
      {"sectionId": "technical_approach", "title": "Technical Approach", "order": 2,
       "status": "complete", "content": "technical approach content",
       "subsections": [{"title": "Architecture Overview", "content": "architecture details",
                        "sources": ["doc1.pdf", "doc2.docx"]}]}
    ]
  },
  "questionResponses": [
    {"questionId": "tech_001", "originalQuestion": "question text",
     "response": "our detailed response", "confidence": 0.90,
     "status": "answered|partial|needs_review",
     "sources": [{"document": "source document", "section": "relevant section", "relevance": 0.95}],
     "reviewNotes": "any notes for review"}
  ],
  "gapsAndActions": {
    "criticalGaps": [
      {"area": "gap area", "description": "what's missing", "impact": "high|medium|low",
       "recommendedAction": "what to do", "assignedTo": "SME area", "priority": 1}
    ],
    "reviewItems": [{"item": "item needing review", "reason": "why it needs review", "section": "which section"}],
    "additionalResearch": [{"topic": "research topic", "purpose": "why needed", "urgency": "high|medium|low"}]
  },
  "qualityAssurance": {
    "completenessScore": 0.78,
    "consistencyCheck": "passed|failed|warnings",
    "sourceValidation": "all sources verified",
    "recommendedReviews": ["technical review", "business review"],
    "estimatedEffort": "hours needed for completion"
  },
  "nextSteps": {
    "immediateActions": ["action 1", "action 2"],
    "reviewSchedule": "suggested review timeline",
    "deliverableTimeline": "when sections will be ready",
    "riskMitigation": ["risk mitigation step 1"]
  },
  "appendices": {
    "sourceDocuments": ["list of all source documents"],
    "assumptions": ["assumption 1", "assumption 2"],
    "definitions": {"term": "definition"},
    "contactReferences": ["contact info for follow-up"]
  },
  "confidence": 0.88
}
"""

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def compile_response(
        self,
        analysis: dict[str, Any],
        questions: dict[str, Any],
        answers: dict[str, Any],
        project_context: dict[str, Any] | None,
    ) -> AgentResult:
        logger.info(
            "Starting response compilation (requirements=%d, questions=%d, answers=%d)",
            count_requirements(analysis),
            as_dict(questions.get("questionSummary")).get("totalQuestions", 0),
            len(dict_items(answers.get("answeredQuestions"))),
        )

        result = await self.execute(
            self.prepare_compilation_input(analysis, questions, answers, project_context),
            {"compilationType": "rfp_response", "projectContext": project_context or {}},
        )
        self.enhance_response(result.data, analysis, answers)

        logger.info(
            "Response compilation completed (completeness=%.2f, critical_gaps=%d, fallback=%s)",
            result.data["completenessAnalysis"]["overallCompleteness"],
            len((result.data.get("gapsAndActions") or {}).get("criticalGaps") or []),
            result.fallback,
        )
        return result

    def prepare_compilation_input(
        self,
        analysis: dict[str, Any],
        questions: dict[str, Any],
        answers: dict[str, Any],
        project_context: dict[str, Any] | None,
    ) -> str:
        parts = ["=== RFP RESPONSE COMPILATION ===\n\n"]

        if project_context:
            parts.append("PROJECT CONTEXT:\n")
            parts.append(f"RFP Title: {project_context.get('title') or 'Not specified'}\n")
            parts.append(f"Client: {project_context.get('client') or 'Not specified'}\n")
            parts.append(f"Deadline: {project_context.get('deadline') or 'Not specified'}\n\n")

        overview = as_dict(analysis.get("projectOverview"))
        if overview:
            parts.append("PROJECT OVERVIEW:\n")
            parts.append(f"Title: {overview.get('title')}\n")
            parts.append(f"Description: {overview.get('description')}\n")
            parts.append(f"Scope: {overview.get('scope')}\n")
            objectives = overview.get("objectives") or []
            if not isinstance(objectives, list):
                objectives = [objectives]
            if objectives:
                parts.append("Objectives:\n")
                parts.extend(f"- {objective}\n" for objective in objectives)
            parts.append("\n")

        requirements = as_dict(analysis.get("requirements"))
        if requirements:
            parts.append("KEY REQUIREMENTS:\n")
            for category in CATEGORIES:
                reqs = dict_items(requirements.get(category))
                if reqs:
                    parts.append(f"\n{category.upper()} REQUIREMENTS:\n")
                    parts.extend(
                        f"- [{req.get('id')}] {req.get('description')} "
                        f"(Priority: {req.get('priority')})\n"
                        for req in reqs
                    )
            parts.append("\n")

        timeline = as_dict(analysis.get("timeline"))
        if timeline:
            parts.append("TIMELINE:\n")
            parts.append(f"Duration: {timeline.get('projectDuration')}\n")
            milestones = dict_items(timeline.get("keyMilestones"))
            if milestones:
                parts.append("Key Milestones:\n")
                parts.extend(f"- {m.get('name')}: {m.get('deadline')}\n" for m in milestones)
            parts.append("\n")

        budget = as_dict(analysis.get("budget"))
        if budget:
            parts.append("BUDGET INFORMATION:\n")
            parts.append(f"Range: {budget.get('estimatedRange') or 'Not specified'}\n")
            parts.append(f"Constraints: {budget.get('budgetConstraints') or 'None specified'}\n\n")

        answered = dict_items(answers.get("answeredQuestions"))
        if answered:
            parts.append("ANSWERED QUESTIONS:\n")
            for answer in answered:
                sources = ", ".join(
                    str(s.get("documentName")) for s in dict_items(answer.get("sources"))
                ) or "None"
                parts.append(f"\nQ: {answer.get('question')}\n")
                parts.append(f"A: {answer.get('answer')}\n")
                parts.append(f"Confidence: {answer.get('confidence')}\n")
                parts.append(f"Sources: {sources}\n")
            parts.append("\n")

        unanswered = dict_items(answers.get("unansweredQuestions"))
        if unanswered:
            parts.append("UNANSWERED QUESTIONS (GAPS):\n")
            for gap in unanswered:
                parts.append(f"- [{gap.get('questionId')}] {gap.get('question')}\n")
                parts.append(f"  Reason: {gap.get('reason')}\n")
                parts.append(f"  Priority: {gap.get('priority')}\n")
            parts.append("\n")

        summary = as_dict(questions.get("questionSummary"))
        if summary.get("totalQuestions"):
            parts.append("CLARIFICATION QUESTIONS TO ADDRESS:\n")
            parts.append(f"Total: {summary['totalQuestions']}\n")
            parts.append(f"High Priority: {summary.get('highPriority', 0)}\n")
            sample = high_priority_questions(questions, limit=3)
            if sample:
                parts.append("Sample High Priority Questions:\n")
                parts.extend(f"- {q.get('question')}\n" for q in sample)
            parts.append("\n")

        criteria = analysis.get("evaluationCriteria") or []
        if not isinstance(criteria, list):
            criteria = [criteria]
        if criteria:
            parts.append("EVALUATION CRITERIA:\n")
            for criterion in criteria:
                if not isinstance(criterion, dict):
                    parts.append(f"- {criterion}\n")
                    continue
                parts.append(
                    f"- {criterion.get('criterion')}: "
                    f"{criterion.get('weight') or 'Weight not specified'}\n"
                )
                if criterion.get("description"):
                    parts.append(f"  {criterion['description']}\n")
            parts.append("\n")

        return "".join(parts)

    def process_result(self, raw: str, context: AgentContext) -> AgentResult:
        try:
            data = parse_json_object(raw)
        except ValueError as e:
            logger.debug("Raw reply: %s", raw[:500])
            return self.fallback(_draft_from_text(raw, context, str(e)), str(e))

        structure = data.get("proposalStructure")
        if not isinstance(structure, dict):
            structure = data["proposalStructure"] = {}
        ensure_list(structure, "sections")
        ensure_list(data, "questionResponses")
        if not isinstance(data.get("executiveSummary"), dict):
            logger.warning("Compilation reply missing executiveSummary")
        return self.parsed(data, default_confidence=0.5)

    # -----------------------------------------------------------------------
    # Enhancement
    # -----------------------------------------------------------------------

    def enhance_response(
        self,
        response: dict[str, Any],
        analysis: dict[str, Any],
        answers: dict[str, Any],
    ) -> dict[str, Any]:
        response["crossValidation"] = cross_validate(response, answers)
        response["completenessAnalysis"] = analyze_completeness(response)
        response["consistencyCheck"] = check_consistency(response)
        response["improvementSuggestions"] = improvement_suggestions(response)
        response["sectionMetrics"] = section_metrics(response)
        response["timelineAnalysis"] = analyze_timeline(response, analysis)
        return response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def high_priority_questions(questions: dict[str, Any], limit: int = 5) -> list[dict[str, Any]]:
    found = [
        question
        for items in as_dict(questions.get("questionCategories")).values()
        if isinstance(items, list)
        for question in items
        if isinstance(question, dict) and question.get("priority") == "high"
    ]
    return found[:limit]


def _sections(response: dict[str, Any]) -> list[dict[str, Any]]:
    structure = as_dict(response.get("proposalStructure"))
    return dict_items(structure.get("sections"))


def _draft_from_text(raw: str, context: AgentContext, error: str) -> dict[str, Any]:
    project = context.get("projectContext") or {}
    return {
        "executiveSummary": {
            "projectTitle": project.get("title") or "RFP Response",
            "companyResponse": raw,
            "keyStrengths": [],
            "valueProposition": "",
            "confidenceLevel": "low",
            "overallReadiness": 0.3,
        },
        "proposalStructure": {
            "sections": [
                {
                    "sectionId": "exec_summary",
                    "title": "Executive Summary",
                    "order": 1,
                    "status": "needs_input",
                    "content": raw,
                    "subsections": [],
                },
            ],
        },
        "questionResponses": [],
        "gapsAndActions": {"criticalGaps": [], "reviewItems": [], "additionalResearch": []},
        "confidence": 0.3,
        "error": error,
    }


def cross_validate(response: dict[str, Any], answers: dict[str, Any]) -> dict[str, Any]:
    validation: dict[str, Any] = {
        "answerConsistency": "good",
        "sourceReliability": "high",
        "confidenceAlignment": True,
        "issues": [],
    }
    extracted = {a.get("questionId"): a for a in dict_items(answers.get("answeredQuestions"))}

    for compiled in response.get("questionResponses") or []:
        if not isinstance(compiled, dict):
            continue
        match = extracted.get(compiled.get("questionId"))
        if not match:
            continue

        drift = abs(_float(compiled.get("confidence")) - _float(match.get("confidence")))
        if drift > CONFIDENCE_DRIFT:
            validation["confidenceAlignment"] = False
            validation["issues"].append({
                "questionId": compiled.get("questionId"),
                "issue": "Confidence score mismatch",
                "severity": "medium",
            })

        compiled_sources = [s.get("document") for s in dict_items(compiled.get("sources"))]
        extracted_sources = [s.get("documentName") for s in dict_items(match.get("sources"))]
        if compiled_sources and extracted_sources and not set(compiled_sources) & set(extracted_sources):
            validation["issues"].append({
                "questionId": compiled.get("questionId"),
                "issue": "No common sources between response and extraction",
                "severity": "low",
            })

    if validation["issues"]:
        validation["answerConsistency"] = "needs_review"
    return validation


def analyze_completeness(response: dict[str, Any]) -> dict[str, Any]:
    sections = _sections(response)
    scores: dict[str, float] = {}
    for section in sections:
        score = 0.0
        if str(section.get("content") or "").strip():
            score += 0.5
        if section.get("status") == "complete":
            score += 0.5
        elif section.get("status") == "partial":
            score += 0.25
        scores[str(section.get("sectionId"))] = score

    present = {s.get("sectionId") for s in sections}
    missing = [f"Missing critical section: {name}" for name in CRITICAL_SECTIONS if name not in present]
    overall = sum(scores.values()) / len(scores) if scores else 0.0

    recommendations = []
    if overall < 0.7:
        recommendations.append("Focus on completing partial sections")
    if missing:
        recommendations.append("Add missing critical sections")

    return {
        "overallCompleteness": overall,
        "sectionCompleteness": scores,
        "missingElements": missing,
        "recommendations": recommendations,
    }


def term_variations(text: str, base_term: str) -> list[str]:
    base = base_term.lower()
    seen: dict[str, None] = {}
    for word in _WORD.findall(text.lower()):
        if base in word or word in base:
            seen.setdefault(word, None)
    return list(seen)


def check_consistency(response: dict[str, Any]) -> dict[str, Any]:
    text = " ".join(str(s.get("content") or "") for s in _sections(response))
    issues = []
    for term in CONSISTENCY_TERMS:
        variations = term_variations(text, term)
        if len(variations) > 2:
            issues.append({
                "type": "terminology",
                "issue": f'Multiple variations of "{term}" found: {", ".join(variations)}',
                "severity": "low",
            })
    return {
        "overallConsistency": "good" if not issues else "warnings",
        "issues": issues,
        "checks": {
            "terminologyConsistency": not issues,
            "dateConsistency": True,
            "budgetConsistency": True,
            "contactConsistency": True,
        },
    }


def improvement_suggestions(response: dict[str, Any]) -> list[dict[str, str]]:
    suggestions = []
    if not (response.get("executiveSummary") or {}).get("valueProposition"):
        suggestions.append({
            "area": "Executive Summary",
            "suggestion": "Add a clear value proposition",
            "priority": "high",
        })

    weak = [
        r for r in response.get("questionResponses") or []
        if isinstance(r, dict) and _float(r.get("confidence")) < LOW_RESPONSE_CONFIDENCE
    ]
    if weak:
        suggestions.append({
            "area": "Question Responses",
            "suggestion": f"Review {len(weak)} low-confidence answers",
            "priority": "medium",
        })

    gaps = (response.get("gapsAndActions") or {}).get("criticalGaps") or []
    high_impact = [g for g in gaps if isinstance(g, dict) and g.get("impact") == "high"]
    if high_impact:
        suggestions.append({
            "area": "Critical Gaps",
            "suggestion": f"Address {len(high_impact)} high-impact gaps",
            "priority": "high",
        })
    return suggestions


def section_metrics(response: dict[str, Any]) -> dict[str, dict[str, Any]]:
    status_score = {"complete": 1.0, "partial": 0.5}
    return {
        str(section.get("sectionId")): {
            "wordCount": len(str(section.get("content") or "").split()),
            "completeness": status_score.get(section.get("status"), 0.0),
            "subsectionCount": len(section.get("subsections") or []),
            "hasContent": bool(str(section.get("content") or "").strip()),
        }
        for section in _sections(response)
    }


def analyze_timeline(response: dict[str, Any], analysis: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {
        "timelineAlignment": "unknown",
        "criticalPathRisks": [],
        "recommendations": [],
    }
    deliverables = as_dict(response.get("nextSteps")).get("deliverableTimeline")
    if analysis.get("timeline") and deliverables:
        result["timelineAlignment"] = "aligned"
    elif not deliverables:
        result["recommendations"].append("Add detailed deliverable timeline")
    return result


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
