# =============================================================================
# Answer Extraction Agent — Retrieval First, Whole-Document Model Fallback
# =============================================================================
#
# Answers every clarification question from the documents indexed under the
# workflow's scope.
#
# FLOW:
#
#   for each question (sequential):
#       retrieval.answer(question, scope)
#           confidence >= 0.3  → answered
#                                  answerType   direct  if > 0.8 else inferred
#                                  completeness complete if > 0.7 else partial
#           confidence == 0    → unanswered "No relevant information found"
#           otherwise          → unanswered "Low confidence answer"
#           exception          → unanswered "Error processing question"
#
#   zero answered across the set?
#       └─▶ one execute() over project context + numbered questions +
#           every ingested document (intelligently truncated); that reply
#           alone becomes the result
#
#   always: gapAnalysis, qualityMetrics, documentUtilization,
#           semanticAnalysis.keywordMatches
#
# Records use the camelCase shapes the model is prompted for; the
# orchestrator flattens them into Answer rows.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any

from app.agents.base import (
    AgentContext,
    AgentResult,
    BaseAgent,
    ParsedResult,
    as_dict,
    dict_items,
    ensure_list,
    parse_json_object,
)
from app.agents.truncation import truncate_content
from app.services.llm import ModelClient
from app.services.retrieval import RetrievalService

logger = logging.getLogger(__name__)

NO_INFORMATION = "No relevant information found"
LOW_CONFIDENCE = "Low confidence answer"
PROCESSING_ERROR = "Error processing question"

RESULT_LIST_FIELDS = ("answeredQuestions", "unansweredQuestions", "partialAnswers")

_NON_WORD = re.compile(r"[^\w\s]")


class AnswerExtractionAgent(BaseAgent):
    name = "AnswerExtractionAgent"
    system_prompt = """
You are an Answer Extraction Agent specialized in finding relevant answers to RFP questions from company documents.

Your responsibilities:
1. Search through company documents for relevant answers to RFP questions
2. Use semantic matching to find related information
3. Provide confidence scores for each answer
4. Cross-reference information across multiple documents
5. Flag questions that cannot be answered with available data

Analyze the provided RFP questions and company documents, then return answers in this JSON format:
{
  "answeredQuestions": [
    {
      "questionId": "original question ID",
      "question": "the original question text",
      "answer": "comprehensive answer based on available documents",
      "confidence": 0.85,
      "sources": [
        {"documentName": "source document name", "section": "relevant section",
         "excerpt": "relevant text excerpt", "relevanceScore": 0.90}
      ],
      "answerType": "direct|inferred|partial",
      "completeness": "complete|partial|incomplete",
      "additionalContext": "any additional relevant context"
    }
  ],
  "unansweredQuestions": [
    {"questionId": "question ID", "question": "question text",
     "reason": "why it couldn't be answered",
     "suggestedSources": ["what documents might contain the answer"],
     "priority": "high|medium|low"}
  ],
  "partialAnswers": [
    {"questionId": "question ID", "question": "question text",
     "partialAnswer": "what we know so far",
     "missingInformation": ["what information is still needed"],
     "confidence": 0.45, "sources": []}
  ],
  "crossReferences": [
    {"questionIds": ["q1", "q2"], "relationship": "related|conflicting|complementary",
     "explanation": "how the questions relate"}
  ],
  "answerSummary": {
    "totalQuestions": 25, "answered": 18, "partiallyAnswered": 4, "unanswered": 3,
    "averageConfidence": 0.78,
    "coverageByCategory": {"technical": 0.85, "business": 0.70, "compliance": 0.60}
  },
  "recommendations": {
    "priorityGaps": ["gap 1", "gap 2"],
    "documentNeeds": ["needed document type 1"],
    "expertConsultation": ["area requiring SME input"]
  },
  "confidence": 0.82
}
"""

    def __init__(
        self,
        client: ModelClient,
        retrieval: RetrievalService,
        *,
        min_confidence: float = 0.3,
        direct_confidence: float = 0.8,
        complete_confidence: float = 0.7,
        critical_gap_confidence: float = 0.6,
        truncation_max_chars: int = 8000,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        self.retrieval = retrieval
        self.min_confidence = min_confidence
        self.direct_confidence = direct_confidence
        self.complete_confidence = complete_confidence
        self.critical_gap_confidence = critical_gap_confidence
        self.truncation_max_chars = truncation_max_chars

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def extract_answers(
        self,
        questions: list[dict[str, Any]],
        documents: list[dict[str, Any]],
        analysis: dict[str, Any],
        scope: str,
    ) -> AgentResult:
        """
        Answer flattened clarification questions.

        Args:
            questions: Dicts with id, question, category, priority and
                relatedRequirements (see clarification.flatten_questions).
            documents: Ingested documents: fileName, documentType, overview,
                processedContent, structuredData.
            analysis: Requirements analysis, for project context.
            scope: Vector-store scope holding this workflow's chunks.
        """
        logger.info(
            "Starting answer extraction (questions=%d, documents=%d, scope=%s)",
            len(questions), len(documents), scope,
        )

        result = await self.answer_with_retrieval(questions, scope)

        if questions and not result.data["answeredQuestions"]:
            logger.warning(
                "Retrieval produced no accepted answers, falling back to model extraction",
            )
            result = await self.execute(
                self.prepare_extraction_input(questions, documents, analysis),
                {
                    "extractionType": "rfp_answers",
                    "questions": questions,
                    "documentCount": len(documents),
                },
            )

        self.enhance_answers(result.data, questions, documents)

        summary = result.data.get("answerSummary") or {}
        logger.info(
            "Answer extraction completed (answered=%s, unanswered=%s, avg_confidence=%.2f)",
            summary.get("answered", 0), summary.get("unanswered", 0),
            summary.get("averageConfidence", 0.0),
        )
        return result

    async def answer_with_retrieval(
        self, questions: list[dict[str, Any]], scope: str,
    ) -> ParsedResult:
        answered: list[dict[str, Any]] = []
        unanswered: list[dict[str, Any]] = []

        for question in questions:
            text = question["question"]
            try:
                reply = await self.retrieval.answer(text, scope)
            except Exception as e:
                logger.error("Error answering question %s: %s", question["id"], e)
                unanswered.append(_unanswered(question, PROCESSING_ERROR))
                continue

            confidence = reply.confidence
            if confidence >= self.min_confidence:
                answered.append({
                    "questionId": question["id"],
                    "question": text,
                    "answer": reply.answer,
                    "confidence": confidence,
                    "sources": [
                        {
                            "documentName": source.document_name or source.document_id,
                            "documentId": source.document_id,
                            "excerpt": source.content,
                            "relevanceScore": source.similarity,
                        }
                        for source in reply.sources
                    ],
                    "answerType": "direct" if confidence > self.direct_confidence else "inferred",
                    "completeness": (
                        "complete" if confidence > self.complete_confidence else "partial"
                    ),
                    "category": question.get("category"),
                    "priority": question.get("priority") or "medium",
                })
            else:
                reason = NO_INFORMATION if confidence == 0 else LOW_CONFIDENCE
                unanswered.append(_unanswered(question, reason))

        summary = answer_summary(answered, unanswered, [])
        return self.parsed(
            {
                "answeredQuestions": answered,
                "unansweredQuestions": unanswered,
                "partialAnswers": [],
                "answerSummary": summary,
                "extractionMethod": "retrieval",
                "confidence": summary["averageConfidence"],
            },
        )

    def prepare_extraction_input(
        self,
        questions: list[dict[str, Any]],
        documents: list[dict[str, Any]],
        analysis: dict[str, Any],
    ) -> str:
        parts = ["=== RFP ANSWER EXTRACTION ===\n\n"]

        overview = as_dict(analysis.get("projectOverview"))
        if overview:
            parts.append("PROJECT CONTEXT:\n")
            parts.append(f"Title: {overview.get('title')}\n")
            parts.append(f"Description: {overview.get('description')}\n\n")

        parts.append("QUESTIONS TO ANSWER:\n")
        for index, question in enumerate(questions, start=1):
            parts.append(f"{index}. [{question['id']}] {question['question']}\n")
            parts.append(f"   Category: {question.get('category')}\n")
            parts.append(f"   Priority: {question.get('priority')}\n")
            related = question.get("relatedRequirements") or []
            if related:
                parts.append(f"   Related Requirements: {', '.join(map(str, related))}\n")
            parts.append("\n")

        question_texts = [q["question"] for q in questions]
        parts.append("COMPANY DOCUMENTS TO SEARCH:\n")
        for index, doc in enumerate(documents, start=1):
            parts.append(f"--- Document {index}: {doc.get('fileName')} ---\n")
            parts.append(f"Type: {doc.get('documentType') or 'Unknown'}\n")
            if doc.get("overview"):
                parts.append(f"Overview: {doc['overview']}\n")
            if doc.get("processedContent"):
                content = truncate_content(
                    doc["processedContent"], question_texts, self.truncation_max_chars,
                )
                parts.append(f"Content:\n{content}\n")
            if doc.get("structuredData"):
                parts.append("Key Information:\n")
                parts.append(_key_information(doc["structuredData"]))
            parts.append("---\n\n")

        return "".join(parts)

    def process_result(self, raw: str, context: AgentContext) -> AgentResult:
        questions: list[dict[str, Any]] = list(context.get("questions") or [])
        try:
            data = parse_json_object(raw)
        except ValueError as e:
            logger.debug("Raw reply: %s", raw[:500])
            unanswered = [_unanswered(q, "Unable to parse model response") for q in questions]
            return self.fallback(
                {
                    "answeredQuestions": [],
                    "unansweredQuestions": unanswered,
                    "partialAnswers": [],
                    "answerSummary": answer_summary([], unanswered, []),
                    "extractionMethod": "model",
                    "rawResponse": raw[:2000],
                    "confidence": 0.1,
                    "error": str(e),
                },
                str(e),
            )

        for name in RESULT_LIST_FIELDS:
            ensure_list(data, name)

        # The model only echoes ids; carry priority/category over from the questions
        by_id = {q["id"]: q for q in questions}
        for record in data["answeredQuestions"] + data["unansweredQuestions"]:
            if not isinstance(record, dict):
                continue
            source = by_id.get(record.get("questionId"), {})
            record.setdefault("priority", source.get("priority") or "medium")
            record.setdefault("category", source.get("category"))
            if "confidence" in record:
                record["confidence"] = _float(record["confidence"])
            if "sources" in record:
                record["sources"] = dict_items(record["sources"])

        data["answeredQuestions"] = [a for a in data["answeredQuestions"] if isinstance(a, dict)]
        data["unansweredQuestions"] = [
            u for u in data["unansweredQuestions"] if isinstance(u, dict)
        ]
        if not isinstance(data.get("answerSummary"), dict):
            data["answerSummary"] = answer_summary(
                data["answeredQuestions"], data["unansweredQuestions"], data["partialAnswers"],
            )
        data["extractionMethod"] = "model"
        return self.parsed(data, default_confidence=0.5)

    # -----------------------------------------------------------------------
    # Enhancement
    # -----------------------------------------------------------------------

    def enhance_answers(
        self,
        answers: dict[str, Any],
        questions: list[dict[str, Any]],
        documents: list[dict[str, Any]],
    ) -> dict[str, Any]:
        answers["semanticAnalysis"] = semantic_analysis(answers, documents)
        answers["gapAnalysis"] = gap_analysis(
            answers, questions, self.critical_gap_confidence,
        )
        answers["qualityMetrics"] = quality_metrics(answers)
        answers["documentUtilization"] = document_utilization(answers, documents)
        return answers


# ---------------------------------------------------------------------------
# Record Helpers
# ---------------------------------------------------------------------------


def _unanswered(question: dict[str, Any], reason: str) -> dict[str, Any]:
    return {
        "questionId": question["id"],
        "question": question["question"],
        "reason": reason,
        "priority": question.get("priority") or "medium",
        "category": question.get("category"),
    }


def answer_summary(
    answered: list[dict[str, Any]],
    unanswered: list[dict[str, Any]],
    partial: list[Any],
) -> dict[str, Any]:
    confidences = [_float(a.get("confidence")) for a in answered]
    return {
        "totalQuestions": len(answered) + len(unanswered) + len(partial),
        "answered": len(answered),
        "partiallyAnswered": len(partial),
        "unanswered": len(unanswered),
        "averageConfidence": sum(confidences) / len(confidences) if confidences else 0.0,
    }


def _key_information(structured: dict[str, Any]) -> str:
    lines = []
    for key, value in structured.items():
        if isinstance(value, list) and value:
            shown = ", ".join(str(v) for v in value[:3])
            lines.append(f"{key}: {shown}{'...' if len(value) > 3 else ''}\n")
        elif isinstance(value, str) and value.strip():
            lines.append(f"{key}: {value[:200]}{'...' if len(value) > 200 else ''}\n")
    return "".join(lines)


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


# ---------------------------------------------------------------------------
# Analysis Helpers
# ---------------------------------------------------------------------------


def gap_analysis(
    answers: dict[str, Any],
    questions: list[dict[str, Any]],
    critical_confidence: float = 0.6,
) -> dict[str, Any]:
    answered = answers.get("answeredQuestions") or []
    answered_ids = {a.get("questionId") for a in answered}

    by_category: dict[str, list[dict[str, Any]]] = {}
    for question in questions:
        by_category.setdefault(question.get("category") or "general", []).append(question)

    gaps_by_category = {}
    for category, items in by_category.items():
        hits = sum(1 for q in items if q["id"] in answered_ids)
        gaps_by_category[category] = {
            "total": len(items),
            "answered": hits,
            "gapPercentage": (len(items) - hits) / len(items) * 100 if items else 0.0,
        }

    total = len(questions)
    return {
        "overallCoverage": len(answered) / total * 100 if total else 0.0,
        "gapsByCategory": gaps_by_category,
        "criticalGaps": critical_gaps(answers, critical_confidence),
        "improvementAreas": [
            {
                "category": category,
                "issue": f"{stats['gapPercentage']:.1f}% of {category} questions unanswered",
                "suggestion": f"Focus on gathering more {category} documentation",
            }
            for category, stats in gaps_by_category.items()
            if stats["gapPercentage"] > 50
        ],
    }


def critical_gaps(answers: dict[str, Any], critical_confidence: float = 0.6) -> list[dict[str, Any]]:
    gaps = [
        {
            "questionId": item.get("questionId"),
            "question": item.get("question"),
            "impact": "High priority question without answer",
            "recommendation": "Requires immediate attention",
        }
        for item in answers.get("unansweredQuestions") or []
        if item.get("priority") == "high"
    ]
    gaps.extend(
        {
            "questionId": item.get("questionId"),
            "question": item.get("question"),
            "impact": "Low confidence answer to high priority question",
            "recommendation": "Verify and strengthen answer",
        }
        for item in answers.get("answeredQuestions") or []
        if item.get("priority") == "high" and _float(item.get("confidence")) < critical_confidence
    )
    return gaps


def quality_metrics(answers: dict[str, Any]) -> dict[str, Any]:
    metrics: dict[str, Any] = {
        "averageConfidence": 0.0,
        "confidenceDistribution": {"high": 0, "medium": 0, "low": 0},
        "answerLengthStats": {"min": 0, "max": 0, "average": 0.0},
        "sourceUtilization": {},
    }
    answered = answers.get("answeredQuestions") or []
    if not answered:
        return metrics

    confidences = [_float(a.get("confidence")) for a in answered]
    metrics["averageConfidence"] = sum(confidences) / len(confidences)
    for confidence in confidences:
        if confidence >= 0.8:
            metrics["confidenceDistribution"]["high"] += 1
        elif confidence >= 0.6:
            metrics["confidenceDistribution"]["medium"] += 1
        else:
            metrics["confidenceDistribution"]["low"] += 1

    lengths = [len(str(a.get("answer") or "")) for a in answered]
    metrics["answerLengthStats"] = {
        "min": min(lengths),
        "max": max(lengths),
        "average": sum(lengths) / len(lengths),
    }

    source_counts: Counter[str] = Counter(
        str(source.get("documentName"))
        for a in answered
        for source in a.get("sources") or []
        if isinstance(source, dict)
    )
    metrics["sourceUtilization"] = dict(source_counts)
    return metrics


def document_utilization(
    answers: dict[str, Any], documents: list[dict[str, Any]],
) -> dict[str, dict[str, Any]]:
    utilization: dict[str, dict[str, Any]] = {
        str(doc.get("fileName")): {"timesReferenced": 0, "questionsAnswered": [], "utilizationScore": 0.0}
        for doc in documents
    }

    for answer in answers.get("answeredQuestions") or []:
        for source in answer.get("sources") or []:
            if not isinstance(source, dict):
                continue
            entry = utilization.setdefault(
                str(source.get("documentName")),
                {"timesReferenced": 0, "questionsAnswered": [], "utilizationScore": 0.0},
            )
            entry["timesReferenced"] += 1
            entry["questionsAnswered"].append(answer.get("questionId"))

    most = max((u["timesReferenced"] for u in utilization.values()), default=0)
    for entry in utilization.values():
        entry["utilizationScore"] = entry["timesReferenced"] / most if most else 0.0
    return utilization


def key_terms(text: str, limit: int = 20) -> list[str]:
    """Most frequent words longer than 3 characters, first-seen order on ties."""
    words = [w for w in _NON_WORD.sub(" ", text.lower()).split() if len(w) > 3]
    return [word for word, _count in Counter(words).most_common(limit)]


def semantic_analysis(answers: dict[str, Any], documents: list[dict[str, Any]]) -> dict[str, Any]:
    answer_text = " ".join(
        str(a.get("answer") or "") for a in answers.get("answeredQuestions") or []
    )
    document_text = " ".join(str(d.get("processedContent") or "") for d in documents)

    matches = {}
    for term in key_terms(answer_text):
        pattern = re.compile(re.escape(term), re.IGNORECASE)
        answer_freq = len(pattern.findall(answer_text))
        document_freq = len(pattern.findall(document_text))
        matches[term] = {
            "answerFrequency": answer_freq,
            "documentFrequency": document_freq,
            "relevanceScore": answer_freq / document_freq if document_freq else 0.0,
        }
    return {"keywordMatches": matches}
