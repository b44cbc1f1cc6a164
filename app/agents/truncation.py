# =============================================================================
# Intelligent Content Truncation — Question-Aware Section Selection
# =============================================================================
#
# Used when the answer-extraction fallback has to put whole company documents
# into one prompt. Content at or under the ceiling passes through untouched.
# Larger content is cut into sections, each section is scored against the
# questions, and the best-scoring sections that fit are kept:
#
#   1. split    — first pattern that yields more parts wins:
#                 numbered headings → ALL-CAPS lines → "Title:" lines →
#                 separator rules; else blank-line paragraphs (> 50 chars)
#   2. score    — keyword occurrences + 2 per matched domain term
#   3. select   — greedy by score, skipping sections that would overflow
#   4. rebuild  — selected sections in original order, "\n\n"-joined
#   5. enforce  — hard cut to ceiling - 100 plus a marker if still too long
# =============================================================================

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 8000
TRUNCATION_MARKER = "\n\n... [Content truncated - showing most relevant sections]"

SECTION_PATTERNS = (
    re.compile(r"\n\s*\d+\.\s+[A-Z][^\n]*\n"),
    re.compile(r"\n\s*[A-Z][A-Z\s]{10,}\n"),
    re.compile(r"\n\s*[A-Z][^:\n]{5,}:\s*\n"),
    re.compile(r"\n\s*[-=]{5,}\s*\n"),
)
PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")

DOMAIN_TERMS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"requirements?",
        r"specifications?",
        r"criteria",
        r"evaluation",
        r"timeline",
        r"deadline",
        r"budget",
        r"cost",
    )
)


def truncate_content(
    content: str, questions: Iterable[str], max_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    """
    Shrink `content` to at most `max_chars`, keeping the most relevant sections.

    Args:
        content: Full document text.
        questions: Question texts used for relevance scoring.
        max_chars: Output ceiling.

    Returns:
        The content unchanged if it fits, otherwise selected sections in
        their original order.
    """
    if len(content) <= max_chars:
        return content

    logger.info("Applying intelligent truncation to %d characters", len(content))

    keywords = question_keywords(questions)
    sections = split_into_sections(content)
    scored = sorted(
        ((section_score(text, keywords), position, text)
         for position, text in enumerate(sections)),
        key=lambda item: item[0],
        reverse=True,
    )

    selected: list[tuple[int, str]] = []
    total = 0
    for _score, position, text in scored:
        if total + len(text) <= max_chars:
            selected.append((position, text))
            total += len(text)

    if selected:
        result = "\n\n".join(text for _pos, text in sorted(selected))
    else:
        # No single section fits; fall back to the head of the document
        result = content

    if len(result) > max_chars:
        result = result[: max_chars - 100] + TRUNCATION_MARKER

    logger.info("Content truncated from %d to %d characters", len(content), len(result))
    return result


def question_keywords(questions: Iterable[str]) -> list[str]:
    """Lower-cased words longer than 3 characters, regex-escaped."""
    words = " ".join(questions).lower().split()
    return [re.escape(word) for word in words if len(word) > 3]


def split_into_sections(content: str) -> list[str]:
    sections = [content]
    for pattern in SECTION_PATTERNS:
        parts = [
            part
            for section in sections
            for part in pattern.split(section)
            if len(part.strip()) > 100
        ]
        if len(parts) > len(sections):
            sections = parts
            break

    if len(sections) == 1:
        sections = [p for p in PARAGRAPH_SPLIT.split(content) if len(p.strip()) > 50]
    return sections


def section_score(section: str, keywords: list[str]) -> int:
    lowered = section.lower()
    score = sum(len(re.findall(keyword, lowered)) for keyword in keywords)
    score += sum(2 for term in DOMAIN_TERMS if term.search(section))
    return score
