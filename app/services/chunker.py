# =============================================================================
# Token-Based Text Chunker — tiktoken
# =============================================================================
#
# Splits an ExtractedDocument into token windows for embedding. Each chunk
# keeps the metadata retrieval cares about: starting page, section title,
# whether a table falls inside it.
#
# ALGORITHM:
# 1. Concatenate elements with \n\n separators
# 2. Build a parallel mapping: character position → source element
# 3. Encode the full text with tiktoken (cl100k_base, the encoding used by
#    text-embedding-3-small)
# 4. Slide a window of chunk_size tokens, stepping chunk_size - overlap
# 5. For each window: decode to text, look up metadata from the char mapping
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import tiktoken

from app.services.parser import ExtractedDocument

logger = logging.getLogger(__name__)


@dataclass
class ChunkResult:
    """A chunk ready for embedding and storage."""

    content: str
    page_number: int  # starting page; 0 for unpaged sources
    chunk_index: int  # 0-indexed position within the document
    token_count: int
    metadata: dict = field(default_factory=dict)
    # metadata keys: section_title, contains_table, source_pages


_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder (~1.7 MB BPE file)."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def chunk_document(
    document: ExtractedDocument,
    chunk_size: int = 512,
    chunk_overlap: int = 50,
) -> list[ChunkResult]:
    """
    Split an extracted document into token-based chunks.

    Args:
        document: Output of app.services.parser.extract_document.
        chunk_size: Maximum tokens per chunk.
        chunk_overlap: Tokens shared by consecutive chunks.

    Returns:
        Chunks in document order; empty if the document has no text.
    """
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    encoder = _get_encoder()
    elements = document.elements

    if not elements:
        logger.warning("No elements to chunk in '%s'", document.filename)
        return []

    separator = "\n\n"
    text_parts: list[str] = []
    char_to_element: list[int] = []

    for i, element in enumerate(elements):
        if i > 0:
            text_parts.append(separator)
            char_to_element.extend([i - 1] * len(separator))
        text_parts.append(element.text)
        char_to_element.extend([i] * len(element.text))

    full_text = "".join(text_parts)
    tokens = encoder.encode(full_text)
    if not tokens:
        logger.warning("No tokens after encoding '%s'", document.filename)
        return []

    offsets = _build_token_offsets(encoder, tokens)
    chunks: list[ChunkResult] = []
    step = chunk_size - chunk_overlap

    for start in range(0, len(tokens), step):
        end = min(start + chunk_size, len(tokens))
        window = tokens[start:end]
        text = encoder.decode(window).strip()

        if text:
            char_start = offsets[start]
            char_end = min(offsets[end], len(char_to_element))
            covered = sorted(set(char_to_element[char_start:char_end]))
            chunk_elements = [elements[i] for i in covered]

            chunks.append(ChunkResult(
                content=text,
                page_number=chunk_elements[0].page_number if chunk_elements else 0,
                chunk_index=len(chunks),
                token_count=len(window),
                metadata={
                    "section_title": next(
                        (e.section_title for e in chunk_elements if e.section_title), None,
                    ),
                    "contains_table": any(e.element_type == "table" for e in chunk_elements),
                    "source_pages": sorted(
                        {e.page_number for e in chunk_elements if e.page_number > 0}
                    ),
                },
            ))

        if end >= len(tokens):
            break

    logger.info(
        "Chunked '%s' into %d chunks (%d tokens, size=%d, overlap=%d)",
        document.filename, len(chunks), len(tokens), chunk_size, chunk_overlap,
    )
    return chunks


def _build_token_offsets(encoder: tiktoken.Encoding, tokens: list[int]) -> list[int]:
    """Character offset of each token in the decoded text, plus an end sentinel."""
    offsets: list[int] = []
    position = 0
    for token in tokens:
        offsets.append(position)
        position += len(encoder.decode([token]))
    offsets.append(position)
    return offsets
