# =============================================================================
# Document Text Extraction — Docling + Plain Text
# =============================================================================
#
# Turns an uploaded file into text the agents can read and elements the
# chunker can index:
#
#   .txt / .md          → read as UTF-8, paragraphs become text elements
#   .pdf / .docx        → Docling DocumentConverter, items in reading order;
#                         headings tracked as section titles, tables exported
#                         as markdown
#
# Output is our own ExtractedDocument dataclass, so nothing downstream
# depends on Docling types.
#
# structured_data carries counts the ingestion agent and UI can use without
# re-parsing: headings, tables, text blocks, pages, and the heading list.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

logger = logging.getLogger(__name__)

PLAIN_TEXT_SUFFIXES = {".txt", ".md", ".markdown"}
DOCLING_SUFFIXES = {".pdf", ".docx"}
SUPPORTED_SUFFIXES = PLAIN_TEXT_SUFFIXES | DOCLING_SUFFIXES

_BLANK_LINES = re.compile(r"\n\s*\n")


class UnsupportedDocumentError(ValueError):
    """The file type has no extractor."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedElement:
    """One paragraph, heading or table in reading order."""

    text: str  # markdown for tables
    page_number: int  # 1-indexed; 0 when the source has no pages
    element_type: str  # "text", "table", or "heading"
    section_title: str | None = None
    level: int = 0


@dataclass
class ExtractedDocument:
    """Text, metadata and structure extracted from one file."""

    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    structured_data: dict[str, Any] = field(default_factory=dict)
    elements: list[ParsedElement] = field(default_factory=list)
    filename: str = ""


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialization loads layout/OCR models (seconds on first use); one
# converter is reused across documents and worker threads.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            allowed_formats=[InputFormat.PDF, InputFormat.DOCX],
            format_options={
                InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            },
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract_document(file_path: str, original_name: str | None = None) -> ExtractedDocument:
    """
    Extract text and structure from a stored upload.

    Args:
        file_path: Path of the stored file.
        original_name: Name the user uploaded it as (used for type detection
            and metadata when the stored name is opaque).

    Raises:
        FileNotFoundError: If the file does not exist.
        UnsupportedDocumentError: If the extension has no extractor.
        RuntimeError: If Docling fails to convert the document.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {file_path}")

    name = original_name or path.name
    suffix = Path(name).suffix.lower() or path.suffix.lower()

    if suffix in PLAIN_TEXT_SUFFIXES:
        elements = _read_plain_text(path)
        page_count = 0
    elif suffix in DOCLING_SUFFIXES:
        elements, page_count = _convert_with_docling(path)
    else:
        raise UnsupportedDocumentError(f"Unsupported document type: {suffix or name}")

    content = "\n\n".join(e.text for e in elements)
    headings = [e.text for e in elements if e.element_type == "heading"]

    document = ExtractedDocument(
        content=content,
        metadata={
            "fileName": name,
            "fileSize": path.stat().st_size,
            "extension": suffix,
            "pageCount": page_count,
            "characterCount": len(content),
            "wordCount": len(content.split()),
        },
        structured_data={
            "headings": headings[:50],
            "headingCount": len(headings),
            "tableCount": sum(1 for e in elements if e.element_type == "table"),
            "textBlockCount": sum(1 for e in elements if e.element_type == "text"),
        },
        elements=elements,
        filename=name,
    )

    logger.info(
        "Extracted '%s': %d elements, %d characters, %d pages",
        name, len(elements), len(content), page_count,
    )
    return document


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _read_plain_text(path: Path) -> list[ParsedElement]:
    text = path.read_text(encoding="utf-8", errors="replace")
    elements: list[ParsedElement] = []
    current_section: str | None = None

    for block in _BLANK_LINES.split(text):
        block = block.strip()
        if not block:
            continue
        if block.startswith("#"):
            heading = block.lstrip("#").strip()
            current_section = heading
            elements.append(ParsedElement(heading, 1, "heading", heading, 1))
        else:
            elements.append(ParsedElement(block, 1, "text", current_section))
    return elements


def _convert_with_docling(path: Path) -> tuple[list[ParsedElement], int]:
    logger.info("Converting with Docling: %s", path.name)
    try:
        result = _get_converter().convert(str(path))
    except Exception as exc:
        raise RuntimeError(f"Docling failed to parse '{path.name}': {exc}") from exc

    elements: list[ParsedElement] = []
    current_section: str | None = None
    pages_seen: set[int] = set()

    for item, level in result.document.iterate_items():
        page_no = item.prov[0].page_no if getattr(item, "prov", None) else 0
        pages_seen.add(page_no)
        label = getattr(item, "label", None)

        if label in (DocItemLabel.SECTION_HEADER, DocItemLabel.TITLE):
            text = getattr(item, "text", "").strip()
            if text:
                current_section = text
                elements.append(ParsedElement(text, page_no, "heading", current_section, level))

        elif label == DocItemLabel.TABLE:
            table_md = _table_to_markdown(item, result.document)
            if table_md:
                elements.append(ParsedElement(table_md, page_no, "table", current_section, level))

        elif label in (DocItemLabel.TEXT, DocItemLabel.LIST_ITEM,
                       DocItemLabel.CAPTION, DocItemLabel.FOOTNOTE,
                       DocItemLabel.PARAGRAPH):
            text = getattr(item, "text", "").strip()
            if text:
                elements.append(ParsedElement(text, page_no, "text", current_section, level))

    page_count = max(pages_seen) if pages_seen - {0} else 0
    return elements, page_count


def _table_to_markdown(table_item: object, document: object) -> str:
    """Docling table → pandas DataFrame → markdown, else the item's text."""
    try:
        if hasattr(table_item, "export_to_dataframe"):
            df = table_item.export_to_dataframe(doc=document)
            return df.to_markdown(index=False)
    except Exception as exc:
        logger.warning("Table export to DataFrame failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
