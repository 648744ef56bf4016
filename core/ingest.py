"""
Document processing pipeline: route by mime type, extract with fallbacks,
gate on duplicates, then materialize.

Provider failures never fail a document on their own; they pick the next
fallback. A document only ends FAILED when a PDF yields neither page
images nor usable text, or when something unexpected breaks mid-run.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from config import load_config
from core.db import fetchall, init_db
from core.documents import (
    FAILED,
    PENDING_REVIEW,
    PROCESSING,
    DocumentNotFoundError,
    IllegalTransitionError,
    UnsupportedFileTypeError,
    get_document,
    get_document_row,
    materialize_and_complete,
    transition,
    utc_now,
)
from core.duplicates import reconcile_duplicates
from core.ledger import load_sign_keywords
from core.ocr import TesseractOcr
from core.rules import list_rules
from extractor import PDF_MIME, STRUCTURED_MIMES, get_text_from_file, render_pdf_pages
from llm_parser import OpenAIExtractor
from paths import ensure_data_dirs

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10
MAX_OCR_TEXT_CHARS = 50000
MAX_CONTEXT_RULES = 30
MAX_RULE_PATTERN_CHARS = 40
RECENT_SAMPLE_SIZE = 50
MAX_RECENT_EXAMPLES = 25
MAX_RECENT_DESCRIPTION_CHARS = 50

VISION_PLACEHOLDER = "[Vision API - no OCR text]"
PDF_VISION_PLACEHOLDER = "[Vision API from PDF - no OCR text]"
PDF_FAILED_MESSAGE = "Could not extract text from PDF. Try converting to image first."
NO_TRANSACTIONS_MESSAGE = (
    "No transactions extracted. Try better image quality or expand date range on Transactions page."
)


@dataclass
class Extraction:
    text: str = ""
    candidates: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


@dataclass
class Pipeline:
    """Providers used by process_document. Tests pass fakes with the same methods."""

    extractor: Any
    ocr: Any
    get_text: Callable[[str, str], str] = get_text_from_file
    render_pages: Callable[[str, str], list[str]] = render_pdf_pages


def build_pipeline(config: dict | None = None) -> Pipeline:
    """Real providers wired from configuration."""
    config = config or load_config()
    ensure_data_dirs()
    init_db()
    keywords = load_sign_keywords(config["sign_keywords_path"])
    extractor = OpenAIExtractor(
        config["openai_api_key"],
        keywords,
        model=config["openai_model"],
    )
    return Pipeline(extractor=extractor, ocr=TesseractOcr(config["ocr_lang"]))


def _usable(text: str | None) -> bool:
    return bool(text) and len(text.strip()) >= MIN_TEXT_LENGTH


def build_user_context(tenant_id: str) -> str:
    """
    Tenant hints for the extraction step: top rules and recent
    categorizations. Best effort; any failure yields "".
    """
    parts: list[str] = []
    try:
        rules = list_rules(tenant_id, active_only=True)[:MAX_CONTEXT_RULES]
        if rules:
            lines = [
                f'when description contains "{(r["pattern"] or "")[:MAX_RULE_PATTERN_CHARS]}" '
                f'use category {r["category_slug"] or "other"}'
                for r in rules
            ]
            parts.append("Rules (learned from user corrections): " + "; ".join(lines))

        recent = fetchall(
            """
            SELECT t.description, c.slug
            FROM transactions t
            LEFT JOIN categories c ON c.id = t.category_id
            WHERE t.tenant_id = ?
            ORDER BY t.date DESC, t.id DESC
            LIMIT ?
            """,
            (tenant_id, RECENT_SAMPLE_SIZE),
        )
        seen: set[str] = set()
        examples: list[str] = []
        for row in recent:
            description = (row["description"] or "").strip()[:MAX_RECENT_DESCRIPTION_CHARS]
            if description and description not in seen:
                seen.add(description)
                examples.append(f'"{description}" -> {row["slug"] or "other"}')
        if examples:
            parts.append(
                "Recent categorizations (prefer when description matches): "
                + "; ".join(examples[:MAX_RECENT_EXAMPLES])
            )
    except Exception as exc:
        logger.warning("User context unavailable for %s: %s", tenant_id, exc)
        return ""
    return "\n".join(parts)


def _ocr_then_text(path: str, pipeline: Pipeline, user_context: str) -> Extraction:
    text = pipeline.ocr.get_text_from_image(path)
    if not _usable(text):
        return Extraction(text=text or "")
    return Extraction(text=text, candidates=pipeline.extractor.extract_transactions(text, user_context))


def _extract_image(path: str, pipeline: Pipeline, user_context: str) -> Extraction:
    try:
        candidates = pipeline.extractor.extract_with_vision(path, user_context)
    except Exception as exc:
        logger.warning("Vision extraction failed, falling back to OCR: %s", exc)
        return _ocr_then_text(path, pipeline, user_context)
    if candidates:
        return Extraction(text=VISION_PLACEHOLDER, candidates=candidates)
    logger.warning("Vision returned no transactions, falling back to OCR for %s", path)
    return _ocr_then_text(path, pipeline, user_context)


def _extract_structured(path: str, mime_type: str, pipeline: Pipeline, user_context: str) -> Extraction:
    text = pipeline.get_text(path, mime_type)
    if not _usable(text):
        return Extraction(text=text or "")
    return Extraction(text=text, candidates=pipeline.extractor.extract_transactions(text, user_context))


def _extract_pdf(path: str, pipeline: Pipeline, user_context: str) -> Extraction:
    pages_dir = tempfile.mkdtemp(prefix="pdf-pages-")
    try:
        pages = pipeline.render_pages(path, pages_dir)
        if pages:
            logger.info("Using vision for PDF %s (%d pages)", Path(path).name, len(pages))
            candidates: list[dict[str, Any]] = []
            for page in pages:
                candidates.extend(pipeline.extractor.extract_with_vision(page, user_context))
            return Extraction(text=PDF_VISION_PLACEHOLDER, candidates=candidates)
        logger.warning("Could not render PDF pages for %s", path)
    except Exception as exc:
        logger.warning("PDF vision path failed, trying text extraction: %s", exc)
    finally:
        shutil.rmtree(pages_dir, ignore_errors=True)

    text = pipeline.get_text(path, PDF_MIME)
    if not _usable(text):
        return Extraction(text=text or "", error=PDF_FAILED_MESSAGE)
    return Extraction(text=text, candidates=pipeline.extractor.extract_transactions(text, user_context))


def route_extraction(
    path: str,
    mime_type: str,
    pipeline: Pipeline,
    user_context: str,
) -> Extraction:
    if mime_type.startswith("image/"):
        return _extract_image(path, pipeline, user_context)
    if mime_type in STRUCTURED_MIMES:
        return _extract_structured(path, mime_type, pipeline, user_context)
    if mime_type == PDF_MIME:
        return _extract_pdf(path, pipeline, user_context)
    raise UnsupportedFileTypeError(f"No extraction route for {mime_type}")


def _run(tenant_id: str, account_id: str, doc_id: str, pipeline: Pipeline) -> None:
    row = get_document_row(tenant_id, doc_id)
    if row is None:
        raise DocumentNotFoundError(f"Document {doc_id} not found.")
    path = row["storage_path"]
    if not Path(path).exists():
        raise FileNotFoundError("Document or file not found")

    user_context = build_user_context(tenant_id)
    extraction = route_extraction(path, row["mime_type"], pipeline, user_context)
    ocr_text = (extraction.text or "")[:MAX_OCR_TEXT_CHARS]

    if extraction.error:
        logger.warning("Document %s failed: %s", doc_id, extraction.error)
        transition(
            tenant_id,
            doc_id,
            FAILED,
            ocr_text=ocr_text,
            error_message=extraction.error,
            processed_at=utc_now(),
        )
        return

    candidates = extraction.candidates
    enriched, has_duplicate = reconcile_duplicates(tenant_id, account_id, candidates)
    if has_duplicate:
        logger.info("Document %s held for review: duplicates found", doc_id)
        transition(
            tenant_id,
            doc_id,
            PENDING_REVIEW,
            ocr_text=ocr_text,
            extracted_json=json.dumps(enriched, ensure_ascii=False),
            processed_at=utc_now(),
        )
        return

    if not candidates:
        logger.warning("Document %s: no transactions extracted", doc_id)
    ids = materialize_and_complete(
        tenant_id,
        doc_id,
        account_id,
        candidates,
        ocr_text=ocr_text,
        extracted_json=json.dumps(candidates, ensure_ascii=False),
        error_message=None if candidates else NO_TRANSACTIONS_MESSAGE,
        processed_at=utc_now(),
    )
    logger.info("Document %s completed: %d transactions", doc_id, len(ids))


def process_document(
    tenant_id: str,
    account_id: str,
    doc_id: str,
    pipeline: Pipeline,
) -> dict[str, Any]:
    """
    Run one PENDING document to COMPLETED, PENDING_REVIEW or FAILED and
    return it.

    Raises:
        DocumentNotFoundError: the document is missing or vanished mid-run.
        IllegalTransitionError: the document was not PENDING.
    """
    transition(tenant_id, doc_id, PROCESSING)
    try:
        _run(tenant_id, account_id, doc_id, pipeline)
    except DocumentNotFoundError:
        raise
    except Exception as exc:
        logger.exception("Processing document %s failed", doc_id)
        try:
            transition(
                tenant_id,
                doc_id,
                FAILED,
                error_message=str(exc) or type(exc).__name__,
                processed_at=utc_now(),
            )
        except (DocumentNotFoundError, IllegalTransitionError):
            logger.error("Could not mark document %s as failed", doc_id)
            raise exc
    return get_document(tenant_id, doc_id) or {}
