"""Extract plain text and page images from uploaded statement files."""

import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

import pandas as pd
import pymupdf
from docx import Document
from pymupdf4llm import to_markdown

logger = logging.getLogger(__name__)

CSV_MIMES = frozenset({"text/csv", "application/csv"})
EXCEL_MIMES = frozenset(
    {
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
    }
)
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC_MIME = "application/msword"
PDF_MIME = "application/pdf"
STRUCTURED_MIMES = CSV_MIMES | EXCEL_MIMES | {DOCX_MIME, DOC_MIME}

CSV_ENCODINGS = ("utf-8", "utf-8-sig", "latin1", "cp1252")
RENDER_ZOOM = 2.0


def extract_markdown_from_pdf(file_path: str) -> str:
    """Extract markdown from PDF using pymupdf4llm.

    Args:
        file_path: Absolute or relative path to the PDF file.

    Returns:
        Markdown for all pages concatenated, or "" for a PDF with no pages.

    Raises:
        FileNotFoundError: If file_path does not exist.
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"PDF not found: {file_path}")

    doc: Optional[pymupdf.Document] = None
    try:
        doc = pymupdf.open(file_path)
        if doc.page_count == 0:
            return ""
        return to_markdown(doc, pages=None)
    finally:
        if doc is not None:
            doc.close()


def render_pdf_pages(pdf_path: str, out_dir: str) -> List[str]:
    """Rasterize each PDF page to a PNG in out_dir.

    Returns:
        Page image paths in page order, or [] when the PDF cannot be
        rendered. Partial output is removed on failure.
    """
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    matrix = pymupdf.Matrix(RENDER_ZOOM, RENDER_ZOOM)
    paths: List[str] = []
    doc: Optional[pymupdf.Document] = None
    try:
        doc = pymupdf.open(pdf_path)
        for index, page in enumerate(doc):
            image_path = out / f"page-{index + 1:03d}.png"
            page.get_pixmap(matrix=matrix).save(str(image_path))
            paths.append(str(image_path))
        if not paths:
            raise ValueError("PDF has no pages")
    except Exception as exc:
        logger.warning("PDF rasterization failed for %s: %s", pdf_path, exc)
        shutil.rmtree(out, ignore_errors=True)
        return []
    finally:
        if doc is not None:
            doc.close()
    return paths


def _frame_to_text(df: pd.DataFrame) -> str:
    df = df.dropna(how="all").fillna("")
    lines = ["\t".join(str(c) for c in df.columns)]
    for row in df.itertuples(index=False):
        cells = [str(v).strip() for v in row]
        if any(cells):
            lines.append("\t".join(cells))
    return "\n".join(lines)


def _csv_text(file_path: str) -> str:
    for encoding in CSV_ENCODINGS:
        try:
            df = pd.read_csv(file_path, encoding=encoding, dtype=str, low_memory=False)
            logger.debug("Loaded CSV with %s encoding", encoding)
            return _frame_to_text(df)
        except UnicodeDecodeError:
            continue
    raise ValueError(f"Could not decode CSV file with any of the tried encodings: {CSV_ENCODINGS}")


def _excel_text(file_path: str) -> str:
    sheets = pd.read_excel(file_path, sheet_name=None, dtype=str)
    return "\n\n".join(_frame_to_text(df) for df in sheets.values())


def _docx_text(file_path: str) -> str:
    doc = Document(file_path)
    blocks = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                blocks.append(" | ".join(cells))
    return "\n".join(blocks)


def get_text_from_file(file_path: str, mime_type: str) -> str:
    """Plain text for a structured upload or a PDF; "" when unsupported or unreadable."""
    if not os.path.exists(file_path):
        logger.warning("Text extraction input not found: %s", file_path)
        return ""
    try:
        if mime_type in CSV_MIMES:
            return _csv_text(file_path)
        if mime_type in EXCEL_MIMES:
            return _excel_text(file_path)
        if mime_type == DOCX_MIME:
            return _docx_text(file_path)
        if mime_type == PDF_MIME:
            return extract_markdown_from_pdf(file_path)
    except Exception as exc:
        logger.warning("Text extraction failed for %s (%s): %s", file_path, mime_type, exc)
        return ""
    # Legacy .doc and anything else has no extractor.
    return ""
