"""
Uploaded document lifecycle.

PENDING -> PROCESSING -> {COMPLETED, FAILED, PENDING_REVIEW}
PENDING_REVIEW -> COMPLETED (confirm-import only)

COMPLETED and FAILED are terminal. Every status write is a conditional
UPDATE on the allowed source states, so a forbidden transition is
detected by the database row itself rather than by a prior read.
"""

from __future__ import annotations

import datetime
import json
import logging
import sqlite3
import time
import uuid
from contextlib import closing
from pathlib import Path
from typing import Any

from core.db import fetchall, fetchone, get_connection
from core.transactions import SOURCE_UPLOAD, create_transactions, row_to_transaction

logger = logging.getLogger(__name__)

PENDING = "PENDING"
PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
PENDING_REVIEW = "PENDING_REVIEW"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING}),
    PROCESSING: frozenset({COMPLETED, FAILED, PENDING_REVIEW}),
    PENDING_REVIEW: frozenset({COMPLETED}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
}

ADD_ALL = "add_all"
SKIP_DUPLICATES = "skip_duplicates"
ADD_NONE = "add_none"
CONFIRM_ACTIONS = (ADD_ALL, SKIP_DUPLICATES, ADD_NONE)

ALLOWED_MIMES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/webp",
        "application/pdf",
        "text/csv",
        "application/csv",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
    }
)

# Document columns a status change may write alongside the status.
_TRANSITION_FIELDS = ("ocr_text", "extracted_json", "error_message", "processed_at")

_CANDIDATE_FIELDS = (
    "date",
    "description",
    "amount",
    "categorySlug",
    "totalAmount",
    "installmentCurrent",
    "installmentTotal",
)


class UnsupportedFileTypeError(ValueError):
    """Raised when an upload's mime type is not in the allow-list."""


class MissingFileError(ValueError):
    """Raised when an upload carries no file content."""


class DocumentNotFoundError(LookupError):
    """Raised when a document does not exist for the tenant."""


class IllegalTransitionError(RuntimeError):
    """Raised when a status change is not allowed from the current status."""


class DocumentStateError(RuntimeError):
    """Raised when an operation needs a status the document is not in."""


class InvalidImportActionError(ValueError):
    """Raised for a confirm-import action outside CONFIRM_ACTIONS."""


def utc_now() -> str:
    return datetime.datetime.now(datetime.UTC).isoformat()


def fix_filename(name: str) -> str:
    """Repair a UTF-8 file name that arrived decoded as latin-1."""
    try:
        repaired = name.encode("latin-1").decode("utf-8", errors="replace")
    except UnicodeEncodeError:
        return name
    return name if "\ufffd" in repaired else repaired


def _safe_file_name(name: str) -> str:
    base = Path(fix_filename(name or "")).name.strip()
    return base or "upload"


def create_document(
    tenant_id: str,
    file_name: str,
    mime_type: str,
    content: bytes,
    upload_dir: str | Path,
) -> dict[str, Any]:
    """
    Store an upload on disk and create its PENDING document.

    Raises:
        UnsupportedFileTypeError: mime type not allowed; nothing is stored.
        MissingFileError: empty upload; nothing is stored.
    """
    if mime_type not in ALLOWED_MIMES:
        raise UnsupportedFileTypeError(
            "Invalid file type. Allowed: JPEG, PNG, WebP, PDF, CSV, "
            "Excel (.xlsx, .xls), Word (.docx, .doc)"
        )
    if not content:
        raise MissingFileError("No file uploaded.")

    name = _safe_file_name(file_name)
    storage_path = Path(upload_dir) / tenant_id / f"{int(time.time() * 1000)}-{name}"
    storage_path.parent.mkdir(parents=True, exist_ok=True)
    storage_path.write_bytes(content)

    doc_id = uuid.uuid4().hex
    with closing(get_connection()) as connection:
        connection.execute(
            """
            INSERT INTO documents (
                id, tenant_id, file_name, mime_type, storage_path, file_size,
                status, uploaded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (doc_id, tenant_id, name, mime_type, str(storage_path), len(content), PENDING, utc_now()),
        )
        connection.commit()
    logger.info("Document %s stored (%s, %d bytes)", doc_id, mime_type, len(content))
    return get_document(tenant_id, doc_id) or {}


def get_document_row(tenant_id: str, doc_id: str) -> dict[str, Any] | None:
    return fetchone(
        "SELECT * FROM documents WHERE id = ? AND tenant_id = ?",
        (doc_id, tenant_id),
    )


def load_snapshot(extracted_json: str | None) -> list[Any] | None:
    """Parsed extraction snapshot, or None when absent or not a JSON list."""
    if not extracted_json:
        return None
    try:
        parsed = json.loads(extracted_json)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, list) else None


def row_to_document(row: dict[str, Any]) -> dict[str, Any]:
    snapshot = load_snapshot(row.get("extracted_json"))
    return {
        "id": row["id"],
        "fileName": row["file_name"],
        "mimeType": row["mime_type"],
        "storagePath": row["storage_path"],
        "fileSize": row["file_size"],
        "status": row["status"],
        "ocrText": row["ocr_text"],
        "extractedJson": snapshot,
        "extractedCount": len(snapshot) if snapshot is not None else 0,
        "errorMessage": row["error_message"],
        "uploadedAt": row["uploaded_at"],
        "processedAt": row["processed_at"],
    }


def get_document(tenant_id: str, doc_id: str) -> dict[str, Any] | None:
    """Document with the transactions it produced."""
    row = get_document_row(tenant_id, doc_id)
    if row is None:
        return None
    tx_rows = fetchall(
        """
        SELECT t.*, c.slug AS category_slug, c.name AS category_name
        FROM transactions t
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE t.tenant_id = ? AND t.document_id = ?
        ORDER BY t.id
        """,
        (tenant_id, doc_id),
    )
    document = row_to_document(row)
    document["transactions"] = [row_to_transaction(r) for r in tx_rows]
    document["transactionCount"] = len(tx_rows)
    return document


def transition(
    tenant_id: str,
    doc_id: str,
    new_status: str,
    connection: sqlite3.Connection | None = None,
    **fields: Any,
) -> None:
    """
    Move a document to `new_status`, writing `fields` in the same UPDATE.

    With `connection` the update joins the caller's transaction and is not
    committed here.

    Raises:
        DocumentNotFoundError: no such document for the tenant.
        IllegalTransitionError: the current status does not allow `new_status`.
    """
    sources = sorted(s for s, targets in ALLOWED_TRANSITIONS.items() if new_status in targets)
    unknown = set(fields) - set(_TRANSITION_FIELDS)
    if unknown:
        raise ValueError(f"Unknown document fields: {sorted(unknown)}")
    if not sources:
        raise IllegalTransitionError(f"No transition leads to {new_status}.")

    assignments = ["status = ?"] + [f"{name} = ?" for name in fields]
    params: list[Any] = [new_status, *fields.values(), doc_id, tenant_id, *sources]
    query = (
        f"UPDATE documents SET {', '.join(assignments)} "
        f"WHERE id = ? AND tenant_id = ? AND status IN ({', '.join('?' for _ in sources)})"
    )

    if connection is not None:
        updated = connection.execute(query, params).rowcount
    else:
        with closing(get_connection()) as own:
            updated = own.execute(query, params).rowcount
            own.commit()
    if updated:
        logger.debug("Document %s -> %s", doc_id, new_status)
        return

    current = fetchone(
        "SELECT status FROM documents WHERE id = ? AND tenant_id = ?",
        (doc_id, tenant_id),
    )
    if current is None:
        raise DocumentNotFoundError(f"Document {doc_id} not found.")
    raise IllegalTransitionError(f"Document {doc_id}: {current['status']} -> {new_status} is not allowed.")


def _candidate_fields(candidate: dict[str, Any]) -> dict[str, Any]:
    return {key: candidate.get(key) for key in _CANDIDATE_FIELDS if candidate.get(key) is not None}


def materialize_and_complete(
    tenant_id: str,
    doc_id: str,
    account_id: str,
    candidates: list[dict[str, Any]],
    **fields: Any,
) -> list[int]:
    """Create transactions and mark the document COMPLETED in one commit."""
    items = [_candidate_fields(c) for c in candidates if isinstance(c, dict)]
    with closing(get_connection()) as connection:
        ids = create_transactions(
            tenant_id,
            account_id,
            items,
            source=SOURCE_UPLOAD,
            document_id=doc_id,
            connection=connection,
        )
        transition(tenant_id, doc_id, COMPLETED, connection=connection, **fields)
        connection.commit()
    return ids


def confirm_import(
    tenant_id: str,
    doc_id: str,
    account_id: str,
    action: str,
    selected_indices: list[int] | None = None,
) -> dict[str, Any]:
    """
    Resolve a PENDING_REVIEW document.

    `skip_duplicates` imports the rows not flagged as duplicates; otherwise
    a non-empty `selected_indices` picks rows by position (out-of-range
    indices are ignored) and `add_all` without indices imports every row.
    `add_none`, or a missing snapshot, completes with nothing imported.
    """
    if action not in CONFIRM_ACTIONS:
        raise InvalidImportActionError(
            f"Unknown action {action!r}; expected one of {', '.join(CONFIRM_ACTIONS)}."
        )
    row = get_document_row(tenant_id, doc_id)
    if row is None:
        raise DocumentNotFoundError(f"Document {doc_id} not found.")
    if row["status"] != PENDING_REVIEW:
        raise DocumentStateError(f"Document {doc_id} is {row['status']}, not pending review.")

    snapshot = load_snapshot(row["extracted_json"])
    if not snapshot or action == ADD_NONE:
        transition(tenant_id, doc_id, COMPLETED, processed_at=utc_now())
        return get_document(tenant_id, doc_id) or {}

    if action == SKIP_DUPLICATES:
        selected = [c for c in snapshot if isinstance(c, dict) and not c.get("isDuplicate")]
    elif selected_indices:
        selected = [snapshot[i] for i in selected_indices if 0 <= i < len(snapshot)]
    else:
        selected = snapshot

    ids = materialize_and_complete(tenant_id, doc_id, account_id, selected, processed_at=utc_now())
    logger.info("Document %s confirmed (%s): %d transactions", doc_id, action, len(ids))
    return get_document(tenant_id, doc_id) or {}
