"""Read models for documents and transactions. Every query is tenant scoped."""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass
from typing import Any

from core.db import fetchall, fetchone
from core.documents import row_to_document
from core.transactions import row_to_transaction
from core.validator import amount_to_cents

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

TYPE_INCOME = "income"
TYPE_EXPENSE = "expense"

_DMY_RE = re.compile(r"^(\d{1,2})[./](\d{1,2})[./](\d{4})$")


@dataclass(frozen=True)
class TransactionFilter:
    """One field per supported predicate; None means "do not filter"."""

    account_id: str | None = None
    category_id: int | None = None
    type: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    document_id: str | None = None
    search: str | None = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def page_number(self) -> int:
        return max(1, int(self.page or 1))

    @property
    def page_size(self) -> int:
        return min(MAX_PAGE_SIZE, max(1, int(self.limit or DEFAULT_PAGE_SIZE)))


def _search_date(term: str) -> str | None:
    try:
        return datetime.date.fromisoformat(term).isoformat()
    except ValueError:
        pass
    match = _DMY_RE.match(term)
    if not match:
        return None
    day, month, year = (int(g) for g in match.groups())
    try:
        return datetime.date(year, month, day).isoformat()
    except ValueError:
        return None


def _search_clause(term: str) -> tuple[str, list[Any]]:
    options = ["t.description LIKE ?"]
    params: list[Any] = [f"%{term}%"]
    try:
        cents = amount_to_cents(term)
    except (ValueError, OverflowError):
        cents = None
    if cents is not None:
        options.append("t.amount_cents IN (?, ?)")
        params.extend([cents, -cents])
    search_date = _search_date(term)
    if search_date:
        options.append("t.date = ?")
        params.append(search_date)
    return "(" + " OR ".join(options) + ")", params


def build_transaction_where(tenant_id: str, f: TransactionFilter) -> tuple[str, list[Any]]:
    """Pure: turn a filter into a WHERE clause and its parameters."""
    conditions = ["t.tenant_id = ?"]
    params: list[Any] = [tenant_id]
    if f.account_id is not None:
        conditions.append("t.account_id = ?")
        params.append(f.account_id)
    if f.category_id is not None:
        conditions.append("t.category_id = ?")
        params.append(f.category_id)
    if f.type == TYPE_INCOME:
        conditions.append("t.amount_cents > 0")
    elif f.type == TYPE_EXPENSE:
        conditions.append("t.amount_cents < 0")
    if f.date_from:
        conditions.append("t.date >= ?")
        params.append(f.date_from[:10])
    if f.date_to:
        conditions.append("t.date <= ?")
        params.append(f.date_to[:10])
    if f.document_id is not None:
        conditions.append("t.document_id = ?")
        params.append(f.document_id)
    term = (f.search or "").strip()
    if term:
        clause, search_params = _search_clause(term)
        conditions.append(clause)
        params.extend(search_params)
    return " AND ".join(conditions), params


def list_transactions(tenant_id: str, f: TransactionFilter | None = None) -> dict[str, Any]:
    """Newest first, paginated, with installment display corrections."""
    f = f or TransactionFilter()
    where, params = build_transaction_where(tenant_id, f)
    limit = f.page_size
    page = f.page_number
    rows = fetchall(
        f"""
        SELECT t.*, c.slug AS category_slug, c.name AS category_name
        FROM transactions t
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE {where}
        ORDER BY t.date DESC, t.id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, (page - 1) * limit),
    )
    total = fetchone(f"SELECT COUNT(*) AS n FROM transactions t WHERE {where}", tuple(params))
    return {
        "items": [row_to_transaction(r) for r in rows],
        "total": int(total["n"]) if total else 0,
        "page": page,
        "limit": limit,
    }


def list_documents(tenant_id: str) -> list[dict[str, Any]]:
    """Documents newest first with extracted and created transaction counts."""
    rows = fetchall(
        """
        SELECT d.*,
               (SELECT COUNT(*) FROM transactions t
                WHERE t.document_id = d.id AND t.tenant_id = d.tenant_id) AS transaction_count
        FROM documents d
        WHERE d.tenant_id = ?
        ORDER BY d.uploaded_at DESC, d.rowid DESC
        """,
        (tenant_id,),
    )
    documents = []
    for row in rows:
        document = row_to_document(row)
        document["transactionCount"] = int(row["transaction_count"] or 0)
        documents.append(document)
    return documents
