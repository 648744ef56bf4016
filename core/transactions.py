"""
Transaction materialization, category corrections and display corrections.

Stored amounts are signed integer cents: positive is income, negative is
an expense. Display corrections for installments are computed on read and
never written back.
"""

from __future__ import annotations

import datetime
import logging
import sqlite3
from contextlib import closing
from typing import Any, Iterable

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from core.categories import get_category, get_or_create_category
from core.db import execute_rowcount, fetchall, fetchone, get_connection
from core.reinforcement import learn_from_correction
from core.rules import suggest_category
from core.validator import amount_to_cents, cents_to_amount, is_iso_date

logger = logging.getLogger(__name__)

SOURCE_MANUAL = "MANUAL"
SOURCE_UPLOAD = "UPLOAD"
SOURCE_VOICE = "VOICE"
SOURCES = (SOURCE_MANUAL, SOURCE_UPLOAD, SOURCE_VOICE)

DEFAULT_CURRENCY = "ILS"
RECURRING_INCOME_SLUG = "salary"
INSTALLMENT_TOTAL_RATIO = 0.99

_SELECT_TRANSACTION = """
    SELECT t.*, c.slug AS category_slug, c.name AS category_name
    FROM transactions t
    LEFT JOIN categories c ON c.id = t.category_id
"""


class TransactionNotFoundError(LookupError):
    """Raised when a transaction id does not exist for the tenant."""


class CategoryNotFoundError(LookupError):
    """Raised when a category id does not exist for the tenant."""


def coerce_date(value: Any, today: datetime.date | None = None) -> str:
    """ISO date for a candidate date; unparseable or empty values become today."""
    fallback = (today or datetime.date.today()).isoformat()
    text = str(value or "").strip()
    if not text:
        return fallback
    if is_iso_date(text[:10]):
        return text[:10]
    try:
        return date_parser.parse(text, dayfirst=True).date().isoformat()
    except (ValueError, OverflowError):
        return fallback


def _optional_cents(value: Any) -> int | None:
    if value is None or value == "":
        return None
    cents = amount_to_cents(value)
    return cents if cents > 0 else None


def _optional_count(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return max(1, int(float(value)))
    except (TypeError, ValueError):
        return None


def resolve_categories(tenant_id: str, candidates: list[dict[str, Any]]) -> list[int | None]:
    """
    Category id per candidate: the candidate's slug (created on demand),
    else the rule engine's suggestion for its description, else None.
    """
    by_slug: dict[str, int | None] = {}
    resolved: list[int | None] = []
    for candidate in candidates:
        slug = str(candidate.get("categorySlug") or "").strip()
        category_id = None
        if slug:
            if slug not in by_slug:
                by_slug[slug] = get_or_create_category(tenant_id, slug)
            category_id = by_slug[slug]
        description = str(candidate.get("description") or "").strip()
        if category_id is None and description:
            category_id = suggest_category(tenant_id, description)
        resolved.append(category_id)
    return resolved


def create_transactions(
    tenant_id: str,
    account_id: str,
    candidates: list[dict[str, Any]],
    source: str = SOURCE_UPLOAD,
    document_id: str | None = None,
    connection: sqlite3.Connection | None = None,
) -> list[int]:
    """
    Persist accepted candidates and return the new transaction ids.

    Categories are resolved before any row is written. With `connection`
    the inserts join the caller's open transaction and are not committed
    here, so a document status change can commit together with them.
    """
    if source not in SOURCES:
        raise ValueError(f"Unknown transaction source: {source!r}")
    if not candidates:
        return []

    category_ids = resolve_categories(tenant_id, candidates)
    now = datetime.datetime.now(datetime.UTC).isoformat()
    rows = []
    for candidate, category_id in zip(candidates, category_ids):
        amount_cents = amount_to_cents(candidate.get("amount"))
        slug = str(candidate.get("categorySlug") or "").strip()
        rows.append(
            (
                tenant_id,
                account_id,
                category_id,
                coerce_date(candidate.get("date")),
                str(candidate.get("description") or "").strip(),
                amount_cents,
                DEFAULT_CURRENCY,
                source,
                document_id,
                _optional_cents(candidate.get("totalAmount")),
                _optional_count(candidate.get("installmentCurrent")),
                _optional_count(candidate.get("installmentTotal")),
                int(slug == RECURRING_INCOME_SLUG and amount_cents > 0),
                now,
                now,
            )
        )

    def insert_all(conn: sqlite3.Connection) -> list[int]:
        ids = []
        for row in rows:
            cursor = conn.execute(
                """
                INSERT INTO transactions (
                    tenant_id, account_id, category_id, date, description,
                    amount_cents, currency, source, document_id,
                    total_amount_cents, installment_current, installment_total,
                    is_recurring, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                row,
            )
            ids.append(int(cursor.lastrowid))
        return ids

    if connection is not None:
        return insert_all(connection)
    with closing(get_connection()) as own:
        ids = insert_all(own)
        own.commit()
    logger.debug("Created %d transactions for account %s", len(ids), account_id)
    return ids


def fix_display_amount(tx: dict[str, Any]) -> dict[str, Any]:
    """
    Add `displayAmount`: the per-installment charge when the stored amount
    looks like the full purchase price, else the stored amount.
    """
    amount = tx.get("amount") or 0.0
    payments = tx.get("installmentTotal") or 0
    if payments < 1:
        return {**tx, "displayAmount": amount}

    total = tx.get("totalAmount")
    total_to_use = total if total is not None and total > 0 else abs(amount)
    if abs(amount) < total_to_use * INSTALLMENT_TOTAL_RATIO:
        return {**tx, "displayAmount": amount}

    per_installment = round(total_to_use / payments, 2)
    sign = 1 if amount >= 0 else -1
    return {**tx, "displayAmount": sign * per_installment}


def add_display_dates(tx: dict[str, Any]) -> dict[str, Any]:
    """Add `displayDate` (and `firstPaymentDate` for installment N of M)."""
    try:
        first = datetime.date.fromisoformat(str(tx.get("date") or "")[:10])
    except ValueError:
        return tx
    current = max(1, int(tx["installmentCurrent"])) if tx.get("installmentCurrent") else 0
    payments = max(1, int(tx["installmentTotal"])) if tx.get("installmentTotal") else 0
    if current >= 1 and payments >= 1:
        return {
            **tx,
            "displayDate": (first + relativedelta(months=current - 1)).isoformat(),
            "firstPaymentDate": first.isoformat(),
        }
    return {**tx, "displayDate": first.isoformat()}


def row_to_transaction(row: dict[str, Any]) -> dict[str, Any]:
    """Shape a stored row for callers, with display corrections applied."""
    tx = {
        "id": row["id"],
        "accountId": row["account_id"],
        "categoryId": row["category_id"],
        "categorySlug": row.get("category_slug"),
        "categoryName": row.get("category_name"),
        "date": row["date"],
        "description": row["description"],
        "amount": cents_to_amount(row["amount_cents"]),
        "currency": row["currency"],
        "source": row["source"],
        "documentId": row["document_id"],
        "totalAmount": cents_to_amount(row["total_amount_cents"]),
        "installmentCurrent": row["installment_current"],
        "installmentTotal": row["installment_total"],
        "isRecurring": bool(row["is_recurring"]),
        "createdAt": row["created_at"],
    }
    return add_display_dates(fix_display_amount(tx))


def get_transaction(tenant_id: str, tx_id: int) -> dict[str, Any] | None:
    row = fetchone(
        _SELECT_TRANSACTION + " WHERE t.id = ? AND t.tenant_id = ?",
        (tx_id, tenant_id),
    )
    return row_to_transaction(row) if row else None


def _require_category(tenant_id: str, category_id: int | None) -> None:
    if category_id is not None and get_category(tenant_id, category_id) is None:
        raise CategoryNotFoundError(f"Category {category_id} not found.")


def update_transaction_category(
    tenant_id: str,
    tx_id: int,
    category_id: int | None,
) -> dict[str, Any]:
    """Set or clear a transaction's category and learn from the assignment."""
    existing = fetchone(
        "SELECT id, description FROM transactions WHERE id = ? AND tenant_id = ?",
        (tx_id, tenant_id),
    )
    if existing is None:
        raise TransactionNotFoundError(f"Transaction {tx_id} not found.")
    _require_category(tenant_id, category_id)

    execute_rowcount(
        "UPDATE transactions SET category_id = ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
        (category_id, datetime.datetime.now(datetime.UTC).isoformat(), tx_id, tenant_id),
    )
    if category_id and existing["description"]:
        learn_from_correction(tenant_id, existing["description"], category_id)
    return get_transaction(tenant_id, tx_id) or {}


def bulk_update_category(
    tenant_id: str,
    tx_ids: Iterable[int],
    category_id: int | None,
) -> int:
    """Set one category on many transactions; learns once per distinct description."""
    ids = [int(i) for i in tx_ids]
    if not ids:
        return 0
    _require_category(tenant_id, category_id)

    placeholders = ", ".join("?" for _ in ids)
    updated = execute_rowcount(
        f"UPDATE transactions SET category_id = ?, updated_at = ? "
        f"WHERE tenant_id = ? AND id IN ({placeholders})",
        (category_id, datetime.datetime.now(datetime.UTC).isoformat(), tenant_id, *ids),
    )
    if category_id and updated:
        rows = fetchall(
            f"SELECT DISTINCT description FROM transactions "
            f"WHERE tenant_id = ? AND id IN ({placeholders}) ORDER BY description",
            (tenant_id, *ids),
        )
        for row in rows:
            if row["description"]:
                learn_from_correction(tenant_id, row["description"], category_id)
    return updated


def bulk_flip_sign(tenant_id: str, tx_ids: Iterable[int]) -> int:
    """Negate the stored amount of each transaction (income <-> expense)."""
    ids = [int(i) for i in tx_ids]
    if not ids:
        return 0
    placeholders = ", ".join("?" for _ in ids)
    return execute_rowcount(
        f"UPDATE transactions SET amount_cents = -amount_cents, updated_at = ? "
        f"WHERE tenant_id = ? AND id IN ({placeholders})",
        (datetime.datetime.now(datetime.UTC).isoformat(), tenant_id, *ids),
    )


def update_transaction(
    tenant_id: str,
    tx_id: int,
    *,
    description: str | None = None,
    category_id: int | None = None,
    date: str | None = None,
    amount: float | None = None,
) -> dict[str, Any]:
    """
    Edit fields of one transaction. A rule is learned only when the edit
    carries both a category and a description.
    """
    if fetchone(
        "SELECT id FROM transactions WHERE id = ? AND tenant_id = ?", (tx_id, tenant_id)
    ) is None:
        raise TransactionNotFoundError(f"Transaction {tx_id} not found.")
    _require_category(tenant_id, category_id)

    assignments: list[str] = []
    params: list[Any] = []
    if description is not None:
        assignments.append("description = ?")
        params.append(description.strip())
    if category_id is not None:
        assignments.append("category_id = ?")
        params.append(category_id)
    if date is not None and is_iso_date(date):
        assignments.append("date = ?")
        params.append(date.strip()[:10])
    if amount is not None:
        assignments.append("amount_cents = ?")
        params.append(amount_to_cents(amount))

    if assignments:
        assignments.append("updated_at = ?")
        params.append(datetime.datetime.now(datetime.UTC).isoformat())
        execute_rowcount(
            f"UPDATE transactions SET {', '.join(assignments)} WHERE id = ? AND tenant_id = ?",
            (*params, tx_id, tenant_id),
        )
    if category_id and (description or "").strip():
        learn_from_correction(tenant_id, description, category_id)
    return get_transaction(tenant_id, tx_id) or {}
