"""Flag extraction candidates that already exist as transactions on the account."""

from __future__ import annotations

import re
from typing import Any

from core.db import fetchone
from core.validator import amount_to_cents, cents_to_amount

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def find_existing_transaction(
    tenant_id: str,
    account_id: str,
    date: str,
    amount_cents: int,
    description: str,
) -> dict[str, Any] | None:
    """Exact (tenant, account, date, amount, description) match."""
    return fetchone(
        """
        SELECT id, date, amount_cents, description
        FROM transactions
        WHERE tenant_id = ?
          AND account_id = ?
          AND date = ?
          AND amount_cents = ?
          AND description = ?
        ORDER BY id
        LIMIT 1
        """,
        (tenant_id, account_id, date, amount_cents, description),
    )


def reconcile_duplicates(
    tenant_id: str,
    account_id: str,
    candidates: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], bool]:
    """
    Return `(enriched, has_duplicate)`.

    Candidates without a parseable ISO date pass through unmarked. A match
    adds `isDuplicate` and the matching `existingTransaction`; the caller
    decides what a batch with any duplicate means.
    """
    enriched: list[dict[str, Any]] = []
    has_duplicate = False
    for candidate in candidates:
        date = str(candidate.get("date") or "").strip()[:10]
        if not _ISO_DATE_RE.match(date):
            enriched.append(dict(candidate))
            continue
        try:
            cents = amount_to_cents(candidate.get("amount"))
        except (ValueError, ArithmeticError):
            enriched.append(dict(candidate))
            continue

        existing = find_existing_transaction(
            tenant_id,
            account_id,
            date,
            cents,
            str(candidate.get("description") or ""),
        )
        if existing is None:
            enriched.append(dict(candidate))
            continue

        has_duplicate = True
        enriched.append(
            {
                **candidate,
                "isDuplicate": True,
                "existingTransaction": {
                    "id": existing["id"],
                    "date": existing["date"],
                    "amount": cents_to_amount(existing["amount_cents"]),
                    "description": existing["description"] or "",
                },
            }
        )
    return enriched, has_duplicate
