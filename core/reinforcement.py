"""Learn category rules from user corrections. Priorities only ever grow."""

from __future__ import annotations

import datetime
from typing import Any

from core.db import execute, fetchone
from core.rules import CONTAINS, extract_pattern

LEARNED_RULE_PRIORITY = 10
REINFORCEMENT_STEP = 5


def learn_from_correction(
    tenant_id: str,
    description: str | None,
    category_id: int | None,
) -> dict[str, Any] | None:
    """
    Record that `description` belongs to `category_id`.

    A new pattern becomes an active `contains` rule at the baseline
    priority. An existing rule for the same pattern (compared
    case-insensitively) is reinforced by the fixed step and takes the
    newly assigned category, whether that agrees with it or corrects it.
    Returns the stored rule, or None when there is nothing to learn.
    """
    if not category_id or not (description or "").strip():
        return None
    pattern = extract_pattern(description)
    if not pattern:
        return None

    now = datetime.datetime.now(datetime.UTC).isoformat()
    # Single statement: concurrent corrections cannot lose an increment.
    execute(
        """
        INSERT INTO category_rules (
            tenant_id, category_id, pattern, pattern_type, priority,
            is_active, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, 1, ?, ?)
        ON CONFLICT (tenant_id, pattern) DO UPDATE SET
            priority = category_rules.priority + ?,
            category_id = excluded.category_id,
            updated_at = excluded.updated_at
        """,
        (
            tenant_id,
            int(category_id),
            pattern,
            CONTAINS,
            LEARNED_RULE_PRIORITY,
            now,
            now,
            REINFORCEMENT_STEP,
        ),
    )
    return fetchone(
        "SELECT * FROM category_rules WHERE tenant_id = ? AND pattern = ?",
        (tenant_id, pattern),
    )
