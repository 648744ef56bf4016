"""Category rules: pattern extraction, deterministic matching, explicit rule CRUD."""

from __future__ import annotations

import datetime
import re
import sqlite3
from typing import Any

from core.db import execute_returning_id, execute_rowcount, fetchall, fetchone
from core.ocr_utils import DATE_RE

CONTAINS = "contains"
STARTS_WITH = "startsWith"
REGEX = "regex"
PATTERN_TYPES = (CONTAINS, STARTS_WITH, REGEX)

MAX_PATTERN_LENGTH = 50
MAX_PATTERN_WORDS = 4

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*")
_LEGAL_SUFFIX_RE = re.compile(r"בע[\"״]?מ|\b(?:LTD|INC|CO)\b\.?", re.IGNORECASE)
_BRANCH_RE = re.compile(r"סניף|\bBranch\b|\bBr\.", re.IGNORECASE)
_PUNCT_RE = re.compile(r"[*#_=;\"'(),]")


class RuleConflictError(ValueError):
    """Raised when a rule with the same pattern already exists for the tenant."""


class InvalidRuleError(ValueError):
    """Raised for an empty pattern, unknown pattern type, bad regex or unknown category."""


def extract_pattern(description: str | None) -> str:
    """
    Reduce a description to a short merchant identifier.

    Dates, numbers, legal suffixes and branch markers are dropped; the
    first four remaining words of two or more characters are kept, capped
    at 50 characters. Falls back to the start of the original text when
    nothing usable is left.
    """
    original = (description or "").strip()
    s = DATE_RE.sub(" ", original)
    s = _NUMBER_RE.sub(" ", s)
    s = _LEGAL_SUFFIX_RE.sub(" ", s)
    s = _BRANCH_RE.sub(" ", s)
    s = _PUNCT_RE.sub(" ", s)
    s = re.sub(r"\s+", " ", s)
    s = re.sub(r"^[\s\-:.,]+|[\s\-:.,]+$", "", s)

    words = [w for w in s.split(" ") if len(w) >= 2][:MAX_PATTERN_WORDS]
    pattern = " ".join(words)[:MAX_PATTERN_LENGTH].strip()
    if len(pattern) < 2:
        return original[:MAX_PATTERN_LENGTH]
    return pattern


def _matches(rule: dict[str, Any], description: str, upper_text: str) -> bool:
    pattern = str(rule.get("pattern") or "")
    if not pattern:
        return False
    pattern_type = rule.get("pattern_type") or CONTAINS
    if pattern_type == CONTAINS:
        return pattern.upper() in upper_text
    if pattern_type == STARTS_WITH:
        return upper_text.startswith(pattern.upper())
    if pattern_type == REGEX:
        try:
            return re.search(pattern, description, re.IGNORECASE) is not None
        except re.error:
            return False
    return False


def match_rules(description: str | None, rules: list[dict[str, Any]]) -> dict[str, Any] | None:
    """
    First matching rule for a description, or None.

    `rules` must already be active and ordered by priority descending.
    A direct pass over every rule runs first; only when nothing matches do
    `contains` rules get a second, bidirectional chance against the
    extracted pattern.
    """
    text = (description or "").strip()
    if not text:
        return None
    upper_text = text.upper()

    for rule in rules:
        if _matches(rule, text, upper_text):
            return rule

    extracted = extract_pattern(text).upper()
    if len(extracted) < 2:
        return None
    for rule in rules:
        if (rule.get("pattern_type") or CONTAINS) != CONTAINS:
            continue
        pattern = str(rule.get("pattern") or "").upper()
        if not pattern:
            continue
        if pattern in extracted or extracted in pattern:
            return rule
    return None


def list_rules(tenant_id: str, active_only: bool = False) -> list[dict[str, Any]]:
    """Rules for a tenant in matching order (priority desc, oldest first on ties)."""
    query = """
        SELECT r.id, r.tenant_id, r.category_id, r.pattern, r.pattern_type,
               r.priority, r.is_active, r.created_at, r.updated_at,
               c.slug AS category_slug, c.name AS category_name
        FROM category_rules r
        JOIN categories c ON c.id = r.category_id
        WHERE r.tenant_id = ?
    """
    if active_only:
        query += " AND r.is_active = 1"
    query += " ORDER BY r.priority DESC, r.id ASC"
    return fetchall(query, (tenant_id,))


def suggest_category(tenant_id: str, description: str | None) -> int | None:
    """Category id suggested by the tenant's active rules, or None (uncategorized)."""
    if not (description or "").strip():
        return None
    rule = match_rules(description, list_rules(tenant_id, active_only=True))
    return int(rule["category_id"]) if rule else None


def _validate_rule(pattern: str, pattern_type: str) -> None:
    if not pattern:
        raise InvalidRuleError("Rule pattern must not be empty.")
    if pattern_type not in PATTERN_TYPES:
        raise InvalidRuleError(
            f"Unknown pattern type {pattern_type!r}; expected one of {', '.join(PATTERN_TYPES)}."
        )
    if pattern_type == REGEX:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise InvalidRuleError(f"Invalid regex {pattern!r}: {exc}") from exc


def create_rule(
    tenant_id: str,
    category_id: int,
    pattern: str,
    pattern_type: str = CONTAINS,
    priority: int = 0,
) -> dict[str, Any]:
    """Create an explicit user rule and return the stored row."""
    pattern = (pattern or "").strip()
    _validate_rule(pattern, pattern_type)
    category = fetchone(
        "SELECT id FROM categories WHERE id = ? AND tenant_id = ?",
        (category_id, tenant_id),
    )
    if category is None:
        raise InvalidRuleError(f"Category {category_id} not found for tenant.")

    now = datetime.datetime.now(datetime.UTC).isoformat()
    try:
        rule_id = execute_returning_id(
            """
            INSERT INTO category_rules (
                tenant_id, category_id, pattern, pattern_type, priority,
                is_active, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (tenant_id, category_id, pattern, pattern_type, int(priority), now, now),
        )
    except sqlite3.IntegrityError as exc:
        raise RuleConflictError(f"A rule for pattern {pattern!r} already exists.") from exc
    return get_rule(tenant_id, rule_id) or {}


def get_rule(tenant_id: str, rule_id: int) -> dict[str, Any] | None:
    return fetchone(
        "SELECT * FROM category_rules WHERE id = ? AND tenant_id = ?",
        (rule_id, tenant_id),
    )


def delete_rule(tenant_id: str, rule_id: int) -> bool:
    """Delete a rule; False when it does not exist for the tenant."""
    deleted = execute_rowcount(
        "DELETE FROM category_rules WHERE id = ? AND tenant_id = ?",
        (rule_id, tenant_id),
    )
    return deleted > 0
