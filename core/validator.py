"""
Normalize and correct extraction candidates returned by the adapter.
"""

from __future__ import annotations

import datetime
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from core.ledger import SignKeywords
from core.ocr_utils import sanitize_description
from core.sign_hints import (
    SIGN_EXPENSE,
    SIGN_INCOME,
    SignHints,
    amount_candidates,
    parse_line_date,
    split_lines,
)

INCOME_SLUGS = frozenset({"salary", "income"})
EXPENSE_SLUGS = frozenset(
    {
        "loan_payment",
        "loan_interest",
        "credit_charges",
        "bank_fees",
        "fees",
        "utilities",
        "insurance",
        "pension",
        "groceries",
        "transport",
        "dining",
        "shopping",
        "healthcare",
        "entertainment",
        "other",
    }
)
DEFAULT_SLUG = "other"

_SLUG_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CREDIT_RE = re.compile(r"זכות|credit", re.IGNORECASE)
_DEBIT_RE = re.compile(r"חובה|debit", re.IGNORECASE)
_GREEN_RE = re.compile(r"green|ירוק", re.IGNORECASE)
_RED_RE = re.compile(r"red|אדום", re.IGNORECASE)

AMOUNT_TOLERANCE = 0.02
INSTALLMENT_TOTAL_RATIO = 0.99


def amount_to_cents(raw_amount: str | int | float | Decimal) -> int:
    """
    Convert an amount to integer cents. Deterministic, pure.

    - Uses Decimal internally
    - Strips currency symbols and thousands commas
    - Handles parentheses as negative
    - Raises ValueError on invalid input
    """
    if raw_amount is None:
        raise ValueError("amount cannot be null")

    cleaned = str(raw_amount).replace(",", "").strip()
    for sym in ("₪", "$", "€", "£", "ILS", "USD", "EUR"):
        cleaned = cleaned.replace(sym, "").strip()

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1].strip()
    elif cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:].strip()

    if not cleaned:
        raise ValueError("amount cannot be empty after cleanup")

    try:
        dec = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {raw_amount!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"amount must be finite: {raw_amount!r}")

    if negative:
        dec = -dec
    cents = (dec * 100).to_integral_value(rounding="ROUND_HALF_UP")
    return int(cents)


def cents_to_amount(cents: int | None) -> float | None:
    if cents is None:
        return None
    return float(Decimal(int(cents)) / 100)


def is_iso_date(value: Any) -> bool:
    """True for a YYYY-MM-DD string naming a real calendar day."""
    text = str(value or "").strip()[:10]
    if not _ISO_DATE_RE.match(text):
        return False
    try:
        datetime.date.fromisoformat(text)
    except ValueError:
        return False
    return True


def normalize_slug(raw: Any) -> str:
    """Lowercase snake-case slug, or 'other' when the model sent something unusable."""
    if raw is None:
        return DEFAULT_SLUG
    slug = re.sub(r"[^a-z0-9_]", "_", str(raw).lower())
    slug = re.sub(r"_+", "_", slug).strip("_")
    if slug and len(slug) <= 50 and _SLUG_RE.match(slug):
        return slug
    return DEFAULT_SLUG


def _installment_fields(row: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    total_amount = _to_float(row.get("totalAmount"))
    if total_amount is not None and total_amount > 0:
        fields["totalAmount"] = total_amount
    for key in ("installmentCurrent", "installmentTotal"):
        value = _to_float(row.get(key))
        if value is not None:
            fields[key] = max(1, int(value))
    return fields


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def normalize_text_row(row: dict[str, Any], today: str) -> dict[str, Any]:
    """Normalize one row from the text extraction response."""
    date = str(row.get("date") or "").strip()[:10]
    if not is_iso_date(date):
        date = today
    amount = _to_float(row.get("amount")) or 0.0
    candidate = {
        "date": date,
        "description": str(row.get("description") or "").strip()[:300],
        "amount": round(amount, 2),
        "categorySlug": normalize_slug(row.get("categorySlug")),
    }
    candidate.update(_installment_fields(row))
    return candidate


def normalize_vision_row(row: dict[str, Any], today: str) -> dict[str, Any]:
    """
    Normalize one row from the vision response. The sign comes from the
    reported amount color first, then the column, then the category slug.
    """
    date = str(row.get("date") or "").strip()
    if not is_iso_date(date):
        date = today
    slug = normalize_slug(row.get("categorySlug"))

    raw_amount = _to_float(row.get("amount")) or 0.0
    abs_amount = abs(raw_amount)
    column = str(row.get("column") or "").strip()
    color = str(row.get("color") or "").strip()
    is_credit = bool(_CREDIT_RE.search(column))
    is_debit = bool(_DEBIT_RE.search(column))
    is_green = bool(_GREEN_RE.search(color))
    is_red = bool(_RED_RE.search(color))

    if is_green and is_debit:
        amount = abs_amount
    elif is_red and is_credit:
        amount = -abs_amount
    elif is_credit or is_green:
        amount = abs_amount
    elif is_debit or is_red:
        amount = -abs_amount
    elif slug in INCOME_SLUGS:
        amount = abs_amount
    elif slug in EXPENSE_SLUGS:
        amount = -abs_amount
    else:
        amount = raw_amount

    candidate = {
        "date": date,
        "description": sanitize_description(str(row.get("description") or "").strip()[:300]),
        "amount": round(amount, 2),
        "categorySlug": slug,
    }
    candidate.update(_installment_fields(row))
    return candidate


def apply_sign_hints_overlay(
    candidates: list[dict[str, Any]],
    text: str,
    hints: SignHints,
) -> list[dict[str, Any]]:
    """
    Force the sign of the candidate matching a strongly hinted line
    (same date, same absolute amount) when the model got it wrong.
    """
    fixed = [dict(c) for c in candidates]
    last_date = ""
    for index, line in enumerate(split_lines(text)):
        line_date = parse_line_date(line)
        if line_date:
            last_date = line_date

        hint = hints.by_line.get(index)
        if hint not in (SIGN_INCOME, SIGN_EXPENSE) or not last_date:
            continue
        if index in hints.amounts_by_line:
            continue
        line_amounts = amount_candidates(line)
        if len(line_amounts) != 1:
            continue
        expected = line_amounts[0]
        for candidate in fixed:
            amount = candidate.get("amount") or 0.0
            if candidate.get("date") != last_date:
                continue
            if abs(abs(amount) - expected) >= AMOUNT_TOLERANCE:
                continue
            if hint == SIGN_INCOME and amount < 0:
                candidate["amount"] = expected
                break
            if hint == SIGN_EXPENSE and amount > 0:
                candidate["amount"] = -expected
                break
    return fixed


def apply_sign_safety_net(
    candidates: list[dict[str, Any]],
    keywords: SignKeywords,
) -> list[dict[str, Any]]:
    """Flip signs only for descriptions carrying an unambiguous marker."""
    fixed = []
    for candidate in candidates:
        description = (candidate.get("description") or "").casefold()
        amount = candidate.get("amount") or 0.0
        if amount < 0 and any(m.casefold() in description for m in keywords.income_markers):
            candidate = {**candidate, "amount": abs(amount)}
        elif amount > 0 and any(m.casefold() in description for m in keywords.expense_markers):
            candidate = {**candidate, "amount": -abs(amount)}
        fixed.append(candidate)
    return fixed


def apply_sign_from_category(candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Align the sign with clearly income or clearly expense category slugs."""
    fixed = []
    for candidate in candidates:
        slug = candidate.get("categorySlug")
        amount = candidate.get("amount") or 0.0
        if slug in INCOME_SLUGS and amount < 0:
            candidate = {**candidate, "amount": abs(amount)}
        elif slug in EXPENSE_SLUGS and amount > 0:
            candidate = {**candidate, "amount": -abs(amount)}
        fixed.append(candidate)
    return fixed


def fix_installment_amounts(candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Replace an amount that is really the full price with the per-installment charge."""
    fixed = []
    for candidate in candidates:
        total = candidate.get("totalAmount")
        payments = candidate.get("installmentTotal")
        if total is None or total <= 0 or payments is None or payments < 1:
            fixed.append(candidate)
            continue
        if abs(candidate.get("amount") or 0.0) < total * INSTALLMENT_TOTAL_RATIO:
            fixed.append(candidate)
            continue
        per_installment = round(total / payments, 2)
        fixed.append({**candidate, "amount": -per_installment})
    return fixed


def drop_empty_amounts(candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [c for c in candidates if abs(c.get("amount") or 0.0) >= 0.01]
