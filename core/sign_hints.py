"""
Deterministic sign hints for statement text.

Runs before any model call. Each non-empty line is classified as
income, expense or unknown from its amounts and two conservative keyword
lists. Lines carrying two real amounts (a two-column layout whose OCR
column order cannot be trusted) are always left unknown; both raw values
are kept so the downstream classifier sees them.
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field

from core.ledger import SignKeywords
from core.ocr_utils import AMOUNT_PATTERN, DATE_RE, sanitize_description

SIGN_INCOME = "income"
SIGN_EXPENSE = "expense"
SIGN_UNKNOWN = "unknown"

MIN_AMOUNT = 0.01
MAX_AMOUNT = 100000.0
PRICE_LIKE_THRESHOLD = 100.0

AMOUNT_RE = re.compile(AMOUNT_PATTERN)
_DECIMAL_TAIL_RE = re.compile(r"[,.](\d{1,2})$")


@dataclass(frozen=True)
class SignHints:
    """Per-line sign hints, keyed by index into split_lines(text)."""

    by_line: dict[int, str] = field(default_factory=dict)
    amounts_by_line: dict[int, tuple[float, float]] = field(default_factory=dict)


def split_lines(text: str) -> list[str]:
    """Non-empty lines; hint indices refer to this list."""
    return [line for line in (text or "").split("\n") if line.strip()]


def strip_dates(line: str) -> str:
    return DATE_RE.sub(" ", line)


def parse_amount(token: str) -> float:
    """
    "1,200.00", "1.200,00", "1950.00" and "12500" all parse as written.
    A separator followed by one or two trailing digits is the decimal point;
    every other separator groups thousands.
    """
    tail = _DECIMAL_TAIL_RE.search(token)
    if tail:
        whole = re.sub(r"[,.]", "", token[: tail.start()])
        return float(f"{whole}.{tail.group(1)}")
    return float(re.sub(r"[,.]", "", token))


def amount_candidates(line: str) -> list[float]:
    """
    In-range amounts on a line with dates removed. Price-like values
    (over 100 or fractional) win when any exist, so reference numbers
    and installment counters drop out.
    """
    amounts = []
    for token in AMOUNT_RE.findall(strip_dates(line)):
        try:
            value = parse_amount(token)
        except ValueError:
            continue
        if MIN_AMOUNT <= value <= MAX_AMOUNT:
            amounts.append(value)
    price_like = [a for a in amounts if a > PRICE_LIKE_THRESHOLD or a != int(a)]
    return price_like if price_like else amounts


def line_description(line: str) -> str:
    """Line text without dates and amount tokens."""
    s = AMOUNT_RE.sub(" ", strip_dates(line))
    return re.sub(r"\s+", " ", s).strip()


def classify_description(description: str, keywords: SignKeywords) -> str:
    """Hint a sign only when exactly one keyword list matches."""
    folded = description.casefold()
    has_income = any(k.casefold() in folded for k in keywords.income)
    has_expense = any(k.casefold() in folded for k in keywords.expense)
    if has_income and not has_expense:
        return SIGN_INCOME
    if has_expense and not has_income:
        return SIGN_EXPENSE
    return SIGN_UNKNOWN


def get_sign_hints(text: str, keywords: SignKeywords) -> SignHints:
    """Compute hints for every non-empty line. Pure: no I/O, no state."""
    by_line: dict[int, str] = {}
    amounts_by_line: dict[int, tuple[float, float]] = {}

    for index, line in enumerate(split_lines(text)):
        candidates = amount_candidates(line)
        if len(candidates) >= 2:
            non_zero = [c for c in candidates if c >= MIN_AMOUNT]
            if len(non_zero) != 1:
                # Column order is unreliable; defer to the classifier.
                by_line[index] = SIGN_UNKNOWN
                amounts_by_line[index] = (candidates[0], candidates[1])
                continue
        by_line[index] = classify_description(line_description(line), keywords)

    return SignHints(by_line=by_line, amounts_by_line=amounts_by_line)


def _format_amount(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def build_annotated_text(text: str, hints: SignHints) -> str:
    """Prefix each line with its hint so the model never infers sign from layout alone."""
    out = []
    for index, line in enumerate(split_lines(text)):
        pair = hints.amounts_by_line.get(index)
        if pair is not None:
            first, second = pair
            out.append(
                f"[SIGN=UNKNOWN AMOUNTS={_format_amount(first)}|{_format_amount(second)}] | {line}"
            )
            continue
        candidates = amount_candidates(line)
        if len(candidates) == 1:
            sign = hints.by_line.get(index, SIGN_UNKNOWN).upper()
            out.append(f"[SIGN={sign} AMT={_format_amount(candidates[0])}] | {line}")
        else:
            out.append(line)
    return "\n".join(out)


def parse_line_date(line: str) -> str | None:
    """First date on a line (YYYY-MM-DD or DD/MM/YY(YY)) as ISO, or None when absent or invalid."""
    match = DATE_RE.search(line)
    if not match:
        return None
    if match.group("iso_year"):
        year, month, day = match.group("iso_year", "iso_month", "iso_day")
    else:
        day, month, year = match.group("day", "month", "year")
    if len(year) == 2:
        year = f"20{year}"
    try:
        return datetime.date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def fallback_extract(
    text: str,
    hints: SignHints,
    today: datetime.date | None = None,
) -> list[dict]:
    """
    Local classifier used when the model is unavailable. One candidate per
    line with an amount; the sign comes from the hint, unknown means expense.
    """
    last_date = (today or datetime.date.today()).isoformat()
    results = []
    for index, line in enumerate(split_lines(text)):
        line_date = parse_line_date(line)
        if line_date:
            last_date = line_date

        candidates = amount_candidates(line)
        if not candidates:
            continue
        amount = max(candidates)
        sign = 1 if hints.by_line.get(index) == SIGN_INCOME else -1
        description = line_description(line)[:200] or "Unknown"
        results.append(
            {
                "date": last_date,
                "description": sanitize_description(description),
                "amount": round(sign * amount, 2),
                "categorySlug": "other",
            }
        )
    return results
