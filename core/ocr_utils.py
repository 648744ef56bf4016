"""
OCR text and description sanitization utilities.
"""

import re
import unicodedata

UNKNOWN_DESCRIPTION = "Unknown"

_VALUE_DATE_RE = re.compile(
    r"\(?\s*(?:תאריך\s*ערך|value\s*date)[:\s]*\d{1,2}[/.]\d{1,2}[/.]?\d{0,4}\s*\)?",
    re.IGNORECASE,
)
# Whole numeric tokens only: never starts or ends inside a digit run, so
# "1950.00" and "12500" stay single amounts.
AMOUNT_PATTERN = r"(?<![\d.,])\d+(?:[,.]\d{3})*(?:[,.]\d{1,2})?(?!\d)"

# YYYY-MM-DD (or / .) first, then DD/MM/YY(YY) and DD.MM.YY(YY).
DATE_RE = re.compile(
    r"(?<!\d)(?:"
    r"(?P<iso_year>\d{4})[-/.](?P<iso_month>\d{1,2})[-/.](?P<iso_day>\d{1,2})"
    r"|(?P<day>\d{1,2})[/.](?P<month>\d{1,2})[/.](?P<year>\d{2,4})"
    r")(?!\d)"
)
_AMOUNT_WITH_CURRENCY_RE = re.compile(r"\s*" + AMOUNT_PATTERN + r"(?:\s*(?:₪|ש\"ח|\$|€))?\s*")
_SIGN_WORD_RE = re.compile(r"\s+(?:Income|Expense)\b\s*", re.IGNORECASE)


def sanitize_ocr_text(text: str) -> str:
    """
    Normalize raw OCR output: NFC, no replacement characters,
    no trailing whitespace, no runs of blank lines.
    """
    if not text:
        return ""
    s = unicodedata.normalize("NFC", text)
    s = s.replace("\uFFFD", "")
    s = s.encode("utf-8", "ignore").decode("utf-8")
    lines = [line.rstrip() for line in s.splitlines()]
    cleaned = []
    for line in lines:
        if not line.strip() and cleaned and not cleaned[-1].strip():
            continue
        cleaned.append(line)
    return "\n".join(cleaned).strip()


def sanitize_description(description: str | None) -> str:
    """
    Remove amounts, dates and sign words that models and OCR leave
    inside a statement description.
    """
    if not description or not description.strip():
        return UNKNOWN_DESCRIPTION
    s = description.strip()

    s = _VALUE_DATE_RE.sub("", s)
    s = DATE_RE.sub("", s)
    s = _AMOUNT_WITH_CURRENCY_RE.sub(" ", s)
    s = _SIGN_WORD_RE.sub(" ", s)

    s = re.sub(r"\s+", " ", s).strip()
    s = re.sub(r"^[\s\-=:,.\"']+", "", s)
    s = re.sub(r"[\s\-=:,.\"']+$", "", s).strip()

    if len(s) < 2:
        return UNKNOWN_DESCRIPTION
    return s[:300]
