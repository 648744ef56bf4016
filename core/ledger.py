"""Safe JSON resource helpers for the sign keyword lists."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_SIGN_KEYWORDS = {
    "version": "1.0",
    "income": [],
    "expense": [],
    "income_markers": [],
    "expense_markers": [],
}


class LedgerIOError(RuntimeError):
    """Raised when a keyword resource cannot be read or parsed."""


@dataclass(frozen=True)
class SignKeywords:
    """Keyword lists used to hint and correct the sign of extracted amounts."""

    income: tuple[str, ...] = ()
    expense: tuple[str, ...] = ()
    income_markers: tuple[str, ...] = ()
    expense_markers: tuple[str, ...] = ()


def read_json(path: str | Path, default: dict[str, Any] | None = None) -> dict[str, Any]:
    """Load a JSON object from disk; a missing file gives a copy of ``default``."""
    file_path = Path(path)
    try:
        raw = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return dict(default or {})
    except OSError as exc:
        raise LedgerIOError(f"Cannot read '{path}': {exc}") from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LedgerIOError(f"Malformed JSON in '{path}' (line {exc.lineno}).") from exc
    if not isinstance(parsed, dict):
        raise LedgerIOError(f"'{path}' must hold a JSON object, got {type(parsed).__name__}.")
    return parsed


def _keyword_tuple(payload: dict[str, Any], key: str) -> tuple[str, ...]:
    values = payload.get(key)
    if not isinstance(values, list):
        return ()
    return tuple(str(v) for v in values if isinstance(v, str) and v.strip())


def load_sign_keywords(path: str | Path) -> SignKeywords:
    """Load keyword lists; a missing file yields empty lists (every hint is unknown)."""
    payload = read_json(path, default=DEFAULT_SIGN_KEYWORDS)
    return SignKeywords(
        income=_keyword_tuple(payload, "income"),
        expense=_keyword_tuple(payload, "expense"),
        income_markers=_keyword_tuple(payload, "income_markers"),
        expense_markers=_keyword_tuple(payload, "expense_markers"),
    )
