"""
LLM extraction helpers for statement text and statement images.
"""

import base64
import datetime
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List

from openai import OpenAI

from config import DEFAULT_OPENAI_MODEL
from core.ledger import SignKeywords
from core.ocr_utils import sanitize_description
from core.sign_hints import build_annotated_text, fallback_extract, get_sign_hints
from core.validator import (
    apply_sign_from_category,
    apply_sign_hints_overlay,
    apply_sign_safety_net,
    drop_empty_amounts,
    fix_installment_amounts,
    normalize_text_row,
    normalize_vision_row,
)

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 14000
MAX_CONTEXT_CHARS = 2000


class LLMParseError(Exception):
    """Raised when LLM parsing fails."""


TEXT_EXTRACTION_SYSTEM_PROMPT = """You are an expert bank and credit card statement parser. Extract transactions with HIGH ACCURACY.

SIGN RULES (CRITICAL):
- [SIGN=INCOME AMT=X]: this IS income. Return amount = +X (positive).
- [SIGN=EXPENSE AMT=X]: this IS an expense. Return amount = -X (negative).
- [SIGN=UNKNOWN AMT=X]: decide from the description. Salary, allowances and credits are income;
  charges, withdrawals, loans, interest, fees and card company debits are expenses.
  If unsure, use NEGATIVE (most statement rows are expenses).
- [SIGN=UNKNOWN AMOUNTS=A|B]: the row has two amount columns and their order is not reliable.
  Decide from the description and the statement headers which value is the movement and its sign.

DESCRIPTION RULES:
- Copy only the operation or merchant text.
- Do NOT include the amount, value dates, or the words "Income"/"Expense".

CATEGORY RULES (use these exact lowercase slugs):
- income: salary, income
- expense: loan_payment, loan_interest, credit_charges, bank_fees, transfers, standing_order,
  utilities, insurance, pension, groceries, transport, dining, shopping, healthcare, entertainment
Use "other" only when nothing else fits.

OUTPUT FORMAT:
JSON: { "transactions": [{ "date": "YYYY-MM-DD", "description": string, "amount": number, "categorySlug": string }] }
Include installment fields when relevant: totalAmount, installmentCurrent, installmentTotal.
Extract EVERY transaction row. Never skip rows. Return raw JSON only."""


VISION_EXTRACTION_SYSTEM_PROMPT = """You are an expert bank statement parser. Extract ALL transactions from this statement image.

The statement table has a date column, an operation column and two amount columns:
debit (expense) and credit (income). Each row has its amount in only one of them.

For EACH row:
1) DATE: convert DD/MM/YY to YYYY-MM-DD (assume 20xx). Ignore weekday prefixes.
2) DESCRIPTION: the operation text only. No amounts, no value dates.
3) AMOUNT: a POSITIVE number.
4) COLUMN: "credit" or "debit", from the column the amount sits under.
5) COLOR: the rendered text color of the amount, "green" or "red".
6) CATEGORY: one slug from salary, income, loan_payment, loan_interest, credit_charges, bank_fees,
   transfers, standing_order, utilities, insurance, pension, groceries, transport, dining, shopping,
   healthcare, entertainment, other.

Never merge rows, never skip rows, never invent rows.

OUTPUT FORMAT:
{ "transactions": [{ "date": "YYYY-MM-DD", "description": string, "amount": number, "column": "credit" | "debit", "color": "green" | "red", "categorySlug": string }] }
For installments include totalAmount, installmentCurrent, installmentTotal."""


class OpenAIExtractor:
    """
    Extraction adapter backed by OpenAI chat completions.

    The client is created on first use and reused. Without an API key the
    adapter is unavailable: text extraction runs the local sign-hint
    classifier and vision extraction returns no rows.
    """

    def __init__(
        self,
        api_key: str,
        keywords: SignKeywords,
        model: str = DEFAULT_OPENAI_MODEL,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.keywords = keywords
        self.model = model
        self._client: OpenAI | None = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> OpenAI | None:
        if not self.available:
            return None
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def extract_transactions(self, text: str, user_context: str = "") -> List[Dict[str, Any]]:
        """
        Extract candidates from statement text. Never raises for provider
        problems: every failure degrades to the deterministic fallback.
        """
        hints = get_sign_hints(text, self.keywords)
        client = self._get_client()
        if client is None:
            logger.info("No OpenAI key configured; using deterministic fallback extraction")
            return fallback_extract(text, hints)

        annotated = build_annotated_text(text, hints)
        user_prompt = (
            "Extract transactions. Each row is pre-annotated with [SIGN=... AMT=...] or "
            "[SIGN=UNKNOWN AMOUNTS=...]. Use the given signs exactly.\n\n"
            f"{annotated[:MAX_TEXT_CHARS]}"
        )
        if (user_context or "").strip():
            user_prompt += (
                "\n\n---\nUser preferences (a description categorized as \"salary\" is "
                f"POSITIVE income):\n{user_context.strip()[:MAX_CONTEXT_CHARS]}"
            )

        try:
            raw_output = _request_json(client, self.model, TEXT_EXTRACTION_SYSTEM_PROMPT, user_prompt)
            rows = _transaction_rows(_safe_parse_json(raw_output))
        except Exception as exc:
            logger.warning("Text extraction failed, using fallback: %s", exc)
            return fallback_extract(text, hints)

        today = datetime.date.today().isoformat()
        candidates = [normalize_text_row(row, today) for row in rows]
        candidates = apply_sign_hints_overlay(candidates, text, hints)
        candidates = [
            {**c, "description": sanitize_description(c["description"])} for c in candidates
        ]
        candidates = apply_sign_safety_net(candidates, self.keywords)
        candidates = apply_sign_from_category(candidates)
        return drop_empty_amounts(fix_installment_amounts(candidates))

    def extract_with_vision(self, image_path: str, user_context: str = "") -> List[Dict[str, Any]]:
        """
        Extract candidates straight from a statement image.

        Raises:
            LLMParseError: the request failed or the answer was not usable JSON.
        """
        client = self._get_client()
        if client is None:
            logger.warning("No OpenAI key configured; vision extraction unavailable")
            return []

        image_b64 = base64.b64encode(Path(image_path).read_bytes()).decode("utf-8")
        mime_type = _image_mime_type(image_path)
        user_text = (
            "Extract all transactions from this statement image. For EACH row read the date, "
            "the description, the amount as a POSITIVE number, and the text color of the amount: "
            "green is credit (income), red is debit (expense)."
        )
        if (user_context or "").strip():
            user_text += f"\n\nUser preferences:\n{user_context.strip()[:MAX_CONTEXT_CHARS]}"
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": user_text},
            {
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type};base64,{image_b64}", "detail": "high"},
            },
        ]

        try:
            raw_output = _request_json(client, self.model, VISION_EXTRACTION_SYSTEM_PROMPT, content)
            rows = _transaction_rows(_safe_parse_json(raw_output))
        except LLMParseError:
            raise
        except Exception as e:
            raise LLMParseError(str(e))

        logger.debug("Vision returned %d rows for %s", len(rows), Path(image_path).name)
        today = datetime.date.today().isoformat()
        candidates = [normalize_vision_row(row, today) for row in rows]
        candidates = apply_sign_safety_net(candidates, self.keywords)
        return drop_empty_amounts(fix_installment_amounts(candidates))


def _image_mime_type(image_path: str) -> str:
    suffix = Path(image_path).suffix.lower()
    if suffix == ".png":
        return "image/png"
    if suffix == ".webp":
        return "image/webp"
    return "image/jpeg"


def _request_json(client: OpenAI, model: str, system_prompt: str, user_content: Any) -> str:
    """Execute one JSON-mode completion and return raw model output."""
    response = client.chat.completions.create(
        model=model,
        temperature=0,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ],
        response_format={"type": "json_object"},
    )
    return (response.choices[0].message.content or "").strip()


def _transaction_rows(parsed: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows = parsed.get("transactions")
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def _safe_parse_json(raw_output: str) -> Dict[str, Any]:
    """Parse model output, tolerating code fences and chatter around the JSON.

    A bare top-level list is read as the transactions list.
    """
    text = _FENCE_RE.sub("", (raw_output or "").strip()).strip()
    if not text:
        raise LLMParseError(_parse_failure("empty", raw_output, "Model returned empty response."))

    attempts = [text]
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        attempts.append(text[start : end + 1])

    last_error: json.JSONDecodeError | None = None
    for attempt in attempts:
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError as exc:
            last_error = exc
            continue
        if isinstance(parsed, list):
            return {"transactions": parsed}
        if isinstance(parsed, dict):
            return parsed
        raise LLMParseError(_parse_failure("invalid-json", raw_output, "Top-level JSON must be an object."))

    if len(attempts) == 1:
        raise LLMParseError(_parse_failure("no-json", raw_output, "No JSON object found in model output."))
    raise LLMParseError(_parse_failure("invalid-json", raw_output, f"Invalid JSON after cleanup: {last_error}"))


def _parse_failure(kind: str, raw_output: str, detail: str, limit: int = 300) -> str:
    preview = " ".join((raw_output or "").split())
    if len(preview) > limit:
        preview = preview[:limit] + "...(truncated)"
    return f"[{kind}] {detail} preview='{preview}'"
