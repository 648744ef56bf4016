import datetime
import json
from types import SimpleNamespace

import pytest

from core.sign_hints import fallback_extract, get_sign_hints
from llm_parser import LLMParseError, OpenAIExtractor, _safe_parse_json

STATEMENT = "15/03/2024 ISRACARD 651.00\n16/03/2024 salary ACME 12,000.00"


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _extractor(keywords, completions):
    extractor = OpenAIExtractor("sk-test", keywords, model="test-model")
    extractor._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return extractor


def test_without_key_text_uses_fallback(keywords):
    extractor = OpenAIExtractor("", keywords)
    assert not extractor.available
    expected = fallback_extract(STATEMENT, get_sign_hints(STATEMENT, keywords))
    assert extractor.extract_transactions(STATEMENT) == expected


def test_without_key_vision_returns_nothing(keywords, tmp_path):
    image = tmp_path / "page.png"
    image.write_bytes(b"png")
    assert OpenAIExtractor("  ", keywords).extract_with_vision(str(image)) == []


def test_prompt_is_annotated_and_hinted_sign_wins(keywords):
    content = json.dumps(
        {
            "transactions": [
                {"date": "2024-03-15", "description": "ISRACARD 651.00", "amount": 651, "categorySlug": "credit_charges"},
                {"date": "2024-03-16", "description": "salary ACME Income", "amount": -12000, "categorySlug": "salary"},
            ]
        }
    )
    completions = FakeCompletions(content=content)
    rows = _extractor(keywords, completions).extract_transactions(STATEMENT, user_context="salary ACME -> salary")

    assert rows == [
        {"date": "2024-03-15", "description": "ISRACARD", "amount": -651.0, "categorySlug": "credit_charges"},
        {"date": "2024-03-16", "description": "salary ACME", "amount": 12000.0, "categorySlug": "salary"},
    ]
    call = completions.calls[0]
    assert call["model"] == "test-model"
    assert call["response_format"] == {"type": "json_object"}
    user_prompt = call["messages"][1]["content"]
    assert "[SIGN=EXPENSE AMT=651] | 15/03/2024 ISRACARD 651.00" in user_prompt
    assert "salary ACME -> salary" in user_prompt


def test_provider_error_degrades_to_fallback(keywords):
    extractor = _extractor(keywords, FakeCompletions(error=RuntimeError("rate limited")))
    expected = fallback_extract(STATEMENT, get_sign_hints(STATEMENT, keywords))
    assert extractor.extract_transactions(STATEMENT) == expected


def test_unparseable_answer_degrades_to_fallback(keywords):
    extractor = _extractor(keywords, FakeCompletions(content="sorry, no"))
    assert extractor.extract_transactions(STATEMENT)[0]["amount"] == -651.0


def test_vision_reads_columns_and_sends_data_url(keywords, tmp_path):
    image = tmp_path / "page.png"
    image.write_bytes(b"\x89PNG fake")
    content = json.dumps(
        {
            "transactions": [
                {"date": "15/03/2024", "description": "Salary", "amount": "8000", "column": "credit"},
                {"date": "2024-03-16", "description": "Grocer", "amount": 0},
            ]
        }
    )
    completions = FakeCompletions(content=content)
    rows = _extractor(keywords, completions).extract_with_vision(str(image))

    assert rows == [
        {
            "date": datetime.date.today().isoformat(),
            "description": "Salary",
            "amount": 8000.0,
            "categorySlug": "other",
        }
    ]
    parts = completions.calls[0]["messages"][1]["content"]
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_vision_errors_are_raised(keywords, tmp_path):
    image = tmp_path / "page.jpg"
    image.write_bytes(b"jpg")
    with pytest.raises(LLMParseError, match="timeout"):
        _extractor(keywords, FakeCompletions(error=TimeoutError("timeout"))).extract_with_vision(str(image))
    with pytest.raises(LLMParseError):
        _extractor(keywords, FakeCompletions(content="")).extract_with_vision(str(image))


def test_safe_parse_json_recovers_wrappers():
    assert _safe_parse_json('```json\n{"transactions": []}\n```') == {"transactions": []}
    assert _safe_parse_json('Here you go: {"transactions": [1]} thanks') == {"transactions": [1]}
    assert _safe_parse_json('[{"amount": 1}]') == {"transactions": [{"amount": 1}]}
    with pytest.raises(LLMParseError, match="no-json"):
        _safe_parse_json("nothing here")
