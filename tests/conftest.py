import copy

import pytest

from core import db
from core.ingest import Pipeline
from core.ledger import SignKeywords


@pytest.fixture(autouse=True)
def ledger_db(tmp_path, monkeypatch):
    path = tmp_path / "ledger.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def keywords():
    return SignKeywords(
        income=("משכורת", "salary", "child allowance"),
        expense=("ישראכרט", "isracard", "max it finance", "atm withdrawal"),
        income_markers=("משכורת", "salary"),
        expense_markers=("ישראכרט", "isracard"),
    )


class FakeExtractor:
    """Records calls; returns canned candidates."""

    def __init__(self, text_rows=None, vision_rows=None, vision_error=None):
        self.text_rows = text_rows or []
        self.vision_rows = vision_rows
        self.vision_error = vision_error
        self.text_calls = []
        self.vision_calls = []

    def extract_transactions(self, text, user_context=""):
        self.text_calls.append((text, user_context))
        return copy.deepcopy(self.text_rows)

    def extract_with_vision(self, image_path, user_context=""):
        self.vision_calls.append((image_path, user_context))
        if self.vision_error is not None:
            raise self.vision_error
        rows = self.vision_rows
        if callable(rows):
            return rows(image_path)
        return copy.deepcopy(rows or [])


class FakeOcr:
    def __init__(self, text=""):
        self.text = text
        self.calls = []

    def get_text_from_image(self, image_path):
        self.calls.append(image_path)
        return self.text


@pytest.fixture
def fake_extractor():
    return FakeExtractor


@pytest.fixture
def fake_ocr():
    return FakeOcr


@pytest.fixture
def make_pipeline():
    def build(extractor=None, ocr=None, get_text=None, render_pages=None):
        pipeline = Pipeline(
            extractor=extractor or FakeExtractor(),
            ocr=ocr or FakeOcr(),
        )
        if get_text is not None:
            pipeline.get_text = get_text
        if render_pages is not None:
            pipeline.render_pages = render_pages
        return pipeline

    return build
