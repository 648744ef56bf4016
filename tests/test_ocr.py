import pytest
from PIL import Image

from core import ocr as ocr_module
from core.ocr import TesseractOcr


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "statement.png"
    Image.new("RGB", (20, 20), "white").save(path)
    return str(path)


def test_text_is_sanitized_and_engine_reused(image, monkeypatch):
    probes = []
    calls = []

    def version():
        probes.append(1)
        return "5.3.0"

    def image_to_string(img, lang):
        calls.append(lang)
        return "15/03/2024 ISRACARD 651.00  \n\n\n\nnext\ufffd line\n"

    monkeypatch.setattr(ocr_module.pytesseract, "get_tesseract_version", version)
    monkeypatch.setattr(ocr_module.pytesseract, "image_to_string", image_to_string)
    engine = TesseractOcr(lang="heb+eng")

    assert engine.get_text_from_image(image) == "15/03/2024 ISRACARD 651.00\n\nnext line"
    engine.get_text_from_image(image)

    assert engine.acquired
    assert probes == [1]
    assert calls == ["heb+eng", "heb+eng"]


def test_engine_failure_releases_and_returns_empty(image, monkeypatch):
    def broken(img, lang):
        raise RuntimeError("tesseract crashed")

    monkeypatch.setattr(ocr_module.pytesseract, "get_tesseract_version", lambda: "5.3.0")
    monkeypatch.setattr(ocr_module.pytesseract, "image_to_string", broken)
    engine = TesseractOcr()

    assert engine.get_text_from_image(image) == ""
    assert not engine.acquired


def test_missing_image_is_empty(tmp_path):
    assert TesseractOcr().get_text_from_image(str(tmp_path / "absent.png")) == ""
