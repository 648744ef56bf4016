"""Tesseract OCR engine wrapped as a lazily acquired, releasable resource."""

from __future__ import annotations

import logging
from pathlib import Path

import pytesseract
from PIL import Image

from config import DEFAULT_OCR_LANG
from core.ocr_utils import sanitize_ocr_text

logger = logging.getLogger(__name__)


class TesseractOcr:
    """
    OCR engine handle. The engine is probed on first use and reused;
    any engine failure releases it so the next call probes again.
    """

    def __init__(self, lang: str = DEFAULT_OCR_LANG) -> None:
        self.lang = lang
        self._version: str | None = None

    @property
    def acquired(self) -> bool:
        return self._version is not None

    def _acquire(self) -> None:
        if self._version is None:
            self._version = str(pytesseract.get_tesseract_version())
            logger.debug("Tesseract %s ready (lang=%s)", self._version, self.lang)

    def close(self) -> None:
        self._version = None

    def get_text_from_image(self, image_path: str) -> str:
        """OCR one image. Returns "" for a missing file or an engine failure."""
        if not Path(image_path).exists():
            logger.warning("OCR input not found: %s", image_path)
            return ""
        try:
            self._acquire()
            with Image.open(image_path) as img:
                text = pytesseract.image_to_string(img, lang=self.lang)
        except Exception as exc:
            logger.warning("OCR failed for %s: %s", image_path, exc)
            self.close()
            return ""
        return sanitize_ocr_text(text)
