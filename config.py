"""Centralize configuration and environment variables for the ingestion pipeline."""

from dotenv import load_dotenv
import os

from paths import SIGN_KEYWORDS_PATH, UPLOAD_DIR


DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_OCR_LANG = "heb+eng"


def load_config(require_api_key: bool = False) -> dict:
    """Load configuration from environment.

    Loads variables from .env. An empty OPENAI_API_KEY is allowed: the
    extraction adapter then runs its deterministic fallback instead of
    calling the model.

    Args:
        require_api_key: Raise when OPENAI_API_KEY is missing.

    Returns:
        dict: Configuration with keys 'openai_api_key', 'openai_model',
        'ocr_lang', 'upload_dir' and 'sign_keywords_path'.

    Raises:
        ValueError: If require_api_key is set and OPENAI_API_KEY is empty.
    """
    load_dotenv()
    api_key = os.environ.get("OPENAI_API_KEY", "").strip()
    if require_api_key and not api_key:
        raise ValueError(
            "OPENAI_API_KEY is required. Set it in .env or your environment."
        )
    return {
        "openai_api_key": api_key,
        "openai_model": os.environ.get("OPENAI_MODEL", "").strip() or DEFAULT_OPENAI_MODEL,
        "ocr_lang": os.environ.get("OCR_LANG", "").strip() or DEFAULT_OCR_LANG,
        "upload_dir": os.environ.get("UPLOAD_DIR", "").strip() or str(UPLOAD_DIR),
        "sign_keywords_path": os.environ.get("SIGN_KEYWORDS_PATH", "").strip()
        or str(SIGN_KEYWORDS_PATH),
    }
