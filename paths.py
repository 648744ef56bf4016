"""Centralized filesystem paths for persistent data and configs."""

from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent

DATA_DIR = BASE_DIR / "data"
LEDGER_DB_PATH = DATA_DIR / "ledger.db"
UPLOAD_DIR = DATA_DIR / "uploads"

CONFIG_DIR = BASE_DIR / "config"
SIGN_KEYWORDS_PATH = CONFIG_DIR / "sign_keywords.json"


def ensure_data_dirs() -> None:
    """Ensure required data directories exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
