import os
from pathlib import Path

from dotenv import load_dotenv

_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_ROOT / ".env", override=False)
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(1.0, float(raw))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in {"1", "true", "yes", "on"}


# Data directory (settings file + default SQLite database)
DATA_DIR = Path(os.getenv("TETHRA_DATA_DIR") or str(Path.home() / ".tethra"))

DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{DATA_DIR / 'app.db'}"
SETTINGS_PATH = Path(os.getenv("TETHRA_SETTINGS_PATH") or str(DATA_DIR / "settings.json"))

# Upstream provider timeouts (seconds). A read stall longer than the read timeout ends the stream.
UPSTREAM_CONNECT_TIMEOUT = _env_float("TETHRA_UPSTREAM_CONNECT_TIMEOUT", 10.0)
UPSTREAM_READ_TIMEOUT = _env_float("TETHRA_UPSTREAM_READ_TIMEOUT", 120.0)

# Per-subscriber live event buffer; oldest events are dropped when full
EVENT_QUEUE_SIZE = _env_int("TETHRA_EVENT_QUEUE_SIZE", 2048)

AUTO_TITLE = _env_flag("TETHRA_AUTO_TITLE")

OLLAMA_HOST = (os.getenv("OLLAMA_HOST") or "http://localhost:11434").rstrip("/")

DEFAULT_TITLE = "New Chat"
