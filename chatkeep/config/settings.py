# chatkeep/config/settings.py

from dataclasses import dataclass
import os
from pathlib import Path

from dotenv import load_dotenv

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_DB_PATH = BASE_DIR / "chatkeep" / "data" / "chatkeep.db"
DEFAULT_LOG_DIR = BASE_DIR / "chatkeep" / "logs"


@dataclass
class Settings:
    # Gateway in front of the generative backend (chat, summarize, image)
    api_base: str = "http://127.0.0.1:3000"

    # SQLite file backing both durable media (key/value + media assets)
    db_path: str = str(DEFAULT_DB_PATH)

    # Capacity of the key/value medium in bytes; 0 means unbounded
    kv_capacity_bytes: int = 5 * 1024 * 1024

    # Image generation quota + recent-image cache
    image_daily_limit: int = 10
    media_max_items: int = 300

    # Rolling conversation memory
    memory_min_messages: int = 16
    memory_stale_seconds: float = 300.0
    memory_window_messages: int = 60
    memory_max_chars: int = 1200

    # HTTP tuning knobs
    http_timeout_seconds: float = 60.0   # total request timeout
    http_max_retries: int = 2            # how many times to retry transient failures

    log_dir: str = str(DEFAULT_LOG_DIR)


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce positive
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def _normalize_api_base(raw: str) -> str:
    base = (raw or "").strip().strip("'\"").strip()
    if not (base.startswith("http://") or base.startswith("https://")):
        raise RuntimeError(f"CHATKEEP_API_BASE is invalid (missing scheme): {base!r}")
    return base.rstrip("/")


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).
    Raises a RuntimeError if the gateway URL is malformed.
    Also ensures the DB directory exists.
    """
    defaults = Settings()

    api_base = _normalize_api_base(os.getenv("CHATKEEP_API_BASE", defaults.api_base) or defaults.api_base)

    # --- DB path (optional override) ---
    db_path_env = os.getenv("CHATKEEP_DB_PATH", str(DEFAULT_DB_PATH)).strip() or str(DEFAULT_DB_PATH)
    db_path = Path(db_path_env)
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)

    log_dir = os.getenv("CHATKEEP_LOG_DIR", str(DEFAULT_LOG_DIR)).strip() or str(DEFAULT_LOG_DIR)

    settings = Settings(
        api_base=api_base,
        db_path=str(db_path),
        kv_capacity_bytes=_parse_int_env(
            "CHATKEEP_KV_CAPACITY_BYTES", defaults.kv_capacity_bytes, min_val=0, max_val=1024 * 1024 * 1024
        ),
        image_daily_limit=_parse_int_env("CHATKEEP_IMAGE_DAILY_LIMIT", 10, min_val=0, max_val=1000),
        media_max_items=_parse_int_env("CHATKEEP_MEDIA_MAX_ITEMS", 300, min_val=1, max_val=10000),
        memory_min_messages=_parse_int_env("CHATKEEP_MEMORY_MIN_MESSAGES", 16, min_val=1, max_val=1000),
        memory_stale_seconds=_parse_float_env("CHATKEEP_MEMORY_STALE_SECONDS", 300.0),
        memory_window_messages=_parse_int_env("CHATKEEP_MEMORY_WINDOW_MESSAGES", 60, min_val=1, max_val=1000),
        memory_max_chars=_parse_int_env("CHATKEEP_MEMORY_MAX_CHARS", 1200, min_val=1, max_val=100000),
        http_timeout_seconds=_parse_float_env("CHATKEEP_HTTP_TIMEOUT_SECONDS", 60.0),
        http_max_retries=_parse_int_env("CHATKEEP_HTTP_MAX_RETRIES", 2, min_val=0, max_val=5),
        log_dir=log_dir,
    )

    return settings
