import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

DEFAULT_KOLOSAL_URL = "https://api.kolosal.ai"
DEFAULT_CHAT_MODEL = "global.anthropic.claude-sonnet-4-5-20250929-v1:0"
DEFAULT_TTS_MODEL = "tts-1"
DEFAULT_TTS_VOICE = "nova"
DEFAULT_SHOP_NAME = "WARUNG DREAM HIGHER"
DEFAULT_SHOP_ADDRESS = "Jl. Dream Higher Hackathon Imphnen X Kolosal"


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    repository-level config files like `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env upwards from dotenv_dir without touching os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: v.strip() for k, v in dotenv_values(path).items() if v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(dotenv_dir: str, key: str) -> Optional[str]:
    v = os.environ.get(key)
    if v:
        return v.strip()
    v = _read_dotenv(dotenv_dir).get(key)
    return v or None


def load_db_path(dotenv_dir: str) -> Optional[str]:
    """Explicit SQLite location (WARUNG_DB_PATH) or None for the default."""
    return _lookup(dotenv_dir, "WARUNG_DB_PATH")


def load_kolosal(dotenv_dir: str) -> "KolosalSettings":
    """Return Kolosal endpoint settings; api_key is None when unconfigured."""
    api_key = _lookup(dotenv_dir, "KOLOSAL_API_KEY")
    if not api_key:
        log.info("KOLOSAL_API_KEY not set; detection and commentary will be unavailable")
    return KolosalSettings(
        api_url=(_lookup(dotenv_dir, "KOLOSAL_API_URL") or DEFAULT_KOLOSAL_URL).rstrip("/"),
        api_key=api_key,
        chat_model=_lookup(dotenv_dir, "KOLOSAL_CHAT_MODEL") or DEFAULT_CHAT_MODEL,
    )


def load_openai(dotenv_dir: str) -> "SpeechSettings":
    """Return OpenAI TTS settings from env or .env.

    Reads OPENAI_API_KEY (or lowercase openai_api_key); no custom base URL.
    """
    api_key = _lookup(dotenv_dir, "OPENAI_API_KEY") or _lookup(dotenv_dir, "openai_api_key")
    return SpeechSettings(
        api_key=api_key,
        model=_lookup(dotenv_dir, "OPENAI_TTS_MODEL") or DEFAULT_TTS_MODEL,
        voice=_lookup(dotenv_dir, "OPENAI_TTS_VOICE") or DEFAULT_TTS_VOICE,
    )


def load_shop_profile(dotenv_dir: str) -> "ShopProfile":
    return ShopProfile(
        name=_lookup(dotenv_dir, "WARUNG_SHOP_NAME") or DEFAULT_SHOP_NAME,
        address=_lookup(dotenv_dir, "WARUNG_SHOP_ADDRESS") or DEFAULT_SHOP_ADDRESS,
    )


def load_frontend_origin(dotenv_dir: str, fallback: str = "http://localhost:5173") -> str:
    return _lookup(dotenv_dir, "FRONTEND_URL") or fallback


@dataclass(frozen=True)
class KolosalSettings:
    api_url: str
    api_key: Optional[str]
    chat_model: str


@dataclass(frozen=True)
class SpeechSettings:
    api_key: Optional[str]
    model: str
    voice: str


@dataclass(frozen=True)
class ShopProfile:
    name: str
    address: str
