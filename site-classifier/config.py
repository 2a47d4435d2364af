"""
Runtime settings for the site classifier, read from the environment.
"""

from __future__ import annotations

import os
from typing import Optional


def _env_str(name: str, default: str) -> str:
    raw = str(os.getenv(name) or "").strip()
    return raw or default


def _env_int(name: str, default: int) -> int:
    raw = str(os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = str(os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


GEMINI_MODEL = _env_str("SITE_CLASSIFIER_MODEL", "gemini-2.5-flash")
GEMINI_TEMPERATURE = _env_float("SITE_CLASSIFIER_TEMPERATURE", 0.1)
MAX_RETRIES = _env_int("SITE_CLASSIFIER_MAX_RETRIES", 3)

BATCH_SIZE = max(1, _env_int("SITE_CLASSIFIER_BATCH_SIZE", 5))
BATCH_PAUSE_SECONDS = max(0.0, _env_float("SITE_CLASSIFIER_BATCH_PAUSE_SECONDS", 0.5))

BLOCKED_URL_PATTERNS = _env_list("SITE_CLASSIFIER_BLOCKED_PATTERNS", ["static.xx.fbcdn.net"])
PLACEHOLDER_URLS = _env_list("SITE_CLASSIFIER_PLACEHOLDERS", ["N/A"])
MIN_URL_LENGTH = 5

SERVER_HOST = _env_str("SITE_CLASSIFIER_HOST", "127.0.0.1")
SERVER_PORT = _env_int("SITE_CLASSIFIER_PORT", 8000)
LOG_LEVEL = _env_str("SITE_CLASSIFIER_LOG_LEVEL", "info")


def resolve_api_key(explicit: Optional[str] = None) -> str:
    """Pick the credential: explicit value first, then GEMINI_API_KEY, then API_KEY."""
    for candidate in (explicit, os.getenv("GEMINI_API_KEY"), os.getenv("API_KEY")):
        value = str(candidate or "").strip()
        if value:
            return value
    return ""


def mask_api_key(key: Optional[str]) -> str:
    value = str(key or "")
    if not value:
        return ""
    if len(value) > 4:
        return f"...{value[-4:]}"
    return "****"
