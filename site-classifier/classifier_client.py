"""
Gemini-backed website classifier.

One call per URL with Google Search grounding. Remote failures never escape
`classify`: they come back as an AnalysisResult whose `type` says what went
wrong, so callers only ever deal with results.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from google import genai
from google.genai import types

import config
from row_store import MAX_SOURCES, AnalysisResult


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 503}
RAW_TEXT_PREVIEW_CHARS = 100

SITE_TYPES = ["E-commerce", "Local Business", "Corporate", "Blog", "Dead Link", "Unknown"]

PROMPT_TEMPLATE = """
I need to verify if the following website is an E-commerce store (selling physical products) or a service/corporate site.

Target Website: {url}

Please use Google Search to find information about this specific domain.

Return a strictly valid JSON object (no other text) with the following keys:
- "type": String. Must be one of: {site_types}.
- "details": String. A short sentence describing what they sell or do (e.g., "Sells leather bags and accessories" or "Dentist clinic in Milan").
"""

_FENCE_RE = re.compile(r"```json\n?|\n?```")


@dataclass
class SkipPolicy:
    """Decides which URLs are answered locally without a remote call."""

    blocked_patterns: list[str] = field(default_factory=lambda: list(config.BLOCKED_URL_PATTERNS))
    placeholders: list[str] = field(default_factory=lambda: list(config.PLACEHOLDER_URLS))
    min_length: int = config.MIN_URL_LENGTH

    def evaluate(self, raw_url: Optional[str]) -> Optional[AnalysisResult]:
        url = str(raw_url or "").strip()
        for pattern in self.blocked_patterns:
            if pattern and pattern in url:
                return AnalysisResult(
                    url=url,
                    type="analisi non possibile",
                    details=f"URL ignorato ({_pattern_label(pattern)})",
                )
        if not url or url in self.placeholders or len(url) < self.min_length:
            return AnalysisResult(url=url, type="Skipped", details="Invalid or missing URL")
        return None


def _pattern_label(pattern: str) -> str:
    # static.xx.fbcdn.net -> fbcdn
    parts = [p for p in pattern.strip(".").split(".") if p]
    if len(parts) >= 2:
        return parts[-2]
    return pattern


def clean_json_string(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def parse_classification_text(text: str) -> tuple[str, str]:
    """Return (type, details) from model text, falling back to a raw-text preview."""
    try:
        parsed = json.loads(clean_json_string(text))
    except (json.JSONDecodeError, TypeError):
        logger.warning("Failed to parse Gemini JSON, falling back to raw text: %r", (text or "")[:200])
        return "Unknown", f"{(text or '')[:RAW_TEXT_PREVIEW_CHARS]}..."
    if not isinstance(parsed, dict):
        return "Unknown", f"{(text or '')[:RAW_TEXT_PREVIEW_CHARS]}..."
    site_type = str(parsed.get("type") or "").strip() or "Unknown"
    details = str(parsed.get("details") or "").strip() or "No details provided"
    return site_type, details


def extract_grounding_sources(response: Any, limit: int = MAX_SOURCES) -> list[str]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    sources: list[str] = []
    for chunk in chunks:
        web = getattr(chunk, "web", None)
        uri = str(getattr(web, "uri", "") or "").strip()
        if uri:
            sources.append(uri)
        if len(sources) >= limit:
            break
    return sources


def error_status_code(exc: BaseException) -> int:
    for attr in ("code", "status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return 0


def error_message(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "Unknown error"
    message = getattr(exc, "message", None)
    return str(message or exc or type(exc).__name__)


def is_retryable_error(exc: BaseException) -> bool:
    if error_status_code(exc) in RETRYABLE_STATUS_CODES:
        return True
    return "overloaded" in error_message(exc)


def build_prompt(url: str) -> str:
    site_types = ", ".join(f'"{name}"' for name in SITE_TYPES[:-1]) + f' or "{SITE_TYPES[-1]}"'
    return PROMPT_TEMPLATE.format(url=url, site_types=site_types)


class GeminiSiteClassifier:
    """Classifies one URL per call. Holds the credential and the retry policy."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = config.GEMINI_MODEL,
        temperature: float = config.GEMINI_TEMPERATURE,
        max_retries: int = config.MAX_RETRIES,
        skip_policy: Optional[SkipPolicy] = None,
        genai_client: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if genai_client is None:
            if not api_key:
                raise ValueError("A Gemini API key is required.")
            genai_client = genai.Client(api_key=api_key)
        self._client = genai_client
        self.model = model
        self.temperature = temperature
        self.max_retries = max(0, int(max_retries))
        self.skip_policy = skip_policy or SkipPolicy()
        self._sleep = sleep

    def _generate_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            tools=[types.Tool(google_search=types.GoogleSearch())],
            temperature=self.temperature,
        )

    async def _request(self, url: str) -> AnalysisResult:
        response = await self._client.aio.models.generate_content(
            model=self.model,
            contents=build_prompt(url),
            config=self._generate_config(),
        )
        text = getattr(response, "text", None) or "{}"
        site_type, details = parse_classification_text(text)
        return AnalysisResult(
            url=url,
            type=site_type,
            details=details,
            sources=tuple(extract_grounding_sources(response)),
        )

    async def classify(self, raw_url: Optional[str]) -> AnalysisResult:
        skipped = self.skip_policy.evaluate(raw_url)
        if skipped is not None:
            return skipped

        url = str(raw_url or "").strip()
        last_error: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._request(url)
            except Exception as exc:
                last_error = exc
                if is_retryable_error(exc) and attempt < self.max_retries:
                    delay = 2 ** (attempt + 1)
                    logger.warning(
                        "Gemini API error %s for %s. Retrying in %ss (attempt %d/%d)",
                        error_status_code(exc) or "n/a",
                        url,
                        delay,
                        attempt + 1,
                        self.max_retries,
                    )
                    await self._sleep(delay)
                    continue
                break

        logger.error("Gemini API error after retries for %s: %s", url, error_message(last_error))
        return AnalysisResult(url=url, type="API Error", details=error_message(last_error))
