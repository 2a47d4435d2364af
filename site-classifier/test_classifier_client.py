"""
Classifier client tests: skip policy, response parsing, retry/backoff.
Gemini is replaced by an in-process fake exposing `aio.models.generate_content`.
"""

import asyncio
from types import SimpleNamespace

from classifier_client import (
    GeminiSiteClassifier,
    SkipPolicy,
    clean_json_string,
    is_retryable_error,
    parse_classification_text,
)


class FakeAPIError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeModels:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def generate_content(self, *, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_response(text, uris=()):
    chunks = [SimpleNamespace(web=SimpleNamespace(uri=uri)) for uri in uris]
    candidate = SimpleNamespace(grounding_metadata=SimpleNamespace(grounding_chunks=chunks))
    return SimpleNamespace(text=text, candidates=[candidate])


def make_classifier(outcomes):
    models = FakeModels(outcomes)
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    client = SimpleNamespace(aio=SimpleNamespace(models=models))
    classifier = GeminiSiteClassifier("test-key", genai_client=client, sleep=fake_sleep)
    return classifier, models, delays


def test_blocked_cdn_url_is_not_sent():
    classifier, models, _ = make_classifier([])
    result = asyncio.run(classifier.classify("https://static.xx.fbcdn.net/abc"))
    assert result.type == "analisi non possibile"
    assert result.details == "URL ignorato (fbcdn)"
    assert result.sources == ()
    assert models.calls == []


def test_placeholder_and_short_urls_are_skipped():
    classifier, models, _ = make_classifier([])
    for raw in ["", "N/A", "abcd", "   ", None]:
        result = asyncio.run(classifier.classify(raw))
        assert result.type == "Skipped"
        assert result.details == "Invalid or missing URL"
        assert result.sources == ()
    assert models.calls == []


def test_custom_skip_policy_patterns():
    policy = SkipPolicy(blocked_patterns=["cdn.example.net"], placeholders=["-", "none"], min_length=5)
    assert policy.evaluate("https://cdn.example.net/x").details == "URL ignorato (example)"
    assert policy.evaluate("none").type == "Skipped"
    assert policy.evaluate("https://static.xx.fbcdn.net/abc") is None


def test_successful_classification_with_sources():
    response = make_response(
        '```json\n{"type": "E-commerce", "details": "Sells leather bags"}\n```',
        uris=["https://a.com", "https://b.com"],
    )
    classifier, models, delays = make_classifier([response])
    result = asyncio.run(classifier.classify("  https://shop.example.it  "))

    assert result.url == "https://shop.example.it"
    assert result.type == "E-commerce"
    assert result.details == "Sells leather bags"
    assert result.sources == ("https://a.com", "https://b.com")
    assert len(models.calls) == 1
    assert "Target Website: https://shop.example.it" in models.calls[0]["contents"]
    assert models.calls[0]["config"].temperature == 0.1
    assert delays == []


def test_sources_are_capped_at_three():
    uris = [f"https://source{i}.example.com" for i in range(5)]
    response = make_response('{"type": "Blog", "details": "x"}', uris=uris)
    classifier, _, _ = make_classifier([response])
    result = asyncio.run(classifier.classify("https://blog.example.com"))
    assert result.sources == tuple(uris[:3])


def test_fence_stripping_parses_json():
    text = '```json\n{"type":"Blog","details":"x"}\n```'
    assert clean_json_string(text) == '{"type":"Blog","details":"x"}'
    assert parse_classification_text(text) == ("Blog", "x")


def test_unparseable_text_falls_back_to_preview():
    raw = "I could not find this site. " * 10
    site_type, details = parse_classification_text(raw)
    assert site_type == "Unknown"
    assert details == raw[:100] + "..."


def test_missing_keys_and_empty_text_get_defaults():
    assert parse_classification_text("{}") == ("Unknown", "No details provided")
    classifier, _, _ = make_classifier([make_response(None)])
    result = asyncio.run(classifier.classify("https://empty.example.com"))
    assert result.type == "Unknown"
    assert result.details == "No details provided"
    assert result.sources == ()


def test_retries_503_with_exponential_backoff_then_succeeds():
    outcomes = [
        FakeAPIError(503, "Service Unavailable"),
        FakeAPIError(503, "Service Unavailable"),
        make_response('{"type": "Corporate", "details": "Consulting firm"}'),
    ]
    classifier, models, delays = make_classifier(outcomes)
    result = asyncio.run(classifier.classify("https://corp.example.com"))

    assert result.type == "Corporate"
    assert delays == [2, 4]
    assert len(models.calls) == 3


def test_exhausted_retries_return_api_error():
    outcomes = [FakeAPIError(503, "Service Unavailable") for _ in range(4)]
    classifier, models, delays = make_classifier(outcomes)
    result = asyncio.run(classifier.classify("https://down.example.com"))

    assert result.type == "API Error"
    assert result.details == "Service Unavailable"
    assert result.sources == ()
    assert delays == [2, 4, 8]
    assert len(models.calls) == 4


def test_non_retryable_error_stops_immediately():
    classifier, models, delays = make_classifier([FakeAPIError(400, "API key not valid")])
    result = asyncio.run(classifier.classify("https://example.com"))
    assert result.type == "API Error"
    assert result.details == "API key not valid"
    assert delays == []
    assert len(models.calls) == 1


def test_overloaded_message_is_retryable():
    outcomes = [
        RuntimeError("The model is overloaded. Please try again later."),
        make_response('{"type": "Local Business", "details": "Dentist clinic in Milan"}'),
    ]
    classifier, _, delays = make_classifier(outcomes)
    result = asyncio.run(classifier.classify("https://dentist.example.it"))
    assert result.type == "Local Business"
    assert delays == [2]


def test_retryable_classification():
    assert is_retryable_error(FakeAPIError(429, "Too Many Requests"))
    assert is_retryable_error(FakeAPIError(503, "Unavailable"))
    assert not is_retryable_error(FakeAPIError(500, "Internal"))
    assert not is_retryable_error(ValueError("bad input"))
