import json

import pytest

from newsrelay.models import ContentItem, Source
from newsrelay.pipelines.summarize import (
    ExtractiveSummarizer,
    LlmSummarizer,
    SummarizeError,
    build_summarizer,
    classify_sentiment,
    extract_entities,
)

SOURCE = Source(id=1, name="Wire", url="https://example.com", type="rss", tags=["markets"], enabled=True)

ITEMS = [
    ContentItem(
        title="Acme posts record profit",
        text="Acme Corp reported record profit. Analysts expect growth. Shares moved higher. More later.",
    ),
    ContentItem(title="Second story", text="Globex announced layoffs."),
]


class _Response:
    def __init__(self, payload):
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _llm_reply(content):
    return {"choices": [{"message": {"content": json.dumps(content) if isinstance(content, dict) else content}}]}


def _llm():
    return LlmSummarizer(base_url="https://llm.test/v1/", api_key="sk-test", model="test-model")


def test_extractive_summary_uses_leading_sentences():
    draft = ExtractiveSummarizer(max_sentences=2).summarize(SOURCE, ITEMS)

    assert draft.topic == "Acme posts record profit"
    assert draft.summary == "Acme Corp reported record profit. Analysts expect growth."
    assert draft.sentiment == "positive"
    assert draft.key_entities[0] == "Acme"
    assert draft.tags == ["markets"]


def test_extractive_topic_falls_back_to_source_name():
    draft = ExtractiveSummarizer().summarize(SOURCE, [ContentItem(title="", text="Plain text only.")])
    assert draft.topic == "Wire"


def test_extractive_requires_content():
    with pytest.raises(SummarizeError):
        ExtractiveSummarizer().summarize(SOURCE, [ContentItem(title="", text="")])


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Strong growth and a record quarter", "positive"),
        ("Outage causes losses after data breach", "negative"),
        ("The committee met on Tuesday", "neutral"),
    ],
)
def test_classify_sentiment(text, expected):
    assert classify_sentiment(text) == expected


def test_extract_entities_ranks_by_frequency():
    text = "Globex met Acme. Acme and Initech signed. Acme wins."
    assert extract_entities(text, limit=2) == ["Acme", "Globex"]


def test_llm_summary_is_validated(monkeypatch):
    captured = []

    def fake_urlopen(request, timeout=None):
        captured.append(request)
        return _Response(
            _llm_reply(
                {
                    "topic": "Acme results",
                    "summary": "Acme beat estimates.",
                    "sentiment": "positive",
                    "key_entities": ["Acme"],
                    "tags": ["earnings", "markets"],
                }
            )
        )

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    draft = _llm().summarize(SOURCE, ITEMS)

    assert draft.topic == "Acme results"
    assert draft.tags == ["markets", "earnings"]
    request = captured[0]
    assert request.full_url == "https://llm.test/v1/chat/completions"
    assert request.get_header("Authorization") == "Bearer sk-test"
    assert json.loads(request.data.decode("utf-8"))["model"] == "test-model"


@pytest.mark.parametrize(
    "content",
    [
        "not json at all",
        {"topic": "x", "summary": "y", "sentiment": "ecstatic"},
        {"topic": "x", "sentiment": "neutral"},
    ],
)
def test_llm_rejects_bad_output(monkeypatch, content):
    monkeypatch.setattr(
        "urllib.request.urlopen", lambda request, timeout=None: _Response(_llm_reply(content))
    )

    with pytest.raises(SummarizeError):
        _llm().summarize(SOURCE, ITEMS)


def test_llm_requires_base_url():
    with pytest.raises(SummarizeError, match="NR_LLM_BASE_URL"):
        LlmSummarizer.from_env()


def test_build_summarizer_follows_config(make_config, monkeypatch):
    assert isinstance(build_summarizer(make_config()), ExtractiveSummarizer)

    monkeypatch.setenv("NR_LLM_BASE_URL", "https://llm.test/v1")
    summarizer = build_summarizer(make_config({"summarizer": {"provider": "llm"}}))
    assert isinstance(summarizer, LlmSummarizer)
    assert summarizer.model == "gpt-4o-mini"
