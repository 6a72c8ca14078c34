from __future__ import annotations

import json
import logging
import os
import re
import urllib.error
import urllib.request
from collections import Counter
from typing import Any

import jsonschema

from ..config import Config
from ..models import SENTIMENTS, ContentItem, Source, SummaryDraft
from ..utils import log_event

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["topic", "summary", "sentiment"],
    "properties": {
        "topic": {"type": "string", "minLength": 1},
        "summary": {"type": "string", "minLength": 1},
        "sentiment": {"type": "string", "enum": list(SENTIMENTS)},
        "key_entities": {"type": "array", "items": {"type": "string"}},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
}

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_TOKEN_RE = re.compile(r"[A-Za-z][A-Za-z0-9&'-]+")
_STOPWORDS = {
    "the", "and", "for", "with", "from", "this", "that", "these", "those", "its",
    "are", "was", "were", "has", "have", "had", "but", "not", "you", "our", "their",
    "new", "after", "before", "over", "into", "about", "more", "what", "when", "how",
}
_POSITIVE_WORDS = {
    "gain", "gains", "growth", "improve", "improved", "improves", "launch", "launches",
    "record", "success", "successful", "win", "wins", "rise", "rises", "surge", "strong",
    "approve", "approved", "benefit", "breakthrough", "profit", "recovery", "upgrade",
}
_NEGATIVE_WORDS = {
    "loss", "losses", "decline", "declines", "fall", "falls", "drop", "drops", "crash",
    "breach", "attack", "lawsuit", "fraud", "fail", "failed", "failure", "risk", "warning",
    "cut", "cuts", "layoffs", "outage", "recall", "ban", "crisis", "weak", "down",
}


class SummarizeError(ValueError):
    pass


class ExtractiveSummarizer:
    """Local summarizer: leading sentences, word-list sentiment and capitalized entities."""

    def __init__(self, max_sentences: int = 3) -> None:
        self.max_sentences = max(1, max_sentences)

    def summarize(self, source: Source, items: list[ContentItem]) -> SummaryDraft:
        titles = [item.title for item in items if item.title]
        texts = [item.text for item in items if item.text]
        if not titles and not texts:
            raise SummarizeError("no content to summarize")

        sentences: list[str] = []
        for text in texts:
            for sentence in _SENTENCE_RE.split(text):
                sentence = sentence.strip()
                if sentence and sentence not in sentences:
                    sentences.append(sentence)
                if len(sentences) >= self.max_sentences:
                    break
            if len(sentences) >= self.max_sentences:
                break
        if not sentences:
            sentences = titles[: self.max_sentences]

        combined = " ".join(titles + texts)
        return SummaryDraft(
            topic=titles[0] if titles else source.name,
            summary=" ".join(sentences),
            sentiment=classify_sentiment(combined),
            key_entities=extract_entities(combined),
            tags=list(source.tags),
        )


class LlmSummarizer:
    """Summarizes through an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        max_sentences: int = 3,
        timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        if not base_url:
            raise SummarizeError("NR_LLM_BASE_URL not set")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_sentences = max_sentences
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("newsrelay.summarize")

    @classmethod
    def from_env(cls, max_sentences: int = 3, timeout_seconds: int = 30) -> "LlmSummarizer":
        return cls(
            base_url=os.environ.get("NR_LLM_BASE_URL", "").strip(),
            api_key=os.environ.get("NR_LLM_API_KEY", "").strip(),
            model=os.environ.get("NR_LLM_MODEL", "gpt-4o-mini").strip(),
            max_sentences=max_sentences,
            timeout_seconds=timeout_seconds,
        )

    def summarize(self, source: Source, items: list[ContentItem]) -> SummaryDraft:
        if not items:
            raise SummarizeError("no content to summarize")
        system = (
            "You summarize news for a digest. Be concise and factual. "
            f"Write at most {self.max_sentences} sentences. "
            "Return JSON with keys: topic, summary, sentiment "
            "(positive, neutral or negative), key_entities, tags."
        )
        body = "\n\n".join(
            f"Title: {item.title}\nURL: {item.url or ''}\n{item.text}" for item in items
        )
        user = f"Source: {source.name}\n\n{body}\n\nRespond with JSON only."
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.2,
        }
        response = self._post(payload)
        choices = response.get("choices") or []
        if not choices:
            raise SummarizeError("llm response missing choices")
        content = choices[0].get("message", {}).get("content") or ""
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise SummarizeError("llm returned non-JSON output") from exc
        try:
            jsonschema.validate(parsed, SUMMARY_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise SummarizeError(f"llm output failed validation: {exc.message}") from exc
        tags = list(source.tags)
        for tag in parsed.get("tags") or []:
            if tag not in tags:
                tags.append(tag)
        return SummaryDraft(
            topic=parsed["topic"].strip(),
            summary=parsed["summary"].strip(),
            sentiment=parsed["sentiment"],
            key_entities=list(parsed.get("key_entities") or []),
            tags=tags,
        )

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        request = urllib.request.Request(
            f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
        )
        request.add_header("Content-Type", "application/json")
        if self.api_key:
            request.add_header("Authorization", f"Bearer {self.api_key}")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            log_event(self.logger, logging.WARNING, "llm_call_failed", status=exc.code)
            raise SummarizeError(f"llm http_error {exc.code}: {detail[:200]}") from exc
        except urllib.error.URLError as exc:
            log_event(self.logger, logging.WARNING, "llm_call_failed", error=str(exc.reason))
            raise SummarizeError(f"llm network_error: {exc.reason}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SummarizeError("llm returned invalid JSON envelope") from exc


def build_summarizer(config: Config):
    if config.summarizer.provider == "llm":
        return LlmSummarizer.from_env(
            max_sentences=config.summarizer.max_sentences,
            timeout_seconds=config.http.timeout_seconds,
        )
    return ExtractiveSummarizer(max_sentences=config.summarizer.max_sentences)


def classify_sentiment(text: str) -> str:
    words = [word.lower() for word in _TOKEN_RE.findall(text)]
    positive = sum(1 for word in words if word in _POSITIVE_WORDS)
    negative = sum(1 for word in words if word in _NEGATIVE_WORDS)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


def extract_entities(text: str, limit: int = 5) -> list[str]:
    counts: Counter[str] = Counter()
    order: list[str] = []
    for token in _TOKEN_RE.findall(text):
        if len(token) < 3 or not token[0].isupper():
            continue
        if token.lower() in _STOPWORDS:
            continue
        if token not in counts:
            order.append(token)
        counts[token] += 1
    ranked = sorted(order, key=lambda token: (-counts[token], order.index(token)))
    return ranked[:limit]
