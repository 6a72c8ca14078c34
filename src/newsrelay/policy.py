from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from .models import ContentItem
from .utils import parse_iso

NOVELTY_WEIGHT = 0.5
RECENCY_WEIGHT = 0.3
MATCH_WEIGHT = 0.2


def relevance_score(
    items: list[ContentItem],
    *,
    content_hash: str,
    previous_hash: str | None,
    tags: Iterable[str],
    keywords: Iterable[str],
    recency_hours: int,
    now: datetime,
) -> tuple[float, dict[str, float]]:
    """Score fetched content between 0 and 1 and return the contributing parts.

    Content identical to what was last summarized for the source scores no
    novelty. Undated items count as recent. With no tags or keywords to match
    against, the match part is granted.
    """
    reasons: dict[str, float] = {}
    if not items:
        return 0.0, reasons

    if content_hash != previous_hash:
        reasons["novel"] = NOVELTY_WEIGHT

    cutoff = now - timedelta(hours=recency_hours)
    for item in items:
        published = parse_iso(item.published_at)
        if published is None or published >= cutoff:
            reasons["recent"] = RECENCY_WEIGHT
            break

    terms = [term.lower() for term in list(tags) + list(keywords) if term]
    if not terms:
        reasons["match"] = MATCH_WEIGHT
    else:
        combined = " ".join(f"{item.title} {item.text}" for item in items).lower()
        if any(term in combined for term in terms):
            reasons["match"] = MATCH_WEIGHT

    return round(sum(reasons.values()), 4), reasons


def should_summarize(score: float, threshold: float, force: bool) -> bool:
    # force bypasses the relevance filter only; fetch and summarize still run.
    if force:
        return True
    return score >= threshold
