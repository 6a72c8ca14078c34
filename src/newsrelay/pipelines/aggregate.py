"""Execution of one claimed aggregation job.

Sources are processed independently, each on its own thread, with at most
``source_concurrency`` running at once. Source threads only fetch, score and
summarize; every database write happens on the calling thread as results are
collected, so a summary is persisted as soon as its source finishes. A source
that fails or runs past its deadline is recorded against that source alone,
and a timed-out source no longer holds one of the concurrent slots.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from ..config import Config
from ..db import DBConn
from ..models import AggregationJob, AggregationOutcome, ContentItem, Source, Summary, SummaryDraft
from ..policy import relevance_score, should_summarize
from ..storage import get_last_summary_for_source, insert_summary, list_sources
from ..utils import content_hash, log_event, utc_now

_COLLECT_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class SourceResult:
    source: Source
    status: str
    stage: str | None = None
    error: str | None = None
    draft: SummaryDraft | None = None
    content_hash: str | None = None
    source_url: str | None = None
    score: float | None = None


def select_sources(conn: DBConn, job: AggregationJob) -> list[Source]:
    enabled = list_sources(conn, enabled_only=True)
    if job.source_ids is None:
        return enabled
    wanted = set(job.source_ids)
    return [source for source in enabled if source.id in wanted]


def run_aggregation(
    conn: DBConn,
    job: AggregationJob,
    *,
    config: Config,
    fetcher,
    summarizer,
    logger: logging.Logger | None = None,
    clock=None,
) -> AggregationOutcome:
    logger = logger or logging.getLogger("newsrelay.pipeline")
    clock = clock or utc_now
    sources = select_sources(conn, job)
    previous_hashes = {}
    for source in sources:
        last = get_last_summary_for_source(conn, source.id)
        previous_hashes[source.id] = last.content_hash if last else None

    summaries: list[Summary] = []
    failures: dict[int, str] = {}
    skipped = 0

    def record(result: SourceResult) -> None:
        nonlocal skipped
        source = result.source
        if result.status == "failed":
            failures[source.id] = f"source {source.id} ({source.name}): {result.stage}: {result.error}"
            log_event(
                logger,
                logging.WARNING,
                "source_failed",
                job_id=job.id,
                source_id=source.id,
                stage=result.stage,
                error=result.error,
            )
            return
        if result.status == "skipped":
            skipped += 1
            log_event(
                logger,
                logging.INFO,
                "source_skipped",
                job_id=job.id,
                source_id=source.id,
                score=result.score,
            )
            return
        summary = insert_summary(
            conn,
            job_id=job.id,
            source_id=source.id,
            draft=result.draft,
            source_url=result.source_url,
            content_hash=result.content_hash,
        )
        summaries.append(summary)
        log_event(
            logger,
            logging.INFO,
            "summary_written",
            job_id=job.id,
            source_id=source.id,
            summary_id=summary.id,
            score=result.score,
        )

    if sources:
        _collect(
            sources,
            lambda source: process_source(
                source,
                previous_hash=previous_hashes.get(source.id),
                force=job.force,
                config=config,
                fetcher=fetcher,
                summarizer=summarizer,
                now=clock(),
            ),
            record,
            concurrency=config.pipeline.source_concurrency,
            timeout_seconds=config.pipeline.source_timeout_seconds,
        )

    errors = [failures[source_id] for source_id in sorted(failures)]
    targeted = len(sources)
    status = "failed" if targeted and len(failures) == targeted else "completed"
    return AggregationOutcome(
        status=status,
        error="; ".join(errors) if errors else None,
        result={
            "targeted": targeted,
            "summarized": len(summaries),
            "skipped": skipped,
            "failed": len(failures),
        },
        summaries=summaries,
    )


def process_source(
    source: Source,
    *,
    previous_hash: str | None,
    force: bool,
    config: Config,
    fetcher,
    summarizer,
    now: datetime,
) -> SourceResult:
    try:
        items = fetcher.fetch(source)
    except Exception as exc:  # noqa: BLE001
        return SourceResult(source=source, status="failed", stage="fetch", error=str(exc))

    fingerprint = content_hash(_fingerprint_text(items))
    score, _ = relevance_score(
        items,
        content_hash=fingerprint,
        previous_hash=previous_hash,
        tags=source.tags,
        keywords=config.relevance.keywords,
        recency_hours=config.relevance.recency_hours,
        now=now,
    )
    if not items and not force:
        return SourceResult(source=source, status="skipped", score=score)
    if not should_summarize(score, config.relevance.threshold, force):
        return SourceResult(source=source, status="skipped", score=score)

    try:
        draft = summarizer.summarize(source, items)
    except Exception as exc:  # noqa: BLE001
        return SourceResult(source=source, status="failed", stage="summarize", error=str(exc))

    source_url = next((item.url for item in items if item.url), None) or source.url
    return SourceResult(
        source=source,
        status="summarized",
        draft=draft,
        content_hash=fingerprint,
        source_url=source_url,
        score=score,
    )


def _fingerprint_text(items: list[ContentItem]) -> str:
    return "\n".join(f"{item.url or ''}|{item.title}|{item.text}" for item in items)


def _collect(sources, task, record, *, concurrency: int, timeout_seconds: float) -> None:
    waiting = deque(sources)
    running: dict[int, tuple[Source, float]] = {}
    results: queue.Queue = queue.Queue()
    limit = max(1, concurrency)

    def run(source: Source) -> None:
        try:
            result = task(source)
        except Exception as exc:  # noqa: BLE001
            result = SourceResult(source=source, status="failed", stage="process", error=str(exc))
        results.put(result)

    while waiting or running:
        while waiting and len(running) < limit:
            source = waiting.popleft()
            running[source.id] = (source, time.monotonic())
            threading.Thread(
                target=run, args=(source,), name=f"newsrelay-source-{source.id}", daemon=True
            ).start()
        try:
            result = results.get(timeout=_COLLECT_POLL_SECONDS)
        except queue.Empty:
            result = None
        # A result for a source that already timed out is discarded.
        if result is not None and running.pop(result.source.id, None) is not None:
            record(result)
        now = time.monotonic()
        for source_id, (source, began) in list(running.items()):
            if now - began <= timeout_seconds:
                continue
            # The thread cannot be interrupted; it stops counting against the limit.
            del running[source_id]
            record(
                SourceResult(
                    source=source,
                    status="failed",
                    stage="timeout",
                    error=f"exceeded {timeout_seconds:g}s",
                )
            )
