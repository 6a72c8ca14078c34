import time

import pytest

from newsrelay.models import ContentItem
from newsrelay.pipelines.aggregate import run_aggregation
from newsrelay.pipelines.fetch import FetchError
from newsrelay.pipelines.summarize import ExtractiveSummarizer, SummarizeError
from newsrelay.storage import (
    claim_next_job,
    complete_job,
    enqueue_job,
    insert_source,
    list_summaries_for_job,
)


class FakeFetcher:
    def __init__(self, items=None, delays=None):
        self.items = items or {}
        self.delays = delays or {}
        self.calls = []

    def fetch(self, source):
        self.calls.append(source.id)
        if source.id in self.delays:
            time.sleep(self.delays[source.id])
        value = self.items.get(source.id, [])
        if isinstance(value, Exception):
            raise value
        return value


class BrokenSummarizer:
    def summarize(self, source, items):
        raise SummarizeError("model unavailable")


def _item(title, text="Acme reported record growth this quarter. Shares rose.", published_at=None):
    return ContentItem(title=title, text=text, url=f"https://example.com/{title}", published_at=published_at)


def _source(conn, name, *, enabled=True, tags=()):
    return insert_source(
        conn,
        name=name,
        url=f"https://example.com/{name}/feed",
        source_type="rss",
        tags=list(tags),
        enabled=enabled,
    )


def _run(conn, config, fetcher, summarizer=None, **job_fields):
    enqueue_job(conn, **job_fields)
    job = claim_next_job(conn, "test-worker")
    outcome = run_aggregation(
        conn,
        job,
        config=config,
        fetcher=fetcher,
        summarizer=summarizer or ExtractiveSummarizer(max_sentences=2),
    )
    complete_job(conn, job.id, error=outcome.error, result=outcome.result)
    return job, outcome


def test_failing_source_does_not_block_others(conn, make_config):
    config = make_config()
    alpha = _source(conn, "alpha")
    beta = _source(conn, "beta")
    fetcher = FakeFetcher({alpha.id: FetchError("http 500"), beta.id: [_item("beta-news")]})

    job, outcome = _run(conn, config, fetcher)

    assert outcome.status == "completed"
    assert outcome.error == f"source {alpha.id} (alpha): fetch: http 500"
    assert outcome.result == {"targeted": 2, "summarized": 1, "skipped": 0, "failed": 1}
    assert [summary.source_id for summary in outcome.summaries] == [beta.id]
    stored = list_summaries_for_job(conn, job.id)
    assert [summary.source_id for summary in stored] == [beta.id]
    assert stored[0].topic == "beta-news"
    assert stored[0].sentiment == "positive"


def test_all_sources_failing_fails_job(conn, make_config):
    config = make_config()
    alpha = _source(conn, "alpha")
    beta = _source(conn, "beta")
    fetcher = FakeFetcher({alpha.id: [_item("alpha-news")], beta.id: FetchError("timeout")})

    _, outcome = _run(conn, config, fetcher, summarizer=BrokenSummarizer())

    assert outcome.status == "failed"
    assert outcome.error == (
        f"source {alpha.id} (alpha): summarize: model unavailable; "
        f"source {beta.id} (beta): fetch: timeout"
    )
    assert outcome.summaries == []


def test_job_without_sources_completes(conn, make_config):
    config = make_config()

    _, outcome = _run(conn, config, FakeFetcher())

    assert outcome.status == "completed"
    assert outcome.error is None
    assert outcome.result["targeted"] == 0


def test_source_ids_and_enabled_flag_select_sources(conn, make_config):
    config = make_config()
    alpha = _source(conn, "alpha")
    beta = _source(conn, "beta")
    hidden = _source(conn, "hidden", enabled=False)
    fetcher = FakeFetcher({source.id: [_item(source.name)] for source in (alpha, beta, hidden)})

    _, outcome = _run(conn, config, fetcher, source_ids=[beta.id, hidden.id])

    assert fetcher.calls == [beta.id]
    assert outcome.result["targeted"] == 1


def test_unchanged_content_is_skipped_unless_forced(conn, make_config):
    config = make_config()
    alpha = _source(conn, "alpha")
    old_items = [_item("alpha-news", published_at="2020-01-01T00:00:00+00:00")]
    fetcher = FakeFetcher({alpha.id: old_items})

    _, first = _run(conn, config, fetcher)
    _, repeat = _run(conn, config, fetcher)
    _, forced = _run(conn, config, fetcher, force=True)

    assert first.result["summarized"] == 1
    assert repeat.result == {"targeted": 1, "summarized": 0, "skipped": 1, "failed": 0}
    assert repeat.status == "completed"
    assert forced.result["summarized"] == 1


def test_slow_source_times_out(conn, make_config):
    config = make_config({"pipeline": {"source_timeout_seconds": 0.2, "source_concurrency": 2}})
    slow = _source(conn, "slow")
    quick = _source(conn, "quick")
    fetcher = FakeFetcher(
        {slow.id: [_item("slow-news")], quick.id: [_item("quick-news")]},
        delays={slow.id: 1.0},
    )

    _, outcome = _run(conn, config, fetcher)

    assert outcome.status == "completed"
    assert outcome.error == f"source {slow.id} (slow): timeout: exceeded 0.2s"
    assert [summary.source_id for summary in outcome.summaries] == [quick.id]


def test_timed_out_source_frees_its_slot(conn, make_config):
    config = make_config({"pipeline": {"source_timeout_seconds": 0.2, "source_concurrency": 1}})
    slow = _source(conn, "slow")
    quick = _source(conn, "quick")
    fetcher = FakeFetcher(
        {slow.id: [_item("slow-news")], quick.id: [_item("quick-news")]},
        delays={slow.id: 3.0},
    )

    started = time.monotonic()
    _, outcome = _run(conn, config, fetcher)
    elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert fetcher.calls == [slow.id, quick.id]
    assert outcome.error == f"source {slow.id} (slow): timeout: exceeded 0.2s"
    assert [summary.source_id for summary in outcome.summaries] == [quick.id]


@pytest.mark.parametrize("concurrency", [1, 4])
def test_every_targeted_source_is_accounted_for(conn, make_config, concurrency):
    config = make_config({"pipeline": {"source_concurrency": concurrency}})
    sources = [_source(conn, f"source-{index}") for index in range(5)]
    fetcher = FakeFetcher(
        {
            source.id: (FetchError("gone") if index % 2 else [_item(source.name)])
            for index, source in enumerate(sources)
        }
    )

    _, outcome = _run(conn, config, fetcher)

    result = outcome.result
    assert result["targeted"] == 5
    assert result["summarized"] + result["skipped"] + result["failed"] == 5
    assert result["failed"] == 2
