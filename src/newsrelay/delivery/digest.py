from __future__ import annotations

from dataclasses import dataclass

from ..models import AggregationJob, Summary

_SENTIMENT_MARKS = {"positive": "+", "neutral": "=", "negative": "-"}


@dataclass(frozen=True)
class Digest:
    subject: str
    text: str


def render_digest(
    job: AggregationJob,
    summaries: list[Summary],
    *,
    app_name: str = "newsrelay",
    schedule_name: str | None = None,
) -> Digest:
    count = len(summaries)
    noun = "update" if count == 1 else "updates"
    origin = f"schedule {schedule_name}" if schedule_name else "manual run"
    subject = f"{app_name}: {count} {noun} ({origin})"

    lines = [subject, ""]
    for summary in summaries:
        mark = _SENTIMENT_MARKS.get(summary.sentiment, "=")
        lines.append(f"[{mark}] {summary.topic}")
        lines.append(summary.summary)
        if summary.key_entities:
            lines.append("Entities: " + ", ".join(summary.key_entities))
        if summary.source_url:
            lines.append(summary.source_url)
        lines.append("")
    lines.append(f"job {job.id}")
    return Digest(subject=subject, text="\n".join(lines).strip())
