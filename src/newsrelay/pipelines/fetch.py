from __future__ import annotations

import calendar
import json
import logging
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from ..config import HttpConfig
from ..models import ContentItem, Source
from ..utils import log_event


class FetchError(ValueError):
    pass


class Fetcher:
    """Pulls raw content for one source and turns it into ``ContentItem`` records."""

    def __init__(
        self,
        http: HttpConfig,
        *,
        max_items: int = 20,
        logger: logging.Logger | None = None,
    ) -> None:
        self.http = http
        self.max_items = max_items
        self.logger = logger or logging.getLogger("newsrelay.fetch")

    def fetch(self, source: Source) -> list[ContentItem]:
        content = self._download(source)
        if source.type == "rss":
            items = parse_feed(content, self.max_items)
        elif source.type == "website":
            items = parse_html(content.decode("utf-8", errors="replace"), source.url)
        elif source.type == "application":
            items = parse_application(content, self.max_items)
        else:
            raise FetchError(f"unsupported source type {source.type}")
        log_event(
            self.logger,
            logging.DEBUG,
            "source_fetched",
            source_id=source.id,
            source_type=source.type,
            items=len(items),
        )
        return items

    def _download(self, source: Source) -> bytes:
        headers = {"User-Agent": self.http.user_agent}
        if source.type == "application":
            headers["Accept"] = "application/json"
        status, content, error = _fetch_url(
            source.url,
            headers,
            self.http.timeout_seconds,
            self.http.max_retries,
            self.http.backoff_seconds,
        )
        if error or content is None:
            raise FetchError(error or "empty response")
        if status is not None and status >= 400:
            raise FetchError(f"http {status}")
        return content


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int,
    backoff_seconds: int,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, None, f"http {exc.code}"
        except URLError as exc:
            if attempt >= max_retries:
                return None, None, str(exc.reason)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except Exception as exc:  # noqa: BLE001
            return None, None, str(exc)
    return None, None, "Unknown fetch error"


def parse_feed(content: bytes | str, max_items: int = 20) -> list[ContentItem]:
    parsed = feedparser.parse(content)
    entries = list(parsed.entries or [])
    if not entries:
        if parsed.bozo:
            raise FetchError(f"invalid feed: {parsed.get('bozo_exception')}")
        return []
    items: list[ContentItem] = []
    for entry in entries[:max_items]:
        title = (entry.get("title") or "").strip()
        summary = entry.get("summary") or entry.get("description") or ""
        items.append(
            ContentItem(
                title=title,
                text=_html_to_text(summary),
                url=entry.get("link") or entry.get("id"),
                published_at=_entry_published_at(entry),
            )
        )
    return items


def parse_html(html: str, url: str | None = None) -> list[ContentItem]:
    soup = BeautifulSoup(html, "html.parser")
    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    text = extract_readable_text(html)
    if not text:
        raise FetchError("no readable content")
    return [ContentItem(title=title, text=text, url=url, published_at=None)]


def parse_application(content: bytes | str, max_items: int = 20) -> list[ContentItem]:
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise FetchError(f"invalid json: {exc.msg}") from exc
    if isinstance(payload, dict):
        payload = payload.get("items")
    if not isinstance(payload, list):
        raise FetchError("expected a list of items or an object with 'items'")
    items: list[ContentItem] = []
    for raw in payload[:max_items]:
        if not isinstance(raw, dict):
            continue
        text = raw.get("summary") or raw.get("text") or raw.get("content") or ""
        published = raw.get("published_at") or raw.get("publishedAt")
        parsed_date = _parse_date_value(published)
        items.append(
            ContentItem(
                title=str(raw.get("title") or "").strip(),
                text=_normalize_text(str(text)),
                url=raw.get("url") or raw.get("link"),
                published_at=parsed_date.isoformat() if parsed_date else None,
            )
        )
    return items


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside"]):
        tag.decompose()
    article = soup.find("article")
    if article:
        return _normalize_text(article.get_text(" ", strip=True))
    best = None
    best_len = 0
    for div in soup.find_all("div"):
        text = div.get_text(" ", strip=True)
        if len(text) > best_len:
            best_len = len(text)
            best = text
    if best:
        return _normalize_text(best)
    return _normalize_text(soup.get_text(" ", strip=True))


def _html_to_text(value: str) -> str:
    if "<" not in value:
        return _normalize_text(value)
    return _normalize_text(BeautifulSoup(value, "html.parser").get_text(" ", strip=True))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _entry_published_at(entry: Any) -> str | None:
    parsed = _parse_date_value(entry.get("published_parsed") or entry.get("published"))
    if parsed is None:
        parsed = _parse_date_value(entry.get("updated_parsed") or entry.get("updated"))
    return parsed.isoformat() if parsed else None


def _parse_date_value(value: Any) -> datetime | None:
    if value is None:
        return None
    if hasattr(value, "tm_year"):
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    if isinstance(value, datetime):
        return _normalize_datetime(value)
    if isinstance(value, str):
        try:
            return _normalize_datetime(parsedate_to_datetime(value))
        except (TypeError, ValueError):
            try:
                return _normalize_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
            except ValueError:
                return None
    return None


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
