from __future__ import annotations

import hashlib
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterable, Sequence

import feedparser
import requests
from dateutil import parser as date_parser

from .extract import extract_description

logger = logging.getLogger(__name__)

USER_AGENT = "happen/0.3 (terminal feed reader)"
DEFAULT_FETCH_TIMEOUT = 30.0
ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)

FRACTION_RE = re.compile(r"(\.\d{6})\d+")
WHITESPACE_RE = re.compile(r"\s+")

# Tried in order after the RFC 2822 and RFC 3339 parsers.
STRPTIME_FORMATS = (
    "%A, %d-%b-%y %H:%M:%S %Z",  # RFC 850
    "%a %b %d %H:%M:%S %z %Y",  # Ruby date
    "%a %b %d %H:%M:%S %Z %Y",  # Unix date
    "%a %b %d %H:%M:%S %Y",  # ANSI C
)


@dataclass(frozen=True)
class Source:
    name: str
    url: str
    foreground: str = ""
    background: str = ""
    max_age: timedelta = timedelta(0)


@dataclass(frozen=True)
class Item:
    id: str
    source: Source
    title: str
    description: str
    url: str
    image_url: str
    published: datetime


@dataclass(frozen=True)
class RawEntry:
    link: str
    title: str = ""
    published: str = ""
    summary: str = ""
    content: str = ""
    image_url: str = ""


@dataclass(frozen=True)
class FeedResult:
    title: str
    entries: tuple[RawEntry, ...]


class SourceFetchError(Exception):
    def __init__(self, source: Source, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source.name or source.url}: {reason}")


class AggregationError(Exception):
    """Raised when any source fails; no partial item list is returned."""

    def __init__(self, errors: Sequence[SourceFetchError]) -> None:
        self.errors = tuple(errors)
        detail = "; ".join(str(error) for error in self.errors)
        super().__init__(f"{len(self.errors)} feed(s) failed: {detail}")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def item_id(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def _as_utc(parsed: datetime) -> datetime:
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_rfc2822(raw: str) -> datetime:
    parsed = parsedate_to_datetime(raw)
    if parsed is None:
        raise ValueError(raw)
    return parsed


def _parse_rfc3339(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(FRACTION_RE.sub(r"\1", text))


def _strptime_parser(fmt: str) -> Callable[[str], datetime]:
    def parse(raw: str) -> datetime:
        return datetime.strptime(raw.strip(), fmt)

    return parse


def _parse_lenient(raw: str) -> datetime:
    return date_parser.parse(raw)


TIMESTAMP_PARSERS: tuple[Callable[[str], datetime], ...] = (
    _parse_rfc2822,
    _parse_rfc3339,
    *(_strptime_parser(fmt) for fmt in STRPTIME_FORMATS),
    _parse_lenient,
)


def parse_published(raw: str | None) -> datetime:
    if not raw or not raw.strip():
        return ZERO_TIME
    for parse in TIMESTAMP_PARSERS:
        try:
            return _as_utc(parse(raw))
        except (TypeError, ValueError, OverflowError, IndexError):
            continue
    return ZERO_TIME


def normalize_title(raw: str) -> str:
    return WHITESPACE_RE.sub(" ", raw or "").strip()


def describe_entry(entry: RawEntry) -> str:
    return extract_description((entry.summary, entry.content)) or entry.link


def entry_image_url(entry: Any) -> str:
    for thumbnail in entry.get("media_thumbnail") or []:
        if thumbnail.get("url"):
            return thumbnail["url"]
    for media in entry.get("media_content") or []:
        is_image = media.get("medium") == "image" or str(media.get("type", "")).startswith("image/")
        if is_image and media.get("url"):
            return media["url"]
    for enclosure in entry.get("enclosures") or []:
        if str(enclosure.get("type", "")).startswith("image/") and enclosure.get("href"):
            return enclosure["href"]
    image = entry.get("image")
    if isinstance(image, dict) and image.get("href"):
        return image["href"]
    return ""


def raw_entry_from(entry: Any) -> RawEntry:
    content = ""
    if entry.get("content"):
        content = entry["content"][0].get("value", "")
    return RawEntry(
        link=(entry.get("link") or "").strip(),
        title=entry.get("title", ""),
        published=entry.get("published") or entry.get("updated") or "",
        summary=entry.get("summary") or entry.get("description") or "",
        content=content,
        image_url=entry_image_url(entry),
    )


def feed_result_from_parsed(parsed: Any) -> FeedResult:
    title = normalize_title(parsed.feed.get("title", ""))
    return FeedResult(
        title=title,
        entries=tuple(raw_entry_from(entry) for entry in parsed.entries),
    )


def fetch_feed(source: Source, timeout: float = DEFAULT_FETCH_TIMEOUT) -> FeedResult:
    try:
        response = requests.get(
            source.url,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise SourceFetchError(source, str(exc)) from exc

    parsed = feedparser.parse(response.content)
    if parsed.bozo and not parsed.entries:
        reason = parsed.get("bozo_exception") or "unreadable feed"
        raise SourceFetchError(source, f"failed to parse feed: {reason}")
    return feed_result_from_parsed(parsed)


def collect_items(source: Source, feed: FeedResult, now: datetime) -> list[Item]:
    # The configured Source is never mutated; a copy carries the feed title.
    resolved = source
    if not source.name and feed.title:
        resolved = replace(source, name=feed.title)

    items: list[Item] = []
    for entry in feed.entries:
        if not entry.link:
            continue
        published = parse_published(entry.published)
        if source.max_age > timedelta(0) and now - published > source.max_age:
            continue
        items.append(
            Item(
                id=item_id(entry.link),
                source=resolved,
                title=normalize_title(entry.title),
                description=describe_entry(entry),
                url=entry.link,
                image_url=entry.image_url,
                published=published,
            )
        )
    return items


def _read_source(
    source: Source,
    fetch: Callable[[Source, float], FeedResult],
    timeout: float,
    now: datetime,
) -> list[Item]:
    try:
        feed = fetch(source, timeout)
    except SourceFetchError:
        raise
    except Exception as exc:
        raise SourceFetchError(source, f"{type(exc).__name__}: {exc}") from exc
    items = collect_items(source, feed, now)
    logger.info(f"[{source.name or feed.title or source.url}] {len(items)} items")
    return items


def read_feeds(
    sources: Iterable[Source],
    fetch: Callable[[Source, float], FeedResult] = fetch_feed,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    max_workers: int | None = None,
    now: datetime | None = None,
) -> list[Item]:
    sources = list(sources)
    if not sources:
        return []

    reference = now or now_utc()
    workers = max(1, min(max_workers or len(sources), len(sources)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="happen-fetch") as executor:
        futures = [
            executor.submit(_read_source, source, fetch, timeout, reference)
            for source in sources
        ]

    merged: list[Item] = []
    errors: list[SourceFetchError] = []
    for future in futures:
        try:
            merged.extend(future.result())
        except SourceFetchError as exc:
            logger.warning(f"Fetch failed: {exc}")
            errors.append(exc)

    if errors:
        raise AggregationError(errors)

    merged.sort(key=lambda item: item.published, reverse=True)
    return merged
