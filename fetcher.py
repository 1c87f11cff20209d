#!/usr/bin/env python3
"""
RSS feed fetcher and article filter.

This module fetches the configured syndication feeds, keeps the entries
published inside the freshness window, and resolves each one to a full
article through the content extractors. Nothing here raises for a bad feed
or a bad landing page: feed failures become "System Errors" articles and
extractor failures fall back to the syndicated content under an error banner,
so every problem is visible in the finished book.
"""

from asyncio import Semaphore, gather, get_event_loop
from calendar import timegm
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Any, List, Optional, Sequence, Tuple

import feedparser
from aiohttp import ClientSession

from config import get_logger
from errors import DigestError, FetchError, ParseError
from extractors import ExtractorPool, UNTITLED
from http_client import HTTP_OK_MAX, HTTP_OK_MIN, get_bytes
from models import (
    Article,
    ArticleSource,
    FeedSpec,
    FetchedFeed,
    FetchFailure,
    READ_IT_LATER_SOURCE,
    ReadItLaterItem,
    SYSTEM_ERRORS_POSITION,
    SYSTEM_ERRORS_SOURCE,
    utc_now,
)
from sanitizer import escape_xml
from telemetry import trace_span
from utils import strip_control_chars

# Module-specific logger
logger = get_logger("fetcher")

NO_TITLE = "No Title"
MAX_TITLE_LENGTH = 255

# feedparser options: sanitization happens later in our own allow-list pass
FEEDPARSER_OPTIONS = {
    'sanitize_html': False,
    'resolve_relative_uris': True,
}


def error_article(failure: FetchFailure, now: Optional[datetime] = None) -> Article:
    """Synthetic article describing a feed that could not be loaded."""
    url = escape_xml(failure.url)
    message = escape_xml(failure.message)
    return Article(
        title=f"Error loading feed: {failure.url}",
        link=failure.url,
        content=(
            f"<h1>Error loading feed</h1><p><strong>URL:</strong> {url}</p>"
            f"<p><strong>Error:</strong> {message}</p>"
        ),
        pub_date=now or utc_now(),
        article_source=ArticleSource(SYSTEM_ERRORS_SOURCE, SYSTEM_ERRORS_POSITION, None),
    )


def error_banner(error: Any) -> str:
    return (
        f'<p style="color:red"><strong>Error fetching full content:</strong> '
        f'{escape_xml(str(error))}</p><hr/>'
    )


class FeedFetcher:
    def __init__(self, executor: Optional[Executor] = None) -> None:
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor()

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Feed fetching
    # ------------------------------------------------------------------

    @trace_span(
        "fetch_feeds",
        tracer_name="fetcher",
        attr_from_args=lambda self, specs, session: {"feeds.count": len(specs)},
    )
    async def fetch_feeds(
        self, specs: Sequence[FeedSpec], session: ClientSession
    ) -> Tuple[List[FetchedFeed], List[FetchFailure]]:
        """Fetch and parse every feed in order. Never raises for a single feed."""
        feeds: List[FetchedFeed] = []
        errors: List[FetchFailure] = []
        for spec in specs:
            try:
                feeds.append(await self.fetch_feed(spec, session))
                logger.info(f"Successfully fetched and parsed feed: {spec.url}")
            except (FetchError, ParseError) as e:
                logger.warning(f"{e} - {spec.url}")
                errors.append(FetchFailure(url=spec.url, message=str(e)))
        return feeds, errors

    async def fetch_feed(self, spec: FeedSpec, session: ClientSession) -> FetchedFeed:
        """Fetch a single feed; raises FetchError or ParseError."""
        status, content = await get_bytes(session, spec.url)
        if not HTTP_OK_MIN <= status <= HTTP_OK_MAX:
            raise FetchError(f"Failed to fetch feed: HTTP {status}", {"url": spec.url, "status": status})

        parsed = await self.run_in_executor(self.parse_feed, content)
        return FetchedFeed(spec=spec, parsed=parsed, concurrency_limit=spec.concurrency_limit)

    def parse_feed(self, content: bytes):
        """Parse feed bytes with feedparser (runs in executor)."""
        try:
            feed = feedparser.parse(content, **FEEDPARSER_OPTIONS)
        except (ValueError, TypeError, AttributeError) as e:
            raise ParseError(f"Failed to parse: {e}") from e

        entries = feed.get('entries') or []
        if feed.get('bozo') and not entries:
            detail = feed.get('bozo_exception') or "malformed document"
            raise ParseError(f"Failed to parse: {detail}")
        if not entries and not feed.get('version'):
            raise ParseError("Failed to parse: not a syndication document")
        if feed.get('bozo'):
            logger.warning(f"Feed parsed with warnings: {feed.get('bozo_exception')}")
        return feed

    # ------------------------------------------------------------------
    # Entry helpers
    # ------------------------------------------------------------------

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            return getter(field)
        return getattr(entry, field, None)

    def _date_value_to_datetime(self, value: Any) -> Optional[datetime]:
        """Convert feedparser structs, datetimes or date strings to aware UTC datetimes."""
        if value in (None, ''):
            return None

        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

        if isinstance(value, (list, tuple)):
            # feedparser *_parsed values are UTC struct_time tuples
            try:
                return datetime.fromtimestamp(timegm(tuple(value)), tz=timezone.utc)
            except (OverflowError, ValueError, OSError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value)

        return None

    def _parse_date_string(self, date_str: str) -> Optional[datetime]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
        except (ValueError, TypeError, AttributeError, OverflowError, OSError):
            pass
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, OverflowError):
            return None
        if dt is None:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    def entry_pub_date(self, entry) -> Optional[datetime]:
        """Published date, else updated date. Entries with neither are skipped."""
        for field in ('published', 'updated'):
            for key in (f"{field}_parsed", field):
                dt = self._date_value_to_datetime(self._get_entry_value(entry, key))
                if dt is not None:
                    return dt
        return None

    def entry_title(self, entry) -> str:
        title = strip_control_chars(self._get_entry_value(entry, 'title') or "").strip()
        return title[:MAX_TITLE_LENGTH] if title else NO_TITLE

    def primary_link(self, entry) -> str:
        """First link with rel=alternate or no rel at all."""
        for link in self._get_entry_value(entry, 'links') or []:
            rel = link.get('rel') if hasattr(link, 'get') else None
            href = (link.get('href') or "").strip() if hasattr(link, 'get') else ""
            if href and rel in (None, '', 'alternate'):
                return href
        return (self._get_entry_value(entry, 'link') or "").strip()

    def extract_content(self, entry) -> str:
        """Syndicated content, else summary, else empty."""
        for content_item in self._get_entry_value(entry, 'content') or []:
            value = content_item.get('value') if hasattr(content_item, 'get') else None
            if value:
                return value
        return self._get_entry_value(entry, 'summary') or ""

    # ------------------------------------------------------------------
    # Article filter
    # ------------------------------------------------------------------

    @trace_span(
        "filter_items",
        tracer_name="fetcher",
        attr_from_args=lambda self, feeds, errors, since, extractor_pool: {
            "feeds.count": len(feeds),
            "feeds.errors": len(errors),
        },
    )
    async def filter_items(
        self,
        feeds: Sequence[FetchedFeed],
        errors: Sequence[FetchFailure],
        since: datetime,
        extractor_pool: ExtractorPool,
    ) -> List[Article]:
        """Turn fetched feeds into articles newer than ``since``, newest first."""
        now = utc_now()
        articles: List[Article] = [error_article(failure, now) for failure in errors]

        tasks = []
        for feed in feeds:
            limit = feed.concurrency_limit
            semaphore = Semaphore(limit) if limit > 0 else None
            source = ArticleSource(feed.title, feed.spec.position, feed.spec.category)
            kept = 0
            for entry in feed.parsed.get('entries') or []:
                pub_date = self.entry_pub_date(entry)
                if pub_date is None or pub_date < since:
                    continue
                kept += 1
                tasks.append(self._build_article(feed.spec, source, entry, pub_date, semaphore, extractor_pool))
            logger.info(f"{source.source}: {kept} entries since {since.isoformat()}")

        results = await gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Article task failed: {result}")
                continue
            articles.append(result)

        # sort is stable: errors keep their order among equal timestamps
        articles.sort(key=lambda a: a.pub_date, reverse=True)
        return articles

    async def _build_article(
        self,
        spec: FeedSpec,
        source: ArticleSource,
        entry,
        pub_date: datetime,
        semaphore: Optional[Semaphore],
        extractor_pool: ExtractorPool,
    ) -> Article:
        title = self.entry_title(entry)
        link = self.primary_link(entry)

        if not link:
            content = self.extract_content(entry)
        else:
            async with AsyncExitStack() as stack:
                if semaphore is not None:
                    await stack.enter_async_context(semaphore)
                logger.info(f"Processing article: {title}")
                try:
                    extractor = extractor_pool.extractor_for(link, spec.extractor_choice, spec.custom_config)
                    _, content = await extractor_pool.fetch(link, extractor)
                except DigestError as e:
                    logger.error(f"Error fetching full content for '{link}': {e}")
                    content = error_banner(e) + self.extract_content(entry)

        return Article(title=title, link=link, content=content, pub_date=pub_date, article_source=source)

    # ------------------------------------------------------------------
    # Read-it-later
    # ------------------------------------------------------------------

    @trace_span(
        "read_it_later_items",
        tracer_name="fetcher",
        attr_from_args=lambda self, items, extractor_pool, concurrency=4: {"items.count": len(items)},
    )
    async def read_it_later_items(
        self,
        items: Sequence[ReadItLaterItem],
        extractor_pool: ExtractorPool,
        concurrency: int = 4,
    ) -> List[Article]:
        """Resolve saved links to articles, in the order they were saved."""
        semaphore = Semaphore(max(1, concurrency))
        now = utc_now()
        results = await gather(
            *(self._saved_article(item, now, semaphore, extractor_pool) for item in items),
            return_exceptions=True,
        )
        articles = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                logger.error(f"Read-it-later task failed for {item.url}: {result}")
                continue
            articles.append(result)
        return articles

    async def _saved_article(
        self,
        item: ReadItLaterItem,
        now: datetime,
        semaphore: Semaphore,
        extractor_pool: ExtractorPool,
    ) -> Article:
        async with semaphore:
            try:
                extractor = extractor_pool.extractor_for(item.url)
                extracted_title, content = await extractor_pool.fetch(item.url, extractor)
            except DigestError as e:
                logger.error(f"Error fetching saved link '{item.url}': {e}")
                extracted_title = None
                url = escape_xml(item.url)
                content = error_banner(e) + f'<p><a href="{url}">{url}</a></p>'

        if extracted_title == UNTITLED:
            extracted_title = None
        title = item.title or extracted_title or item.url
        return Article(
            title=title,
            link=item.url,
            content=content,
            pub_date=now,
            article_source=ArticleSource(READ_IT_LATER_SOURCE, 0, None),
        )
