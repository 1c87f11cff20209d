#!/usr/bin/env python3
"""
Landing-page content extractors.

Each extractor maps ``(html, url) -> (title, body)``. The readability-based
strategies return Markdown (the same readability -> markdownify path the feed
fetcher has always used), the text-only strategy returns plain text, and the
custom strategy returns whatever its YAML config asks for. ``ExtractorPool``
picks the strategy for a link (domain override > feed choice > Default),
downloads the page, runs the extractor off the event loop and hands back an
HTML fragment ready for the renderer.
"""

from asyncio import get_event_loop
from concurrent.futures import Executor
from functools import partial
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse
import re

import soupsieve
from aiohttp import ClientSession
from bs4 import BeautifulSoup
from lxml import etree
from readability import Document

from config import get_logger
from errors import ExtractorError, FetchError
from http_client import get_text
from models import CustomExtractorConfig, DomainOverride, ExtractorChoice, OutputMode
from telemetry import trace_span
from utils import clean_html_to_markdown, markdown_to_html, text_to_paragraphs

logger = get_logger("extractors")

UNTITLED = "Untitled"
_NO_TITLE_MARKERS = ("", "[no-title]")

# Boilerplate that the alternate readability pass scores down harder
ALT_NEGATIVE_KEYWORDS = [
    "comment", "share", "social", "related", "recommend", "newsletter",
    "subscribe", "promo", "sponsor", "footer", "sidebar", "widget", "cookie",
]

BODY_MARKDOWN = "markdown"
BODY_HTML = "html"
BODY_TEXT = "text"


class Extractor:
    """Base strategy. Subclasses implement ``extract``."""

    choice = ExtractorChoice.DEFAULT
    body_format = BODY_MARKDOWN

    def extract(self, html: str, url: str) -> Tuple[str, str]:
        raise NotImplementedError

    def to_html(self, body: str) -> str:
        """Convert this extractor's body output into an HTML fragment."""
        if self.body_format == BODY_MARKDOWN:
            return markdown_to_html(body)
        if self.body_format == BODY_TEXT:
            return text_to_paragraphs(body)
        return body


class ReadabilityExtractor(Extractor):
    """Readability article extraction converted to Markdown."""

    choice = ExtractorChoice.DEFAULT
    document_options: Dict[str, object] = {}

    def _summarize(self, html: str, url: str) -> Tuple[str, str]:
        if not html or not html.strip():
            raise ExtractorError("Empty document", {"url": url})
        try:
            doc = Document(html, url=url, **self.document_options)
            summary = doc.summary(html_partial=True)
            title = (doc.short_title() or "").strip()
        except (ValueError, TypeError, etree.LxmlError) as e:
            # readability's Unparseable is a ValueError subclass
            raise ExtractorError(f"Readability failed: {e}", {"url": url}) from e
        if title in _NO_TITLE_MARKERS:
            title = UNTITLED
        return title, summary

    def extract(self, html: str, url: str) -> Tuple[str, str]:
        title, summary = self._summarize(html, url)
        return title, clean_html_to_markdown(summary, base_url=url)


class ReadabilityAltExtractor(ReadabilityExtractor):
    """Readability with a lower candidate threshold and extra negative keywords."""

    choice = ExtractorChoice.READABILITY_ALT
    document_options = {
        "min_text_length": 10,
        "retry_length": 100,
        "negative_keywords": ALT_NEGATIVE_KEYWORDS,
    }


class TextOnlyExtractor(ReadabilityExtractor):
    """Same selection as Default, with every tag stripped from the body."""

    choice = ExtractorChoice.TEXT_ONLY
    body_format = BODY_TEXT

    def extract(self, html: str, url: str) -> Tuple[str, str]:
        title, summary = self._summarize(html, url)
        text = BeautifulSoup(summary, 'html.parser').get_text("\n")
        lines = [line.strip() for line in text.splitlines()]
        # Collapse runs of blank lines into single paragraph breaks
        text = re.sub(r'\n{3,}', '\n\n', "\n".join(lines)).strip()
        return title, text


class CustomExtractor(Extractor):
    """CSS-selector extraction driven by a YAML config.

    Nodes matching any ``discard`` selector are removed first, then the
    union of ``selectors`` matches (document order, outermost only) forms
    the body, as HTML or text depending on ``output_mode``.
    """

    choice = ExtractorChoice.CUSTOM

    def __init__(self, custom_config: Optional[str]):
        if not custom_config:
            raise ExtractorError("Custom processor requires custom_config")
        try:
            self.config = CustomExtractorConfig.from_yaml(custom_config)
        except ValueError as e:
            raise ExtractorError(f"Invalid custom extractor config: {e}") from e
        try:
            self._select = soupsieve.compile(", ".join(self.config.selectors))
            self._discard = [soupsieve.compile(sel) for sel in self.config.discard]
        except soupsieve.SelectorSyntaxError as e:
            raise ExtractorError(f"Invalid CSS selector in custom config: {e}") from e
        self.body_format = BODY_HTML if self.config.output_mode == OutputMode.HTML else BODY_TEXT

    def extract(self, html: str, url: str) -> Tuple[str, str]:
        soup = BeautifulSoup(html or "", 'html.parser')
        title_tag = soup.find('title')
        title = title_tag.get_text(strip=True) if title_tag else ""

        for matcher in self._discard:
            for node in matcher.select(soup):
                if not node.decomposed:
                    node.decompose()

        selected = []
        seen = set()
        for node in self._select.select(soup):
            if any(id(parent) in seen for parent in node.parents):
                continue
            seen.add(id(node))
            selected.append(node)

        if not selected:
            raise ExtractorError("Custom selectors matched no content", {"url": url})

        if self.config.output_mode == OutputMode.TEXT:
            body = "\n".join(node.get_text() for node in selected)
        else:
            body = "".join(str(node) for node in selected)
        return title or UNTITLED, body


def create_extractor(choice: ExtractorChoice, custom_config: Optional[str] = None) -> Extractor:
    """Instantiate the strategy for ``choice``; Custom validates its config eagerly."""
    choice = ExtractorChoice.parse(choice)
    if choice == ExtractorChoice.CUSTOM:
        return CustomExtractor(custom_config)
    if choice == ExtractorChoice.READABILITY_ALT:
        return ReadabilityAltExtractor()
    if choice == ExtractorChoice.TEXT_ONLY:
        return TextOnlyExtractor()
    return ReadabilityExtractor()


def link_host(link: str) -> str:
    try:
        return (urlparse(link).hostname or "").lower()
    except ValueError:
        return ""


def resolve_choice(
    link: str,
    feed_choice: ExtractorChoice = ExtractorChoice.DEFAULT,
    feed_custom_config: Optional[str] = None,
    overrides: Optional[Dict[str, DomainOverride]] = None,
) -> Tuple[ExtractorChoice, Optional[str]]:
    """Domain override (exact lowercase host) > feed-level choice > Default."""
    if overrides:
        override = overrides.get(link_host(link))
        if override is not None:
            return override.extractor_choice, override.custom_config
    if feed_choice:
        return ExtractorChoice.parse(feed_choice), feed_custom_config
    return ExtractorChoice.DEFAULT, None


class ExtractorPool:
    """Resolves, caches and runs extractors for landing pages."""

    def __init__(
        self,
        session: ClientSession,
        overrides: Optional[Dict[str, DomainOverride]] = None,
        executor: Optional[Executor] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.session = session
        self.overrides = overrides or {}
        self.executor = executor
        self.timeout_seconds = timeout_seconds
        self._cache: Dict[Tuple[ExtractorChoice, Optional[str]], Extractor] = {}

    def extractor_for(
        self,
        link: str,
        feed_choice: ExtractorChoice = ExtractorChoice.DEFAULT,
        feed_custom_config: Optional[str] = None,
    ) -> Extractor:
        key = resolve_choice(link, feed_choice, feed_custom_config, self.overrides)
        if key not in self._cache:
            self._cache[key] = create_extractor(*key)
        return self._cache[key]

    async def run_in_executor(self, func, *args):
        """Run a blocking function in the pool's executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "extract_landing_page",
        tracer_name="extractors",
        attr_from_args=lambda self, url, extractor: {
            "http.url": url,
            "extractor.choice": extractor.choice.value,
        },
    )
    async def fetch(self, url: str, extractor: Extractor) -> Tuple[str, str]:
        """Download ``url`` and extract it. Returns ``(title, html_body)``.

        Any failure is raised as ExtractorError wrapping the underlying cause.
        """
        try:
            html = await get_text(self.session, url, self.timeout_seconds)
        except FetchError as e:
            raise ExtractorError(f"Failed to fetch {url}: {e}", {"url": url}) from e
        title, body = await self.run_in_executor(extractor.extract, html, url)
        logger.debug(f"Extracted {len(body)} chars from {url} with {extractor.choice.value}")
        return title, extractor.to_html(body)
