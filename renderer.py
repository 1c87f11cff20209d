#!/usr/bin/env python3
"""
Chapter and table-of-contents renderer.

Turns articles and the book plan into standalone XHTML 1.1 documents using
the Jinja2 templates under ``templates/``. All interpolated values go
through Jinja2 autoescaping; article bodies are sanitized and fixed up
before being marked safe.
"""

from dataclasses import dataclass
from datetime import timezone
from typing import List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader

from config import config, get_logger
from models import Article
from sanitizer import fix_xhtml, sanitize_html
from utils import strip_control_chars

logger = get_logger("renderer")

MASTER_TOC_FILENAME = "toc.xhtml"
MASTER_TOC_TITLE = "Table of Contents"
STYLESHEET_FILENAME = "stylesheet.css"
UNCATEGORIZED = "Uncategorized"
NO_TITLE = "No Title"
UNKNOWN_SOURCE = "Unknown Source"
BOOK_LANGUAGE = "en"

# Initialize Jinja2 environment
env = Environment(
    loader=FileSystemLoader(config.TEMPLATES_DIR),
    autoescape=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass(frozen=True)
class TocEntry:
    """A per-source TOC as listed in the master TOC."""

    name: str
    filename: str
    category: Optional[str] = None


@dataclass(frozen=True)
class ChapterLink:
    filename: str
    title: str


@dataclass(frozen=True)
class TocGroup:
    name: str
    entries: List[TocEntry]


def source_slug(source: str) -> str:
    """Lowercase, with every non-alphanumeric character replaced by ``_``."""
    return "".join(ch if ch.isalnum() else "_" for ch in (source or "").lower())


def source_toc_filename(source: str) -> str:
    return f"toc_{source_slug(source)}.xhtml"


def chapter_filename(index: int) -> str:
    return f"chapter_{index}.xhtml"


def clean_text(value: Optional[str]) -> str:
    """Trim ``value`` and drop characters that XML 1.0 cannot carry."""
    return strip_control_chars(value or "").strip()


def display_title(title: Optional[str]) -> str:
    return clean_text(title) or NO_TITLE


def display_source(source: Optional[str]) -> str:
    return clean_text(source) or UNKNOWN_SOURCE


def format_pub_date(article: Article) -> str:
    pub_date = article.pub_date
    if pub_date.tzinfo is not None:
        pub_date = pub_date.astimezone(timezone.utc)
    return pub_date.strftime("%Y-%m-%d %H:%M")


def prepare_body(content: str, base_url: Optional[str] = None) -> str:
    """Sanitize an article body before image ingestion rewrites its sources."""
    return sanitize_html(content or "", base_url=base_url or None)


def group_by_category(entries: Sequence[TocEntry]) -> List[TocGroup]:
    """Group source TOCs by category, keeping first-appearance order for groups and entries."""
    groups: dict = {}
    for entry in entries:
        name = clean_text(entry.category) or UNCATEGORIZED
        groups.setdefault(name, []).append(TocEntry(display_source(entry.name), entry.filename, entry.category))
    return [TocGroup(name=name, entries=items) for name, items in groups.items()]


def render_master_toc(entries: Sequence[TocEntry]) -> str:
    template = env.get_template("master_toc.xhtml")
    return template.render(
        title=MASTER_TOC_TITLE,
        lang=BOOK_LANGUAGE,
        groups=group_by_category(entries),
    )


def render_source_toc(
    source: str,
    chapters: Sequence[ChapterLink],
    next_toc: Optional[TocEntry] = None,
) -> str:
    template = env.get_template("source_toc.xhtml")
    return template.render(
        title=display_source(source),
        lang=BOOK_LANGUAGE,
        entries=[ChapterLink(c.filename, display_title(c.title)) for c in chapters],
        next_toc_name=display_source(next_toc.name) if next_toc else None,
        next_toc=next_toc,
    )


def render_chapter(article: Article, body_html: str, back_link: str) -> str:
    """Render one article as an XHTML document.

    ``body_html`` must already be sanitized; it is passed through the XHTML
    fixer here and embedded verbatim.
    """
    template = env.get_template("chapter.xhtml")
    return template.render(
        title=display_title(article.title),
        lang=BOOK_LANGUAGE,
        source=display_source(article.source),
        date=format_pub_date(article),
        body=fix_xhtml(body_html),
        link=clean_text(article.link),
        back_link=back_link,
    )


def render_stylesheet() -> str:
    return env.get_template("stylesheet.css").render()
