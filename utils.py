#!/usr/bin/env python3
"""
Utility functions shared by the extractors, fetcher and pipeline.

This module contains the HTML <-> Markdown bridges used around content
extraction, plus small validation and formatting helpers.
"""

from datetime import datetime
from html import escape
from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdown import markdown as md_to_html
from markdownify import markdownify as md

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')


def strip_control_chars(text: str) -> str:
    """Remove characters that are not allowed in XML 1.0 documents."""
    if not text:
        return ""
    return _CONTROL_CHARS.sub('', text)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def output_timestamp(moment: datetime) -> str:
    """Timestamp suffix used in output filenames: YYYYMMDD_HHMMSS."""
    return moment.strftime("%Y%m%d_%H%M%S")


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    - Converts resulting HTML to Markdown with markdownify
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup([
        "script", "style", "iframe", "form", "object", "embed", "noscript",
        "frame", "frameset", "applet", "meta", "base", "link"
    ]):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).lower().startswith('javascript:'):
                del tag[attr]

    # Tracking pixels / tiny images
    for img in soup.find_all('img'):
        src = img.get('src', '')
        if re.search(r'(pixel|tracker|counter|spacer|blank|trans)', src, re.I) or \
           (re.search(r'\.(gif|png)$', src, re.I) and (img.get('height') in ('0', '1'))):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if not value:
            return None
        if attr == 'href' and value.startswith('mailto:'):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            resolved = urljoin(base_url, value)
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr) or not tag[attr]:
                continue
            rewritten = _rewrite_url(str(tag[attr]), attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    # wrap_width=0 keeps long URLs on a single line so the round trip back to HTML stays intact
    return md(str(soup), heading_style="ATX", wrap_width=0)


def markdown_to_html(text: str) -> str:
    """Render extractor Markdown output back to an HTML fragment."""
    if not text:
        return ""
    return md_to_html(text, extensions=['extra', 'sane_lists'])


def text_to_paragraphs(text: str) -> str:
    """Wrap plain text blocks (blank-line separated) in escaped <p> elements."""
    if not text:
        return ""
    blocks = [b.strip() for b in re.split(r'\n\s*\n', text) if b.strip()]
    if not blocks:
        return ""
    paragraphs = []
    for block in blocks:
        lines = [escape(line.strip(), quote=False) for line in block.splitlines() if line.strip()]
        paragraphs.append("<p>" + "<br/>".join(lines) + "</p>")
    return "\n".join(paragraphs)
