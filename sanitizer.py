#!/usr/bin/env python3
"""
HTML sanitizer and XHTML fixer for chapter bodies.

``sanitize_html`` reduces arbitrary article HTML to a small allow-listed
subset with BeautifulSoup. ``fix_xhtml`` then applies the regex rewrites
that make that subset strict XML: bare ampersands, ``<`` inside alt/title
values, and self-closing void tags. ``fix_xhtml`` is idempotent.
"""

from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Comment, Declaration, Doctype, ProcessingInstruction

from config import get_logger
from utils import strip_control_chars

logger = get_logger("sanitizer")

ALLOWED_TAGS = frozenset({
    "img", "p", "br", "b", "i", "strong", "em",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li", "blockquote", "hr", "a", "div", "span",
})
ALLOWED_ATTRIBUTES = frozenset({"src", "href", "alt", "title", "class", "id"})

# Dropped together with their content; every other unknown tag is unwrapped
DROP_WITH_CONTENT = (
    "script", "style", "head", "title", "noscript", "iframe", "object", "embed",
    "form", "svg", "math", "template", "button", "select", "textarea", "input",
    "frame", "frameset", "applet", "meta", "link", "base",
)

_UNSAFE_SCHEMES = ("javascript:", "vbscript:", "data:text")

_BARE_AMP = re.compile(r'&(?!(?:[a-zA-Z][a-zA-Z0-9]*|#[0-9]+|#[xX][0-9a-fA-F]+);)')
_ALT_TITLE_ATTR = re.compile(r'\b(alt|title)(\s*=\s*)(?:"([^"]*)"|\'([^\']*)\')')
_IMG_TAG = re.compile(r'<img\b([^>]*?)\s*/?>', re.IGNORECASE)
_BR_TAG = re.compile(r'<br\s*/?>', re.IGNORECASE)
_HR_TAG = re.compile(r'<hr\s*/?>', re.IGNORECASE)


def sanitize_html(html: str, base_url: Optional[str] = None) -> str:
    """Strip ``html`` down to the allow-listed tags and attributes.

    Unknown tags are unwrapped (their text survives); scripts, styles and
    embedded documents are removed outright. Relative ``href``/``src`` values
    are resolved against ``base_url`` when one is given; script URLs are dropped.
    """
    if not html:
        return ""

    soup = BeautifulSoup(strip_control_chars(html), 'html.parser')

    for node in soup.find_all(string=lambda s: isinstance(s, (Comment, Declaration, Doctype, ProcessingInstruction))):
        node.extract()

    for tag in soup(list(DROP_WITH_CONTENT)):
        if not tag.decomposed:
            tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue
        for attr in list(tag.attrs):
            if attr.lower() not in ALLOWED_ATTRIBUTES:
                del tag[attr]
                continue
            value = tag[attr]
            if isinstance(value, list):
                value = " ".join(value)
                tag[attr] = value
            if attr.lower() in ("href", "src"):
                cleaned = value.strip()
                if cleaned.lower().startswith(_UNSAFE_SCHEMES):
                    del tag[attr]
                elif base_url and cleaned and not cleaned.startswith(("#", "mailto:")):
                    tag[attr] = urljoin(base_url, cleaned)

    # Images without a source are useless in the book
    for img in soup.find_all("img"):
        if not img.get("src"):
            img.decompose()

    return str(soup)


def _escape_attr_lt(match: re.Match) -> str:
    name, equals, double_quoted, single_quoted = match.groups()
    if double_quoted is not None:
        return f'{name}{equals}"{double_quoted.replace("<", "&lt;")}"'
    return f"{name}{equals}'{single_quoted.replace('<', '&lt;')}'"


def fix_xhtml(html: str) -> str:
    """Apply the strict-XML rewrites to an HTML fragment.

    1. bare ``&`` -> ``&amp;`` (well-formed entity references are kept)
    2. ``<`` inside alt/title attribute values -> ``&lt;``
    3. ``<img ...>`` -> ``<img ... />``
    4. ``<br>`` -> ``<br />``
    5. ``<hr>`` -> ``<hr />``
    """
    if not html:
        return ""
    fixed = _BARE_AMP.sub('&amp;', html)
    fixed = _ALT_TITLE_ATTR.sub(_escape_attr_lt, fixed)
    fixed = _IMG_TAG.sub(r'<img\1 />', fixed)
    fixed = _BR_TAG.sub('<br />', fixed)
    fixed = _HR_TAG.sub('<hr />', fixed)
    return fixed


def escape_xml(text: str) -> str:
    """Escape the five XML special characters and drop control characters."""
    return (
        strip_control_chars(text or "")
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )
