#!/usr/bin/env python3
"""
Run-scoped data model for the EPUB digest pipeline.

Everything here lives for a single run: feed inputs parsed from feeds.yaml,
articles produced by the filter stage, and the parts/messages exchanged
between chapter tasks, the image pool and the EPUB writer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import yaml

SYSTEM_ERRORS_SOURCE = "System Errors"
SYSTEM_ERRORS_POSITION = -1
READ_IT_LATER_SOURCE = "Read It Later"


class ExtractorChoice(str, Enum):
    DEFAULT = "Default"
    READABILITY_ALT = "Readability-alt"
    CUSTOM = "Custom"
    TEXT_ONLY = "TextOnly"

    @classmethod
    def parse(cls, value: Any) -> "ExtractorChoice":
        """Accept the canonical tags plus loose spellings (``text_only``, ``readability_alt``)."""
        if isinstance(value, cls):
            return value
        if value in (None, ""):
            return cls.DEFAULT
        wanted = str(value).strip().lower().replace("_", "").replace("-", "").replace(" ", "")
        for choice in cls:
            if choice.value.lower().replace("-", "") == wanted:
                return choice
        if wanted in ("domsmoothie", "readabilityalt", "alt"):
            return cls.READABILITY_ALT
        raise ValueError(f"Unknown extractor choice: {value!r}")


class OutputMode(str, Enum):
    HTML = "html"
    TEXT = "text"


@dataclass(frozen=True)
class CustomExtractorConfig:
    selectors: List[str]
    discard: List[str] = field(default_factory=list)
    output_mode: OutputMode = OutputMode.HTML

    @classmethod
    def from_yaml(cls, text: str) -> "CustomExtractorConfig":
        """Parse a custom extractor YAML document.

        ``selectors`` may be given as a list or a single string; ``selector``
        is accepted as an alias. Raises ValueError on anything unusable.
        """
        try:
            data = yaml.safe_load(text or "")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Custom extractor config must be a YAML mapping")

        selectors = data.get("selectors", data.get("selector"))
        if isinstance(selectors, str):
            selectors = [selectors]
        if not isinstance(selectors, list) or not selectors:
            raise ValueError("Custom extractor config requires at least one selector")
        selectors = [str(s).strip() for s in selectors if str(s).strip()]
        if not selectors:
            raise ValueError("Custom extractor config requires at least one selector")

        discard = data.get("discard") or []
        if isinstance(discard, str):
            discard = [discard]
        if not isinstance(discard, list):
            raise ValueError("'discard' must be a list of CSS selectors")
        discard = [str(s).strip() for s in discard if str(s).strip()]

        mode_raw = str(data.get("output_mode") or "html").strip().lower()
        try:
            output_mode = OutputMode(mode_raw)
        except ValueError as e:
            raise ValueError(f"output_mode must be 'html' or 'text', got {mode_raw!r}") from e

        return cls(selectors=selectors, discard=discard, output_mode=output_mode)


@dataclass(frozen=True)
class FeedSpec:
    url: str
    display_name: Optional[str] = None
    concurrency_limit: int = 0
    position: int = 0
    category: Optional[str] = None
    extractor_choice: ExtractorChoice = ExtractorChoice.DEFAULT
    custom_config: Optional[str] = None

    def __post_init__(self):
        if not self.url or not str(self.url).startswith(("http://", "https://")):
            raise ValueError(f"Feed url must be absolute: {self.url!r}")
        if self.concurrency_limit < 0:
            raise ValueError("concurrency_limit must be non-negative")
        if self.extractor_choice == ExtractorChoice.CUSTOM and not self.custom_config:
            raise ValueError("Custom extractor requires custom_config")

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "FeedSpec":
        """Build a FeedSpec from a feeds.yaml entry."""
        if not isinstance(data, dict) or "url" not in data:
            raise ValueError("feed entry must be a mapping with a url")
        custom = data.get("custom_config")
        if isinstance(custom, dict):
            custom = yaml.safe_dump(custom)
        return cls(
            url=str(data["url"]).strip(),
            display_name=data.get("name") or data.get("display_name"),
            concurrency_limit=int(data.get("concurrency_limit", 0) or 0),
            position=int(data.get("position", 0) or 0),
            category=data.get("category") or None,
            extractor_choice=ExtractorChoice.parse(data.get("extractor", data.get("extractor_choice"))),
            custom_config=custom,
        )


@dataclass(frozen=True)
class DomainOverride:
    extractor_choice: ExtractorChoice
    custom_config: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Any) -> "DomainOverride":
        if isinstance(data, str):
            data = {"extractor": data}
        if not isinstance(data, dict):
            raise ValueError("domain override must be a mapping or an extractor name")
        custom = data.get("custom_config")
        if isinstance(custom, dict):
            custom = yaml.safe_dump(custom)
        choice = ExtractorChoice.parse(data.get("extractor", data.get("extractor_choice")))
        if choice == ExtractorChoice.CUSTOM and not custom:
            raise ValueError("Custom extractor requires custom_config")
        return cls(extractor_choice=choice, custom_config=custom)


@dataclass(frozen=True)
class ReadItLaterItem:
    url: str
    title: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "ReadItLaterItem":
        if isinstance(value, str):
            return cls(url=value.strip())
        if isinstance(value, dict) and value.get("url"):
            return cls(url=str(value["url"]).strip(), title=value.get("title") or None)
        raise ValueError(f"Invalid read-it-later entry: {value!r}")


@dataclass(frozen=True)
class ArticleSource:
    source: str
    position: int = 0
    category: Optional[str] = None


@dataclass
class Article:
    title: str
    link: str
    content: str
    pub_date: datetime
    article_source: ArticleSource

    @property
    def source(self) -> str:
        return self.article_source.source


@dataclass
class FetchedFeed:
    """A parsed syndication document plus the FeedSpec it came from."""

    spec: FeedSpec
    parsed: Any
    concurrency_limit: int = 0

    @property
    def title(self) -> str:
        if self.spec.display_name:
            return self.spec.display_name
        feed_meta = getattr(self.parsed, "feed", None) or {}
        title = (feed_meta.get("title") or "").strip() if hasattr(feed_meta, "get") else ""
        return title or "Unknown Source"


@dataclass
class FetchFailure:
    url: str
    message: str


class RefType(str, Enum):
    NONE = "none"
    TABLE_OF_CONTENTS = "toc"


@dataclass
class ContentPart:
    filename: str
    title: str
    body_xhtml: str
    ref_type: RefType = RefType.NONE


@dataclass
class ResourcePart:
    filename: str
    data: bytes
    mime_type: str = "image/jpeg"


EpubPart = Union[ContentPart, ResourcePart]


@dataclass
class CompletionMessage:
    sequence_id: int
    parts: List[EpubPart] = field(default_factory=list)


@dataclass
class RunOptions:
    """Per-run knobs handed to the pipeline instead of reading globals."""

    fetch_since_hours: int = 24
    image_timeout_seconds: float = 45
    http_timeout_seconds: float = 45
    user_agent: str = ""
    product_name: str = "FeedEpub"
    cover_path: Optional[str] = None
    cover_font_path: Optional[str] = None
    add_date_in_cover: bool = False
    cover_date_color: str = "white"
    read_it_later_concurrency: int = 4


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
