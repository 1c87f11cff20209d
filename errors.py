#!/usr/bin/env python3
"""Common error types shared across modules.

Every error raised by the digest pipeline carries a ``kind`` tag so callers
can decide whether it degrades the book (fetch, parse, extractor, image) or
aborts the run (serialization, filesystem).
"""

from typing import Dict, Any, Optional


class DigestError(Exception):
    """Base class for pipeline errors.

    Attributes:
        kind: Short tag naming the error family.
        details: Optional payload for diagnostics (url, status, filename...).
    """

    kind = "DigestError"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message or self.kind


class FetchError(DigestError):
    """Feed or landing page unreachable, non-2xx, or timed out."""

    kind = "FetchError"


class ParseError(DigestError):
    """Syndication document could not be parsed."""

    kind = "ParseError"


class ExtractorError(DigestError):
    """Content extractor failed or its configuration is invalid."""

    kind = "ExtractorError"


class ImageError(DigestError):
    """Image download, decode or encode failed."""

    kind = "ImageError"


class SerializationError(DigestError):
    """The EPUB writer rejected a part or could not finalize the archive."""

    kind = "SerializationError"


class OutputIOError(DigestError):
    """Filesystem create/rename/read failed."""

    kind = "IOError"


class EmptyDigestError(DigestError):
    """No articles survived filtering, so there is nothing to publish."""

    kind = "EmptyDigest"


FATAL_KINDS = (SerializationError, OutputIOError)


def is_fatal(error: BaseException) -> bool:
    """Return True when ``error`` must abort the run instead of degrading the book."""
    return isinstance(error, FATAL_KINDS)


__all__ = [
    "DigestError",
    "FetchError",
    "ParseError",
    "ExtractorError",
    "ImageError",
    "SerializationError",
    "OutputIOError",
    "EmptyDigestError",
    "is_fatal",
]
