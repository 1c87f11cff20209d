#!/usr/bin/env python3
"""
EPUB assembly on top of ebooklib.

The writer is fed parts in sequence order from the drain loop (see
``sequencer.drain_streams``) and only touches the filesystem in
``finalize``. Content documents are added verbatim as pre-rendered XHTML so
ebooklib never re-serializes chapter markup.
"""

from datetime import datetime
from io import BytesIO
from os import path
from typing import List, Optional, Set
from uuid import uuid4

from ebooklib import epub
from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from config import get_logger
from errors import OutputIOError, SerializationError
from models import ContentPart, EpubPart, RefType, ResourcePart
from renderer import BOOK_LANGUAGE, STYLESHEET_FILENAME, render_stylesheet

logger = get_logger("epub_writer")

XHTML_MIME = "application/xhtml+xml"
COVER_FILENAME = "cover.jpg"
COVER_STAMP_RATIO = 0.05

# Page lists need EpubHtml bodies; our documents are raw EpubItems
WRITER_OPTIONS = {"epub3_pages": False}


def _load_cover_font(font_path: Optional[str], size: int):
    if font_path and path.isfile(font_path):
        try:
            return ImageFont.truetype(font_path, size)
        except OSError as e:
            logger.warning(f"Cannot load cover font {font_path}: {e}; using default font")
    return ImageFont.load_default(size=size)


def stamp_cover_date(image: Image.Image, label: str, color: str = "white", font_path: Optional[str] = None) -> Image.Image:
    """Draw ``label`` in the bottom-right corner at 5% of the image height."""
    stamped = image.copy()
    draw = ImageDraw.Draw(stamped)
    font = _load_cover_font(font_path, max(1, int(stamped.height * COVER_STAMP_RATIO)))
    left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
    margin = max(1, int(stamped.width * 0.02))
    x = stamped.width - (right - left) - margin - left
    y = stamped.height - (bottom - top) - margin - top
    draw.text((x, y), label, fill=color, font=font)
    return stamped


def prepare_cover(
    cover_path: Optional[str],
    stamp_time: Optional[datetime] = None,
    color: str = "white",
    font_path: Optional[str] = None,
) -> Optional[bytes]:
    """Load the cover image as JPEG bytes, optionally date-stamped.

    Returns None when no cover exists or it cannot be decoded; a book
    without a cover is still a valid book.
    """
    if not cover_path or not path.isfile(cover_path):
        logger.debug(f"No cover image at {cover_path}")
        return None
    try:
        with Image.open(cover_path) as img:
            cover = img.convert("RGB")
        if stamp_time is not None:
            cover = stamp_cover_date(cover, stamp_time.strftime("%Y-%m-%d %H:%M"), color, font_path)
        out = BytesIO()
        cover.save(out, format="JPEG", quality=90)
        return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning(f"Skipping unusable cover {cover_path}: {e}")
        return None


class DigestEpubWriter:
    """Accumulates parts into an ``epub.EpubBook``.

    Spine order is exactly the order in which content parts are written.
    """

    def __init__(self, title: str, author: str, cover: Optional[bytes] = None, language: str = BOOK_LANGUAGE):
        self.title = title
        self.book = epub.EpubBook()
        self.book.set_identifier(f"urn:uuid:{uuid4()}")
        self.book.set_title(title)
        self.book.set_language(language)
        self.book.add_author(author)

        self._spine: List[epub.EpubItem] = []
        self._toc: List[epub.Link] = []
        self._filenames: Set[str] = set()
        self.content_count = 0
        self.resource_count = 0

        style = epub.EpubItem(
            uid="style",
            file_name=STYLESHEET_FILENAME,
            media_type="text/css",
            content=render_stylesheet().encode("utf-8"),
        )
        self.book.add_item(style)
        self._filenames.add(STYLESHEET_FILENAME)

        if cover:
            self.book.set_cover(COVER_FILENAME, cover, create_page=False)
            self._filenames.add(COVER_FILENAME)

    def _claim(self, filename: str) -> None:
        if filename in self._filenames:
            raise SerializationError(f"Duplicate archive member {filename}")
        self._filenames.add(filename)

    @staticmethod
    def _uid(filename: str) -> str:
        return path.splitext(filename)[0]

    def add_content(self, part: ContentPart) -> None:
        self._claim(part.filename)
        uid = self._uid(part.filename)
        item = epub.EpubItem(
            uid=uid,
            file_name=part.filename,
            media_type=XHTML_MIME,
            content=part.body_xhtml.encode("utf-8"),
        )
        self.book.add_item(item)
        self._spine.append(item)
        self._toc.append(epub.Link(part.filename, part.title, uid))
        if part.ref_type == RefType.TABLE_OF_CONTENTS:
            self.book.guide.append({"type": "toc", "title": part.title, "href": part.filename})
        self.content_count += 1

    def add_resource(self, part: ResourcePart) -> None:
        self._claim(part.filename)
        item = epub.EpubItem(
            uid=self._uid(part.filename),
            file_name=part.filename,
            media_type=part.mime_type,
            content=part.data,
        )
        self.book.add_item(item)
        self.resource_count += 1

    def write_parts(self, parts: List[EpubPart]) -> None:
        for part in parts:
            if isinstance(part, ContentPart):
                self.add_content(part)
            elif isinstance(part, ResourcePart):
                self.add_resource(part)
            else:
                raise SerializationError(f"Unsupported part type {type(part).__name__}")

    def finalize(self, target_path: str) -> str:
        """Write the archive to ``target_path`` and return it."""
        if not self._spine:
            raise SerializationError("Refusing to write a book without content documents")
        self.book.toc = list(self._toc)
        self.book.spine = list(self._spine)
        self.book.add_item(epub.EpubNcx())
        self.book.add_item(epub.EpubNav())

        try:
            writer = epub.EpubWriter(target_path, self.book, dict(WRITER_OPTIONS))
            writer.process()
            writer.write()
        except OSError as e:
            raise OutputIOError(f"Cannot write {target_path}: {e}", {"path": target_path}) from e
        except Exception as e:
            raise SerializationError(f"EPUB finalization failed: {e}", {"path": target_path}) from e

        logger.info(
            f"Wrote {target_path} ({self.content_count} documents, {self.resource_count} resources)"
        )
        return target_path
