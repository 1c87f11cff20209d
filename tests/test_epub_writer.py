import os
import zipfile
from datetime import datetime, timezone
from io import BytesIO

import pytest
from PIL import Image, ImageFont

from config import config
from epub_writer import DigestEpubWriter, _load_cover_font, prepare_cover, stamp_cover_date
from errors import OutputIOError, SerializationError
from models import ContentPart, RefType, ResourcePart

DOC = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<html xmlns="http://www.w3.org/1999/xhtml"><head><title>t</title></head><body><p>x</p></body></html>'
)


def _writer():
    return DigestEpubWriter("RSS Digest - 2025-01-02", "FeedEpub RSS Book")


def test_duplicate_members_are_rejected():
    writer = _writer()
    writer.write_parts([ContentPart("chapter_0.xhtml", "One", DOC)])
    with pytest.raises(SerializationError):
        writer.write_parts([ContentPart("chapter_0.xhtml", "Again", DOC)])
    with pytest.raises(SerializationError):
        writer.write_parts([ResourcePart("stylesheet.css", b"x")])


def test_finalize_requires_content(tmp_path):
    with pytest.raises(SerializationError):
        _writer().finalize(str(tmp_path / "empty.epub"))


def test_finalize_writes_members_in_order(tmp_path):
    writer = _writer()
    writer.write_parts([ContentPart("toc.xhtml", "Table of Contents", DOC, RefType.TABLE_OF_CONTENTS)])
    writer.write_parts([ContentPart("chapter_0.xhtml", "One", DOC)])
    writer.write_parts([ResourcePart("image_x_0.jpg", b"\xff\xd8jpeg")])
    target = str(tmp_path / "book.epub.part")

    assert writer.finalize(target) == target

    with zipfile.ZipFile(target) as zf:
        names = zf.namelist()
        assert names[0] == "mimetype"
        assert zf.read("mimetype") == b"application/epub+zip"
        assert zf.read("EPUB/toc.xhtml").decode("utf-8") == DOC
        assert "EPUB/image_x_0.jpg" in names
        assert "EPUB/nav.xhtml" in names
        assert "EPUB/toc.ncx" in names
    assert writer.content_count == 2
    assert writer.resource_count == 1


def test_finalize_into_missing_directory_is_an_io_error(tmp_path):
    writer = _writer()
    writer.write_parts([ContentPart("toc.xhtml", "Table of Contents", DOC)])
    with pytest.raises(OutputIOError):
        writer.finalize(str(tmp_path / "missing" / "book.epub.part"))


def test_stamp_changes_bottom_right_corner():
    base = Image.new("RGB", (300, 400), (0, 0, 0))
    stamped = stamp_cover_date(base, "2025-01-02 12:00", "white")
    assert stamped.size == base.size
    corner = stamped.crop((150, 340, 300, 400))
    assert corner.getextrema() != ((0, 0), (0, 0), (0, 0))
    assert base.getpixel((299, 399)) == (0, 0, 0)


def test_prepare_cover_reencodes_as_jpeg(tmp_path, image_bytes):
    cover = tmp_path / "cover.png"
    cover.write_bytes(image_bytes(120, 160))

    plain = prepare_cover(str(cover))
    stamped = prepare_cover(str(cover), datetime(2025, 1, 2, 12, 0, tzinfo=timezone.utc), "white")

    with Image.open(BytesIO(plain)) as img:
        assert img.format == "JPEG"
    assert plain != stamped


def test_prepare_cover_handles_missing_and_broken_files(tmp_path):
    assert prepare_cover(None) is None
    assert prepare_cover(str(tmp_path / "nope.jpg")) is None
    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"not an image")
    assert prepare_cover(str(broken)) is None


def test_bundled_cover_font_is_truetype():
    assert os.path.isfile(config.COVER_FONT_PATH)
    font = _load_cover_font(config.COVER_FONT_PATH, 20)
    assert isinstance(font, ImageFont.FreeTypeFont)
    assert font.path == config.COVER_FONT_PATH
