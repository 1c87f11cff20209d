import os
import zipfile
from datetime import datetime, timezone

import pytest
from lxml import etree

from epub_writer import DigestEpubWriter
from errors import EmptyDigestError, SerializationError
from models import Article, ArticleSource, FeedSpec, ReadItLaterItem, RunOptions
import pipeline
from pipeline import (
    generate_and_save,
    generate_read_it_later_and_save,
    plan_book,
    save_book,
)

NOW = datetime(2025, 1, 2, 12, 0, tzinfo=timezone.utc)
OPF_NS = {"opf": "http://www.idpf.org/2007/opf", "dc": "http://purl.org/dc/elements/1.1/"}


def rss(title, items):
    body = "".join(
        f"<item><title>{t}</title><pubDate>{when}</pubDate><description>{desc}</description></item>"
        for t, when, desc in items
    )
    return (
        '<?xml version="1.0"?><rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com/</link><description>d</description>"
        f"{body}</channel></rss>"
    )


def article(title, source, when=NOW, content="<p>body</p>", link="", position=0, category=None):
    return Article(title, link, content, when, ArticleSource(source, position, category))


def read_opf(epub_path):
    with zipfile.ZipFile(epub_path) as zf:
        return etree.fromstring(zf.read("EPUB/content.opf"))


def spine_hrefs(epub_path):
    opf = read_opf(epub_path)
    manifest = {item.get("id"): item.get("href") for item in opf.iterfind("opf:manifest/opf:item", OPF_NS)}
    return [manifest[ref.get("idref")] for ref in opf.iterfind("opf:spine/opf:itemref", OPF_NS)]


def read_member(epub_path, name):
    with zipfile.ZipFile(epub_path) as zf:
        return zf.read(f"EPUB/{name}").decode("utf-8")


def member_names(epub_path):
    with zipfile.ZipFile(epub_path) as zf:
        return zf.namelist()


@pytest.fixture
def options():
    return RunOptions(fetch_since_hours=48, cover_path=None)


def test_plan_book_assigns_interleaved_sequence_ids():
    plan = plan_book([
        article("World", "Bravo"),
        article("Hello", "Alpha"),
        article("Again", "Alpha"),
        article("Error loading feed: x", "System Errors", position=-1),
    ])

    assert [s.name for s in plan.sources] == ["System Errors", "Alpha", "Bravo"]
    assert plan.total_parts == 1 + 3 + 4
    layout = [(s.toc_seq, s.toc_filename, [(c.seq_id, c.filename) for c in s.chapters]) for s in plan.sources]
    assert layout == [
        (1, "toc_system_errors.xhtml", [(2, "chapter_0.xhtml")]),
        (3, "toc_alpha.xhtml", [(4, "chapter_1.xhtml"), (5, "chapter_2.xhtml")]),
        (6, "toc_bravo.xhtml", [(7, "chapter_3.xhtml")]),
    ]
    assert [c.article.title for c in plan.sources[1].chapters] == ["Hello", "Again"]


def test_plan_book_suffixes_colliding_source_slugs():
    plan = plan_book([article("a", "News Today"), article("b", "News-Today")])
    assert [s.toc_filename for s in plan.sources] == ["toc_news_today.xhtml", "toc_news_today_2.xhtml"]


@pytest.mark.asyncio
async def test_two_sources_without_images(tmp_path, fake_session, options):
    session = fake_session({
        "https://a.example.com/rss": rss("Alpha", [("Hello", "Thu, 02 Jan 2025 10:00:00 +0000", "hello body")]),
        "https://b.example.com/rss": rss("Bravo", [("World", "Wed, 01 Jan 2025 10:00:00 +0000", "world body")]),
    })
    feeds = [FeedSpec(url="https://a.example.com/rss"), FeedSpec(url="https://b.example.com/rss")]

    result = await generate_and_save(feeds, str(tmp_path), options, overrides={}, session=session, now=NOW)

    assert os.path.basename(result) == "rss_digest_20250102_120000.epub"
    assert os.listdir(tmp_path) == ["rss_digest_20250102_120000.epub"]
    assert spine_hrefs(result) == [
        "toc.xhtml",
        "toc_alpha.xhtml",
        "chapter_0.xhtml",
        "toc_bravo.xhtml",
        "chapter_1.xhtml",
    ]
    master = read_member(result, "toc.xhtml")
    assert 'href="toc_alpha.xhtml"' in master
    assert 'href="toc_bravo.xhtml"' in master
    assert "<h1>Hello</h1>" in read_member(result, "chapter_0.xhtml")
    assert "<h1>World</h1>" in read_member(result, "chapter_1.xhtml")
    assert "EPUB/stylesheet.css" in member_names(result)

    opf = read_opf(result)
    assert opf.findtext("opf:metadata/dc:title", namespaces=OPF_NS) == "RSS Digest - 2025-01-02"
    assert opf.findtext("opf:metadata/dc:creator", namespaces=OPF_NS) == "FeedEpub RSS Book"
    guide = opf.find("opf:guide/opf:reference", OPF_NS)
    assert guide.get("type") == "toc"
    assert guide.get("href") == "toc.xhtml"


@pytest.mark.asyncio
async def test_unreachable_feed_becomes_system_errors_chapter(tmp_path, fake_session, fake_response, options):
    url = "https://down.example.com/rss"
    session = fake_session({url: fake_response(503, b"")})

    result = await generate_and_save([FeedSpec(url=url)], str(tmp_path), options, overrides={}, session=session, now=NOW)

    assert spine_hrefs(result) == ["toc.xhtml", "toc_system_errors.xhtml", "chapter_0.xhtml"]
    chapter = read_member(result, "chapter_0.xhtml")
    assert f"<h1>Error loading feed: {url}</h1>" in chapter
    assert "<strong>Source:</strong> System Errors" in chapter
    assert "Failed to fetch feed: HTTP 503" in chapter
    etree.fromstring(chapter.encode("utf-8"))


@pytest.mark.asyncio
async def test_empty_digest_writes_nothing(tmp_path, fake_session, options):
    session = fake_session({
        "https://a.example.com/rss": rss("Alpha", [("Old", "Mon, 01 Jan 2024 10:00:00 +0000", "old")]),
    })

    with pytest.raises(EmptyDigestError) as excinfo:
        await generate_and_save(
            [FeedSpec(url="https://a.example.com/rss")], str(tmp_path), options, overrides={}, session=session, now=NOW
        )

    assert str(excinfo.value) == "No articles found in the last 48 hours."
    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_images_are_deduplicated_and_embedded(tmp_path, fake_session, image_bytes, options):
    png = image_bytes(40, 30)
    session = fake_session({"https://x/a.png": png, "https://x/b.png": png})
    body = '<p><img src="https://x/a.png"/><img src="https://x/a.png"/><img src="https://x/b.png"/></p>'

    result = await save_book(
        [article("Pictures", "Alpha", content=body, link="https://x/post")],
        str(tmp_path), "book.epub", "Book", session, options, now=NOW,
    )

    images = sorted(n for n in member_names(result) if n.startswith("EPUB/image_"))
    assert len(images) == 2
    assert sorted(session.calls) == ["https://x/a.png", "https://x/b.png"]
    chapter = read_member(result, "chapter_0.xhtml")
    for name in images:
        assert f'src="{name[len("EPUB/"):]}"' in chapter
    assert "https://x/a.png" not in chapter


@pytest.mark.asyncio
async def test_failed_images_do_not_block_the_book(tmp_path, fake_session, options):
    body = '<p><img src="https://x/missing.png"/>text</p>'

    result = await save_book(
        [article("Broken", "Alpha", content=body)], str(tmp_path), "book.epub", "Book", fake_session(), options, now=NOW
    )

    assert not [n for n in member_names(result) if n.startswith("EPUB/image_")]
    assert "text" in read_member(result, "chapter_0.xhtml")


@pytest.mark.asyncio
async def test_special_characters_are_escaped_everywhere(tmp_path, fake_session, options):
    articles = [
        article("AT&T earnings", "Q&A <Weekly>", content="<p>Profits & losses</p>", link="https://e/x?a=1&b=2"),
    ]

    result = await save_book(articles, str(tmp_path), "book.epub", "Book", fake_session(), options, now=NOW)

    with zipfile.ZipFile(result) as zf:
        documents = [n for n in zf.namelist() if n.endswith((".xhtml", ".ncx", ".opf"))]
        for name in documents:
            text = zf.read(name).decode("utf-8")
            etree.fromstring(text.encode("utf-8"))
            assert "AT&T" not in text
            assert "<Weekly>" not in text
    chapter = read_member(result, "chapter_0.xhtml")
    assert "AT&amp;T earnings" in chapter
    assert "Profits &amp; losses" in chapter
    assert 'href="https://e/x?a=1&amp;b=2"' in chapter


@pytest.mark.asyncio
async def test_content_order_is_deterministic(tmp_path, fake_session, options):
    articles = [
        article("One", "Bravo"),
        article("Two", "Alpha", category="Tech"),
        article("Three", "Alpha", category="Tech"),
        article("Four", "Charlie", position=-5),
    ]
    first = await save_book(articles, str(tmp_path / "a"), "book.epub", "Book", fake_session(), options, now=NOW)
    second = await save_book(articles, str(tmp_path / "b"), "book.epub", "Book", fake_session(), options, now=NOW)

    assert spine_hrefs(first) == spine_hrefs(second)
    for name in spine_hrefs(first):
        assert read_member(first, name) == read_member(second, name)
    assert spine_hrefs(first)[1] == "toc_charlie.xhtml"


@pytest.mark.asyncio
async def test_writer_failure_removes_partial_file(tmp_path, fake_session, options, monkeypatch):
    def failing_finalize(self, target_path):
        with open(target_path, "wb") as f:
            f.write(b"partial")
        raise SerializationError("zip finalization failed")

    monkeypatch.setattr(DigestEpubWriter, "finalize", failing_finalize)

    with pytest.raises(SerializationError):
        await save_book(
            [article("Hello", "Alpha")], str(tmp_path), "book.epub", "Book", fake_session(), options, now=NOW
        )

    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_producer_failure_surfaces_its_own_error(tmp_path, fake_session, options, monkeypatch):
    def broken_master_toc(entries):
        raise RuntimeError("master toc broke")

    monkeypatch.setattr(pipeline, "render_master_toc", broken_master_toc)

    with pytest.raises(RuntimeError, match="master toc broke"):
        await save_book(
            [article("Hello", "Alpha")], str(tmp_path), "book.epub", "Book", fake_session(), options, now=NOW
        )

    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_control_characters_in_titles_do_not_abort_the_book(tmp_path, fake_session, options):
    articles = [
        article("Bad\x0btitle", "Alpha", link="https://e/a\x08"),
        article("Good", "Feed\x1fName", category="Te\x0bch"),
    ]

    result = await save_book(articles, str(tmp_path), "book.epub", "Book", fake_session(), options, now=NOW)

    assert os.listdir(tmp_path) == ["book.epub"]
    with zipfile.ZipFile(result) as zf:
        documents = [n for n in zf.namelist() if n.endswith((".xhtml", ".ncx", ".opf"))]
        assert "EPUB/toc_feedname.xhtml" in documents
        for name in documents:
            text = zf.read(name).decode("utf-8")
            etree.fromstring(text.encode("utf-8"))
            assert not any(ch in text for ch in "\x08\x0b\x1f")
    assert "<h1>Badtitle</h1>" in read_member(result, "chapter_0.xhtml")
    assert "FeedName" in read_member(result, "toc.xhtml")


@pytest.mark.asyncio
async def test_cover_is_embedded_with_date_stamp(tmp_path, fake_session, image_bytes):
    cover_path = tmp_path / "cover.png"
    cover_path.write_bytes(image_bytes(300, 400))
    options = RunOptions(cover_path=str(cover_path), add_date_in_cover=True, cover_date_color="black")

    result = await save_book(
        [article("Hello", "Alpha")], str(tmp_path / "out"), "book.epub", "Book", fake_session(), options, now=NOW
    )

    assert "EPUB/cover.jpg" in member_names(result)


@pytest.mark.asyncio
async def test_missing_cover_is_skipped(tmp_path, fake_session):
    options = RunOptions(cover_path=str(tmp_path / "nope.jpg"))
    result = await save_book(
        [article("Hello", "Alpha")], str(tmp_path / "out"), "book.epub", "Book", fake_session(), options, now=NOW
    )
    assert "EPUB/cover.jpg" not in member_names(result)


@pytest.mark.asyncio
async def test_read_it_later_book(tmp_path, fake_session, options):
    page = "<html><head><title>Saved</title></head><body><article><p>" + "Long read text. " * 40 + "</p></article></body></html>"
    session = fake_session({"https://e.example.com/saved": page})
    items = [ReadItLaterItem("https://e.example.com/saved", title="My Saved Link")]

    result = await generate_read_it_later_and_save(items, str(tmp_path), options, overrides={}, session=session, now=NOW)

    assert os.path.basename(result) == "read_it_later_20250102_120000.epub"
    assert spine_hrefs(result) == ["toc.xhtml", "toc_read_it_later.xhtml", "chapter_0.xhtml"]
    assert read_opf(result).findtext("opf:metadata/dc:title", namespaces=OPF_NS) == "Read It Later - 2025-01-02"
    chapter = read_member(result, "chapter_0.xhtml")
    assert "<h1>My Saved Link</h1>" in chapter
    assert "Long read text." in chapter


@pytest.mark.asyncio
async def test_read_it_later_without_items_fails(tmp_path, options):
    with pytest.raises(EmptyDigestError):
        await generate_read_it_later_and_save([], str(tmp_path), options, overrides={})
