#!/usr/bin/env python3
"""
Digest orchestrator.

Builds one EPUB from a list of articles:

1. plan the book: sources in stable order, a sequence id for every content
   document (master TOC, then each source TOC followed by its chapters);
2. start the writer on a dedicated thread, draining the chapter and image
   channels (see ``sequencer.drain_streams``);
3. send the TOCs and fan out one task per article that sanitizes the body,
   queues its images, renders the chapter and sends it;
4. close the chapter stream, wait for the writer and atomically move the
   ``.part`` file into place.

``generate_and_save`` and ``generate_read_it_later_and_save`` wrap the whole
fetch -> filter -> build chain for the two kinds of book.
"""

from asyncio import FIRST_EXCEPTION, Task, create_task, gather, get_running_loop, wait
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from os import makedirs, path, remove, replace
from typing import Dict, List, Mapping, Optional, Sequence

from aiohttp import ClientSession

from config import config, get_logger
from epub_writer import DigestEpubWriter, prepare_cover
from errors import EmptyDigestError, OutputIOError, is_fatal
from extractors import ExtractorPool
from fetcher import FeedFetcher
from http_client import create_session
from images import ImagePool
from models import (
    Article,
    CompletionMessage,
    ContentPart,
    DomainOverride,
    FeedSpec,
    ReadItLaterItem,
    RefType,
    RunOptions,
    utc_now,
)
from renderer import (
    MASTER_TOC_FILENAME,
    MASTER_TOC_TITLE,
    ChapterLink,
    TocEntry,
    chapter_filename,
    clean_text,
    display_source,
    display_title,
    prepare_body,
    render_chapter,
    render_master_toc,
    render_source_toc,
    source_slug,
    source_toc_filename,
)
from sanitizer import escape_xml
from sequencer import Channel, ImageCounter, drain_streams
from telemetry import trace_span
from utils import format_duration, output_timestamp

logger = get_logger("pipeline")

DIGEST_PREFIX = "rss_digest"
READ_IT_LATER_PREFIX = "read_it_later"
PART_SUFFIX = ".part"


@dataclass
class PlannedChapter:
    seq_id: int
    filename: str
    article: Article


@dataclass
class PlannedSource:
    name: str
    toc_filename: str
    toc_seq: int
    category: Optional[str] = None
    chapters: List[PlannedChapter] = field(default_factory=list)

    @property
    def toc_entry(self) -> TocEntry:
        return TocEntry(self.name, self.toc_filename, self.category)


@dataclass
class BookPlan:
    sources: List[PlannedSource]
    total_parts: int

    @property
    def article_count(self) -> int:
        return sum(len(s.chapters) for s in self.sources)


def plan_book(articles: Sequence[Article]) -> BookPlan:
    """Assign sources, filenames and sequence ids.

    Articles are stably sorted by ``(position, source)``; sources keep the
    order in which they first appear and articles keep input order within
    their source. Sequence id 0 is the master TOC; each source then takes one
    id for its TOC followed by one per article, so sequence order is spine
    order.
    """
    ordered = sorted(articles, key=lambda a: (a.article_source.position, display_source(a.source)))

    grouped: Dict[str, List[Article]] = {}
    for article in ordered:
        grouped.setdefault(display_source(article.source), []).append(article)

    sources: List[PlannedSource] = []
    used_filenames = {MASTER_TOC_FILENAME}
    seq = 1
    chapter_index = 0
    for name, items in grouped.items():
        slug = source_slug(name)
        toc_filename = source_toc_filename(name)
        suffix = 2
        while toc_filename in used_filenames:
            toc_filename = f"toc_{slug}_{suffix}.xhtml"
            suffix += 1
        used_filenames.add(toc_filename)

        category = clean_text(items[0].article_source.category) or None
        planned = PlannedSource(name, toc_filename, seq, category)
        seq += 1
        for article in items:
            planned.chapters.append(PlannedChapter(seq, chapter_filename(chapter_index), article))
            seq += 1
            chapter_index += 1
        sources.append(planned)

    return BookPlan(sources=sources, total_parts=seq)


def output_filename(prefix: str, moment: datetime) -> str:
    return f"{prefix}_{output_timestamp(moment)}.epub"


def _error_chapter(article: Article, error: Exception, back_link: str) -> str:
    body = (
        f"<p><strong>Error rendering article:</strong> {escape_xml(str(error))}</p>"
        f"<p>{escape_xml(article.link)}</p>"
    )
    return render_chapter(article, body, back_link)


def _consume_outcome(future) -> None:
    if not future.cancelled():
        future.exception()


def _remove_partial(part_path: str) -> None:
    try:
        if path.exists(part_path):
            remove(part_path)
            logger.info(f"Removed partial output {part_path}")
    except OSError as e:
        logger.error(f"Could not remove partial output {part_path}: {e}")


@trace_span(
    "generate_epub_data",
    tracer_name="pipeline",
    attr_from_args=lambda articles, target_path, *args, **kwargs: {
        "epub.articles": len(articles),
        "epub.target": target_path,
    },
)
async def generate_epub_data(
    articles: Sequence[Article],
    target_path: str,
    title: str,
    author: str,
    session: ClientSession,
    options: Optional[RunOptions] = None,
    executor: Optional[Executor] = None,
    now: Optional[datetime] = None,
) -> str:
    """Write an EPUB for ``articles`` to ``target_path``.

    Fatal errors (writer rejection, filesystem failures) propagate; per-article
    and per-image failures are absorbed into the book.
    """
    options = options or config.run_options()
    now = now or utc_now()
    loop = get_running_loop()
    plan = plan_book(articles)
    logger.info(
        f"Building {path.basename(target_path)}: {len(plan.sources)} sources,"
        f" {plan.article_count} articles, {plan.total_parts} parts"
    )

    chapter_chan = Channel("chapters", loop=loop)
    image_chan = Channel("images", loop=loop)
    counter = ImageCounter()
    image_pool = ImagePool(session, image_chan, executor, options.image_timeout_seconds)

    stamp_time = now if options.add_date_in_cover else None
    cover = await loop.run_in_executor(
        executor,
        partial(prepare_cover, options.cover_path, stamp_time, options.cover_date_color, options.cover_font_path),
    )
    writer = DigestEpubWriter(title, author, cover)

    def run_writer() -> str:
        drain_streams(writer, chapter_chan, image_chan, plan.total_parts, lambda: counter.value)
        return writer.finalize(target_path)

    writer_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="epub-writer")
    writer_future = loop.run_in_executor(writer_executor, run_writer)
    chapter_tasks: List[Task] = []

    async def chapter_task(chapter: PlannedChapter, back_link: str) -> None:
        article = chapter.article
        try:
            body = await loop.run_in_executor(executor, partial(prepare_body, article.content, article.link))
            body, count = image_pool.process_images(body, chapter.seq_id, article.link or None)
            counter.add(count)
            xhtml = render_chapter(article, body, back_link)
        except Exception as e:
            if is_fatal(e):
                raise
            logger.error(f"Failed to build chapter {chapter.filename} ({article.link}): {e}")
            xhtml = _error_chapter(article, e, back_link)
        part = ContentPart(chapter.filename, display_title(article.title), xhtml)
        await chapter_chan.send(CompletionMessage(chapter.seq_id, [part]))

    async def produce() -> None:
        entries = [source.toc_entry for source in plan.sources]
        master = ContentPart(
            MASTER_TOC_FILENAME, MASTER_TOC_TITLE, render_master_toc(entries), RefType.TABLE_OF_CONTENTS
        )
        await chapter_chan.send(CompletionMessage(0, [master]))

        for index, source in enumerate(plan.sources):
            next_toc = entries[index + 1] if index + 1 < len(entries) else None
            links = [ChapterLink(c.filename, c.article.title) for c in source.chapters]
            toc = ContentPart(source.toc_filename, source.name, render_source_toc(source.name, links, next_toc))
            await chapter_chan.send(CompletionMessage(source.toc_seq, [toc]))
            for chapter in source.chapters:
                chapter_tasks.append(create_task(chapter_task(chapter, source.toc_filename)))

        results = await gather(*chapter_tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Chapter task failed: {result}")
                raise result

    producer = create_task(produce())
    try:
        await wait({producer, writer_future}, return_when=FIRST_EXCEPTION)
        if producer.done():
            chapter_chan.close()
            if producer.cancelled() or producer.exception() is not None:
                image_chan.close()
                # Writer exits on the closed streams; the producer error is the root cause
                writer_future.add_done_callback(_consume_outcome)
                await producer
        written = await writer_future
        await producer
        return written
    except BaseException:
        producer.cancel()
        for task in chapter_tasks:
            task.cancel()
        image_pool.cancel_all()
        raise
    finally:
        writer_executor.shutdown(wait=False)


async def save_book(
    articles: Sequence[Article],
    output_dir: str,
    filename: str,
    title: str,
    session: ClientSession,
    options: RunOptions,
    executor: Optional[Executor] = None,
    now: Optional[datetime] = None,
) -> str:
    """Build into ``{filename}.part`` and rename it into place on success."""
    try:
        makedirs(output_dir, exist_ok=True)
    except OSError as e:
        raise OutputIOError(f"Cannot create output directory {output_dir}: {e}", {"path": output_dir}) from e

    final_path = path.join(output_dir, filename)
    part_path = final_path + PART_SUFFIX
    author = f"{options.product_name} RSS Book"
    try:
        await generate_epub_data(articles, part_path, title, author, session, options, executor, now)
    except BaseException:
        _remove_partial(part_path)
        raise

    try:
        replace(part_path, final_path)
    except OSError as e:
        _remove_partial(part_path)
        raise OutputIOError(f"Cannot move {part_path} to {final_path}: {e}", {"path": final_path}) from e
    return final_path


@asynccontextmanager
async def _session_scope(session: Optional[ClientSession], options: RunOptions):
    if session is not None:
        yield session
        return
    owned = create_session(options.user_agent or None, options.http_timeout_seconds)
    try:
        yield owned
    finally:
        await owned.close()


@trace_span(
    "generate_and_save",
    tracer_name="pipeline",
    attr_from_args=lambda feeds, *args, **kwargs: {"feeds.count": len(feeds)},
)
async def generate_and_save(
    feeds: Sequence[FeedSpec],
    output_dir: Optional[str] = None,
    options: Optional[RunOptions] = None,
    overrides: Optional[Mapping[str, DomainOverride]] = None,
    session: Optional[ClientSession] = None,
    now: Optional[datetime] = None,
) -> str:
    """Fetch, filter and build the regular digest. Returns the output path.

    Raises EmptyDigestError when nothing (not even a feed error) survives
    the freshness window.
    """
    options = options or config.run_options()
    output_dir = output_dir or config.OUTPUT_DIR
    overrides = dict(config.DOMAIN_OVERRIDES if overrides is None else overrides)
    now = now or utc_now()
    since = now - timedelta(hours=options.fetch_since_hours)
    started = utc_now()

    executor = ThreadPoolExecutor(thread_name_prefix="digest")
    fetcher = FeedFetcher(executor)
    try:
        async with _session_scope(session, options) as active:
            fetched, errors = await fetcher.fetch_feeds(feeds, active)
            extractor_pool = ExtractorPool(active, overrides, executor, options.http_timeout_seconds)
            articles = await fetcher.filter_items(fetched, errors, since, extractor_pool)
            if not articles:
                raise EmptyDigestError(f"No articles found in the last {options.fetch_since_hours} hours.")
            logger.info(f"{len(articles)} articles from {len(fetched)} feeds ({len(errors)} feed errors)")

            result = await save_book(
                articles,
                output_dir,
                output_filename(DIGEST_PREFIX, now),
                f"RSS Digest - {now.strftime('%Y-%m-%d')}",
                active,
                options,
                executor,
                now,
            )
    finally:
        executor.shutdown(wait=False)

    logger.info(f"Digest ready: {result} in {format_duration((utc_now() - started).total_seconds())}")
    return result


@trace_span(
    "generate_read_it_later_and_save",
    tracer_name="pipeline",
    attr_from_args=lambda items, *args, **kwargs: {"items.count": len(items)},
)
async def generate_read_it_later_and_save(
    items: Sequence[ReadItLaterItem],
    output_dir: Optional[str] = None,
    options: Optional[RunOptions] = None,
    overrides: Optional[Mapping[str, DomainOverride]] = None,
    session: Optional[ClientSession] = None,
    now: Optional[datetime] = None,
) -> str:
    """Build a book from saved links. Returns the output path."""
    options = options or config.run_options()
    output_dir = output_dir or config.OUTPUT_DIR
    overrides = dict(config.DOMAIN_OVERRIDES if overrides is None else overrides)
    now = now or utc_now()
    if not items:
        raise EmptyDigestError("No read-it-later items to build.")

    executor = ThreadPoolExecutor(thread_name_prefix="read-it-later")
    fetcher = FeedFetcher(executor)
    try:
        async with _session_scope(session, options) as active:
            extractor_pool = ExtractorPool(active, overrides, executor, options.http_timeout_seconds)
            articles = await fetcher.read_it_later_items(items, extractor_pool, options.read_it_later_concurrency)
            if not articles:
                raise EmptyDigestError("No read-it-later items could be built.")
            result = await save_book(
                articles,
                output_dir,
                output_filename(READ_IT_LATER_PREFIX, now),
                f"Read It Later - {now.strftime('%Y-%m-%d')}",
                active,
                options,
                executor,
                now,
            )
    finally:
        executor.shutdown(wait=False)

    logger.info(f"Read-it-later book ready: {result}")
    return result
