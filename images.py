#!/usr/bin/env python3
"""
Image ingestion for chapter bodies.

For each chapter the pool rewrites every ``<img src>`` to a local
``image_{uuid}_{k}.jpg`` name up front, then downloads and transcodes the
images in background tasks. Every promised image produces exactly one
message on the image channel: a JPEG resource on success, an empty part
list on any failure, so the writer's image count always balances.
"""

from asyncio import Task, create_task, get_event_loop
from concurrent.futures import Executor
from functools import partial
from html import unescape
from io import BytesIO
from typing import List, Optional, Set, Tuple
from urllib.parse import urljoin
from uuid import uuid4
import re

from aiohttp import ClientSession
from PIL import Image, UnidentifiedImageError

from config import get_logger
from errors import FetchError, ImageError
from http_client import get_bytes
from models import CompletionMessage, ResourcePart
from sequencer import Channel
from telemetry import trace_span

logger = get_logger("images")

IMG_SRC_PATTERN = re.compile(r'<img[^>]+src="([^"]+)"[^>]*>', re.IGNORECASE)
MAX_SIZE = (600, 800)
JPEG_QUALITY = 80
JPEG_MIME = "image/jpeg"


def find_image_sources(body: str) -> List[str]:
    """Unique ``src`` values of ``<img>`` tags, sorted for stable numbering."""
    return sorted(set(IMG_SRC_PATTERN.findall(body or "")))


def transcode_image(data: bytes) -> bytes:
    """Decode any Pillow-readable image, fit it in 600x800, grayscale, JPEG-encode.

    Images are only ever scaled down; nearest-neighbour keeps this cheap.
    """
    if not data:
        raise ImageError("Empty image payload")
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            img.thumbnail(MAX_SIZE, Image.Resampling.NEAREST)
            gray = img.convert("L")
        out = BytesIO()
        gray.save(out, format="JPEG", quality=JPEG_QUALITY)
        return out.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ImageError(f"Cannot transcode image: {e}") from e


class ImagePool:
    """Fans out image downloads for chapters and streams the results."""

    def __init__(
        self,
        session: ClientSession,
        image_chan: Channel,
        executor: Optional[Executor] = None,
        timeout_seconds: float = 45,
    ) -> None:
        self.session = session
        self.image_chan = image_chan
        self.executor = executor
        self.timeout_seconds = timeout_seconds
        self._tasks: Set[Task] = set()

    def process_images(self, body: str, seq_id: int, base_url: Optional[str] = None) -> Tuple[str, int]:
        """Rewrite image sources in ``body`` and spawn their downloads.

        Returns ``(rewritten_body, image_count)`` immediately; the body no
        longer depends on whether any download succeeds.
        """
        sources = find_image_sources(body)
        if not sources:
            return body, 0

        chapter_uid = uuid4()
        for index, src in enumerate(sources):
            filename = f"image_{chapter_uid}_{index}.jpg"
            body = body.replace(f'src="{src}"', f'src="{filename}"')
            url = unescape(src)
            if base_url:
                url = urljoin(base_url, url)
            task = create_task(self._fetch_and_send(url, filename, seq_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.debug(f"Chapter seq {seq_id}: {len(sources)} images queued")
        return body, len(sources)

    async def _fetch_and_send(self, url: str, filename: str, seq_id: int) -> None:
        parts = []
        try:
            parts = [await self.fetch_resource(url, filename)]
        except (ImageError, FetchError) as e:
            logger.warning(f"Skipping image {url}: {e}")
        except Exception as e:
            # Any failure still has to produce its message or the writer never finishes
            logger.error(f"Unexpected error processing image {url}: {e}")
        await self.image_chan.send(CompletionMessage(sequence_id=seq_id, parts=parts))

    @trace_span(
        "image.fetch",
        tracer_name="images",
        attr_from_args=lambda self, url, filename: {"http.url": url, "image.filename": filename},
    )
    async def fetch_resource(self, url: str, filename: str) -> ResourcePart:
        if not url.startswith(("http://", "https://")):
            raise ImageError(f"Unsupported image source: {url[:80]}")
        status, data = await get_bytes(self.session, url, self.timeout_seconds)
        if not 200 <= status <= 299:
            raise ImageError(f"HTTP {status}", {"url": url, "status": status})
        loop = get_event_loop()
        jpeg = await loop.run_in_executor(self.executor, partial(transcode_image, data))
        return ResourcePart(filename=filename, data=jpeg, mime_type=JPEG_MIME)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
