#!/usr/bin/env python3
"""
Sequenced merge of chapter and image completions.

Chapter tasks finish in any order but the EPUB must list content documents in
pre-assigned sequence order, so the writer thread owns a small reorder buffer
keyed by the next expected id (Phase A). Once every chapter has been written,
it drains the unordered image stream until the expected image total has
arrived (Phase B). Both streams are bounded channels; async producers await
capacity while the blocking writer pulls messages from the event loop.
"""

import asyncio
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, List, Optional, Protocol

from config import get_logger
from errors import SerializationError
from models import CompletionMessage, EpubPart

logger = get_logger("sequencer")

CHANNEL_CAPACITY = 32
PROGRESS_EVERY = 10

_CLOSED = object()


class Channel:
    """Bounded multi-producer channel with a single (possibly blocking) consumer.

    Producers run on the event loop and ``await send()``. The consumer may be
    a coroutine (``recv``) or a worker thread (``blocking_recv``), which
    schedules the queue read on the owning loop and waits for its result.
    """

    def __init__(self, name: str, capacity: int = CHANNEL_CAPACITY, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.name = name
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._close_task: Optional[asyncio.Task] = None

    async def send(self, message: CompletionMessage) -> None:
        if self._closed:
            raise SerializationError(f"Send on closed channel {self.name}")
        await self._queue.put(message)

    def close(self) -> None:
        """Mark the channel closed; the receiver sees end-of-stream after pending messages."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Receiver is behind; enqueue the end marker as soon as there is room
            self._close_task = self._loop.create_task(self._queue.put(_CLOSED))

    async def recv(self) -> Optional[CompletionMessage]:
        message = await self._queue.get()
        return None if message is _CLOSED else message

    def blocking_recv(self, timeout: Optional[float] = None) -> Optional[CompletionMessage]:
        """Receive from a worker thread. Returns None once the channel is closed and empty."""
        future = asyncio.run_coroutine_threadsafe(self._queue.get(), self._loop)
        try:
            message = future.result(timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise SerializationError(f"Timed out waiting on channel {self.name}") from e
        return None if message is _CLOSED else message


class ImageCounter:
    """Monotone total of images promised by chapter tasks."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self, count: int) -> int:
        if count < 0:
            raise ValueError("image count cannot decrease")
        with self._lock:
            self._value += count
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class Sequencer:
    """Reorder buffer releasing chapter parts strictly by sequence id."""

    def __init__(self, total_parts: int) -> None:
        self.total_parts = total_parts
        self.expect = 0
        self._buffer: Dict[int, List[EpubPart]] = {}

    @property
    def complete(self) -> bool:
        return self.expect >= self.total_parts

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def push(self, message: CompletionMessage) -> List[List[EpubPart]]:
        """Buffer ``message`` and return every part list that is now in order."""
        seq = message.sequence_id
        if seq < 0 or seq >= self.total_parts:
            raise SerializationError(f"Sequence id {seq} outside [0, {self.total_parts})")
        if seq < self.expect or seq in self._buffer:
            raise SerializationError(f"Duplicate sequence id {seq}")
        self._buffer[seq] = message.parts
        ready = []
        while self.expect in self._buffer:
            ready.append(self._buffer.pop(self.expect))
            self.expect += 1
        return ready


class PartSink(Protocol):
    def write_parts(self, parts: List[EpubPart]) -> None: ...


def drain_streams(
    sink: PartSink,
    chapter_chan: Channel,
    image_chan: Channel,
    total_parts: int,
    image_total: Callable[[], int],
) -> int:
    """Run Phase A then Phase B, feeding ``sink`` from a worker thread.

    ``image_total`` is only read after Phase A, when every chapter task has
    already reported its image count. Returns the number of image messages
    drained.
    """
    sequencer = Sequencer(total_parts)
    written = 0
    while not sequencer.complete:
        message = chapter_chan.blocking_recv()
        if message is None:
            raise SerializationError(
                f"Chapter stream closed after {sequencer.expect}/{total_parts} parts"
                f" ({sequencer.pending} buffered)"
            )
        for parts in sequencer.push(message):
            sink.write_parts(parts)
            written += 1
            if written % PROGRESS_EVERY == 0:
                logger.info(f"Wrote {written}/{total_parts} parts")
    logger.info("All parts received. Moving to images")

    total_images = image_total()
    logger.info(f"Total images are {total_images}")
    received = 0
    while received < total_images:
        message = image_chan.blocking_recv()
        if message is None:
            raise SerializationError(f"Image stream closed after {received}/{total_images} images")
        sink.write_parts(message.parts)
        received += 1
        if received % PROGRESS_EVERY == 0:
            logger.info(f"Received {received}/{total_images} images")
    logger.info("All images received. Finishing EPUB.")
    return received
