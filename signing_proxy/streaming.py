"""
Response body relay with a configurable flush cadence.

The relay copies upstream body chunks to the client:

- flush interval 0: chunks are coalesced and written when the 32 KiB buffer
  fills or the body ends
- positive flush interval: pending bytes are also written at most that many
  seconds after they arrived, even while the upstream is stalled
- negative flush interval: every chunk is written as soon as it arrives
"""

import asyncio
import contextlib
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)

BUFFER_SIZE = 32 * 1024

# Bounds read-ahead while waiting on a slow client
QUEUE_DEPTH = 16

_EOF = object()


def effective_flush_interval(flush_interval: float, content_type: str) -> float:
    """Server-sent event streams are always flushed per chunk."""
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == "text/event-stream":
        return -1
    return flush_interval


async def relay(chunks: AsyncIterator[bytes], flush_interval: float) -> AsyncIterator[bytes]:
    """
    Copy chunks to the client according to the flush interval.

    Args:
        chunks: Upstream body chunks
        flush_interval: Seconds between forced flushes (see module docstring)

    Yields:
        Byte strings to write to the client
    """
    if flush_interval < 0:
        async for chunk in chunks:
            if chunk:
                yield chunk
    elif flush_interval == 0:
        async for data in _buffered(chunks):
            yield data
    else:
        async for data in _timed(chunks, flush_interval):
            yield data


async def _buffered(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    pending = bytearray()
    async for chunk in chunks:
        pending += chunk
        if len(pending) >= BUFFER_SIZE:
            yield bytes(pending)
            pending.clear()
    if pending:
        yield bytes(pending)


async def _timed(chunks: AsyncIterator[bytes], interval: float) -> AsyncIterator[bytes]:
    queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_DEPTH)

    async def pump() -> None:
        try:
            async for chunk in chunks:
                await queue.put(chunk)
        except Exception as e:
            await queue.put(e)
            return
        await queue.put(_EOF)

    loop = asyncio.get_running_loop()
    reader = asyncio.create_task(pump())
    pending = bytearray()
    deadline = None

    try:
        while True:
            timeout = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                item = await asyncio.wait_for(queue.get(), timeout)
            except asyncio.TimeoutError:
                yield bytes(pending)
                pending.clear()
                deadline = None
                continue

            if item is _EOF:
                break
            if isinstance(item, Exception):
                raise item
            if not item:
                continue

            pending += item
            if len(pending) >= BUFFER_SIZE:
                yield bytes(pending)
                pending.clear()
                deadline = None
            elif deadline is None:
                deadline = loop.time() + interval

        if pending:
            yield bytes(pending)
    finally:
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader
