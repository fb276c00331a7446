"""Tests for the response body relay."""

import asyncio
import os

import pytest

from signing_proxy.streaming import BUFFER_SIZE, effective_flush_interval, relay


async def _chunks(*parts: bytes):
    for part in parts:
        await asyncio.sleep(0)
        yield part


async def _collect(flush_interval: float, *parts: bytes) -> list[bytes]:
    return [data async for data in relay(_chunks(*parts), flush_interval)]


class TestEffectiveFlushInterval:
    """Tests for per-response flush interval selection."""

    def test_event_stream_flushes_every_chunk(self):
        """Test that server-sent events are never buffered."""
        assert effective_flush_interval(0, "text/event-stream; charset=utf-8") == -1

    def test_other_types_keep_configured_interval(self):
        """Test that other responses use the configured interval."""
        assert effective_flush_interval(2, "application/json") == 2
        assert effective_flush_interval(0, "") == 0


class TestBufferedRelay:
    """Tests for flush interval zero."""

    @pytest.mark.asyncio
    async def test_small_chunks_are_coalesced(self):
        """Test that small chunks are written together at the end."""
        output = await _collect(0, b"a", b"b", b"c")

        assert output == [b"abc"]

    @pytest.mark.asyncio
    async def test_large_body_is_byte_identical(self):
        """Test that a body far larger than the buffer is relayed exactly."""
        body = os.urandom(5 * BUFFER_SIZE + 123)
        parts = [body[i:i + 1000] for i in range(0, len(body), 1000)]

        output = await _collect(0, *parts)

        assert b"".join(output) == body
        assert all(len(piece) >= BUFFER_SIZE for piece in output[:-1])

    @pytest.mark.asyncio
    async def test_empty_body(self):
        """Test that an empty body writes nothing."""
        assert await _collect(0) == []


class TestImmediateRelay:
    """Tests for negative flush intervals."""

    @pytest.mark.asyncio
    async def test_every_chunk_is_written(self):
        """Test that each chunk is written as it arrives."""
        output = await _collect(-1, b"a", b"", b"b", b"c")

        assert output == [b"a", b"b", b"c"]


class TestTimedRelay:
    """Tests for positive flush intervals."""

    @pytest.mark.asyncio
    async def test_pending_bytes_flush_while_upstream_stalls(self):
        """Test that bytes are written before the upstream resumes."""
        resume = asyncio.Event()

        async def stalled():
            yield b"first"
            await resume.wait()
            yield b"second"

        received = []

        async def consume():
            async for data in relay(stalled(), 0.05):
                received.append(data)
                resume.set()

        await asyncio.wait_for(consume(), timeout=5)

        assert received == [b"first", b"second"]

    @pytest.mark.asyncio
    async def test_full_buffer_flushes_early(self):
        """Test that a full buffer is written without waiting for the timer."""
        resume = asyncio.Event()
        big = b"x" * BUFFER_SIZE

        async def stalled():
            yield big
            await resume.wait()
            yield b"tail"

        received = []

        async def consume():
            async for data in relay(stalled(), 60):
                received.append(data)
                resume.set()

        await asyncio.wait_for(consume(), timeout=5)

        assert received == [big, b"tail"]

    @pytest.mark.asyncio
    async def test_body_is_byte_identical(self):
        """Test that timed flushing preserves the body."""
        body = os.urandom(3 * BUFFER_SIZE)
        parts = [body[i:i + 4096] for i in range(0, len(body), 4096)]

        output = await _collect(0.01, *parts)

        assert b"".join(output) == body


class TestErrors:
    """Tests for upstream failures while relaying."""

    @staticmethod
    async def _failing():
        yield b"partial"
        raise ConnectionError("upstream reset")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flush_interval", [-1, 0, 0.05])
    async def test_errors_propagate(self, flush_interval):
        """Test that a mid-body failure reaches the caller."""
        with pytest.raises(ConnectionError, match="upstream reset"):
            async for _ in relay(self._failing(), flush_interval):
                pass
