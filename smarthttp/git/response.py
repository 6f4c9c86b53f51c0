"""Response framing stream between a pack-protocol service and the HTTP response."""

import asyncio
import logging
from collections import deque
from typing import AsyncIterator

from smarthttp.git.pktline import FLUSH_PKT, is_flush

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER_MARK = 64 * 1024


class ResponseFinalizedError(RuntimeError):
    """Raised when writing to a response stream that is already finalized."""


class GitResponseStream:
    """One-way byte stream relaying pkt-lines to the HTTP response.

    The service subprocess terminates its output with a flush-pkt. Such a
    chunk is dropped on the way through, and `finalize()` appends the single
    authoritative terminator once nothing else will be written.

    The HTTP side consumes the stream with `async for`. Writers using
    `write()` are suspended while the unread backlog is at or above the
    high-water mark.
    """

    def __init__(self, high_water_mark: int = DEFAULT_HIGH_WATER_MARK):
        """Initialize the response stream."""
        self.finalized = False
        self._high_water_mark = high_water_mark
        self._chunks = deque()
        self._backlog = 0
        self._ended = False
        self._aborted = False
        self._readable = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def closed(self) -> bool:
        """Return True once nothing more may be written."""
        return self.finalized or self._aborted

    @property
    def backlog(self) -> int:
        """Return the number of bytes written but not yet read."""
        return self._backlog

    def _check_writable(self):
        if self.finalized or self._aborted:
            raise ResponseFinalizedError("Response stream is already finalized")

    def _enqueue(self, chunk: bytes):
        self._chunks.append(chunk)
        self._backlog += len(chunk)
        if self._backlog >= self._high_water_mark:
            self._drained.clear()
        self._readable.set()

    async def write(self, chunk: bytes) -> None:
        """Relay a chunk, waiting while the reader is behind."""
        self._check_writable()
        if is_flush(chunk):
            logger.debug("Suppressed upstream flush packet")
            return
        while self._backlog >= self._high_water_mark:
            await self._drained.wait()
            self._check_writable()
        self._enqueue(bytes(chunk))

    def write_nowait(self, chunk: bytes) -> None:
        """Relay a chunk without waiting for the reader."""
        self._check_writable()
        if is_flush(chunk):
            logger.debug("Suppressed upstream flush packet")
            return
        self._enqueue(bytes(chunk))

    def finalize(self) -> None:
        """Append the terminating flush packet and close the stream."""
        self._check_writable()
        self.finalized = True
        self._enqueue(FLUSH_PKT)
        self._ended = True

    def abort(self) -> None:
        """Stop the stream because the HTTP side went away."""
        if self._aborted:
            return
        self._aborted = True
        self._ended = True
        self._chunks.clear()
        self._backlog = 0
        # wake blocked writers so they observe the abort
        self._drained.set()
        self._readable.set()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        """Yield relayed chunks until the stream is finalized."""
        while True:
            while not self._chunks:
                if self._ended:
                    return
                self._readable.clear()
                await self._readable.wait()
            chunk = self._chunks.popleft()
            self._backlog -= len(chunk)
            if self._backlog < self._high_water_mark:
                self._drained.set()
            yield chunk

    async def read_all(self) -> bytes:
        """Collect the whole response body."""
        return b"".join([chunk async for chunk in self])
