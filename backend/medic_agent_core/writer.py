from __future__ import annotations

import asyncio
from typing import AsyncIterator

import structlog

logger = structlog.get_logger(__name__)

STREAM_HEADERS = {
    "Content-Type": "text/plain; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Transfer-Encoding": "chunked",
}


class ResponseWriter:
    """Outbound chunked transfer shared by the generation task and the HTTP body iterator.

    Writes and ``end`` after the transport is ended or destroyed are no-ops.
    ``headers_sent`` flips on the first committed byte (or on ``end``); after
    that the status code can no longer change.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._committed = asyncio.Event()
        self._headers: dict[str, str] = {}
        self._opened = False
        self._ended = False
        self._destroyed = False
        self.chars_written = 0

    def open(self, headers: dict[str, str] | None = None) -> None:
        if self._opened:
            return
        self._headers = {**STREAM_HEADERS, **(headers or {})}
        self._opened = True

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers or STREAM_HEADERS)

    @property
    def headers_sent(self) -> bool:
        return self._committed.is_set()

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def writable(self) -> bool:
        return not (self._ended or self._destroyed)

    def write(self, chunk: str) -> bool:
        if not self.writable or not chunk:
            return False
        self.open()
        self._queue.put_nowait(chunk)
        self.chars_written += len(chunk)
        self._committed.set()
        return True

    def end(self) -> None:
        if not self.writable:
            return
        self.open()
        self._ended = True
        self._committed.set()
        self._queue.put_nowait(None)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._queue.put_nowait(None)

    async def wait_committed(self) -> None:
        await self._committed.wait()

    async def body(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    return
                yield chunk.encode("utf-8")
        finally:
            if not self._ended and not self._destroyed:
                self._destroyed = True
                logger.warning("response_stream_closed_by_client", chars_written=self.chars_written)
