"""
chunk_decoder.py — Byte stream to line decoder for streamed HTTP bodies.

Decodes complete text lines from async byte streams (httpx response.aiter_bytes()).
Handles: buffers split mid-line, multi-byte characters split across buffers,
CRLF framing. An unterminated trailing line is dropped at end of stream.
"""

import codecs
import logging
from typing import AsyncGenerator, AsyncIterable

logger = logging.getLogger("nextwiki.chunk_decoder")


class LineDecoder:
    """Incremental bytes → lines decoder.

    Partial lines and partial multi-byte sequences are held until the
    buffer that completes them arrives.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        """Consume one raw buffer and return the lines it completed."""
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []

        *lines, self._buffer = self._buffer.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    @property
    def pending(self) -> str:
        """Text received after the last newline (not yet a line)."""
        return self._buffer

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""


async def decode_lines(
    stream: AsyncIterable[bytes], encoding: str = "utf-8"
) -> AsyncGenerator[str, None]:
    """Decode newline-terminated lines from an async byte stream.

    Yields each line without its terminator, in order. Content left in the
    buffer when the stream ends has no terminating newline and is discarded.
    """
    decoder = LineDecoder(encoding)

    async for chunk in stream:
        for line in decoder.feed(chunk):
            yield line

    if decoder.pending:
        logger.debug(
            "Discarding %d chars of unterminated trailing data", len(decoder.pending)
        )
