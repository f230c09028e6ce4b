"""
streaming_session.py — One streamed chat completion exchange as a delta sequence.

Issues a single streaming POST (no retry) and exposes the result as an async
generator of StreamChunk. Transport and status failures are folded into the
sequence as one final error-marked chunk, so a consumer can tell "stopped
because of an error" from "stopped because it is done".

Pipeline: response.aiter_bytes() → decode_lines() → iter_deltas() → StreamChunk
"""

import logging
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

import httpx

from chunk_decoder import decode_lines
from config_loader import TextEndpointConfig, redact_headers
from frame_parser import ParseStats, iter_deltas
from generation_modes import build_definition_request, build_text_headers

logger = logging.getLogger("nextwiki.streaming_session")

ERROR_BODY_LIMIT = 500


@dataclass(frozen=True)
class StreamChunk:
    """One incremental piece of the definition, or the terminal error."""
    text: str
    is_error: bool = False


def build_timeout(connect_timeout_ms: int, read_timeout_ms: int) -> httpx.Timeout:
    """Timeouts for one upstream. Read timeout bounds the wait per buffer."""
    return httpx.Timeout(
        connect=connect_timeout_ms / 1000.0,
        read=read_timeout_ms / 1000.0,
        write=30.0,
        pool=connect_timeout_ms / 1000.0,
    )


def _error_body(raw: bytes) -> str:
    """Response body for diagnostics, trimmed."""
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return "(empty body)"
    return text[:ERROR_BODY_LIMIT]


class StreamingSession:
    """Streams a definition for one topic.

    Each call to deltas() performs a fresh request. After the generator is
    exhausted, `completed`, `truncated` and `stats` describe how it ended.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: TextEndpointConfig,
        topic: str,
        language: Optional[str] = None,
        mode: Optional[str] = None,
    ):
        self._client = client
        self._config = config
        self.topic = topic
        self.language = language or config.language
        self.mode = mode or config.mode
        self.stats = ParseStats()
        self.failed = False

    @property
    def completed(self) -> bool:
        """True once the [DONE] terminator was read."""
        return self.stats.done

    @property
    def truncated(self) -> bool:
        """Stream ended without [DONE] and without an error."""
        return not self.stats.done and not self.failed

    def _fail(self, message: str) -> StreamChunk:
        self.failed = True
        return StreamChunk(
            f'Could not generate content for "{self.topic}". {message}',
            is_error=True,
        )

    async def deltas(self) -> AsyncGenerator[StreamChunk, None]:
        # Raises ValueError for unknown mode/language before any I/O
        body = build_definition_request(
            self._config.model, self.topic, self.language, self.mode
        )
        headers = build_text_headers(
            self._config.api_key, self._config.site_url, self._config.app_title
        )
        self.stats = ParseStats()
        self.failed = False

        logger.debug(
            "POST %s topic=%r mode=%s language=%s headers=%s",
            self._config.chat_url,
            self.topic,
            self.mode,
            self.language,
            redact_headers(headers),
        )

        try:
            async with self._client.stream(
                "POST", self._config.chat_url, json=body, headers=headers
            ) as response:
                if not response.is_success:
                    raw = await response.aread()
                    logger.error(
                        "Text endpoint returned HTTP %d for %r",
                        response.status_code,
                        self.topic,
                    )
                    yield self._fail(
                        f"API Error: HTTP {response.status_code}: {_error_body(raw)}"
                    )
                    return

                async for text in iter_deltas(
                    decode_lines(response.aiter_bytes()), self.stats
                ):
                    yield StreamChunk(text)

        except httpx.TimeoutException as e:
            logger.error("Text stream for %r timed out: %s", self.topic, e)
            yield self._fail(f"Request timed out: {e}")
            return
        except httpx.RequestError as e:
            logger.error("Text stream for %r failed: %s", self.topic, e)
            yield self._fail(f"Connection failed: {e}")
            return

        if self.stats.error is not None:
            logger.error("Text stream for %r reported an error: %s", self.topic, self.stats.error)
            yield self._fail(f"Upstream error: {self.stats.error}")
            return

        if self.stats.malformed_frames:
            logger.warning(
                "Dropped %d malformed frame(s) for %r",
                self.stats.malformed_frames,
                self.topic,
            )
        if not self.stats.done:
            logger.warning(
                "Text stream for %r ended without [DONE] after %d chunk(s)",
                self.topic,
                self.stats.chunks,
            )