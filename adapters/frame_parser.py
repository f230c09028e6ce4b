"""
frame_parser.py — Event-stream frame parser for chat completion streams.

Classifies decoded lines as data frames, in-band error frames, the [DONE]
terminator, or ignorable lines, and extracts the incremental text at
choices[0].delta.content.

A frame whose JSON payload cannot be parsed is logged and dropped; the
stream carries on with the next line. An error frame ({"error": ...} with
no choices) ends the stream and is reported through ParseStats.error.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterable, Optional

logger = logging.getLogger("nextwiki.frame_parser")

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class FrameKind(Enum):
    DATA = "data"
    DONE = "done"
    ERROR = "error"
    MALFORMED = "malformed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Frame:
    """One classified line. `content` is the text for DATA frames and the
    message for ERROR frames."""
    kind: FrameKind
    content: str = ""
    payload: str = ""


@dataclass
class ParseStats:
    """Per-stream counters filled in while frames are parsed."""
    frames: int = 0
    chunks: int = 0
    malformed_frames: int = 0
    done: bool = False
    error: Optional[str] = None


def extract_error(record: Any) -> Optional[str]:
    """Message of an in-band error record, or None for anything else."""
    if not isinstance(record, dict) or "error" not in record or "choices" in record:
        return None

    error = record["error"]
    if isinstance(error, dict):
        message = error.get("message") or error.get("code")
        return str(message) if message else json.dumps(error, ensure_ascii=False)
    return str(error)


def extract_delta(record: Any) -> Optional[str]:
    """Pull choices[0].delta.content out of a decoded chunk record.

    Raises ValueError when the record is not shaped like a chunk at all.
    Returns None when the shape is right but carries no text.
    """
    if not isinstance(record, dict):
        raise ValueError(f"expected JSON object, got {type(record).__name__}")

    choices = record.get("choices")
    if not isinstance(choices, list):
        raise ValueError("missing 'choices' list")
    if not choices or not isinstance(choices[0], dict):
        return None

    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None

    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def parse_frame(line: str) -> Frame:
    """Classify a single decoded line."""
    if not line.startswith(DATA_PREFIX):
        return Frame(FrameKind.IGNORED)

    payload = line[len(DATA_PREFIX):]
    if payload == DONE_SENTINEL:
        return Frame(FrameKind.DONE, payload=payload)

    try:
        record = json.loads(payload)
        error = extract_error(record)
        if error is not None:
            return Frame(FrameKind.ERROR, content=error, payload=payload)
        content = extract_delta(record)
    except (ValueError, RecursionError) as e:
        # json.JSONDecodeError is a ValueError subclass; deep nesting overflows the decoder
        logger.warning("Failed to parse stream chunk (%s): %.200s", e, payload)
        return Frame(FrameKind.MALFORMED, payload=payload)

    return Frame(FrameKind.DATA, content=content or "", payload=payload)


async def iter_deltas(
    lines: AsyncIterable[str], stats: Optional[ParseStats] = None
) -> AsyncGenerator[str, None]:
    """Yield text deltas from decoded lines until [DONE], an error frame, or
    input exhaustion.

    No line after the terminator or error frame is read.
    """
    if stats is None:
        stats = ParseStats()

    async for line in lines:
        frame = parse_frame(line)

        if frame.kind is FrameKind.IGNORED:
            continue

        stats.frames += 1

        if frame.kind is FrameKind.DONE:
            stats.done = True
            return

        if frame.kind is FrameKind.ERROR:
            stats.error = frame.content
            return

        if frame.kind is FrameKind.MALFORMED:
            stats.malformed_frames += 1
            continue

        if frame.content:
            stats.chunks += 1
            yield frame.content
