"""
coordinator.py — Request lifecycle coordinator for topic lookups.

Owns the current topic. Each submission gets a RequestHandle and launches two
independent asyncio tasks: the text stream and the image fetch. Only the
current handle may change the published state; a superseded handle's chunks,
image, errors and timing are dropped silently.

Text side:  PENDING → STREAMING → COMPLETED | FAILED
Image side: PENDING → READY | FAILED

The staleness flag is re-checked immediately before every mutation, not only
at submission time, because a new topic can arrive mid-stream.
"""

import asyncio
import contextlib
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol

from streaming_session import StreamChunk

logger = logging.getLogger("nextwiki.coordinator")


@dataclass(frozen=True)
class Topic:
    """Trimmed topic text. Compares case-insensitively via `key`."""
    text: str = field(compare=False)
    key: str

    @classmethod
    def parse(cls, raw: str) -> Optional["Topic"]:
        """Normalize user input. Blank input is not a topic (returns None)."""
        text = (raw or "").strip()
        if not text:
            return None
        return cls(text=text, key=text.casefold())


class TextState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class ImageState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


_TEXT_ACTIVE = (TextState.PENDING, TextState.STREAMING)


class OutcomeKind(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class GenerationOutcome:
    kind: OutcomeKind
    document: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class CoordinatorState:
    """Snapshot of every slot the display layer renders."""
    topic: Optional[str] = None
    content: str = ""
    error: Optional[str] = None
    image_url: Optional[str] = None
    image_error: Optional[str] = None
    elapsed_ms: Optional[float] = None
    truncated: bool = False
    text_state: TextState = TextState.IDLE
    image_state: ImageState = ImageState.IDLE

    @property
    def text_loading(self) -> bool:
        return self.text_state in _TEXT_ACTIVE

    @property
    def image_loading(self) -> bool:
        return self.image_state is ImageState.PENDING

    @property
    def loading(self) -> bool:
        return self.text_loading or self.image_loading


class TextSource(Protocol):
    """What the coordinator needs from a streaming session."""

    truncated: bool

    def deltas(self) -> AsyncIterator[StreamChunk]:
        ...


SessionFactory = Callable[[Topic], TextSource]
ImageFetcher = Callable[[Topic], Awaitable[str]]
Listener = Callable[[CoordinatorState], None]


class RequestHandle:
    """One request attempt. Internal to the coordinator."""

    _ids = itertools.count(1)

    def __init__(self, topic: Topic, started_at: float):
        self.id = next(self._ids)
        self.topic = topic
        self.started_at = started_at
        self.stale = False
        self.text_state = TextState.PENDING
        self.image_state = ImageState.PENDING
        self.outcome: Optional[GenerationOutcome] = None
        self.tasks: List[asyncio.Task] = []

    @property
    def settled(self) -> bool:
        return (
            self.text_state not in _TEXT_ACTIVE
            and self.image_state is not ImageState.PENDING
        )

    def __repr__(self) -> str:
        return f"<RequestHandle #{self.id} {self.topic.text!r} stale={self.stale}>"


class RequestCoordinator:
    """Runs topic lookups so that only the latest submission is ever shown."""

    def __init__(
        self,
        open_session: SessionFactory,
        fetch_image: ImageFetcher,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._open_session = open_session
        self._fetch_image = fetch_image
        self._clock = clock
        self._current: Optional[RequestHandle] = None
        self._state = CoordinatorState()
        self._listeners: List[Listener] = []

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def topic(self) -> Optional[Topic]:
        return self._current.topic if self._current else None

    @property
    def outcome(self) -> Optional[GenerationOutcome]:
        """Text outcome of the current request, None while still streaming."""
        return self._current.outcome if self._current else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for state snapshots. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _is_current(self, handle: RequestHandle) -> bool:
        return handle is self._current and not handle.stale

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._state)

    def _apply(self, handle: RequestHandle, **changes) -> bool:
        """Publish changes if `handle` is still current. Returns whether applied."""
        if not self._is_current(handle):
            return False
        self._state = replace(self._state, **changes)
        self._notify()
        return True

    # ── Submission ──────────────────────────────────────────────────

    def submit(self, raw_topic: str) -> bool:
        """Start a lookup for `raw_topic`.

        Returns False (and changes nothing) for blank input or for the topic
        already current, compared case-insensitively. Must be called from a
        running event loop.
        """
        topic = Topic.parse(raw_topic)
        if topic is None:
            return False
        if self._current is not None and self._current.topic == topic:
            logger.debug("Topic %r already current, ignoring", topic.text)
            return False

        previous = self._current
        if previous is not None:
            previous.stale = True
            if not previous.settled:
                logger.info("Superseding %r with %r", previous.topic.text, topic.text)

        handle = RequestHandle(topic, self._clock())
        self._current = handle
        self._state = CoordinatorState(
            topic=topic.text,
            text_state=TextState.PENDING,
            image_state=ImageState.PENDING,
        )
        self._notify()

        handle.tasks = [
            asyncio.create_task(self._run_text(handle), name=f"text-{handle.id}"),
            asyncio.create_task(self._run_image(handle), name=f"image-{handle.id}"),
        ]
        return True

    async def wait(self) -> Optional[GenerationOutcome]:
        """Wait until the current request (including any that replaces it
        meanwhile) has settled on both sides. Returns its text outcome."""
        while self._current is not None:
            handle = self._current
            await asyncio.gather(*handle.tasks)
            if handle is self._current:
                return handle.outcome
        return None

    async def aclose(self) -> None:
        """Retire the current request and cancel its outstanding tasks.

        The last document stays in the snapshot, but nothing is left loading
        and no topic is current, so submitting the same topic again starts a
        fresh lookup.
        """
        handle = self._current
        if handle is None:
            return
        handle.stale = True
        for task in handle.tasks:
            task.cancel()
        await asyncio.gather(*handle.tasks, return_exceptions=True)

        self._supersede(handle)
        self._current = None
        changes = {}
        if self._state.text_loading:
            changes["text_state"] = TextState.SUPERSEDED
        if self._state.image_loading:
            changes["image_state"] = ImageState.IDLE
        if changes:
            self._state = replace(self._state, **changes)
            self._notify()

    # ── Text side ───────────────────────────────────────────────────

    async def _run_text(self, handle: RequestHandle) -> None:
        document = ""
        try:
            session = self._open_session(handle.topic)
            async with contextlib.aclosing(session.deltas()) as chunks:
                handle.text_state = TextState.STREAMING
                self._apply(handle, text_state=TextState.STREAMING)

                async for chunk in chunks:
                    if not self._is_current(handle):
                        logger.debug("Dropping chunk for superseded %r", handle)
                        break
                    if chunk.is_error:
                        self._fail_text(handle, chunk.text)
                        return
                    document += chunk.text
                    self._apply(handle, content=document)
                else:
                    self._complete_text(handle, document, session.truncated)
                    return
        except Exception as e:
            logger.exception("Text stream for %r raised", handle.topic.text)
            self._fail_text(handle, str(e) or "An unknown error occurred")
            return

        self._supersede(handle)

    def _complete_text(self, handle: RequestHandle, document: str, truncated: bool) -> None:
        if not self._is_current(handle):
            self._supersede(handle)
            return

        elapsed_ms = (self._clock() - handle.started_at) * 1000
        handle.text_state = TextState.COMPLETED
        handle.outcome = GenerationOutcome(OutcomeKind.COMPLETED, document=document)
        if truncated:
            logger.warning("Definition for %r may be incomplete", handle.topic.text)
        logger.info(
            "Definition for %r completed in %.0fms (%d chars)",
            handle.topic.text,
            elapsed_ms,
            len(document),
        )
        self._apply(
            handle,
            elapsed_ms=elapsed_ms,
            truncated=truncated,
            text_state=TextState.COMPLETED,
        )

    def _fail_text(self, handle: RequestHandle, message: str) -> None:
        if not self._is_current(handle):
            self._supersede(handle)
            return

        handle.text_state = TextState.FAILED
        handle.outcome = GenerationOutcome(OutcomeKind.FAILED, error=message)
        logger.error("Definition for %r failed: %s", handle.topic.text, message)
        self._apply(handle, content="", error=message, text_state=TextState.FAILED)

    def _supersede(self, handle: RequestHandle) -> None:
        if handle.text_state in _TEXT_ACTIVE:
            handle.text_state = TextState.SUPERSEDED
            handle.outcome = GenerationOutcome(OutcomeKind.SUPERSEDED)

    # ── Image side ──────────────────────────────────────────────────

    async def _run_image(self, handle: RequestHandle) -> None:
        try:
            url = await self._fetch_image(handle.topic)
        except Exception as e:
            message = str(e) or "Failed to generate image."
            handle.image_state = ImageState.FAILED
            if self._apply(handle, image_error=message, image_state=ImageState.FAILED):
                logger.warning("Image for %r failed: %s", handle.topic.text, message)
            return

        handle.image_state = ImageState.READY
        if not self._apply(handle, image_url=url, image_state=ImageState.READY):
            logger.debug("Dropping image for superseded %r", handle)
