#!/usr/bin/env python3
"""
nextwiki.py — Terminal front end for streamed topic definitions.

One-shot:    python3 nextwiki.py <topic> [--lang CODE] [--mode MODE] [--config PATH] [--verbose]
Interactive: python3 nextwiki.py [--lang CODE] [--mode MODE] [--config PATH] [--verbose]
             (starts at the configured home topic, then reads topics from stdin)

Exit codes:
  0 = success
  1 = definition failed (provider or network error)
  4 = invalid usage or configuration
"""

import asyncio
import logging
import sys
from typing import Optional, TextIO

import httpx

from config_loader import AppConfig, load_config
from coordinator import CoordinatorState, OutcomeKind, RequestCoordinator, TextState, Topic
from errors import NextwikiError
from generation_modes import get_supported_languages, get_supported_modes
from image_fetch import fetch_image
from streaming_session import StreamingSession, build_timeout

logger = logging.getLogger("nextwiki.cli")

USAGE = (
    "Usage:\n"
    "  One-shot:    python3 nextwiki.py <topic> [--lang CODE] [--mode MODE] [--config PATH] [--verbose]\n"
    "  Interactive: python3 nextwiki.py [--lang CODE] [--mode MODE] [--config PATH] [--verbose]"
)


# === Wiring ===

def create_coordinator(
    config: AppConfig,
    text_client: httpx.AsyncClient,
    image_client: httpx.AsyncClient,
    language: Optional[str] = None,
    mode: Optional[str] = None,
) -> RequestCoordinator:
    """Bind sessions and image lookups to shared clients and config."""

    def open_session(topic: Topic) -> StreamingSession:
        return StreamingSession(text_client, config.text, topic.text, language, mode)

    async def lookup_image(topic: Topic) -> str:
        return await fetch_image(image_client, config.image, topic.text)

    return RequestCoordinator(open_session, lookup_image)


def create_clients(
    config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> tuple[httpx.AsyncClient, httpx.AsyncClient]:
    limits = httpx.Limits(max_connections=10, max_keepalive_connections=5, keepalive_expiry=30.0)
    text_client = httpx.AsyncClient(
        timeout=build_timeout(config.text.connect_timeout_ms, config.text.read_timeout_ms),
        limits=limits,
        transport=transport,
    )
    image_client = httpx.AsyncClient(
        timeout=build_timeout(config.image.connect_timeout_ms, config.image.read_timeout_ms),
        limits=limits,
        transport=transport,
    )
    return text_client, image_client


# === Rendering ===

class TerminalRenderer:
    """Coordinator listener that prints the definition as it grows.

    Text is written as deltas; image, timing and errors are written once both
    sides have settled.
    """

    def __init__(self, out: TextIO = sys.stdout, err: TextIO = sys.stderr):
        self.out = out
        self.err = err
        self._topic: Optional[str] = None
        self._printed = 0
        self._finished = False

    def __call__(self, state: CoordinatorState) -> None:
        if state.topic != self._topic:
            self._topic = state.topic
            self._printed = 0
            self._finished = False
            self.out.write(f"\n--- {state.topic} ---\n")

        if len(state.content) > self._printed:
            self.out.write(state.content[self._printed:])
            self._printed = len(state.content)
            self.out.flush()

        if state.loading or self._finished:
            return
        self._finished = True
        self.out.write("\n")

        if state.text_state is TextState.FAILED:
            self.err.write(f"ERROR: {state.error}\n")
        elif not state.content:
            self.out.write("Content could not be generated.\n")
        elif state.truncated:
            self.out.write("(definition may be incomplete)\n")

        if state.image_url:
            self.out.write(f"[image] {state.image_url}\n")
        elif state.image_error:
            self.out.write(f"[image unavailable] {state.image_error}\n")

        if state.elapsed_ms is not None:
            self.out.write(f"--- {state.elapsed_ms:.0f}ms ---\n")
        self.out.flush()


# === Modes ===

async def run_lookup(
    config: AppConfig,
    topic: str,
    language: Optional[str] = None,
    mode: Optional[str] = None,
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """Look up one topic and print it. Returns the process exit code."""
    text_client, image_client = create_clients(config, transport)
    async with text_client, image_client:
        coordinator = create_coordinator(config, text_client, image_client, language, mode)
        coordinator.subscribe(TerminalRenderer(out, err))
        if not coordinator.submit(topic):
            err.write("ERROR: topic must not be empty\n")
            return 4
        outcome = await coordinator.wait()

    if outcome is not None and outcome.kind is OutcomeKind.COMPLETED:
        return 0
    return 1


async def run_interactive(
    config: AppConfig,
    language: Optional[str] = None,
    mode: Optional[str] = None,
    stdin: TextIO = sys.stdin,
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """Read topics line by line until EOF. Starts at config.home_topic.

    Lines are read while the current lookup is still streaming, so a new
    topic supersedes it as soon as it is entered.
    """
    text_client, image_client = create_clients(config, transport)
    async with text_client, image_client:
        coordinator = create_coordinator(config, text_client, image_client, language, mode)
        coordinator.subscribe(TerminalRenderer(out, err))
        err.write("Enter a topic at any time; Ctrl-D quits.\n")
        coordinator.submit(config.home_topic)

        async def read_topics() -> None:
            while True:
                line = await asyncio.to_thread(stdin.readline)
                if not line:
                    return
                if not line.strip():
                    continue
                if not coordinator.submit(line):
                    out.write(f"(already showing {coordinator.topic.text!r})\n")
                    out.flush()

        await asyncio.create_task(read_topics(), name="stdin-reader")
        await coordinator.wait()
        await coordinator.aclose()
    return 0


# === Main Entry Point ===

def parse_args(args: list[str]) -> dict:
    """Parse argv (without program name). Raises ValueError on bad usage."""
    options: dict = {"topic": None, "language": None, "mode": None, "config": None, "verbose": False}
    positional = []

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--lang", "--mode", "--config"):
            if i + 1 >= len(args):
                raise ValueError(f"{arg} requires an argument")
            key = {"--lang": "language", "--mode": "mode", "--config": "config"}[arg]
            options[key] = args[i + 1]
            i += 2
            continue
        if arg in ("-v", "--verbose"):
            options["verbose"] = True
        elif arg.startswith("--"):
            raise ValueError(f"Unknown option: {arg}")
        else:
            positional.append(arg)
        i += 1

    if positional:
        options["topic"] = " ".join(positional)

    if options["language"] is not None and options["language"] not in get_supported_languages():
        raise ValueError(
            f"Unknown language '{options['language']}'. Supported: {get_supported_languages()}"
        )
    if options["mode"] is not None and options["mode"] not in get_supported_modes():
        raise ValueError(
            f"Unknown generation mode '{options['mode']}'. Supported: {get_supported_modes()}"
        )
    return options


def main(argv: Optional[list[str]] = None) -> None:
    args = sys.argv[1:] if argv is None else argv

    if "-h" in args or "--help" in args:
        print(USAGE, file=sys.stderr)
        sys.exit(0)

    try:
        options = parse_args(args)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        sys.exit(4)

    logging.basicConfig(
        level=logging.DEBUG if options["verbose"] else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(options["config"])
    except NextwikiError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(4)

    if options["topic"] is not None:
        code = asyncio.run(
            run_lookup(config, options["topic"], options["language"], options["mode"])
        )
    else:
        try:
            code = asyncio.run(run_interactive(config, options["language"], options["mode"]))
        except KeyboardInterrupt:
            code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
