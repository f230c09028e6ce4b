"""Tests for the streaming session against a mocked text endpoint.

Validates:
- Deltas arrive in order across arbitrary byte splits
- Non-success status → exactly one error chunk with status and body
- Transport failures fold into one error chunk
- Missing [DONE] ends silently and is reported as truncation
- Stopping early closes the upstream response
"""

import asyncio
import json
import os
import sys

import httpx
import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config_loader import TextEndpointConfig
from streaming_session import StreamChunk, StreamingSession

CONFIG = TextEndpointConfig(
    base_url="http://upstream.test/api/v1",
    api_key="sk-test",
    model="test/model",
    app_title="nextwiki",
)


def run(coro):
    return asyncio.run(coro)


def frame(content: str) -> bytes:
    payload = json.dumps({"choices": [{"delta": {"content": content}}]}, ensure_ascii=False)
    return f"data: {payload}\n\n".encode("utf-8")


def body_stream(parts: list[bytes], served: list = None):
    async def gen():
        for part in parts:
            if served is not None:
                served.append(part)
            yield part
    return gen()


class Upstream:
    """MockTransport handler recording requests and responses."""

    def __init__(self, make_response):
        self.make_response = make_response
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.make_response(request)
        self.responses.append(response)
        return response


async def collect(upstream: Upstream, **kwargs) -> tuple[list[StreamChunk], StreamingSession]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        session = StreamingSession(client, CONFIG, "Gravity", **kwargs)
        chunks = [chunk async for chunk in session.deltas()]
    return chunks, session


# ── Happy path ────────────────────────────────────────────────────────


class TestStreaming:
    def test_chunks_in_order(self):
        upstream = Upstream(lambda r: httpx.Response(
            200, content=body_stream([frame("Gravity "), frame("attracts."), b"data: [DONE]\n\n"])
        ))
        chunks, session = run(collect(upstream))
        assert chunks == [StreamChunk("Gravity "), StreamChunk("attracts.")]
        assert session.completed is True
        assert session.truncated is False

    def test_frames_split_mid_character(self):
        raw = frame("Schwerkraft ist überall 🌍") + b"data: [DONE]\n\n"
        parts = [raw[i:i + 7] for i in range(0, len(raw), 7)]
        upstream = Upstream(lambda r: httpx.Response(200, content=body_stream(parts)))
        chunks, _ = run(collect(upstream))
        assert [c.text for c in chunks] == ["Schwerkraft ist überall 🌍"]

    def test_request_shape(self):
        upstream = Upstream(lambda r: httpx.Response(200, content=b"data: [DONE]\n\n"))
        run(collect(upstream, language="fr", mode="simple"))
        request = upstream.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://upstream.test/api/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["X-Title"] == "nextwiki"
        body = json.loads(request.content)
        assert body["stream"] is True
        assert body["model"] == "test/model"
        assert "French" in body["messages"][0]["content"]

    def test_malformed_frame_skipped(self):
        upstream = Upstream(lambda r: httpx.Response(
            200, content=body_stream([frame("A"), b"data: {not json\n\n", frame("B"), b"data: [DONE]\n\n"])
        ))
        chunks, session = run(collect(upstream))
        assert [c.text for c in chunks] == ["A", "B"]
        assert session.stats.malformed_frames == 1

    def test_unknown_mode_rejected_before_request(self):
        upstream = Upstream(lambda r: httpx.Response(200, content=b""))
        with pytest.raises(ValueError, match="Unknown generation mode"):
            run(collect(upstream, mode="poetic"))
        assert upstream.requests == []


# ── Errors ────────────────────────────────────────────────────────────


class TestErrors:
    def test_http_error_single_error_chunk(self):
        upstream = Upstream(lambda r: httpx.Response(429, text="rate limited, slow down"))
        chunks, session = run(collect(upstream))
        assert len(chunks) == 1
        assert chunks[0].is_error is True
        assert "429" in chunks[0].text
        assert "rate limited, slow down" in chunks[0].text
        assert "Gravity" in chunks[0].text
        assert session.failed is True
        assert session.truncated is False

    def test_http_error_empty_body(self):
        upstream = Upstream(lambda r: httpx.Response(500))
        chunks, _ = run(collect(upstream))
        assert "(empty body)" in chunks[0].text

    def test_no_retry(self):
        upstream = Upstream(lambda r: httpx.Response(503, text="busy"))
        run(collect(upstream))
        assert len(upstream.requests) == 1

    def test_connect_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused")
        chunks, _ = run(collect(Upstream(refuse)))
        assert len(chunks) == 1
        assert chunks[0].is_error
        assert "Connection failed" in chunks[0].text

    def test_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout("read timed out")
        chunks, _ = run(collect(Upstream(slow)))
        assert chunks[0].is_error
        assert "timed out" in chunks[0].text

    def test_drop_mid_stream_after_chunks(self):
        async def dropping():
            yield frame("A")
            yield frame("B")
            raise httpx.ReadError("connection reset")

        upstream = Upstream(lambda r: httpx.Response(200, content=dropping()))
        chunks, _ = run(collect(upstream))
        assert [c.text for c in chunks[:2]] == ["A", "B"]
        assert chunks[2].is_error
        assert len(chunks) == 3

    def test_error_frame_becomes_error_chunk(self):
        error = b'event: error\ndata: {"error": {"code": "provider_error", "message": "model overloaded"}}\n\n'
        upstream = Upstream(lambda r: httpx.Response(200, content=body_stream([frame("A"), error])))
        chunks, session = run(collect(upstream))
        assert chunks[0] == StreamChunk("A")
        assert chunks[1].is_error
        assert "model overloaded" in chunks[1].text
        assert len(chunks) == 2
        assert session.failed is True
        assert session.truncated is False
        assert session.completed is False


# ── Truncation and early stop ─────────────────────────────────────────


class TestTermination:
    def test_empty_body_is_truncation(self):
        upstream = Upstream(lambda r: httpx.Response(200, content=b""))
        chunks, session = run(collect(upstream))
        assert chunks == []
        assert session.truncated is True

    def test_close_before_done_is_truncation(self):
        upstream = Upstream(lambda r: httpx.Response(200, content=body_stream([frame("A"), b"data: {\"cho"])))
        chunks, session = run(collect(upstream))
        assert chunks == [StreamChunk("A")]
        assert session.completed is False
        assert session.truncated is True

    def test_consumer_stop_closes_response(self):
        served: list = []
        parts = [frame(str(i)) for i in range(50)] + [b"data: [DONE]\n\n"]
        upstream = Upstream(lambda r: httpx.Response(200, content=body_stream(parts, served)))

        async def first_only():
            async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
                session = StreamingSession(client, CONFIG, "Gravity")
                stream = session.deltas()
                first = await stream.__anext__()
                await stream.aclose()
                return first

        first = run(first_only())
        assert first == StreamChunk("0")
        assert upstream.responses[0].is_closed
        assert len(served) < len(parts)

    def test_each_call_is_a_fresh_request(self):
        upstream = Upstream(lambda r: httpx.Response(200, content=body_stream([frame("A"), b"data: [DONE]\n\n"])))

        async def twice():
            async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
                session = StreamingSession(client, CONFIG, "Gravity")
                first = [c async for c in session.deltas()]
                second = [c async for c in session.deltas()]
                return first, second

        first, second = run(twice())
        assert first == second == [StreamChunk("A")]
        assert len(upstream.requests) == 2
