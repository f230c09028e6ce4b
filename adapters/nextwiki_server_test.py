#!/usr/bin/env python3
"""
nextwiki_server_test.py — nextwiki HTTP sidecar tests

Tests health endpoints, request validation, /define/stream framing and
/image lookups with mocked upstreams.
"""

import asyncio
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from starlette.testclient import TestClient

import nextwiki_server
from config_loader import AppConfig, ImageEndpointConfig, TextEndpointConfig
from frame_parser import FrameKind, ParseStats, iter_deltas, parse_frame
from nextwiki_server import app, configure, render_chunk
from streaming_session import StreamChunk

client = TestClient(app)

CONFIG = AppConfig(
    text=TextEndpointConfig(base_url="http://text.test/v1", api_key="sk-test", model="test/model"),
    image=ImageEndpointConfig(base_url="http://images.test/v1", api_key="px-test"),
)


def frame(content: str) -> bytes:
    payload = json.dumps({"choices": [{"delta": {"content": content}}]})
    return f"data: {payload}\n\n".encode("utf-8")


def upstream(request: httpx.Request) -> httpx.Response:
    """Both mocked upstreams, routed by host."""
    if request.url.host == "text.test":
        body = json.loads(request.content)
        if "Broken" in body["messages"][0]["content"]:
            return httpx.Response(500, text="model overloaded")
        return httpx.Response(200, content=frame("Gravity ") + frame("attracts.") + b"data: [DONE]\n\n")
    if request.url.params["query"] == "Nothing":
        return httpx.Response(200, json={"photos": []})
    return httpx.Response(200, json={"photos": [{"src": {"landscape": "http://img/g.jpg"}}]})


@pytest.fixture(autouse=True)
def configured():
    configure(CONFIG, transport=httpx.MockTransport(upstream))
    yield
    nextwiki_server.state.config = None


def read_frames(text: str) -> list:
    return [parse_frame(line) for line in text.splitlines() if line]


def read_deltas(text: str, stats: ParseStats) -> list:
    """Run a response body back through the stream parser."""
    async def lines():
        for line in text.splitlines():
            yield line

    async def collect():
        return [delta async for delta in iter_deltas(lines(), stats)]

    return asyncio.run(collect())


# --- Health ---


def test_healthz_returns_200():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "alive"


def test_readyz_returns_200_when_configured():
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ready"


def test_readyz_returns_503_without_config():
    nextwiki_server.state.config = None
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["error"] == "NOT_CONFIGURED"


# --- /define/stream ---


def test_define_stream_frames():
    resp = client.post("/define/stream", json={"topic": "Gravity"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    frames = read_frames(resp.text)
    assert [f.content for f in frames if f.kind is FrameKind.DATA] == ["Gravity ", "attracts."]
    assert frames[-1].kind is FrameKind.DONE


def test_define_stream_upstream_error_frame():
    resp = client.post("/define/stream", json={"topic": "Broken"})
    assert resp.status_code == 200
    assert "event: error" in resp.text
    assert "[DONE]" not in resp.text
    stats = ParseStats()
    assert read_deltas(resp.text, stats) == []
    assert stats.done is False
    assert stats.malformed_frames == 0
    assert "HTTP 500" in stats.error
    assert "model overloaded" in stats.error


def test_error_frame_read_back_as_failure():
    body = render_chunk(StreamChunk("Gravity ")) + render_chunk(
        StreamChunk("Connection failed: reset", is_error=True)
    )
    stats = ParseStats()
    assert read_deltas(body, stats) == ["Gravity "]
    assert stats.done is False
    assert stats.error == "Connection failed: reset"


def test_error_frame_keeps_non_ascii():
    rendered = render_chunk(StreamChunk("Échec pour « 引力 »", is_error=True))
    assert "Échec pour « 引力 »" in rendered
    assert "\\u" not in rendered


def test_define_stream_invalid_json_returns_400():
    resp = client.post("/define/stream", content=b"{nope", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "INVALID_JSON"


def test_define_stream_non_object_returns_400():
    resp = client.post("/define/stream", json=["Gravity"])
    assert resp.status_code == 400
    assert resp.json()["error"] == "INVALID_BODY"


def test_define_stream_missing_topic_returns_400():
    resp = client.post("/define/stream", json={"topic": "   "})
    assert resp.status_code == 400
    assert resp.json()["error"] == "MISSING_TOPIC"


def test_define_stream_unknown_language_returns_400():
    resp = client.post("/define/stream", json={"topic": "Gravity", "language": "xx"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "INVALID_LANGUAGE"


def test_define_stream_unknown_mode_returns_400():
    resp = client.post("/define/stream", json={"topic": "Gravity", "mode": ["concise"]})
    assert resp.status_code == 400
    assert resp.json()["error"] == "INVALID_MODE"


def test_define_stream_not_configured_returns_503():
    nextwiki_server.state.config = None
    resp = client.post("/define/stream", json={"topic": "Gravity"})
    assert resp.status_code == 503


# --- /image ---


def test_image_returns_url():
    resp = client.get("/image", params={"topic": " Gravity "})
    assert resp.status_code == 200
    assert resp.json() == {"topic": "Gravity", "image_url": "http://img/g.jpg"}


def test_image_missing_topic_returns_400():
    resp = client.get("/image")
    assert resp.status_code == 400
    assert resp.json()["error"] == "MISSING_TOPIC"


def test_image_no_candidate_returns_502():
    resp = client.get("/image", params={"topic": "Nothing"})
    assert resp.status_code == 502
    assert resp.json()["code"] == "image_error"
