#!/usr/bin/env python3
"""
nextwiki_server.py — nextwiki HTTP sidecar.

FastAPI application exposing the streaming session and image lookup over HTTP.
Serve with any ASGI server, e.g. `uvicorn nextwiki_server:app --port 3002`.

Endpoints:
  POST /define/stream — Streamed definition (text/event-stream)
  GET  /image         — Image reference for ?topic=
  GET  /healthz       — Liveness probe
  GET  /readyz        — Readiness probe (503 until configured)

Stream framing matches the upstream chat completion format, so the same
frame parser reads both:
  data: {"choices":[{"delta":{"content":"..."}}]}
  data: [DONE]                         (clean finish)
  event: error / data: {"error": ...}  (failure, sent instead of [DONE])
"""

import json
import logging
import os
import time
from typing import Any, AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from config_loader import AppConfig, load_config
from errors import NextwikiError
from generation_modes import (
    get_supported_languages,
    get_supported_modes,
    is_supported_language,
    is_supported_mode,
)
from image_fetch import fetch_image
from streaming_session import StreamChunk, StreamingSession, build_timeout

logger = logging.getLogger("nextwiki.server")

START_TIME = time.monotonic()


# --- Upstream Client Pool ---


class UpstreamClientPool:
    """One httpx.AsyncClient per upstream, created lazily on first use."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._clients: dict[str, httpx.AsyncClient] = {}
        self._transport = transport

    def get_or_create(
        self,
        name: str,
        connect_timeout_ms: int = 5000,
        read_timeout_ms: int = 60000,
    ) -> httpx.AsyncClient:
        if name in self._clients:
            return self._clients[name]

        client = httpx.AsyncClient(
            timeout=build_timeout(connect_timeout_ms, read_timeout_ms),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )
        self._clients[name] = client
        return client

    async def close_all(self) -> None:
        """Close all upstream clients."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    @property
    def size(self) -> int:
        return len(self._clients)


class ServerState:
    def __init__(self) -> None:
        self.config: Optional[AppConfig] = None
        self.pool = UpstreamClientPool()


state = ServerState()


def configure(
    config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> None:
    """Install config (and optionally a transport for every upstream client)."""
    state.config = config
    state.pool = UpstreamClientPool(transport)


def _not_ready() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": "NOT_CONFIGURED", "message": "Server configuration not loaded"},
    )


def _bad_request(error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": error, "message": message})


# --- Frame Rendering ---


def render_chunk(chunk: StreamChunk) -> str:
    if chunk.is_error:
        payload = {"error": {"code": "provider_error", "message": chunk.text}}
        return f"event: error\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
    payload = {"choices": [{"index": 0, "delta": {"content": chunk.text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def render_stream(session: StreamingSession) -> AsyncGenerator[str, None]:
    """Re-frame session chunks. An error frame replaces the [DONE] terminator."""
    async for chunk in session.deltas():
        yield render_chunk(chunk)
        if chunk.is_error:
            return
    yield "data: [DONE]\n\n"


# --- Application ---

app = FastAPI(title="nextwiki", docs_url=None, redoc_url=None)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    """Liveness probe. Process alive, event loop responsive."""
    return {
        "status": "alive",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
    }


@app.get("/readyz")
async def readyz() -> JSONResponse:
    """Readiness probe. Ready once configuration has been loaded."""
    if state.config is None:
        return _not_ready()
    return JSONResponse(content={
        "status": "ready",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
        "upstream_clients": state.pool.size,
    })


@app.post("/define/stream")
async def define_stream(request: Request):
    """Stream a definition.

    Body: {"topic": str, "language"?: str, "mode"?: str}
    """
    if state.config is None:
        return _not_ready()

    body = await request.body()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return _bad_request("INVALID_JSON", "Request body is not valid JSON")
    if not isinstance(payload, dict):
        return _bad_request("INVALID_BODY", "Request body must be a JSON object")

    topic = payload.get("topic")
    if not isinstance(topic, str) or not topic.strip():
        return _bad_request("MISSING_TOPIC", "'topic' must be a non-empty string")

    language = payload.get("language") or state.config.text.language
    if not isinstance(language, str) or not is_supported_language(language):
        return _bad_request(
            "INVALID_LANGUAGE",
            f"Unknown language '{language}'. Supported: {get_supported_languages()}",
        )

    mode = payload.get("mode") or state.config.text.mode
    if not isinstance(mode, str) or not is_supported_mode(mode):
        return _bad_request(
            "INVALID_MODE",
            f"Unknown generation mode '{mode}'. Supported: {get_supported_modes()}",
        )

    client = state.pool.get_or_create(
        "text",
        connect_timeout_ms=state.config.text.connect_timeout_ms,
        read_timeout_ms=state.config.text.read_timeout_ms,
    )
    session = StreamingSession(client, state.config.text, topic.strip(), language, mode)
    logger.info("Streaming definition for %r (mode=%s, language=%s)", session.topic, mode, language)

    return StreamingResponse(
        render_stream(session),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/image")
async def image(topic: str = "") -> JSONResponse:
    """Image reference for a topic."""
    if state.config is None:
        return _not_ready()
    if not topic.strip():
        return _bad_request("MISSING_TOPIC", "'topic' must be a non-empty string")

    client = state.pool.get_or_create(
        "image",
        connect_timeout_ms=state.config.image.connect_timeout_ms,
        read_timeout_ms=state.config.image.read_timeout_ms,
    )
    try:
        url = await fetch_image(client, state.config.image, topic.strip())
    except NextwikiError as e:
        return JSONResponse(status_code=502, content=e.to_dict())

    return JSONResponse(content={"topic": topic.strip(), "image_url": url})


# --- Startup/Shutdown ---


@app.on_event("startup")
async def startup() -> None:
    """Load config unless one was installed with configure()."""
    if state.config is None:
        try:
            configure(load_config(os.environ.get("NEXTWIKI_CONFIG")))
        except NextwikiError as e:
            print(f"[nextwiki-server] Config error: {e}", flush=True)
            return
    print(f"[nextwiki-server] Text model: {state.config.text.model}", flush=True)
    print(f"[nextwiki-server] Default mode: {state.config.text.mode}", flush=True)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Close upstream clients."""
    print("[nextwiki-server] Shutting down, closing upstream clients...", flush=True)
    await state.pool.close_all()
    print("[nextwiki-server] Shutdown complete", flush=True)
