"""Tests for the chat API router."""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from folio.app import create_app
from folio.config import AppConfig, AppSettings, BackendConfig
from folio.models import AckResult
from folio.services.backend import build_http_client
from folio.services.stream_client import StreamCompletionClient


def _sse(event: str, data: Any) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode("utf-8")


REPLY = [
    _sse("thread", {"threadId": "thr-1"}),
    _sse("delta", {"messageId": "m1", "delta": "See "}),
    _sse("delta", {"messageId": "m1", "delta": "Vaswani et al."}),
    _sse(
        "proposed_action",
        {
            "messageId": "m1",
            "toolcallId": "tc-1",
            "actions": [
                {"id": "a1", "actionType": "create_item", "proposedData": {"item": {"title": "Paper", "semanticScholarId": "S1"}}}
            ],
        },
    ),
    _sse("complete", {"messageId": "m1"}),
    _sse("done", {"messageId": "m1"}),
]


def _streaming(chunks: list[bytes], hold_open: bool = False) -> httpx.Response:
    async def body():
        for chunk in chunks:
            yield chunk
        if hold_open:
            await asyncio.sleep(30)

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


def _make_app(tmp_path: Path, library, viewer, handler, backend: AsyncMock | None = None) -> FastAPI:
    backend_config = BackendConfig(base_url="https://backend.test", api_key="test-key")
    config = AppConfig(backend=backend_config, app=AppSettings(data_dir=tmp_path))
    if backend is None:
        backend = AsyncMock()
        backend.acknowledge = AsyncMock(return_value=AckResult())
        backend.update_actions = AsyncMock(return_value=[])
    http = build_http_client(backend_config, streaming=True, transport=httpx.MockTransport(handler))
    return create_app(
        config,
        library=library,
        viewer=viewer,
        backend=backend,
        client=StreamCompletionClient(backend_config, http_client=http),
    )


def _wait_for(client: TestClient, predicate, timeout: float = 2.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout
    state = client.get("/api/chat/state").json()
    while not predicate(state) and time.monotonic() < deadline:
        time.sleep(0.01)
        state = client.get("/api/chat/state").json()
    return state


class TestSendMessage:
    def test_send_streams_reply_into_state(self, tmp_path, library, viewer) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return _streaming(REPLY)

        app = _make_app(tmp_path, library, viewer, handler)
        with TestClient(app) as client:
            resp = client.post("/api/chat", json={"content": "Who introduced transformers?"})
            assert resp.status_code == 202
            assert resp.json()["thread_key"] == "default"
            assert resp.json()["generation"] >= 1

            state = _wait_for(client, lambda s: s["done"])
            assert state["done"] is True
            assert state["streaming"] is False
            assert state["thread_id"] == "thr-1"
            assistant = [m for m in state["messages"] if m["id"] == "m1"][0]
            assert assistant["content"] == "See Vaswani et al."
            assert [a["id"] for a in state["actions"]] == ["a1"]

        body = json.loads(requests[0].content)
        assert body["messages"] == [{"role": "user", "content": "Who introduced transformers?"}]

    def test_wrong_content_type_returns_415(self, tmp_path, library, viewer) -> None:
        app = _make_app(tmp_path, library, viewer, lambda request: _streaming(REPLY))
        with TestClient(app) as client:
            resp = client.post("/api/chat", content=b"not json", headers={"Content-Type": "text/plain"})
            assert resp.status_code == 415

    def test_empty_content_returns_422(self, tmp_path, library, viewer) -> None:
        app = _make_app(tmp_path, library, viewer, lambda request: _streaming(REPLY))
        with TestClient(app) as client:
            resp = client.post("/api/chat", json={"content": ""})
            assert resp.status_code == 422
            assert isinstance(resp.json()["detail"], list)

    def test_non_object_body_returns_422(self, tmp_path, library, viewer) -> None:
        app = _make_app(tmp_path, library, viewer, lambda request: _streaming(REPLY))
        with TestClient(app) as client:
            resp = client.post("/api/chat", json=["hello"])
            assert resp.status_code == 422

    def test_malformed_json_returns_400(self, tmp_path, library, viewer) -> None:
        app = _make_app(tmp_path, library, viewer, lambda request: _streaming(REPLY))
        with TestClient(app) as client:
            resp = client.post("/api/chat", content=b"{not json", headers={"Content-Type": "application/json"})
            assert resp.status_code == 400

    def test_backend_error_surfaces_in_state(self, tmp_path, library, viewer) -> None:
        app = _make_app(tmp_path, library, viewer, lambda request: httpx.Response(401, json={"detail": "bad key"}))
        with TestClient(app) as client:
            client.post("/api/chat", json={"content": "hi"})
            state = _wait_for(client, lambda s: s["error"] is not None)
            assert state["error"]["kind"] == "auth"
            assert state["done"] is True
            assert state["streaming"] is False


class TestCancelAndReset:
    def test_cancel_live_stream(self, tmp_path, library, viewer) -> None:
        backend = AsyncMock()
        backend.update_actions = AsyncMock(return_value=[])
        head = REPLY[:2]
        app = _make_app(tmp_path, library, viewer, lambda request: _streaming(head, hold_open=True), backend)
        with TestClient(app) as client:
            client.post("/api/chat", json={"content": "hi"})
            _wait_for(client, lambda s: s["thread_id"] == "thr-1" and s["streaming"])

            resp = client.post("/api/chat/cancel")
            assert resp.status_code == 200
            assert resp.json() == {"status": "cancelled"}
            state = client.get("/api/chat/state").json()
            assert state["streaming"] is False
            assert [m["status"] for m in state["messages"] if m["id"] == "m1"] == ["canceled"]

        backend.cancel_completion.assert_awaited_once()
        thread_id, message_id, partial = backend.cancel_completion.await_args.args
        assert (thread_id, message_id, partial) == ("thr-1", "m1", "See ")

    def test_cancel_when_idle(self, tmp_path, library, viewer) -> None:
        app = _make_app(tmp_path, library, viewer, lambda request: _streaming(REPLY))
        with TestClient(app) as client:
            assert client.post("/api/chat/cancel").json() == {"status": "idle"}

    def test_reset_clears_thread(self, tmp_path, library, viewer) -> None:
        app = _make_app(tmp_path, library, viewer, lambda request: _streaming(REPLY))
        with TestClient(app) as client:
            client.post("/api/chat", json={"content": "hi"})
            _wait_for(client, lambda s: s["done"])

            resp = client.post("/api/chat/reset")
            assert resp.json() == {"status": "reset"}
            state = client.get("/api/chat/state").json()
            assert state["thread_id"] is None
            assert state["messages"] == []
            assert state["actions"] == []


class TestControllerMissing:
    def test_returns_503_without_controller(self) -> None:
        from folio.routers.chat import router

        app = FastAPI()
        app.include_router(router, prefix="/api")
        client = TestClient(app)
        assert client.get("/api/chat/state").status_code == 503
        resp = client.post("/api/chat", json={"content": "hi"})
        assert resp.status_code == 503
