"""Tests for the backend HTTP client and the status update batcher."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from folio.models import AckError, AckLink, LibraryCoordinate
from folio.services.backend import BackendClient, BackendError, StatusUpdateBatcher, build_http_client


def _client(backend_config, handler) -> BackendClient:
    http = build_http_client(backend_config, transport=httpx.MockTransport(handler))
    return BackendClient(backend_config, http_client=http)


class TestBackendClient:
    @pytest.mark.asyncio
    async def test_acknowledge_posts_links(self, backend_config) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "updated": 1, "errors": []})

        client = _client(backend_config, handler)
        result = await client.acknowledge([AckLink(action_id="a1", result_data={"library_id": 1, "key": "K"})])
        await client.aclose()

        assert result.success and result.updated == 1
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v1/agent-actions/ack"
        assert request.headers["authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body == {"links": [{"action_id": "a1", "result_data": {"library_id": 1, "key": "K"}}]}

    @pytest.mark.asyncio
    async def test_acknowledge_empty_body_counts_as_success(self, backend_config) -> None:
        client = _client(backend_config, lambda request: httpx.Response(204))
        result = await client.acknowledge([AckLink(action_id="a1", result_data={}), AckLink(action_id="a2", result_data={})])
        assert result.success and result.updated == 2

    @pytest.mark.asyncio
    async def test_http_error_raises_backend_error(self, backend_config) -> None:
        client = _client(backend_config, lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(BackendError) as exc_info:
            await client.acknowledge([AckLink(action_id="a1", result_data={})])
        assert exc_info.value.status_code == 503
        assert "maintenance" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_transport_error_raises_backend_error(self, backend_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client(backend_config, handler)
        with pytest.raises(BackendError) as exc_info:
            await client.index_records([LibraryCoordinate(library_id=1, key="K")])
        assert exc_info.value.status_code == 0

    @pytest.mark.asyncio
    async def test_update_actions_returns_errors(self, backend_config) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert request.method == "PATCH"
            return httpx.Response(200, json={"errors": [{"action_id": "a2", "code": "not_found", "detail": "gone"}]})

        client = _client(backend_config, handler)
        errors = await client.update_actions([{"action_id": "a1", "status": "rejected"}, {"action_id": "a2"}])
        assert errors == [AckError(action_id="a2", code="not_found", detail="gone")]
        assert seen[0]["updates"][0] == {"action_id": "a1", "status": "rejected"}

    @pytest.mark.asyncio
    async def test_index_records_payload(self, backend_config) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={})

        client = _client(backend_config, handler)
        await client.index_records([LibraryCoordinate(library_id=1, key="K1")])
        assert seen == [{"items": [{"library_id": 1, "key": "K1"}]}]

    @pytest.mark.asyncio
    async def test_cancel_completion_swallows_failures(self, backend_config) -> None:
        client = _client(backend_config, lambda request: httpx.Response(500))
        await client.cancel_completion("thread-1", "msg-1", "partial")


class TestStatusUpdateBatcher:
    @pytest.mark.asyncio
    async def test_updates_for_same_id_merge(self) -> None:
        dispatch = AsyncMock(return_value=[])
        batcher = StatusUpdateBatcher(dispatch, flush_interval=0.01)
        f1 = batcher.enqueue("a1", {"status": "applied"})
        f2 = batcher.enqueue("a1", {"status": "undone"})
        f3 = batcher.enqueue("a2", {"status": "rejected"})
        await asyncio.gather(f1, f2, f3)
        dispatch.assert_awaited_once_with(
            [{"action_id": "a1", "status": "undone"}, {"action_id": "a2", "status": "rejected"}]
        )

    @pytest.mark.asyncio
    async def test_flushes_when_max_pending_reached(self) -> None:
        dispatch = AsyncMock(return_value=[])
        batcher = StatusUpdateBatcher(dispatch, flush_interval=60.0, max_pending=2)
        f1 = batcher.enqueue("a1", {"status": "applied"})
        f2 = batcher.enqueue("a2", {"status": "applied"})
        await asyncio.wait_for(asyncio.gather(f1, f2), timeout=1.0)
        assert dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_per_id_error_fails_only_that_waiter(self) -> None:
        dispatch = AsyncMock(return_value=[AckError(action_id="a2", code="conflict", detail="stale")])
        batcher = StatusUpdateBatcher(dispatch, flush_interval=0.01)
        ok = batcher.enqueue("a1", {"status": "applied"})
        bad = batcher.enqueue("a2", {"status": "applied"})
        await ok
        with pytest.raises(BackendError, match="conflict"):
            await bad

    @pytest.mark.asyncio
    async def test_dispatch_failure_fails_every_waiter(self) -> None:
        dispatch = AsyncMock(side_effect=BackendError(500, "down"))
        batcher = StatusUpdateBatcher(dispatch, flush_interval=0.01)
        futures = [batcher.enqueue("a1", {"status": "applied"}), batcher.enqueue("a2", {"status": "applied"})]
        results = await asyncio.gather(*futures, return_exceptions=True)
        assert all(isinstance(r, BackendError) for r in results)

    @pytest.mark.asyncio
    async def test_explicit_flush(self) -> None:
        dispatch = AsyncMock(return_value=[])
        batcher = StatusUpdateBatcher(dispatch, flush_interval=60.0)
        await asyncio.gather(batcher.update("a1", status="rejected"), batcher.flush())
        assert batcher.pending_count == 0
        dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dispose_cancels_waiters(self) -> None:
        dispatch = AsyncMock(return_value=[])
        batcher = StatusUpdateBatcher(dispatch, flush_interval=60.0)
        fut = batcher.enqueue("a1", {"status": "applied"})
        batcher.dispose()
        assert fut.cancelled()
        assert batcher.pending_count == 0
        dispatch.assert_not_awaited()
