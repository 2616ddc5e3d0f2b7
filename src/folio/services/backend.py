"""HTTP client for the origin service: acknowledgments, status updates, indexing."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from ..config import BackendConfig
from ..models import AckError, AckLink, AckResult, LibraryCoordinate

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Non-2xx response (or transport failure, with ``status_code=0``) from the backend."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Backend error (HTTP {status_code}): {detail}" if status_code else f"Backend error: {detail}")


def build_http_client(config: BackendConfig, *, streaming: bool = False, **kwargs: Any) -> httpx.AsyncClient:
    """Create an authenticated AsyncClient for the backend.

    Streaming clients get no read timeout; the completion body stays open for as
    long as the agent is working.
    """
    timeout = httpx.Timeout(
        connect=config.connect_timeout,
        read=None if streaming else config.request_timeout,
        write=config.request_timeout,
        pool=config.request_timeout,
    )
    # SECURITY-REVIEW: verify=False only when user explicitly sets verify_ssl: false in config
    return httpx.AsyncClient(
        base_url=config.base_url,
        headers={"Authorization": f"Bearer {config.api_key}"},
        verify=config.verify_ssl,
        timeout=timeout,
        **kwargs,
    )


class BackendClient:
    def __init__(self, config: BackendConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = http_client or build_http_client(config)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise BackendError(0, f"{type(e).__name__}: {e}") from e
        if response.status_code >= 400:
            detail = response.text[:500]
            logger.warning("Backend %s %s failed: HTTP %d", method, path, response.status_code)
            raise BackendError(response.status_code, detail)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def acknowledge(self, links: list[AckLink], run_id: str | None = None) -> AckResult:
        """Confirm that actions were durably applied, carrying the created identifiers."""
        logger.info("Acknowledging %d action(s)", len(links))
        payload: dict[str, Any] = {"links": [link.model_dump() for link in links]}
        if run_id:
            payload["run_id"] = run_id
        data = await self._request("POST", "/api/v1/agent-actions/ack", payload)
        if not data:
            return AckResult(success=True, updated=len(links))
        return AckResult.model_validate(data)

    async def update_actions(self, updates: list[dict[str, Any]]) -> list[AckError]:
        """Persist status changes for several actions in one call; returns per-id errors."""
        data = await self._request("PATCH", "/api/v1/agent-actions/batch", {"updates": updates})
        return [AckError.model_validate(e) for e in data.get("errors", []) or []]

    async def index_records(self, coords: list[LibraryCoordinate]) -> None:
        await self._request(
            "POST",
            "/api/v1/library/index",
            {"items": [{"library_id": c.library_id, "key": c.key} for c in coords]},
        )

    async def cancel_completion(
        self, thread_id: str | None, assistant_message_id: str | None = None, partial_content: str = ""
    ) -> None:
        """Tell the backend to stop generating. Best-effort: failures are logged only."""
        try:
            await self._request(
                "POST",
                "/api/v1/chat/cancel",
                {
                    "thread_id": thread_id,
                    "assistant_message_id": assistant_message_id,
                    "partial_content": partial_content,
                },
            )
        except BackendError as e:
            logger.warning("Cancel request failed: %s", e)


@dataclass
class _PendingUpdate:
    updates: dict[str, Any]
    waiters: list[asyncio.Future[None]] = field(default_factory=list)


Dispatch = Callable[[list[dict[str, Any]]], Awaitable[list[AckError]]]


class StatusUpdateBatcher:
    """Coalesces per-action status updates into batched PATCH calls.

    Updates for one action id merge (later keys win) until the next flush, which
    happens ``flush_interval`` seconds after the first enqueue or as soon as
    ``max_pending`` distinct ids are waiting.
    """

    def __init__(self, dispatch: Dispatch, flush_interval: float = 0.1, max_pending: int = 25) -> None:
        self._dispatch = dispatch
        self._flush_interval = flush_interval
        self._max_pending = max_pending
        self._pending: dict[str, _PendingUpdate] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._flush_lock = asyncio.Lock()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue(self, action_id: str, updates: dict[str, Any]) -> asyncio.Future[None]:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()
        entry = self._pending.get(action_id)
        if entry:
            entry.updates = {**entry.updates, **updates}
            entry.waiters.append(fut)
        else:
            self._pending[action_id] = _PendingUpdate(updates=dict(updates), waiters=[fut])

        if len(self._pending) >= self._max_pending:
            self._cancel_timer()
            self._start_flush()
        elif self._timer is None:
            self._timer = loop.call_later(self._flush_interval, self._on_timer)
        return fut

    async def update(self, action_id: str, **updates: Any) -> None:
        await self.enqueue(action_id, updates)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._start_flush()

    def _start_flush(self) -> None:
        task = asyncio.get_running_loop().create_task(self.flush())
        task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
        self._flush_task = task

    async def flush(self) -> None:
        self._cancel_timer()
        async with self._flush_lock:
            while self._pending:
                batch = self._pending
                self._pending = {}
                await self._dispatch_batch(batch)

    async def _dispatch_batch(self, batch: dict[str, _PendingUpdate]) -> None:
        updates = [{"action_id": action_id, **entry.updates} for action_id, entry in batch.items()]
        try:
            errors = await self._dispatch(updates)
        except Exception as e:
            logger.warning("Status update batch of %d failed: %s", len(updates), e)
            for entry in batch.values():
                for fut in entry.waiters:
                    if not fut.done():
                        fut.set_exception(e)
            return

        error_map = {err.action_id: err for err in errors}
        for action_id, entry in batch.items():
            err = error_map.get(action_id)
            for fut in entry.waiters:
                if fut.done():
                    continue
                if err:
                    fut.set_exception(BackendError(0, f"{err.code}: {err.detail}"))
                else:
                    fut.set_result(None)

    def dispose(self) -> None:
        """Drop queued updates; their waiters are cancelled."""
        self._cancel_timer()
        for entry in self._pending.values():
            for fut in entry.waiters:
                if not fut.done():
                    fut.cancel()
        self._pending.clear()
