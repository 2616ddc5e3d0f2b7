"""One-shot terminal chat against the completion backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import AppConfig, ensure_data_dir
from ..db import init_db
from ..models import ToolCall
from ..services.backend import BackendClient
from ..services.event_bus import EventBus
from ..services.library import LibraryDatabase
from ..services.references import ExternalReferenceResolver
from ..services.stream_client import StreamCompletionClient
from ..services.thread import ThreadController
from ..services.viewer import HeadlessViewer
from . import renderer

logger = logging.getLogger(__name__)

_DONE_TOOLCALL_STATUSES = ("completed", "success", "error", "failed")


async def _render_events(queue: asyncio.Queue[dict[str, Any]]) -> None:
    """Render live progress (reasoning and tool calls) while the stream runs."""
    while True:
        event = await queue.get()
        kind = event.get("type")
        data = event.get("data", {})
        if kind == "message_delta" and data.get("channel") == "reasoning":
            renderer.render_reasoning(data.get("delta", ""))
        elif kind == "toolcall_updated":
            toolcall = ToolCall.model_validate(data)
            if (toolcall.status or "").lower() in _DONE_TOOLCALL_STATUSES:
                renderer.render_toolcall(toolcall)


def _render_turn(controller: ThreadController) -> None:
    state = controller.state
    message_id = state.active_message_id
    message = state.messages.get(message_id) if message_id else None
    if message is not None:
        renderer.render_token(message.content)
    renderer.render_response_end()
    if message is not None:
        for warning in message.warnings:
            renderer.render_warning(warning)
        if message.status == "error":
            renderer.render_error(message.error_message or "Request failed", message.error_kind)
        elif message.status == "canceled":
            renderer.render_info("Response canceled")
    elif state.last_error is not None:
        renderer.render_error(state.last_error["message"] or "Request failed", state.last_error["kind"])
    renderer.render_citations(state.citation_entries)
    renderer.render_actions(controller.store.all())


async def run_chat(config: AppConfig, prompt: str, apply_all: bool = False) -> int:
    """Send ``prompt``, render the reply and optionally apply every proposed action.

    Returns a process exit code: 0 on success, 1 when the stream or an action failed.
    """
    data_dir = ensure_data_dir(config.app)
    db = init_db(data_dir / "library.db")
    backend = BackendClient(config.backend)
    library = LibraryDatabase(db, library_id=config.library.library_id, indexer=backend.index_records)
    viewer = HeadlessViewer(library)
    client = StreamCompletionClient(config.backend)
    event_bus = EventBus()
    controller = ThreadController(
        client,
        library,
        viewer,
        ExternalReferenceResolver(library),
        backend=backend,
        config=config.reconciler,
        event_bus=event_bus,
        thread_key="cli",
    )
    queue = event_bus.subscribe(controller.state.channel)
    render_task = asyncio.create_task(_render_events(queue))
    exit_code = 0
    try:
        session = controller.send(prompt)
        try:
            await session.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            await controller.cancel()
        # Let the renderer drain what the stream already published
        await asyncio.sleep(0)
        _render_turn(controller)

        if controller.state.last_error is not None:
            exit_code = 1

        if apply_all and controller.store.all():
            outcomes = await controller.reconciler.apply_all([a.id for a in controller.store.all()])
            renderer.render_outcomes(outcomes)
            if any(o.error_message for o in outcomes.values()):
                exit_code = 1
            pending = controller.reconciler.unacknowledged
            if pending:
                renderer.render_error(f"{len(pending)} action(s) applied locally but not acknowledged by the backend")
    finally:
        render_task.cancel()
        event_bus.unsubscribe(controller.state.channel, queue)
        await controller.aclose()
        await client.aclose()
        await backend.aclose()
        db.close()
    return exit_code
