"""SSE stream of thread state changes."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


@router.get("/events")
async def event_stream(request: Request):
    """Long-lived SSE connection relaying ``thread:{key}`` events from the event bus."""
    event_bus = getattr(request.app.state, "event_bus", None)
    controller = getattr(request.app.state, "controller", None)

    if event_bus is None or controller is None:

        async def empty():
            yield {"event": "error", "data": json.dumps({"message": "Event bus not available"})}

        return EventSourceResponse(empty())

    channel = controller.state.channel
    queue = event_bus.subscribe(channel)

    async def generate():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                yield {"event": event.get("type", "message"), "data": json.dumps(event.get("data", {}))}
        finally:
            event_bus.unsubscribe(channel, queue)

    return EventSourceResponse(generate())
