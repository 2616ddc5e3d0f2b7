"""Start, cancel and inspect completions on the active thread."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from ..models import ChatRequest
from ..services.thread import ThreadController

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _get_controller(request: Request) -> ThreadController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Thread controller not available")
    return controller


def _validate_json_content_type(request: Request) -> None:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("application/json"):
        raise HTTPException(status_code=415, detail="Content-Type must be application/json")


def _parse_body(model_cls: type, body: Any) -> Any:
    """Parse and validate a request body against a Pydantic model."""
    if not isinstance(body, dict):
        raise HTTPException(status_code=422, detail="Request body must be a JSON object")
    try:
        return model_cls(**body)
    except ValidationError as e:
        errors = [
            {"msg": err.get("msg", "Validation error"), "type": err.get("type", "value_error")} for err in e.errors()
        ]
        raise HTTPException(status_code=422, detail=errors)


@router.post("/chat", status_code=202)
async def send_message(request: Request):
    _validate_json_content_type(request)
    try:
        raw = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    body: ChatRequest = _parse_body(ChatRequest, raw)
    controller = _get_controller(request)
    session = controller.send(body.content)
    return {"thread_key": controller.thread_key, "generation": session.generation}


@router.post("/chat/cancel")
async def cancel_message(request: Request):
    controller = _get_controller(request)
    cancelled = await controller.cancel()
    return {"status": "cancelled" if cancelled else "idle"}


@router.post("/chat/reset")
async def reset_thread(request: Request):
    controller = _get_controller(request)
    await controller.reset()
    return {"status": "reset"}


@router.get("/chat/state")
async def get_state(request: Request):
    controller = _get_controller(request)
    return {**controller.state.snapshot(), "streaming": controller.is_streaming}
