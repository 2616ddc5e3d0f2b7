"""Endpoints for applying, rejecting and undoing proposed actions."""

from __future__ import annotations

import logging
import re

from fastapi import APIRouter, HTTPException, Query, Request

from ..models import ActionOutcome, ActionStatus, ActionType, ApplyAllRequest
from ..services.proposals import InvalidTransitionError, UnknownActionError, is_type
from ..services.reconciler import ActionBusyError
from ..services.thread import ThreadController

logger = logging.getLogger(__name__)

router = APIRouter(tags=["actions"])

_ACTION_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]{1,128}$")


def _get_controller(request: Request) -> ThreadController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Thread controller not available")
    return controller


def _validate_action_id(action_id: str) -> str:
    if not _ACTION_ID_RE.match(action_id):
        logger.warning("Invalid action ID format: %r", action_id[:80])
        raise HTTPException(status_code=400, detail="Invalid action ID format")
    return action_id


def _require_known(controller: ThreadController, action_id: str) -> None:
    if action_id not in controller.store:
        raise HTTPException(status_code=404, detail="Action not found")


@router.get("/actions")
async def list_actions(
    request: Request,
    toolcall_id: str | None = Query(default=None, max_length=200),
    action_type: ActionType | None = None,
):
    controller = _get_controller(request)
    predicate = is_type(action_type) if action_type else None
    if toolcall_id:
        actions = controller.store.get_by_toolcall(toolcall_id, predicate)
    else:
        actions = controller.store.all(predicate)
    return [a.model_dump(mode="json") for a in actions]


@router.get("/actions/{action_id}")
async def get_action(action_id: str, request: Request):
    _validate_action_id(action_id)
    controller = _get_controller(request)
    _require_known(controller, action_id)
    action = controller.store.require(action_id)
    return {
        **action.model_dump(mode="json"),
        "busy": controller.reconciler.is_busy(action_id),
        "history": [
            {"status": c.status.value, "at": c.at, "error_message": c.error_message}
            for c in controller.store.history(action_id)
        ],
    }


@router.post("/actions/{action_id}/apply")
async def apply_action(action_id: str, request: Request) -> ActionOutcome:
    _validate_action_id(action_id)
    controller = _get_controller(request)
    _require_known(controller, action_id)
    try:
        result = await controller.reconciler.apply(action_id)
    except (InvalidTransitionError, ActionBusyError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UnknownActionError:
        raise HTTPException(status_code=404, detail="Action not found")
    except Exception as e:
        current = controller.store.require(action_id)
        return ActionOutcome(action_id=action_id, status=current.status, error_message=str(e) or type(e).__name__)
    return ActionOutcome(action_id=action_id, status=ActionStatus.APPLIED, result_data=result.model_dump())


@router.post("/actions/{action_id}/reject")
async def reject_action(action_id: str, request: Request) -> ActionOutcome:
    _validate_action_id(action_id)
    controller = _get_controller(request)
    _require_known(controller, action_id)
    try:
        action = await controller.reconciler.reject(action_id)
    except (InvalidTransitionError, ActionBusyError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ActionOutcome(action_id=action_id, status=action.status)


@router.post("/actions/{action_id}/undo")
async def undo_action(action_id: str, request: Request) -> ActionOutcome:
    _validate_action_id(action_id)
    controller = _get_controller(request)
    _require_known(controller, action_id)
    try:
        action = await controller.reconciler.undo(action_id)
    except (InvalidTransitionError, ActionBusyError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        current = controller.store.require(action_id)
        return ActionOutcome(action_id=action_id, status=current.status, error_message=str(e) or type(e).__name__)
    return ActionOutcome(action_id=action_id, status=action.status)


@router.post("/actions/apply-all")
async def apply_all_actions(body: ApplyAllRequest, request: Request):
    controller = _get_controller(request)
    if body.action_ids is not None:
        for action_id in body.action_ids:
            _validate_action_id(action_id)
        refs = body.action_ids
    elif body.toolcall_id:
        refs = [a.id for a in controller.store.get_by_toolcall(body.toolcall_id)]
    else:
        refs = [a.id for a in controller.store.all()]
    outcomes = await controller.reconciler.apply_all(refs)
    return {"outcomes": [o.model_dump(mode="json") for o in outcomes.values()]}


@router.post("/actions/retry-acks")
async def retry_acknowledgments(request: Request):
    controller = _get_controller(request)
    result = await controller.reconciler.retry_acks()
    return {**result.model_dump(), "pending": controller.reconciler.unacknowledged}


@router.post("/actions/validate")
async def validate_actions(request: Request):
    controller = _get_controller(request)
    vanished = await controller.reconciler.validate_applied()
    return {"undone": vanished}
