"""In-memory, id-indexed store of proposed actions and their statuses."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from pydantic import BaseModel

from ..models import ActionStatus, ActionType, ProposedAction, result_model_for

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.APPLIED, ActionStatus.REJECTED, ActionStatus.ERROR}),
    ActionStatus.APPLIED: frozenset({ActionStatus.UNDONE, ActionStatus.ERROR}),
    ActionStatus.REJECTED: frozenset({ActionStatus.APPLIED}),
    ActionStatus.UNDONE: frozenset({ActionStatus.APPLIED}),
    ActionStatus.ERROR: frozenset({ActionStatus.APPLIED, ActionStatus.REJECTED, ActionStatus.ERROR}),
}

Predicate = Callable[[ProposedAction], bool]
ChangeListener = Callable[[list[ProposedAction]], None]


class UnknownActionError(KeyError):
    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(action_id)

    def __str__(self) -> str:
        return f"Unknown action: {self.action_id}"


class InvalidTransitionError(Exception):
    def __init__(self, action_id: str, current: ActionStatus, target: ActionStatus) -> None:
        self.action_id = action_id
        self.current = current
        self.target = target
        super().__init__(f"Action {action_id}: cannot go from {current.value} to {target.value}")


@dataclass(frozen=True)
class StatusChange:
    status: ActionStatus
    at: float
    error_message: str | None = None


def can_transition(current: ActionStatus, target: ActionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def is_type(*types: ActionType) -> Predicate:
    """Predicate matching actions of the given types."""
    wanted = frozenset(types)
    return lambda action: action.action_type in wanted


class ActionProposalStore:
    """Holds every action proposed in a thread.

    Entries are never removed or overwritten by a later delivery of the same id;
    they only change status. Status and result data are swapped in a single
    assignment so no reader ever sees one without the other.
    """

    def __init__(self) -> None:
        self._actions: dict[str, ProposedAction] = {}
        self._history: dict[str, list[StatusChange]] = {}
        self._listeners: list[ChangeListener] = []

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, changed: list[ProposedAction]) -> None:
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception:
                logger.exception("Proposal store listener failed")

    def add(self, actions: Iterable[ProposedAction]) -> list[ProposedAction]:
        """Insert actions whose id is not yet known; returns the ones actually inserted."""
        inserted: list[ProposedAction] = []
        for action in actions:
            if action.id in self._actions:
                logger.debug("Ignoring redelivered proposal %s", action.id)
                continue
            self._actions[action.id] = action
            self._history[action.id] = [StatusChange(status=action.status, at=time.time())]
            inserted.append(action)
        self._notify(inserted)
        return inserted

    def get(self, action_id: str) -> ProposedAction | None:
        return self._actions.get(action_id)

    def require(self, action_id: str) -> ProposedAction:
        action = self._actions.get(action_id)
        if action is None:
            raise UnknownActionError(action_id)
        return action

    def all(self, predicate: Predicate | None = None) -> list[ProposedAction]:
        return [a for a in self._actions.values() if predicate is None or predicate(a)]

    def get_by_toolcall(self, toolcall_id: str, predicate: Predicate | None = None) -> list[ProposedAction]:
        return [
            a for a in self._actions.values() if a.toolcall_id == toolcall_id and (predicate is None or predicate(a))
        ]

    def get_by_message(self, message_id: str, predicate: Predicate | None = None) -> list[ProposedAction]:
        return [
            a for a in self._actions.values() if a.message_id == message_id and (predicate is None or predicate(a))
        ]

    def history(self, action_id: str) -> list[StatusChange]:
        return list(self._history.get(action_id, ()))

    def update_status(
        self,
        ids: str | Iterable[str],
        status: ActionStatus,
        *,
        result_data: BaseModel | dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> list[ProposedAction]:
        """Move one or more actions to ``status``.

        ``result_data`` is required for (and only accepted with) ``applied``;
        ``error_message`` is only kept for ``error``. All ids are checked before
        any of them changes.
        """
        id_list = [ids] if isinstance(ids, str) else list(ids)
        if status == ActionStatus.APPLIED and result_data is None:
            raise ValueError("result_data is required to mark an action applied")
        if status != ActionStatus.APPLIED and result_data is not None:
            raise ValueError("result_data is only accepted with status applied")

        current = [self.require(action_id) for action_id in id_list]
        for action in current:
            if not can_transition(action.status, status):
                raise InvalidTransitionError(action.id, action.status, status)

        updated: list[ProposedAction] = []
        now = time.time()
        for action in current:
            parsed_result = None
            if result_data is not None:
                model = result_model_for(action.action_type)
                parsed_result = result_data if isinstance(result_data, model) else model.model_validate(
                    result_data.model_dump() if isinstance(result_data, BaseModel) else result_data
                )
            new_action = action.model_copy(
                update={
                    "status": status,
                    "result_data": parsed_result,
                    "error_message": (error_message or "Unknown error") if status == ActionStatus.ERROR else None,
                }
            )
            self._actions[action.id] = new_action
            self._history[action.id].append(
                StatusChange(status=status, at=now, error_message=new_action.error_message)
            )
            updated.append(new_action)
        logger.debug("Actions %s -> %s", ", ".join(id_list), status.value)
        self._notify(updated)
        return updated

    def reset(self) -> None:
        self._actions.clear()
        self._history.clear()
