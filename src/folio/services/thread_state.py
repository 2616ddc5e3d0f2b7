"""Per-thread conversation state driven by completion stream events."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from ..models import (
    CitationEntry,
    CitationMetadata,
    ErrorKind,
    Message,
    ProposedAction,
    StreamWarning,
    ToolCall,
)
from .citations import CitationNumberer
from .event_bus import EventBus
from .proposals import ActionProposalStore
from .stream_client import StreamDecodeError, StreamHandlers

logger = logging.getLogger(__name__)

AttachmentResolver = Callable[[list[dict[str, Any]]], Awaitable[list[dict[str, Any]]]]

_TERMINAL_STATUSES = frozenset({"completed", "error", "canceled"})


class ThreadState(StreamHandlers):
    """Messages, tool calls and citations of one thread, updated as events arrive."""

    def __init__(
        self,
        store: ActionProposalStore,
        numberer: CitationNumberer,
        *,
        thread_key: str = "default",
        event_bus: EventBus | None = None,
        resolve_attachments: AttachmentResolver | None = None,
    ) -> None:
        self.store = store
        self.numberer = numberer
        self.thread_key = thread_key
        self._event_bus = event_bus
        self._resolve_attachments = resolve_attachments
        self.thread_id: str | None = None
        self.messages: dict[str, Message] = {}
        self.toolcalls: dict[str, ToolCall] = {}
        self.citations: list[CitationMetadata] = []
        self.citation_entries: list[CitationEntry] = []
        self.active_message_id: str | None = None
        self.decode_errors: list[StreamDecodeError] = []
        self.done = False
        self.last_error: dict[str, str] | None = None

    @property
    def channel(self) -> str:
        return f"thread:{self.thread_key}"

    async def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(self.channel, {"type": event_type, "data": data})

    async def _publish_message(self, message: Message) -> None:
        await self._publish("message_updated", message.model_dump(mode="json"))

    def _ensure_message(self, message_id: str) -> Message:
        message = self.messages.get(message_id)
        if message is None:
            message = Message(id=message_id)
            self.messages[message_id] = message
        return message

    def add_user_message(self, message_id: str, content: str) -> Message:
        message = Message(id=message_id, role="user", content=content, status="completed")
        self.messages[message_id] = message
        return message

    def begin_turn(self) -> None:
        self.done = False
        self.last_error = None

    # --- StreamHandlers ---

    async def on_thread(self, thread_id: str) -> None:
        logger.debug("Thread id %s", thread_id)
        self.thread_id = thread_id
        await self._publish("thread", {"thread_id": thread_id})

    async def on_delta(self, message_id: str, delta: str, channel: str) -> None:
        message = self._ensure_message(message_id)
        if channel == "reasoning":
            message.reasoning += delta
            if message.status not in _TERMINAL_STATUSES:
                message.status = "thinking"
        else:
            message.content += delta
            if message.status not in _TERMINAL_STATUSES:
                message.status = "in_progress"
        self.active_message_id = message_id
        await self._publish(
            "message_delta", {"message_id": message_id, "delta": delta, "channel": channel, "status": message.status}
        )

    async def on_message(self, message: Message) -> None:
        existing = self.messages.get(message.id)
        if existing is None:
            self.messages[message.id] = message
            merged = message
        else:
            updates = message.model_dump(exclude_unset=True)
            # Warnings accumulate rather than being replaced by a later snapshot.
            if "warnings" in updates:
                updates["warnings"] = existing.warnings + [w for w in message.warnings if w not in existing.warnings]
            merged = existing.model_copy(update=updates)
            self.messages[message.id] = merged
        if merged.role == "assistant":
            self.active_message_id = merged.id
        await self._publish_message(merged)

    async def on_toolcall(self, message_id: str, toolcall: ToolCall) -> None:
        existing = self.toolcalls.get(toolcall.id)
        if existing is None:
            merged = toolcall
        else:
            merged = existing.model_copy(update=toolcall.model_dump(exclude_unset=True))
        self.toolcalls[toolcall.id] = merged
        message = self._ensure_message(message_id)
        if toolcall.id not in message.toolcall_ids:
            message.toolcall_ids.append(toolcall.id)
        await self._publish("toolcall_updated", merged.model_dump(mode="json"))

    async def on_proposed_actions(self, message_id: str, toolcall_id: str | None, actions: list[ProposedAction]) -> None:
        inserted = self.store.add(actions)
        if inserted:
            logger.info("%d proposed action(s) for message %s", len(inserted), message_id)
            await self._publish("actions_added", {"actions": [a.model_dump(mode="json") for a in inserted]})

    async def on_citation_metadata(self, message_id: str | None, citation: CitationMetadata) -> None:
        self.citations.append(citation)
        self.citation_entries = await self.numberer.update(self.citations)
        await self._publish("citations_updated", {"citations": [c.model_dump(mode="json") for c in self.citation_entries]})

    async def on_complete(self, message_id: str) -> None:
        message = self._ensure_message(message_id)
        message.status = "completed"
        await self._publish_message(message)

    async def on_done(self, message_id: str | None) -> None:
        self.done = True
        if message_id:
            message = self._ensure_message(message_id)
            if message.status not in ("error", "canceled"):
                message.status = "completed"
            await self._publish_message(message)
        await self._publish("thread_done", {"message_id": message_id})

    async def on_error(self, message_id: str | None, kind: ErrorKind, message: str) -> None:
        self.done = True
        self.last_error = {"kind": kind, "message": message}
        target = message_id or self.active_message_id
        logger.warning("Stream error (%s) on message %s: %s", kind, target, message)
        if target:
            msg = self._ensure_message(target)
            msg.status = "error"
            msg.error_kind = kind
            msg.error_message = message or None
            await self._publish_message(msg)
        await self._publish("stream_error", {"message_id": target, "kind": kind, "message": message})

    async def on_warning(self, message_id: str | None, warning: StreamWarning) -> None:
        target = message_id or self.active_message_id
        if not target:
            logger.debug("Dropping warning with no message to attach to: %s", warning.type)
            return
        raw_attachments = list(warning.attachments)
        if not raw_attachments and warning.data and isinstance(warning.data.get("attachments"), list):
            raw_attachments = list(warning.data["attachments"])
        if raw_attachments and self._resolve_attachments is not None:
            try:
                raw_attachments = await self._resolve_attachments(raw_attachments)
            except Exception as e:
                logger.warning("Could not resolve warning attachments: %s", e)
        warning = warning.model_copy(update={"attachments": raw_attachments, "message_id": target})
        message = self._ensure_message(target)
        message.warnings.append(warning)
        await self._publish_message(message)

    async def on_decode_error(self, event: str, error: StreamDecodeError) -> None:
        self.decode_errors.append(error)

    def mark_canceled(self) -> None:
        if self.active_message_id:
            message = self.messages.get(self.active_message_id)
            if message is not None and message.status not in _TERMINAL_STATUSES:
                message.status = "canceled"
        self.done = True

    # --- Views ---

    def ordered_messages(self) -> list[Message]:
        return list(self.messages.values())

    def snapshot(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "done": self.done,
            "error": self.last_error,
            "messages": [m.model_dump(mode="json") for m in self.messages.values()],
            "toolcalls": [t.model_dump(mode="json") for t in self.toolcalls.values()],
            "citations": [c.model_dump(mode="json") for c in self.citation_entries],
            "actions": [a.model_dump(mode="json") for a in self.store.all()],
        }

    def reset(self) -> None:
        self.thread_id = None
        self.messages.clear()
        self.toolcalls.clear()
        self.citations.clear()
        self.citation_entries = []
        self.active_message_id = None
        self.decode_errors.clear()
        self.done = False
        self.last_error = None
