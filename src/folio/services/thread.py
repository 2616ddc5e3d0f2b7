"""Wires the components that serve one conversation thread."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from ..config import ReconcilerConfig
from ..models import ProposedAction
from .backend import BackendClient, StatusUpdateBatcher
from .citations import CitationNumberer
from .event_bus import EventBus
from .library import LibraryStore
from .proposals import ActionProposalStore
from .reconciler import ActionReconciler
from .references import ExternalReferenceResolver
from .stream_client import StreamCompletionClient, StreamSession
from .thread_state import AttachmentResolver, ThreadState
from .viewer import DocumentViewer

logger = logging.getLogger(__name__)


class ThreadController:
    def __init__(
        self,
        client: StreamCompletionClient,
        library: LibraryStore,
        viewer: DocumentViewer,
        resolver: ExternalReferenceResolver,
        *,
        backend: BackendClient | None = None,
        config: ReconcilerConfig | None = None,
        event_bus: EventBus | None = None,
        thread_key: str = "default",
        resolve_attachments: AttachmentResolver | None = None,
    ) -> None:
        self.thread_key = thread_key
        self._client = client
        self._backend = backend
        self._event_bus = event_bus
        self.resolver = resolver
        self.config = config or ReconcilerConfig()
        self.store = ActionProposalStore()
        self.numberer = CitationNumberer(library.display_name)
        self.state = ThreadState(
            self.store,
            self.numberer,
            thread_key=thread_key,
            event_bus=event_bus,
            resolve_attachments=resolve_attachments,
        )
        self.status_batcher = (
            StatusUpdateBatcher(
                backend.update_actions,
                flush_interval=self.config.status_flush_interval,
                max_pending=self.config.status_max_pending,
            )
            if backend is not None
            else None
        )
        self.reconciler = ActionReconciler(
            self.store,
            library,
            viewer,
            resolver,
            backend=backend,
            status_batcher=self.status_batcher,
            config=self.config,
        )
        self._pending_publishes: set[asyncio.Task[None]] = set()
        if event_bus is not None:
            self.store.add_listener(self._on_actions_changed)

    def _on_actions_changed(self, actions: list[ProposedAction]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        event = {"type": "actions_updated", "data": {"actions": [a.model_dump(mode="json") for a in actions]}}
        task = loop.create_task(self._event_bus.publish(self.state.channel, event))
        self._pending_publishes.add(task)
        task.add_done_callback(self._pending_publishes.discard)

    @property
    def session(self) -> StreamSession | None:
        return self._client.active_session(self.thread_key)

    @property
    def is_streaming(self) -> bool:
        return self.session is not None

    def build_payload(self, content: str, **options: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "thread_id": self.state.thread_id,
            "messages": [{"role": "user", "content": content}],
        }
        payload.update(options)
        return payload

    def send(self, content: str, **options: Any) -> StreamSession:
        """Start a completion for ``content``, superseding any turn still streaming."""
        if self.is_streaming:
            self.state.mark_canceled()
        self.state.add_user_message(str(uuid.uuid4()), content)
        self.state.begin_turn()
        payload = self.build_payload(content, **options)
        logger.info("Starting completion on %s (thread_id=%s)", self.thread_key, self.state.thread_id)
        return self._client.start(payload, self.state, thread_key=self.thread_key)

    async def cancel(self) -> bool:
        session = self._client.cancel(self.thread_key)
        if session is None:
            return False
        message_id = self.state.active_message_id
        partial = self.state.messages[message_id].content if message_id in self.state.messages else ""
        self.state.mark_canceled()
        if self._backend is not None and self.state.thread_id:
            await self._backend.cancel_completion(self.state.thread_id, message_id, partial)
        return True

    async def reset(self) -> None:
        """Forget the thread: cancel streaming and clear every cache tied to it."""
        await self.cancel()
        self.state.reset()
        self.store.reset()
        self.numberer.reset()
        self.resolver.reset()
        self.reconciler.reset()
        if self.status_batcher is not None:
            await self.status_batcher.flush()

    async def aclose(self) -> None:
        await self.cancel()
        if self.status_batcher is not None:
            await self.status_batcher.flush()
            self.status_batcher.dispose()
