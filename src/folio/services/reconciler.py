"""Applies, rejects and undoes proposed actions, and acknowledges them to the backend.

Every operation claims a per-action busy marker first and releases it in a
``finally`` block, so overlapping operations on one action fail fast with
:class:`ActionBusyError` and a failure never leaves an action locked.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Iterable, Iterator, Union

from ..config import ReconcilerConfig
from ..models import (
    ActionOutcome,
    ActionStatus,
    AckError,
    AckLink,
    AckResult,
    AnnotationResultData,
    AppliedMetadataEdit,
    CreateItemProposedData,
    CreateItemResultData,
    EditMetadataProposedData,
    EditMetadataResultData,
    ExternalReference,
    HighlightAnnotationProposedData,
    ItemNoteProposedData,
    ItemNoteResultData,
    LibraryCoordinate,
    NoteAnnotationProposedData,
    ProposedAction,
    ResultData,
)
from .backend import BackendClient, StatusUpdateBatcher
from .dedup import clean_doi, normalize_string
from .library import LibraryStore
from .proposals import ActionProposalStore, InvalidTransitionError
from .references import ExternalReferenceResolver
from .viewer import DocumentViewer

logger = logging.getLogger(__name__)

APPLYABLE = frozenset({ActionStatus.PENDING, ActionStatus.ERROR, ActionStatus.REJECTED, ActionStatus.UNDONE})
REJECTABLE = frozenset({ActionStatus.PENDING, ActionStatus.ERROR})

ActionRef = Union[ProposedAction, str]


class ActionBusyError(Exception):
    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(f"Action {action_id} already has an operation in progress")


def _action_id(ref: ActionRef) -> str:
    return ref if isinstance(ref, str) else ref.id


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _reference_key(reference: ExternalReference) -> str:
    if reference.source_id:
        return reference.source_id
    doi = clean_doi(reference.identifiers.doi)
    if doi:
        return f"doi:{doi}"
    return f"title:{normalize_string(reference.title)}"


class ActionReconciler:
    def __init__(
        self,
        store: ActionProposalStore,
        library: LibraryStore,
        viewer: DocumentViewer,
        resolver: ExternalReferenceResolver,
        *,
        backend: BackendClient | None = None,
        status_batcher: StatusUpdateBatcher | None = None,
        config: ReconcilerConfig | None = None,
    ) -> None:
        self.store = store
        self._library = library
        self._viewer = viewer
        self._resolver = resolver
        self._backend = backend
        self._status_batcher = status_batcher
        self.config = config or ReconcilerConfig()
        self._busy: set[str] = set()
        self._grace_until: dict[str, float] = {}
        self._unacked: dict[str, AckLink] = {}
        self._create_locks: dict[str, asyncio.Lock] = {}

    # --- Busy markers ---

    def is_busy(self, action_id: str) -> bool:
        return action_id in self._busy

    @contextmanager
    def _claim(self, action_ids: Iterable[str]) -> Iterator[None]:
        ids = list(dict.fromkeys(action_ids))
        for action_id in ids:
            if action_id in self._busy:
                raise ActionBusyError(action_id)
        self._busy.update(ids)
        try:
            yield
        finally:
            self._busy.difference_update(ids)

    # --- Status persistence ---

    def _persist(self, action_id: str, status: ActionStatus, error_message: str | None = None) -> None:
        if self._status_batcher is None:
            return
        updates: dict[str, object] = {"status": status.value}
        if error_message is not None:
            updates["error_message"] = error_message
        fut = self._status_batcher.enqueue(action_id, updates)

        def _log_failure(f: asyncio.Future[None]) -> None:
            if f.cancelled():
                return
            exc = f.exception()
            if exc is not None:
                logger.warning("Could not persist %s status for %s: %s", status.value, action_id, exc)

        fut.add_done_callback(_log_failure)

    def _record_failure(self, action: ProposedAction, exc: BaseException) -> None:
        message = _error_text(exc)
        current = self.store.require(action.id)
        if current.status in (ActionStatus.PENDING, ActionStatus.ERROR, ActionStatus.APPLIED):
            self.store.update_status(action.id, ActionStatus.ERROR, error_message=message)
            self._persist(action.id, ActionStatus.ERROR, message)
        else:
            # Re-applying a rejected/undone action that fails keeps its status.
            logger.info("Re-apply of %s (%s) failed: %s", action.id, current.status.value, message)

    # --- Apply ---

    async def apply(self, ref: ActionRef) -> ResultData:
        """Apply one action and acknowledge it. Raises if the side effect fails."""
        action_id = _action_id(ref)
        with self._claim([action_id]):
            action = self.store.require(action_id)
            result = await self._apply_one(action)
        await self.ack_batch([(action_id, result)])
        return result

    async def _apply_one(self, action: ProposedAction, *, viewer_prepared: bool = False) -> ResultData:
        if action.status not in APPLYABLE:
            raise InvalidTransitionError(action.id, action.status, ActionStatus.APPLIED)
        try:
            if isinstance(action.proposed_data, CreateItemProposedData):
                result: ResultData = await self._apply_create(action.proposed_data)
            elif isinstance(action.proposed_data, ItemNoteProposedData):
                result = await self._apply_note(action.proposed_data)
            elif isinstance(action.proposed_data, EditMetadataProposedData):
                result = await self._apply_edits(action.proposed_data)
            else:
                data = action.proposed_data
                if not viewer_prepared:
                    await self._prepare_viewer(data.library_id, data.attachment_key, data.first_page)
                result = await self._insert_annotation(data)
        except Exception as e:
            logger.warning("Applying %s (%s) failed: %s", action.id, action.action_type.value, e)
            self._record_failure(action, e)
            raise
        self.store.update_status(action.id, ActionStatus.APPLIED, result_data=result)
        self._grace_until[action.id] = time.monotonic() + self.config.validation_grace_seconds
        logger.info("Applied %s (%s)", action.id, action.action_type.value)
        return result

    async def _apply_create(self, data: CreateItemProposedData) -> CreateItemResultData:
        reference = data.item
        # Check, create and mark_resolved must not interleave for one reference
        lock = self._create_locks.setdefault(_reference_key(reference), asyncio.Lock())
        async with lock:
            existing = await self._resolver.check(reference)
            if existing is not None:
                logger.info(
                    "Reference %s already in library as %s", reference.source_id or reference.title, existing
                )
                return CreateItemResultData(library_id=existing.library_id, key=existing.key, created=False)

            coord = await self._library.create_record(reference, data.collection_keys, data.suggested_tags)
            self._resolver.mark_resolved(reference.source_id, coord)
        try:
            await self._library.index_for_search([coord])
        except Exception as e:
            logger.warning("Could not index new record %s: %s", coord, e)
        return CreateItemResultData(library_id=coord.library_id, key=coord.key, created=True)

    async def _apply_note(self, data: ItemNoteProposedData) -> ItemNoteResultData:
        coord = await self._library.create_note(data.title, data.content or "", data.parent_key, data.library_id)
        return ItemNoteResultData(library_id=coord.library_id, key=coord.key, parent_key=data.parent_key)

    async def _apply_edits(self, data: EditMetadataProposedData) -> EditMetadataResultData:
        """Write the new values; the previous ones go into the result so undo can restore them."""
        coord = LibraryCoordinate(library_id=data.library_id, key=data.key)
        previous = await self._library.update_fields(coord, {edit.field: edit.new_value for edit in data.edits})
        return EditMetadataResultData(
            library_id=data.library_id,
            key=data.key,
            applied_edits=[
                AppliedMetadataEdit(field=edit.field, applied_value=edit.new_value, previous_value=previous[edit.field])
                for edit in data.edits
            ],
        )

    async def _prepare_viewer(self, library_id: int, attachment_key: str, page_index: int) -> None:
        if not await self._viewer.is_open(library_id, attachment_key):
            await self._viewer.open(library_id, attachment_key)
            await self._viewer.navigate(page_index)
        await self._wait_until_ready()

    async def _wait_until_ready(self) -> bool:
        """Poll viewer readiness up to the configured timeout, then carry on regardless."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.viewer_ready_timeout
        while True:
            if await self._viewer.is_ready():
                return True
            if loop.time() >= deadline:
                logger.warning(
                    "Viewer not ready after %.1fs; inserting annotations anyway", self.config.viewer_ready_timeout
                )
                return False
            await asyncio.sleep(self.config.viewer_poll_interval)

    async def _insert_annotation(
        self, data: HighlightAnnotationProposedData | NoteAnnotationProposedData
    ) -> AnnotationResultData:
        if isinstance(data, HighlightAnnotationProposedData):
            key = await self._viewer.insert_highlight(data)
        else:
            key = await self._viewer.insert_note(data)
        return AnnotationResultData(library_id=data.library_id, key=key, attachment_key=data.attachment_key)

    async def apply_all(self, refs: Iterable[ActionRef]) -> dict[str, ActionOutcome]:
        """Apply every eligible action concurrently; one failure does not affect the rest.

        Record creations, notes and metadata edits run concurrently. Annotations on the same attachment share
        one open/navigate/ready cycle and are inserted in order. All successes are
        acknowledged together.
        """
        eligible: list[ProposedAction] = []
        seen: set[str] = set()
        for ref in refs:
            action = self.store.get(_action_id(ref))
            if action is None or action.id in seen:
                continue
            seen.add(action.id)
            if action.status in APPLYABLE and not self.is_busy(action.id):
                eligible.append(action)
        if not eligible:
            return {}

        outcomes: dict[str, ActionOutcome] = {}
        successes: list[tuple[str, ResultData]] = []

        async def run_one(action: ProposedAction, viewer_prepared: bool = False) -> None:
            try:
                result = await self._apply_one(action, viewer_prepared=viewer_prepared)
            except Exception as e:
                current = self.store.get(action.id) or action
                outcomes[action.id] = ActionOutcome(
                    action_id=action.id, status=current.status, error_message=_error_text(e)
                )
                return
            successes.append((action.id, result))
            outcomes[action.id] = ActionOutcome(
                action_id=action.id, status=ActionStatus.APPLIED, result_data=result.model_dump()
            )

        async def run_group(group: list[ProposedAction]) -> None:
            first = group[0].proposed_data
            page = min(a.proposed_data.first_page for a in group)
            try:
                await self._prepare_viewer(first.library_id, first.attachment_key, page)
            except Exception as e:
                logger.warning("Could not open %s-%s: %s", first.library_id, first.attachment_key, e)
                for action in group:
                    self._record_failure(action, e)
                    current = self.store.get(action.id) or action
                    outcomes[action.id] = ActionOutcome(
                        action_id=action.id, status=current.status, error_message=_error_text(e)
                    )
                return
            for action in group:
                await run_one(action, viewer_prepared=True)

        independent = [a for a in eligible if not a.is_annotation]
        groups: dict[tuple[int, str], list[ProposedAction]] = {}
        for action in eligible:
            if action.is_annotation:
                data = action.proposed_data
                groups.setdefault((data.library_id, data.attachment_key), []).append(action)

        async def run_groups() -> None:
            # One viewer: attachments are visited one after another.
            for group in groups.values():
                await run_group(group)

        with self._claim(a.id for a in eligible):
            await asyncio.gather(*(run_one(a) for a in independent), run_groups())

        if successes:
            await self.ack_batch(successes)
        logger.info("apply_all: %d applied, %d failed", len(successes), len(outcomes) - len(successes))
        return outcomes

    # --- Acknowledgment ---

    async def ack_batch(self, results: Iterable[tuple[str, ResultData]]) -> AckResult:
        """Acknowledge applied actions. Failed links are kept for :meth:`retry_acks`."""
        links = [AckLink(action_id=action_id, result_data=result.model_dump()) for action_id, result in results]
        if not links:
            return AckResult(success=True, updated=0)
        if self._backend is None:
            return AckResult(success=True, updated=0)

        if self.config.ack_mode == "single":
            responses = await asyncio.gather(*(self._send_acks([link]) for link in links))
            return AckResult(
                success=all(r.success for r in responses),
                updated=sum(r.updated for r in responses),
                errors=[e for r in responses for e in r.errors],
            )
        return await self._send_acks(links)

    async def _send_acks(self, links: list[AckLink]) -> AckResult:
        try:
            response = await self._backend.acknowledge(links)
        except Exception as e:
            logger.warning("Acknowledgment of %d action(s) failed: %s", len(links), e)
            for link in links:
                self._unacked[link.action_id] = link
            return AckResult(
                success=False,
                updated=0,
                errors=[AckError(action_id=link.action_id, code="request_failed", detail=_error_text(e)) for link in links],
            )

        failed = {err.action_id for err in response.errors}
        for link in links:
            if link.action_id in failed:
                self._unacked[link.action_id] = link
            else:
                self._unacked.pop(link.action_id, None)
        if failed:
            logger.warning("Backend rejected acknowledgment for %s", ", ".join(sorted(failed)))
        return response

    @property
    def unacknowledged(self) -> list[str]:
        return list(self._unacked)

    async def retry_acks(self) -> AckResult:
        """Re-send acknowledgments that failed, for actions that are still applied."""
        links = []
        for action_id, link in list(self._unacked.items()):
            action = self.store.get(action_id)
            if action is None or action.status != ActionStatus.APPLIED:
                del self._unacked[action_id]
                continue
            links.append(link)
        if not links or self._backend is None:
            return AckResult(success=True, updated=0)
        return await self._send_acks(links)

    # --- Reject / undo / error ---

    async def reject(self, ref: ActionRef) -> ProposedAction:
        action_id = _action_id(ref)
        with self._claim([action_id]):
            action = self.store.require(action_id)
            if action.status not in REJECTABLE:
                raise InvalidTransitionError(action.id, action.status, ActionStatus.REJECTED)
            (updated,) = self.store.update_status(action_id, ActionStatus.REJECTED)
        logger.info("Rejected %s", action_id)
        return updated

    async def undo(self, ref: ActionRef) -> ProposedAction:
        """Reverse an applied action. A side effect that is already gone counts as undone."""
        action_id = _action_id(ref)
        with self._claim([action_id]):
            action = self.store.require(action_id)
            if action.status != ActionStatus.APPLIED:
                raise InvalidTransitionError(action.id, action.status, ActionStatus.UNDONE)
            try:
                await self._reverse(action)
            except Exception as e:
                logger.warning("Undo of %s failed: %s", action_id, e)
                self._record_failure(action, e)
                raise
            (updated,) = self.store.update_status(action_id, ActionStatus.UNDONE)
            self._forget(action_id)
            self._persist(action_id, ActionStatus.UNDONE)
        logger.info("Undid %s", action_id)
        return updated

    async def _reverse(self, action: ProposedAction) -> None:
        result = action.result_data
        if isinstance(result, CreateItemResultData):
            reference = action.proposed_data.item
            if result.created:
                removed = await self._library.delete_record(result.coordinate)
                if not removed:
                    logger.info("Record %s was already deleted", result.coordinate)
            self._resolver.invalidate(reference.source_id)
        elif isinstance(result, AnnotationResultData):
            removed = await self._viewer.delete_annotation(result.library_id, result.key)
            if not removed:
                logger.info("Annotation %s-%s was already deleted", result.library_id, result.key)
        elif isinstance(result, ItemNoteResultData):
            coord = LibraryCoordinate(library_id=result.library_id, key=result.key)
            if not await self._library.delete_note(coord):
                logger.info("Note %s was already deleted", coord)
        elif isinstance(result, EditMetadataResultData):
            if await self._library.get_by_coordinate(result.coordinate) is None:
                logger.info("Record %s was deleted; nothing to restore", result.coordinate)
                return
            await self._library.update_fields(
                result.coordinate, {edit.field: edit.previous_value for edit in result.applied_edits}
            )

    def _forget(self, action_id: str) -> None:
        self._grace_until.pop(action_id, None)
        self._unacked.pop(action_id, None)

    def mark_error(self, ids: Iterable[str], message: str) -> list[ProposedAction]:
        """Move actions to ``error``; ids whose status does not allow it are skipped."""
        updated: list[ProposedAction] = []
        for action_id in ids:
            try:
                updated.extend(self.store.update_status(action_id, ActionStatus.ERROR, error_message=message))
            except InvalidTransitionError as e:
                logger.info("Not marking %s as error: %s", action_id, e)
                continue
            self._forget(action_id)
            self._persist(action_id, ActionStatus.ERROR, message)
        return updated

    # --- Validation ---

    def in_grace_window(self, action_id: str) -> bool:
        until = self._grace_until.get(action_id)
        return until is not None and time.monotonic() < until

    async def validate_applied(self) -> list[str]:
        """Find applied actions whose side effect vanished outside this process and mark them undone."""
        vanished: list[str] = []
        for action in self.store.all(lambda a: a.status == ActionStatus.APPLIED):
            if self.is_busy(action.id) or self.in_grace_window(action.id):
                continue
            try:
                exists = await self._side_effect_exists(action)
            except Exception as e:
                logger.warning("Could not validate %s: %s", action.id, e)
                continue
            if exists or self.is_busy(action.id):
                continue
            with self._claim([action.id]):
                current = self.store.get(action.id)
                if current is None or current.status != ActionStatus.APPLIED:
                    continue
                self.store.update_status(action.id, ActionStatus.UNDONE)
                self._forget(action.id)
                self._persist(action.id, ActionStatus.UNDONE)
                if isinstance(current.result_data, CreateItemResultData):
                    self._resolver.invalidate(current.proposed_data.item.source_id)
                    self._resolver.invalidate_coordinate(current.result_data.coordinate)
            vanished.append(action.id)
        if vanished:
            logger.info("Marked %d action(s) undone after external deletion", len(vanished))
        return vanished

    async def _side_effect_exists(self, action: ProposedAction) -> bool:
        result = action.result_data
        if isinstance(result, CreateItemResultData):
            coord = result.coordinate
            record = await self._library.get_by_coordinate(coord)
            return record is not None and not await self._library.is_soft_deleted(coord)
        if isinstance(result, AnnotationResultData):
            return await self._viewer.annotation_exists(result.library_id, result.key)
        if isinstance(result, ItemNoteResultData):
            return await self._library.note_exists(LibraryCoordinate(library_id=result.library_id, key=result.key))
        if isinstance(result, EditMetadataResultData):
            return await self._library.get_by_coordinate(result.coordinate) is not None
        return True

    def reset(self) -> None:
        self._grace_until.clear()
        self._unacked.clear()
        self._create_locks.clear()
