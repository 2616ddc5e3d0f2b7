"""Shared fixtures: an in-memory library, a headless viewer and action payload builders."""

from __future__ import annotations

from typing import Any

import pytest

from folio.config import BackendConfig, ReconcilerConfig
from folio.db import init_db
from folio.models import ProposedAction
from folio.services.library import LibraryDatabase
from folio.services.viewer import HeadlessViewer


@pytest.fixture()
def db():
    conn = init_db(":memory:")
    yield conn
    conn.close()


@pytest.fixture()
def library(db) -> LibraryDatabase:
    return LibraryDatabase(db, library_id=1)


@pytest.fixture()
def viewer(library: LibraryDatabase) -> HeadlessViewer:
    return HeadlessViewer(library)


@pytest.fixture()
def backend_config() -> BackendConfig:
    return BackendConfig(base_url="https://backend.test", api_key="test-key")


@pytest.fixture()
def reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(
        viewer_ready_timeout=0.2,
        viewer_poll_interval=0.01,
        validation_grace_seconds=0.0,
        status_flush_interval=0.01,
    )


def _create_item(action_id: str = "act-1", **item: Any) -> dict[str, Any]:
    reference = {
        "title": "Attention Is All You Need",
        "authors": ["Ashish Vaswani", "Noam Shazeer"],
        "year": 2017,
        "semanticScholarId": f"S2-{action_id}",
        "identifiers": {"doi": f"10.5555/{action_id}"},
    }
    reference.update(item)
    return {
        "id": action_id,
        "actionType": "create_item",
        "messageId": "msg-1",
        "toolcallId": "tc-1",
        "proposedData": {"item": reference, "reason": "Foundational paper"},
    }


def _highlight(action_id: str = "hl-1", attachment_key: str = "ATTACH01", page_index: int = 0) -> dict[str, Any]:
    return {
        "id": action_id,
        "actionType": "highlight_annotation",
        "messageId": "msg-1",
        "toolcallId": "tc-2",
        "proposedData": {
            "text": "self-attention",
            "comment": "Key idea",
            "highlightLocations": [{"pageIndex": page_index, "boxes": [[10, 20, 110, 40]]}],
            "libraryId": 1,
            "attachmentKey": attachment_key,
        },
    }


def _note(action_id: str = "note-1", attachment_key: str = "ATTACH01", page_index: int = 1) -> dict[str, Any]:
    return {
        "id": action_id,
        "actionType": "note_annotation",
        "messageId": "msg-1",
        "toolcallId": "tc-2",
        "proposedData": {
            "comment": "Compare with RNN baselines",
            "notePosition": {"pageIndex": page_index, "side": "left", "x": 5, "y": 50},
            "libraryId": 1,
            "attachmentKey": attachment_key,
        },
    }


def _item_note(action_id: str = "zn-1", parent_key: str | None = None, **data: Any) -> dict[str, Any]:
    proposed = {"title": "Reading notes", "content": "<p>Transformer summary</p>", "libraryId": 1}
    if parent_key:
        proposed["parentKey"] = parent_key
    proposed.update(data)
    return {
        "id": action_id,
        "actionType": "zotero_note",
        "messageId": "msg-1",
        "toolcallId": "tc-3",
        "proposedData": proposed,
    }


def _edit_metadata(action_id: str = "edit-1", key: str = "ITEM0001", **edits: str) -> dict[str, Any]:
    return {
        "id": action_id,
        "actionType": "edit_metadata",
        "messageId": "msg-1",
        "toolcallId": "tc-3",
        "proposedData": {
            "libraryId": 1,
            "zoteroKey": key,
            "edits": [{"field": field, "newValue": value} for field, value in (edits or {"title": "Edited"}).items()],
        },
    }


@pytest.fixture()
def create_item_payload():
    return _create_item


@pytest.fixture()
def highlight_payload():
    return _highlight


@pytest.fixture()
def note_payload():
    return _note


@pytest.fixture()
def make_action():
    """Build a validated ProposedAction from one of the payload builders."""

    def _make(kind: str = "create_item", *args: Any, **kwargs: Any) -> ProposedAction:
        builder = {
            "create_item": _create_item,
            "highlight": _highlight,
            "note": _note,
            "item_note": _item_note,
            "edit_metadata": _edit_metadata,
        }[kind]
        return ProposedAction.model_validate(builder(*args, **kwargs))

    return _make
