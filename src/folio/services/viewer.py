"""Document viewer capability used to place annotations."""

from __future__ import annotations

import logging
import time
from typing import Protocol

from ..models import HighlightAnnotationProposedData, NoteAnnotationProposedData
from .library import LibraryDatabase

logger = logging.getLogger(__name__)


class ViewerError(Exception):
    """Raised when the viewer cannot carry out an annotation operation."""


class DocumentViewer(Protocol):
    async def is_open(self, library_id: int, attachment_key: str) -> bool: ...

    async def open(self, library_id: int, attachment_key: str) -> None: ...

    async def navigate(self, page_index: int) -> None: ...

    async def is_ready(self) -> bool: ...

    async def insert_highlight(self, data: HighlightAnnotationProposedData) -> str: ...

    async def insert_note(self, data: NoteAnnotationProposedData) -> str: ...

    async def delete_annotation(self, library_id: int, key: str) -> bool: ...

    async def annotation_exists(self, library_id: int, key: str) -> bool: ...


class HeadlessViewer:
    """A viewer with no UI that writes annotations straight into the library database.

    It reports ready ``ready_delay`` seconds after a document is opened, which mimics
    a real viewer still rendering when the first annotation arrives.
    """

    def __init__(self, library: LibraryDatabase, ready_delay: float = 0.0) -> None:
        self._library = library
        self._ready_delay = ready_delay
        self._document: tuple[int, str] | None = None
        self._opened_at = 0.0
        self.current_page: int | None = None

    @property
    def document(self) -> tuple[int, str] | None:
        return self._document

    async def is_open(self, library_id: int, attachment_key: str) -> bool:
        return self._document == (library_id, attachment_key)

    async def open(self, library_id: int, attachment_key: str) -> None:
        logger.debug("Opening attachment %s-%s", library_id, attachment_key)
        self._document = (library_id, attachment_key)
        self._opened_at = time.monotonic()
        self.current_page = 0

    async def navigate(self, page_index: int) -> None:
        if self._document is None:
            raise ViewerError("No document open")
        self.current_page = page_index

    async def is_ready(self) -> bool:
        return self._document is not None and time.monotonic() - self._opened_at >= self._ready_delay

    def _require_document(self, library_id: int, attachment_key: str) -> None:
        if self._document != (library_id, attachment_key):
            raise ViewerError("Viewer changed to another attachment")

    async def insert_highlight(self, data: HighlightAnnotationProposedData) -> str:
        self._require_document(data.library_id, data.attachment_key)
        primary = min(data.highlight_locations, key=lambda loc: loc.page_index)
        return self._library.insert_annotation(
            library_id=data.library_id,
            attachment_key=data.attachment_key,
            annotation_type="highlight",
            page_index=primary.page_index,
            color=data.color,
            text=data.text,
            comment=data.comment,
            position={
                "pageIndex": primary.page_index,
                "rects": [box for loc in data.highlight_locations if loc.page_index == primary.page_index for box in loc.boxes],
            },
        )

    async def insert_note(self, data: NoteAnnotationProposedData) -> str:
        self._require_document(data.library_id, data.attachment_key)
        pos = data.note_position
        return self._library.insert_annotation(
            library_id=data.library_id,
            attachment_key=data.attachment_key,
            annotation_type="note",
            page_index=pos.page_index,
            comment=data.comment,
            position={"pageIndex": pos.page_index, "side": pos.side, "x": pos.x, "y": pos.y},
        )

    async def delete_annotation(self, library_id: int, key: str) -> bool:
        return self._library.delete_annotation(library_id, key)

    async def annotation_exists(self, library_id: int, key: str) -> bool:
        return self._library.annotation_exists(library_id, key)
