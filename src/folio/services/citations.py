"""Stable numeric markers for citations, in first-seen order."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from ..models import CitationEntry, CitationMetadata, LibraryCoordinate

logger = logging.getLogger(__name__)

NameResolver = Callable[[LibraryCoordinate], Awaitable[str | None]]


class CitationNumberer:
    """Assigns ``[1]``, ``[2]``, ... to distinct cited works.

    Citations of the same work share a marker. A marker, once given, never
    changes for the lifetime of the numberer; :meth:`reset` starts over.
    """

    def __init__(self, resolve_name: NameResolver | None = None) -> None:
        self._resolve_name = resolve_name
        self._markers: dict[str, int] = {}
        self._entries: dict[str, CitationEntry] = {}

    def marker_for(self, key: str) -> int:
        marker = self._markers.get(key)
        if marker is None:
            marker = len(self._markers) + 1
            self._markers[key] = marker
        return marker

    def assign(self, keys: Iterable[str]) -> dict[str, int]:
        for key in keys:
            self.marker_for(key)
        return dict(self._markers)

    @property
    def markers(self) -> dict[str, int]:
        return dict(self._markers)

    @property
    def entries(self) -> list[CitationEntry]:
        return list(self._entries.values())

    async def update(self, citations: Iterable[CitationMetadata]) -> list[CitationEntry]:
        """Recompute display entries for the accumulated citation list.

        Only citations not seen before are resolved; known ones keep their entry
        with the latest metadata merged in.
        """
        result: list[CitationEntry] = []
        for citation in citations:
            key = citation.unique_key
            marker = self.marker_for(key)
            previous = self._entries.get(citation.citation_id)
            if previous is not None:
                entry = previous.model_copy(update={"metadata": citation})
            else:
                entry = await self._build_entry(citation, key, marker)
            self._entries[citation.citation_id] = entry
            result.append(entry)
        return result

    async def _build_entry(self, citation: CitationMetadata, key: str, marker: int) -> CitationEntry:
        fallback = citation.author_year or None
        if not citation.is_library_citation:
            return CitationEntry(
                citation_id=citation.citation_id,
                key=key,
                marker=marker,
                kind="external",
                name=fallback,
                formatted=citation.preview or None,
                metadata=citation,
            )

        name = fallback
        if self._resolve_name is not None:
            coord = LibraryCoordinate(library_id=citation.library_id, key=citation.item_key)
            try:
                name = await self._resolve_name(coord) or fallback
            except Exception as e:
                logger.warning("Could not resolve citation %s: %s", citation.citation_id, e)
        return CitationEntry(
            citation_id=citation.citation_id,
            key=key,
            marker=marker,
            kind="item",
            name=name,
            formatted=citation.preview or None,
            metadata=citation,
        )

    def reset(self) -> None:
        self._markers.clear()
        self._entries.clear()
