"""Tests for citation numbering."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from folio.models import CitationMetadata, LibraryCoordinate
from folio.services.citations import CitationNumberer


def _item(citation_id: str, key: str, **kwargs) -> CitationMetadata:
    return CitationMetadata(citation_id=citation_id, library_id=1, item_key=key, **kwargs)


def _external(citation_id: str, source_id: str, **kwargs) -> CitationMetadata:
    return CitationMetadata(
        citation_id=citation_id, external_source="semantic_scholar", external_source_id=source_id, **kwargs
    )


class TestMarkers:
    def test_first_seen_order(self) -> None:
        numberer = CitationNumberer()
        assert numberer.assign(["A", "B", "A", "C"]) == {"A": 1, "B": 2, "C": 3}

    def test_markers_are_stable(self) -> None:
        numberer = CitationNumberer()
        numberer.assign(["A", "B"])
        numberer.assign(["C", "B", "A"])
        assert numberer.markers == {"A": 1, "B": 2, "C": 3}

    def test_reset_starts_over(self) -> None:
        numberer = CitationNumberer()
        numberer.assign(["A", "B"])
        numberer.reset()
        assert numberer.marker_for("B") == 1
        assert numberer.entries == []

    def test_replay_after_reset_is_identical(self) -> None:
        numberer = CitationNumberer()
        first = numberer.assign(["A", "B", "A", "C"])
        numberer.reset()
        assert numberer.assign(["A", "B", "A", "C"]) == first == {"A": 1, "B": 2, "C": 3}


class TestUpdate:
    @pytest.mark.asyncio
    async def test_same_work_shares_marker(self) -> None:
        numberer = CitationNumberer()
        entries = await numberer.update(
            [_item("c1", "K1"), _external("c2", "S9"), _item("c3", "K1"), _item("c4", "K2")]
        )
        assert [e.marker for e in entries] == [1, 2, 1, 3]
        assert [e.kind for e in entries] == ["item", "external", "item", "item"]

    @pytest.mark.asyncio
    async def test_names_resolved_only_for_new_citations(self) -> None:
        resolve = AsyncMock(return_value="Vaswani et al. 2017")
        numberer = CitationNumberer(resolve)
        await numberer.update([_item("c1", "K1")])
        entries = await numberer.update([_item("c1", "K1"), _item("c2", "K1")])
        assert entries[0].name == "Vaswani et al. 2017"
        assert resolve.await_count == 2
        resolve.assert_awaited_with(LibraryCoordinate(library_id=1, key="K1"))

    @pytest.mark.asyncio
    async def test_resolver_failure_falls_back_to_author_year(self) -> None:
        resolve = AsyncMock(side_effect=RuntimeError("gone"))
        numberer = CitationNumberer(resolve)
        (entry,) = await numberer.update([_item("c1", "K1", author_year="Smith 2020")])
        assert entry.name == "Smith 2020"

    @pytest.mark.asyncio
    async def test_external_uses_preview(self) -> None:
        numberer = CitationNumberer()
        (entry,) = await numberer.update([_external("c1", "S1", author_year="Doe 2021", preview="Doe, J. (2021)")])
        assert entry.kind == "external"
        assert entry.name == "Doe 2021"
        assert entry.formatted == "Doe, J. (2021)"
        assert entry.key == "semantic_scholar:S1"

    @pytest.mark.asyncio
    async def test_known_citation_gets_latest_metadata(self) -> None:
        numberer = CitationNumberer()
        await numberer.update([_item("c1", "K1")])
        (entry,) = await numberer.update([_item("c1", "K1", preview="updated")])
        assert entry.metadata.preview == "updated"
        assert entry.marker == 1
