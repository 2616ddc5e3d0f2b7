"""Tests for the external reference resolver."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from folio.models import ExternalReference, LibraryCoordinate
from folio.services.references import UNCHECKED, ExternalReferenceResolver

COORD = LibraryCoordinate(library_id=1, key="FOUND234")


def _library(find_result=None, delay: float = 0.0) -> AsyncMock:
    library = AsyncMock()

    async def find_existing(query):
        await asyncio.sleep(delay)
        return find_result

    library.find_existing = AsyncMock(side_effect=find_existing)
    library.get_by_coordinate = AsyncMock(return_value=None)
    library.is_soft_deleted = AsyncMock(return_value=False)
    return library


def _ref(source_id: str = "S1", **kwargs) -> ExternalReference:
    return ExternalReference(semantic_scholar_id=source_id, title=f"Title {source_id}", **kwargs)


class TestCheck:
    @pytest.mark.asyncio
    async def test_concurrent_checks_share_one_lookup(self) -> None:
        library = _library(COORD, delay=0.05)
        resolver = ExternalReferenceResolver(library)
        results = await asyncio.gather(*(resolver.check(_ref()) for _ in range(5)))
        assert results == [COORD] * 5
        assert library.find_existing.await_count == 1
        assert resolver.get_cached("S1") == COORD

    @pytest.mark.asyncio
    async def test_absent_result_is_cached(self) -> None:
        library = _library(None)
        resolver = ExternalReferenceResolver(library)
        assert resolver.get_cached("S1") is UNCHECKED
        assert await resolver.check(_ref()) is None
        assert await resolver.check(_ref()) is None
        assert resolver.get_cached("S1") is None
        assert library.find_existing.await_count == 1

    @pytest.mark.asyncio
    async def test_suggested_coordinate_wins_when_present(self) -> None:
        library = _library(None)
        suggested = LibraryCoordinate(library_id=1, key="SUGG2345")
        library.get_by_coordinate.return_value = {"key": "SUGG2345"}
        resolver = ExternalReferenceResolver(library)
        ref = _ref(item_exists=True, library_id=1, item_key="SUGG2345")
        assert await resolver.check(ref) == suggested
        library.find_existing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_soft_deleted_suggestion_falls_back_to_search(self) -> None:
        library = _library(COORD)
        library.get_by_coordinate.return_value = {"key": "SUGG2345"}
        library.is_soft_deleted.return_value = True
        resolver = ExternalReferenceResolver(library)
        ref = _ref(item_exists=True, library_id=1, item_key="SUGG2345")
        assert await resolver.check(ref) == COORD

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self) -> None:
        library = _library()
        library.find_existing.side_effect = RuntimeError("db locked")
        resolver = ExternalReferenceResolver(library)
        with pytest.raises(RuntimeError):
            await resolver.check(_ref())
        assert resolver.get_cached("S1") is UNCHECKED
        assert not resolver.is_checking("S1")

    @pytest.mark.asyncio
    async def test_reference_without_source_id_is_not_cached(self) -> None:
        library = _library(COORD)
        resolver = ExternalReferenceResolver(library)
        assert await resolver.check(ExternalReference(title="No id")) == COORD
        assert resolver.cache_size == 0

    @pytest.mark.asyncio
    async def test_reset_discards_inflight_result(self) -> None:
        library = _library(COORD, delay=0.05)
        resolver = ExternalReferenceResolver(library)
        task = asyncio.create_task(resolver.check(_ref()))
        await asyncio.sleep(0.01)
        resolver.reset()
        assert await task == COORD
        assert resolver.get_cached("S1") is UNCHECKED


class TestCheckBulk:
    @pytest.mark.asyncio
    async def test_mixed_cached_and_unresolved(self) -> None:
        library = _library(None)
        resolver = ExternalReferenceResolver(library)
        resolver.mark_resolved("S1", COORD)
        results = await resolver.check_bulk([_ref("S1"), _ref("S2"), _ref("S2"), _ref("S3")])
        assert results == {"S1": COORD, "S2": None, "S3": None}
        assert library.find_existing.await_count == 2
        assert resolver.cache_size == 3

    @pytest.mark.asyncio
    async def test_joins_inflight_single_check(self) -> None:
        library = _library(COORD, delay=0.05)
        resolver = ExternalReferenceResolver(library)
        single = asyncio.create_task(resolver.check(_ref("S1")))
        await asyncio.sleep(0)
        assert resolver.is_checking("S1")
        results = await resolver.check_bulk([_ref("S1")])
        assert results == {"S1": COORD}
        assert await single == COORD
        assert library.find_existing.await_count == 1

    @pytest.mark.asyncio
    async def test_single_check_joins_bulk(self) -> None:
        library = _library(COORD, delay=0.05)
        resolver = ExternalReferenceResolver(library)
        bulk = asyncio.create_task(resolver.check_bulk([_ref("S1"), _ref("S2")]))
        await asyncio.sleep(0)
        assert await resolver.check(_ref("S2")) == COORD
        await bulk
        assert library.find_existing.await_count == 2


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate(self) -> None:
        resolver = ExternalReferenceResolver(_library(None))
        resolver.mark_resolved("S1", COORD)
        resolver.invalidate("S1")
        assert resolver.get_cached("S1") is UNCHECKED

    @pytest.mark.asyncio
    async def test_invalidate_coordinate(self) -> None:
        resolver = ExternalReferenceResolver(_library(None))
        resolver.mark_resolved("S1", COORD)
        resolver.mark_resolved("S2", COORD)
        resolver.mark_resolved("S3", None)
        assert sorted(resolver.invalidate_coordinate(COORD)) == ["S1", "S2"]
        assert resolver.cache_size == 1

    def test_unchecked_is_falsy_singleton(self) -> None:
        assert not UNCHECKED
        assert repr(UNCHECKED) == "UNCHECKED"
