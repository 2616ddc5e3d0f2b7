"""Existence checks for external references against the user's library.

Each source id is resolved at most once at a time: concurrent callers share one
in-flight lookup. Results, including "confirmed absent", are cached until
:meth:`ExternalReferenceResolver.invalidate` or :meth:`ExternalReferenceResolver.reset`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Final, Iterable

from ..models import ExternalReference, LibraryCoordinate
from .dedup import query_from_reference
from .library import LibraryStore

logger = logging.getLogger(__name__)


class _Unchecked:
    _instance: "_Unchecked | None" = None

    def __new__(cls) -> "_Unchecked":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNCHECKED"

    def __bool__(self) -> bool:
        return False


UNCHECKED: Final = _Unchecked()


class ExternalReferenceResolver:
    def __init__(self, library: LibraryStore) -> None:
        self._library = library
        self._cache: dict[str, LibraryCoordinate | None] = {}
        self._inflight: dict[str, asyncio.Future[LibraryCoordinate | None]] = {}
        self._generation = 0

    def get_cached(self, source_id: str) -> LibraryCoordinate | None | _Unchecked:
        return self._cache.get(source_id, UNCHECKED)

    def is_checking(self, source_id: str) -> bool:
        return source_id in self._inflight

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def check(self, reference: ExternalReference) -> LibraryCoordinate | None:
        source_id = reference.source_id
        if not source_id:
            # Nothing to key the cache on; resolve without caching.
            return await self._resolve(reference)

        if source_id in self._cache:
            return self._cache[source_id]

        fut = self._inflight.get(source_id)
        if fut is None:
            fut = self._start(source_id, reference)
        return await asyncio.shield(fut)

    def _start(self, source_id: str, reference: ExternalReference) -> asyncio.Future[LibraryCoordinate | None]:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[LibraryCoordinate | None] = loop.create_future()
        self._inflight[source_id] = fut
        generation = self._generation
        task = loop.create_task(self._run(source_id, reference, fut, generation))
        task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
        return fut

    async def _run(
        self,
        source_id: str,
        reference: ExternalReference,
        fut: asyncio.Future[LibraryCoordinate | None],
        generation: int,
    ) -> None:
        try:
            result = await self._resolve(reference)
        except Exception as e:
            logger.warning("Reference check failed for %s: %s", source_id, e)
            if not fut.done():
                fut.set_exception(e)
                fut.add_done_callback(lambda f: f.exception())
        else:
            # A reset while this was running means the result belongs to a previous session.
            if generation == self._generation:
                self._cache[source_id] = result
            if not fut.done():
                fut.set_result(result)
        finally:
            if self._inflight.get(source_id) is fut:
                del self._inflight[source_id]

    async def _resolve(self, reference: ExternalReference) -> LibraryCoordinate | None:
        suggested = reference.suggested_coordinate
        if suggested is not None:
            record = await self._library.get_by_coordinate(suggested)
            if record is not None and not await self._library.is_soft_deleted(suggested):
                return suggested
            logger.debug("Suggested record %s is gone; falling back to search", suggested)

        return await self._library.find_existing(query_from_reference(reference))

    async def check_bulk(self, references: Iterable[ExternalReference]) -> dict[str, LibraryCoordinate | None]:
        """Check many references; results are keyed by source id.

        Cached entries are answered immediately, in-flight ones are awaited, and
        the rest are looked up concurrently. New results land in the cache together
        once every lookup has finished.
        """
        results: dict[str, LibraryCoordinate | None] = {}
        waiting: dict[str, asyncio.Future[LibraryCoordinate | None]] = {}
        unresolved: dict[str, ExternalReference] = {}

        for reference in references:
            source_id = reference.source_id
            if not source_id or source_id in results or source_id in waiting or source_id in unresolved:
                continue
            if source_id in self._cache:
                results[source_id] = self._cache[source_id]
            elif source_id in self._inflight:
                waiting[source_id] = self._inflight[source_id]
            else:
                unresolved[source_id] = reference

        loop = asyncio.get_running_loop()
        own: dict[str, asyncio.Future[LibraryCoordinate | None]] = {}
        for source_id in unresolved:
            fut = loop.create_future()
            self._inflight[source_id] = fut
            own[source_id] = fut

        generation = self._generation
        try:
            resolved = await asyncio.gather(
                *(self._resolve(ref) for ref in unresolved.values()), return_exceptions=True
            )
            fresh: dict[str, LibraryCoordinate | None] = {}
            for source_id, outcome in zip(unresolved, resolved):
                fut = own[source_id]
                if isinstance(outcome, BaseException):
                    logger.warning("Reference check failed for %s: %s", source_id, outcome)
                    fut.set_exception(outcome)
                    fut.add_done_callback(lambda f: f.exception())
                    continue
                fresh[source_id] = outcome
                fut.set_result(outcome)
            if generation == self._generation:
                self._cache.update(fresh)
            results.update(fresh)
        finally:
            for source_id, fut in own.items():
                if not fut.done():
                    fut.cancel()
                if self._inflight.get(source_id) is fut:
                    del self._inflight[source_id]

        for source_id, fut in waiting.items():
            try:
                results[source_id] = await asyncio.shield(fut)
            except Exception as e:
                logger.warning("Shared reference check failed for %s: %s", source_id, e)
        return results

    def invalidate(self, source_id: str) -> None:
        self._cache.pop(source_id, None)

    def mark_resolved(self, source_id: str, coordinate: LibraryCoordinate | None) -> None:
        if source_id:
            self._cache[source_id] = coordinate

    def invalidate_coordinate(self, coordinate: LibraryCoordinate) -> list[str]:
        """Forget every source id cached as pointing at ``coordinate``."""
        stale = [sid for sid, coord in self._cache.items() if coord == coordinate]
        for sid in stale:
            del self._cache[sid]
        return stale

    def reset(self) -> None:
        """Forget everything; used on user or session switch."""
        self._cache.clear()
        self._inflight.clear()
        self._generation += 1
