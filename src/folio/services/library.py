"""Reference library store: the protocol the reconciler depends on and a SQLite implementation."""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from ..db import ThreadSafeConnection
from ..models import ExternalReference, LibraryCoordinate, ReferenceQuery
from .dedup import Candidate, clean_doi, clean_isbn, extract_last_name, matches, normalize_string, year_from_date

logger = logging.getLogger(__name__)

_KEY_ALPHABET = "23456789ABCDEFGHIJKLMNPQRSTUVWXYZ"

Indexer = Callable[[list[LibraryCoordinate]], Awaitable[Any]]

# Editable field names as the agent sends them, mapped to record columns
EDITABLE_FIELDS: dict[str, str] = {
    "title": "title",
    "date": "date",
    "DOI": "doi",
    "ISBN": "isbn",
    "publicationTitle": "venue",
    "url": "url",
    "abstractNote": "abstract",
}


class LibraryStore(Protocol):
    async def create_record(
        self,
        reference: ExternalReference,
        collection_keys: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> LibraryCoordinate: ...

    async def delete_record(self, coord: LibraryCoordinate) -> bool: ...

    async def get_by_coordinate(self, coord: LibraryCoordinate) -> dict[str, Any] | None: ...

    async def is_soft_deleted(self, coord: LibraryCoordinate) -> bool: ...

    async def index_for_search(self, coords: list[LibraryCoordinate]) -> None: ...

    async def find_existing(self, query: ReferenceQuery) -> LibraryCoordinate | None: ...

    async def display_name(self, coord: LibraryCoordinate) -> str | None: ...

    async def create_note(
        self, title: str, content: str, parent_key: str | None = None, library_id: int | None = None
    ) -> LibraryCoordinate: ...

    async def delete_note(self, coord: LibraryCoordinate) -> bool: ...

    async def note_exists(self, coord: LibraryCoordinate) -> bool: ...

    async def update_fields(self, coord: LibraryCoordinate, values: dict[str, str | None]) -> dict[str, str | None]: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_key() -> str:
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(8))


def _row_to_record(row: sqlite3.Row, creators: list[sqlite3.Row]) -> dict[str, Any]:
    record = dict(row)
    record["collection_keys"] = json.loads(record.get("collection_keys") or "[]")
    record["tags"] = json.loads(record.get("tags") or "[]")
    record["deleted"] = bool(record["deleted"])
    record["creators"] = [c["name"] for c in creators]
    return record


class LibraryDatabase:
    """SQLite-backed reference library.

    Records removed through :meth:`trash_record` stay in the table with ``deleted=1``
    and are invisible to duplicate lookup; :meth:`delete_record` erases the row.
    """

    def __init__(self, db: ThreadSafeConnection, library_id: int = 1, indexer: Indexer | None = None) -> None:
        self._db = db
        self.library_id = library_id
        self._indexer = indexer

    def set_indexer(self, indexer: Indexer | None) -> None:
        self._indexer = indexer

    # --- Records ---

    async def create_record(
        self,
        reference: ExternalReference,
        collection_keys: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> LibraryCoordinate:
        key = generate_key()
        now = _now()
        title = reference.title or ""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO records (library_id, key, title, normalized_title, date, year, doi, isbn, source_id,"
                " venue, url, abstract, collection_keys, tags, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    self.library_id,
                    key,
                    title,
                    normalize_string(title),
                    reference.date,
                    reference.year or year_from_date(reference.date),
                    clean_doi(reference.identifiers.doi),
                    clean_isbn(reference.identifiers.isbn),
                    reference.source_id or None,
                    reference.venue,
                    reference.url,
                    reference.abstract,
                    json.dumps(collection_keys or []),
                    json.dumps(tags or []),
                    now,
                    now,
                ),
            )
            record_id = cursor.lastrowid
            for position, name in enumerate(a for a in reference.authors if a and a.strip()):
                conn.execute(
                    "INSERT INTO record_creators (record_id, position, name, last_name) VALUES (?, ?, ?, ?)",
                    (record_id, position, name, extract_last_name(name)),
                )
        logger.info("Created record %s-%s (%r)", self.library_id, key, title[:80])
        return LibraryCoordinate(library_id=self.library_id, key=key)

    async def delete_record(self, coord: LibraryCoordinate) -> bool:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE library_id = ? AND key = ?",
                (coord.library_id, coord.key),
            )
        deleted = cursor.rowcount > 0
        if not deleted:
            logger.info("Record %s not found; already deleted", coord)
        return deleted

    def trash_record(self, coord: LibraryCoordinate) -> bool:
        """Soft-delete a record, as a user moving it to the trash would."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE records SET deleted = 1, updated_at = ? WHERE library_id = ? AND key = ?",
                (_now(), coord.library_id, coord.key),
            )
        return cursor.rowcount > 0

    def _get_row(self, coord: LibraryCoordinate) -> sqlite3.Row | None:
        return self._db.execute_fetchone(
            "SELECT * FROM records WHERE library_id = ? AND key = ?",
            (coord.library_id, coord.key),
        )

    def _creators(self, record_id: int) -> list[sqlite3.Row]:
        return self._db.execute_fetchall(
            "SELECT name, last_name FROM record_creators WHERE record_id = ? ORDER BY position",
            (record_id,),
        )

    async def get_by_coordinate(self, coord: LibraryCoordinate) -> dict[str, Any] | None:
        row = self._get_row(coord)
        if not row:
            return None
        return _row_to_record(row, self._creators(row["id"]))

    async def is_soft_deleted(self, coord: LibraryCoordinate) -> bool:
        row = self._get_row(coord)
        return bool(row and row["deleted"])

    async def index_for_search(self, coords: list[LibraryCoordinate]) -> None:
        if not coords or self._indexer is None:
            return
        await self._indexer(coords)

    # --- Duplicate lookup ---

    def _first_live(self, column: str, value: str) -> LibraryCoordinate | None:
        row = self._db.execute_fetchone(
            f"SELECT library_id, key FROM records WHERE library_id = ? AND {column} = ? AND deleted = 0"
            " ORDER BY id LIMIT 1",
            (self.library_id, value),
        )
        if not row:
            return None
        return LibraryCoordinate(library_id=row["library_id"], key=row["key"])

    async def find_existing(self, query: ReferenceQuery) -> LibraryCoordinate | None:
        """Look up a record equivalent to ``query``: ISBN, then DOI, then fuzzy metadata."""
        isbn = clean_isbn(query.isbn)
        if isbn:
            found = self._first_live("isbn", isbn)
            if found:
                return found

        doi = clean_doi(query.doi)
        if doi:
            found = self._first_live("doi", doi)
            if found:
                return found

        normalized_title = normalize_string(query.title)
        if not normalized_title:
            return None

        rows = self._db.execute_fetchall(
            "SELECT * FROM records WHERE library_id = ? AND normalized_title = ? AND deleted = 0 ORDER BY id",
            (self.library_id, normalized_title),
        )
        for row in rows:
            candidate = Candidate(
                title=row["title"],
                year=row["year"],
                doi=row["doi"],
                isbn=row["isbn"],
                creator_last_names=[c["last_name"] for c in self._creators(row["id"])],
            )
            if matches(query, candidate):
                return LibraryCoordinate(library_id=row["library_id"], key=row["key"])
        return None

    async def display_name(self, coord: LibraryCoordinate) -> str | None:
        row = self._get_row(coord)
        if not row:
            return None
        creators = self._creators(row["id"])
        year = row["year"]
        if not creators:
            author = row["title"][:40] or coord.key
        elif len(creators) == 1:
            author = creators[0]["last_name"]
        elif len(creators) == 2:
            author = f"{creators[0]['last_name']} and {creators[1]['last_name']}"
        else:
            author = f"{creators[0]['last_name']} et al."
        return f"{author} {year}" if year else author

    # --- Annotations ---

    def insert_annotation(
        self,
        *,
        library_id: int,
        attachment_key: str,
        annotation_type: str,
        page_index: int,
        color: str | None = None,
        text: str = "",
        comment: str = "",
        position: dict[str, Any] | None = None,
    ) -> str:
        key = generate_key()
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO annotations (library_id, key, attachment_key, annotation_type, page_index, color,"
                " text, comment, position, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    library_id,
                    key,
                    attachment_key,
                    annotation_type,
                    page_index,
                    color,
                    text,
                    comment,
                    json.dumps(position or {}),
                    _now(),
                ),
            )
        return key

    def delete_annotation(self, library_id: int, key: str) -> bool:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM annotations WHERE library_id = ? AND key = ?",
                (library_id, key),
            )
        return cursor.rowcount > 0

    def annotation_exists(self, library_id: int, key: str) -> bool:
        row = self._db.execute_fetchone(
            "SELECT 1 FROM annotations WHERE library_id = ? AND key = ? AND deleted = 0",
            (library_id, key),
        )
        return row is not None

    def list_annotations(self, library_id: int, attachment_key: str) -> list[dict[str, Any]]:
        rows = self._db.execute_fetchall(
            "SELECT * FROM annotations WHERE library_id = ? AND attachment_key = ? AND deleted = 0 ORDER BY id",
            (library_id, attachment_key),
        )
        result = []
        for row in rows:
            item = dict(row)
            item["position"] = json.loads(item.get("position") or "{}")
            result.append(item)
        return result

    # --- Notes ---

    async def create_note(
        self, title: str, content: str, parent_key: str | None = None, library_id: int | None = None
    ) -> LibraryCoordinate:
        """Create a note, attached to the record ``parent_key`` when given."""
        library_id = library_id if library_id is not None else self.library_id
        if parent_key and not self._get_row(LibraryCoordinate(library_id=library_id, key=parent_key)):
            raise ValueError(f"Parent record {library_id}-{parent_key} not found")
        key = generate_key()
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO notes (library_id, key, parent_key, title, content, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (library_id, key, parent_key, title, content, _now()),
            )
        logger.info("Created note %s-%s (parent=%s)", library_id, key, parent_key)
        return LibraryCoordinate(library_id=library_id, key=key)

    async def delete_note(self, coord: LibraryCoordinate) -> bool:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM notes WHERE library_id = ? AND key = ?",
                (coord.library_id, coord.key),
            )
        return cursor.rowcount > 0

    async def note_exists(self, coord: LibraryCoordinate) -> bool:
        row = self._db.execute_fetchone(
            "SELECT 1 FROM notes WHERE library_id = ? AND key = ? AND deleted = 0",
            (coord.library_id, coord.key),
        )
        return row is not None

    def get_note(self, coord: LibraryCoordinate) -> dict[str, Any] | None:
        row = self._db.execute_fetchone(
            "SELECT * FROM notes WHERE library_id = ? AND key = ?",
            (coord.library_id, coord.key),
        )
        return dict(row) if row else None

    # --- Metadata edits ---

    async def update_fields(self, coord: LibraryCoordinate, values: dict[str, str | None]) -> dict[str, str | None]:
        """Overwrite record fields and return their previous values, keyed like ``values``.

        Every field name is checked before anything is written; an unknown field
        or a missing record raises :class:`ValueError` and leaves the record untouched.
        """
        unknown = [name for name in values if name not in EDITABLE_FIELDS]
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(unknown)}")
        row = self._get_row(coord)
        if not row:
            raise ValueError(f"Record {coord} not found")

        previous: dict[str, str | None] = {}
        assignments: dict[str, Any] = {}
        for name, value in values.items():
            column = EDITABLE_FIELDS[name]
            previous[name] = row[column]
            if column == "doi":
                value = clean_doi(value)
            elif column == "isbn":
                value = clean_isbn(value)
            elif column == "title":
                value = value or ""
            assignments[column] = value
            if column == "title":
                assignments["normalized_title"] = normalize_string(value)
            elif column == "date":
                assignments["year"] = year_from_date(value)

        columns = ", ".join(f"{column} = ?" for column in assignments)
        with self._db.transaction() as conn:
            conn.execute(
                f"UPDATE records SET {columns}, updated_at = ? WHERE library_id = ? AND key = ?",
                (*assignments.values(), _now(), coord.library_id, coord.key),
            )
        logger.info("Updated %s on record %s", ", ".join(values), coord)
        return previous
