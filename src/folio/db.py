"""SQLite database initialization and connection management."""

from __future__ import annotations

import logging
import sqlite3
import stat
import threading
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    library_id INTEGER NOT NULL,
    key TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    normalized_title TEXT NOT NULL DEFAULT '',
    date TEXT DEFAULT NULL,
    year INTEGER DEFAULT NULL,
    doi TEXT DEFAULT NULL,
    isbn TEXT DEFAULT NULL,
    source_id TEXT DEFAULT NULL,
    venue TEXT DEFAULT NULL,
    url TEXT DEFAULT NULL,
    abstract TEXT DEFAULT NULL,
    collection_keys TEXT NOT NULL DEFAULT '[]',
    tags TEXT NOT NULL DEFAULT '[]',
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (library_id, key)
);

CREATE TABLE IF NOT EXISTS record_creators (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id INTEGER NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    name TEXT NOT NULL,
    last_name TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (record_id) REFERENCES records(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS annotations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    library_id INTEGER NOT NULL,
    key TEXT NOT NULL,
    attachment_key TEXT NOT NULL,
    annotation_type TEXT NOT NULL,
    page_index INTEGER NOT NULL DEFAULT 0,
    color TEXT DEFAULT NULL,
    text TEXT NOT NULL DEFAULT '',
    comment TEXT NOT NULL DEFAULT '',
    position TEXT NOT NULL DEFAULT '{}',
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE (library_id, key)
);

CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    library_id INTEGER NOT NULL,
    key TEXT NOT NULL,
    parent_key TEXT DEFAULT NULL,
    title TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE (library_id, key)
);

CREATE INDEX IF NOT EXISTS idx_records_doi ON records(doi);
CREATE INDEX IF NOT EXISTS idx_records_isbn ON records(isbn);
CREATE INDEX IF NOT EXISTS idx_records_title ON records(normalized_title);
CREATE INDEX IF NOT EXISTS idx_creators_record ON record_creators(record_id);
CREATE INDEX IF NOT EXISTS idx_annotations_attachment ON annotations(library_id, attachment_key);
CREATE INDEX IF NOT EXISTS idx_notes_parent ON notes(library_id, parent_key);
"""


class ThreadSafeConnection:
    """Wrapper around sqlite3.Connection that serializes all access with a lock."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def execute_fetchone(self, sql: str, parameters: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, parameters).fetchone()

    def execute_fetchall(self, sql: str, parameters: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, parameters).fetchall()

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self):
        """Hold the lock for the entire transaction, auto-commit or rollback."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise


def _restrict_file_permissions(path: Path) -> None:
    """Set file to owner-only read/write (0o600)."""
    try:
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass


def init_db(db_path: Path | str) -> ThreadSafeConnection:
    """Open (creating if needed) the library database.

    Pass ``":memory:"`` for a throwaway database.
    """
    in_memory = str(db_path) == ":memory:"
    path = Path(db_path)
    is_new = not in_memory and not path.exists()
    conn = sqlite3.connect(str(db_path), check_same_thread=False)

    if is_new:
        _restrict_file_permissions(path)

    conn.row_factory = sqlite3.Row
    if not in_memory:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(_SCHEMA)
    conn.commit()

    if not in_memory:
        for suffix in ("-wal", "-shm"):
            sidecar = path.parent / (path.name + suffix)
            if sidecar.exists():
                _restrict_file_permissions(sidecar)

    logger.debug("Library database ready at %s", db_path)
    return ThreadSafeConnection(conn)
