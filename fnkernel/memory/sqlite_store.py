"""
SQLite-backed vector store.

Layout:
- ``collections``: one row per collection with its definition (key type,
  field names, dimensions, distance) as JSON, checked on every reopen
- ``records``: (collection, key) primary key, an insertion ``position``
  that survives replacement, fields as JSON, vector as packed float64

Similarity is computed in Python over the collection's rows; there is no
ANN index.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional, Sequence, Union

from fnkernel.memory.base import DEFAULT_TOP_K, VectorStore, VectorStoreCollection
from fnkernel.memory.embeddings import pack_embedding, unpack_embedding
from fnkernel.memory.records import CollectionDefinition, Key, MemoryRecord
from fnkernel.protocols import StorageError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS collections (
    name TEXT PRIMARY KEY,
    definition TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL REFERENCES collections(name) ON DELETE CASCADE,
    key TEXT NOT NULL,
    position INTEGER NOT NULL,
    fields TEXT NOT NULL,
    vector BLOB NOT NULL,
    PRIMARY KEY (collection, key)
);
CREATE INDEX IF NOT EXISTS idx_records_position ON records(collection, position);
"""


class SQLiteCollection(VectorStoreCollection):
    def __init__(self, store: SQLiteVectorStore, name: str, definition: CollectionDefinition):
        super().__init__(name, definition, store.default_top_k)
        self._store = store

    def _row_to_record(self, row: sqlite3.Row) -> MemoryRecord:
        key: Key = int(row["key"]) if self._definition.key_type == "int" else row["key"]
        return MemoryRecord(key=key, fields=json.loads(row["fields"]), vector=unpack_embedding(row["vector"]))

    def create_collection_if_not_exists(self) -> None:
        with self._store._connect() as conn:
            self._store._ensure_collection(conn, self._name, self._definition)

    def collection_exists(self) -> bool:
        with self._store._connect() as conn:
            return self._store._load_definition(conn, self._name) is not None

    def _write(self, records: Sequence[MemoryRecord]) -> None:
        with self._store._connect() as conn:
            self._store._ensure_collection(conn, self._name, self._definition)
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) FROM records WHERE collection = ?",
                (self._name,),
            ).fetchone()
            next_position = row[0] + 1
            for record in records:
                conn.execute(
                    """
                    INSERT INTO records (collection, key, position, fields, vector)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(collection, key) DO UPDATE SET
                        fields = excluded.fields,
                        vector = excluded.vector
                    """,
                    (
                        self._name,
                        str(record.key),
                        next_position,
                        json.dumps(record.fields),
                        pack_embedding(record.vector),
                    ),
                )
                next_position += 1

    def _read(self, key: Key) -> Optional[MemoryRecord]:
        with self._store._connect() as conn:
            row = conn.execute(
                "SELECT key, fields, vector FROM records WHERE collection = ? AND key = ?",
                (self._name, str(key)),
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def _remove(self, key: Key) -> bool:
        with self._store._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE collection = ? AND key = ?",
                (self._name, str(key)),
            )
            return cursor.rowcount > 0

    def _all(self) -> list[MemoryRecord]:
        with self._store._connect() as conn:
            rows = conn.execute(
                "SELECT key, fields, vector FROM records WHERE collection = ? ORDER BY position",
                (self._name,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def __len__(self) -> int:
        with self._store._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM records WHERE collection = ?", (self._name,)
            ).fetchone()
        return int(row[0])


class SQLiteVectorStore(VectorStore):
    """Vector store persisted in a single SQLite file.

    Connections are opened per operation; each operation is one
    transaction, so a batch upsert is all-or-nothing.
    """

    def __init__(self, db_path: Union[str, Path], default_top_k: int = DEFAULT_TOP_K) -> None:
        super().__init__(default_top_k)
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Commit on success, roll back on error, always close."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug("Transaction failed, rolling back: %s", e)
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception as e:
            logger.debug("Transaction failed, rolling back: %s", e)
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _load_definition(conn: sqlite3.Connection, name: str) -> Optional[CollectionDefinition]:
        row = conn.execute("SELECT definition FROM collections WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        try:
            return CollectionDefinition.from_dict(json.loads(row["definition"]))
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Corrupt definition for collection '{name}': {e}") from e

    def _ensure_collection(
        self, conn: sqlite3.Connection, name: str, definition: CollectionDefinition
    ) -> None:
        existing = self._load_definition(conn, name)
        self._check_definition(name, existing, definition)
        if existing is None:
            conn.execute(
                "INSERT INTO collections (name, definition) VALUES (?, ?)",
                (name, json.dumps(definition.to_dict())),
            )
            logger.debug("Created collection %s in %s", name, self.db_path)

    def get_collection(
        self, name: str, definition: Optional[CollectionDefinition] = None
    ) -> SQLiteCollection:
        with self._connect() as conn:
            existing = self._load_definition(conn, name)
        resolved = self._check_definition(name, existing, definition)
        return SQLiteCollection(self, name, resolved)

    def list_collection_names(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM collections ORDER BY rowid").fetchall()
        return [row["name"] for row in rows]

    def delete_collection(self, name: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM records WHERE collection = ?", (name,))
            conn.execute("DELETE FROM collections WHERE name = ?", (name,))
