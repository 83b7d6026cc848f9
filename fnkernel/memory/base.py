"""Vector store interface shared by the in-memory and SQLite stores.

A store hands out collection handles. Handles are cheap and lazy: the
collection itself only exists once create_collection_if_not_exists() is
called or the first record is written. Embeddings are never generated
here; callers supply vectors.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from fnkernel.memory.records import (
    CollectionDefinition,
    Key,
    MemoryRecord,
    RecordFilter,
    ScoredRecord,
    rank,
)
from fnkernel.protocols import StorageError

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5


class VectorStoreCollection(ABC):
    """A named set of records with a fixed definition."""

    def __init__(self, name: str, definition: CollectionDefinition, default_top_k: int = DEFAULT_TOP_K):
        if not name:
            raise ValueError("Collection name must not be empty")
        self._name = name
        self._definition = definition
        self._default_top_k = default_top_k

    @property
    def name(self) -> str:
        return self._name

    @property
    def definition(self) -> CollectionDefinition:
        return self._definition

    # ---- Storage primitives ----

    @abstractmethod
    def create_collection_if_not_exists(self) -> None: ...

    @abstractmethod
    def collection_exists(self) -> bool: ...

    @abstractmethod
    def _write(self, records: Sequence[MemoryRecord]) -> None:
        """Insert or replace already-validated records, atomically."""

    @abstractmethod
    def _read(self, key: Key) -> Optional[MemoryRecord]: ...

    @abstractmethod
    def _remove(self, key: Key) -> bool: ...

    @abstractmethod
    def _all(self) -> list[MemoryRecord]:
        """Every record, in insertion order."""

    @abstractmethod
    def __len__(self) -> int: ...

    # ---- Public operations ----

    def _check_key(self, key: Key) -> None:
        expected = int if self._definition.key_type == "int" else str
        if not isinstance(key, expected) or isinstance(key, bool):
            raise ValueError(f"Key {key!r} is not of type {self._definition.key_type}")

    def upsert(self, record: MemoryRecord) -> Key:
        """Insert or replace one record. Replacing keeps its position."""
        self._definition.validate(record)
        self._write([record])
        return record.key

    def upsert_batch(self, records: Sequence[MemoryRecord]) -> list[Key]:
        """Validate every record, then write all of them or none."""
        records = list(records)
        for record in records:
            self._definition.validate(record)
        if records:
            self._write(records)
        logger.debug("Upserted %d records into %s", len(records), self._name)
        return [r.key for r in records]

    def get(self, key: Key) -> Optional[MemoryRecord]:
        self._check_key(key)
        return self._read(key)

    def delete(self, key: Key) -> bool:
        """Remove a record. Returns False if it was not there."""
        self._check_key(key)
        return self._remove(key)

    def search(
        self,
        vector: Sequence[float],
        top_k: Optional[int] = None,
        filter: Optional[RecordFilter] = None,
    ) -> list[ScoredRecord]:
        """Records most similar to ``vector``, best first.

        Args:
            vector: Query embedding; must match the collection's dimensions.
            top_k: Maximum results (defaults to the store's default).
            filter: Field-equality mapping or a predicate over MemoryRecord.
        """
        self._definition.validate_query(vector)
        limit = self._default_top_k if top_k is None else top_k
        if limit < 1:
            raise ValueError("top_k must be >= 1")
        return rank(self._all(), vector, self._definition.distance, limit, filter)


class VectorStore(ABC):
    """Factory and registry of collections."""

    def __init__(self, default_top_k: int = DEFAULT_TOP_K) -> None:
        if default_top_k < 1:
            raise ValueError("default_top_k must be >= 1")
        self.default_top_k = default_top_k

    @abstractmethod
    def get_collection(
        self, name: str, definition: Optional[CollectionDefinition] = None
    ) -> VectorStoreCollection:
        """Return a handle for ``name``.

        Raises:
            StorageError: ``name`` exists with a different definition, or
                does not exist and no definition was given.
        """

    @abstractmethod
    def list_collection_names(self) -> list[str]: ...

    @abstractmethod
    def delete_collection(self, name: str) -> None: ...

    @staticmethod
    def _check_definition(
        name: str,
        existing: Optional[CollectionDefinition],
        requested: Optional[CollectionDefinition],
    ) -> CollectionDefinition:
        if existing is None and requested is None:
            raise StorageError(f"Collection '{name}' does not exist and no definition was given")
        if existing is not None and requested is not None and existing != requested:
            raise StorageError(
                f"Collection '{name}' already exists with a different definition: "
                f"{existing.to_dict()} != {requested.to_dict()}"
            )
        return existing or requested
