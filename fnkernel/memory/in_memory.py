"""Process-lifetime vector store."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Optional, Sequence

from fnkernel.memory.base import DEFAULT_TOP_K, VectorStore, VectorStoreCollection
from fnkernel.memory.records import CollectionDefinition, Key, MemoryRecord
from fnkernel.protocols import StorageError

logger = logging.getLogger(__name__)


class _CollectionData:
    def __init__(self, definition: CollectionDefinition) -> None:
        self.definition = definition
        # dict keeps insertion order; reassigning a key keeps its slot
        self.records: dict[Key, MemoryRecord] = {}


class InMemoryCollection(VectorStoreCollection):
    def __init__(self, store: InMemoryVectorStore, name: str, definition: CollectionDefinition):
        super().__init__(name, definition, store.default_top_k)
        self._store = store

    def _data(self, create: bool = False) -> Optional[_CollectionData]:
        return self._store._data_for(self._name, self._definition, create=create)

    def create_collection_if_not_exists(self) -> None:
        self._data(create=True)

    def collection_exists(self) -> bool:
        return self._data() is not None

    def _write(self, records: Sequence[MemoryRecord]) -> None:
        with self._store._lock:
            data = self._data(create=True)
            for record in records:
                data.records[record.key] = copy.deepcopy(record)

    def _read(self, key: Key) -> Optional[MemoryRecord]:
        with self._store._lock:
            data = self._data()
            if data is None or key not in data.records:
                return None
            return copy.deepcopy(data.records[key])

    def _remove(self, key: Key) -> bool:
        with self._store._lock:
            data = self._data()
            if data is None:
                return False
            return data.records.pop(key, None) is not None

    def _all(self) -> list[MemoryRecord]:
        with self._store._lock:
            data = self._data()
            return [copy.deepcopy(r) for r in data.records.values()] if data is not None else []

    def __len__(self) -> int:
        with self._store._lock:
            data = self._data()
            return len(data.records) if data is not None else 0


class InMemoryVectorStore(VectorStore):
    """Collections live for the lifetime of the store object.

    Writes are serialized by a lock; reads see a consistent snapshot.
    """

    def __init__(self, default_top_k: int = DEFAULT_TOP_K) -> None:
        super().__init__(default_top_k)
        self._lock = threading.RLock()
        self._collections: dict[str, _CollectionData] = {}

    def _data_for(
        self, name: str, definition: CollectionDefinition, create: bool = False
    ) -> Optional[_CollectionData]:
        with self._lock:
            data = self._collections.get(name)
            if data is not None:
                self._check_definition(name, data.definition, definition)
                return data
            if not create:
                return None
            data = _CollectionData(definition)
            self._collections[name] = data
            logger.debug("Created in-memory collection %s", name)
            return data

    def get_collection(
        self, name: str, definition: Optional[CollectionDefinition] = None
    ) -> InMemoryCollection:
        with self._lock:
            existing = self._collections.get(name)
            resolved = self._check_definition(
                name, existing.definition if existing else None, definition
            )
        return InMemoryCollection(self, name, resolved)

    def list_collection_names(self) -> list[str]:
        with self._lock:
            return list(self._collections)

    def delete_collection(self, name: str) -> None:
        with self._lock:
            self._collections.pop(name, None)
