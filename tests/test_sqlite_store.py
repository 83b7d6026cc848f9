"""SQLite-specific vector store behaviour: persistence and schema checks."""

import sqlite3

import pytest

from fnkernel.kernel import Kernel
from fnkernel.memory import CollectionDefinition, MemoryRecord, SQLiteVectorStore, records_from_texts
from fnkernel.protocols import StorageError


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "nested" / "vectors.db"


class TestPersistence:
    def test_records_survive_reopen(self, db_path):
        definition = CollectionDefinition(dimensions=2, fields=("text",))
        first = SQLiteVectorStore(db_path)
        first.get_collection("notes", definition).upsert_batch(
            [
                MemoryRecord(key="b", fields={"text": "bee"}, vector=(0.0, 1.0)),
                MemoryRecord(key="a", fields={"text": "ay"}, vector=(1.0, 0.0)),
            ]
        )

        reopened = SQLiteVectorStore(db_path)
        notes = reopened.get_collection("notes")
        assert notes.definition == definition
        assert notes.get("a").fields == {"text": "ay"}
        assert [r.record.key for r in notes.search((1.0, 1.0))] == ["b", "a"]

    def test_definition_checked_on_reopen(self, db_path):
        SQLiteVectorStore(db_path).get_collection(
            "notes", CollectionDefinition(dimensions=2)
        ).create_collection_if_not_exists()
        with pytest.raises(StorageError):
            SQLiteVectorStore(db_path).get_collection("notes", CollectionDefinition(dimensions=3))

    def test_vectors_stored_as_float64(self, db_path):
        store = SQLiteVectorStore(db_path)
        value = 0.1 + 0.2
        store.get_collection("p", CollectionDefinition(dimensions=1)).upsert(
            MemoryRecord(key="k", vector=(value,))
        )
        assert store.get_collection("p").get("k").vector == (value,)

    def test_creates_parent_directory(self, db_path):
        SQLiteVectorStore(db_path)
        assert db_path.exists()


class TestCorruption:
    def test_corrupt_definition(self, db_path):
        store = SQLiteVectorStore(db_path)
        conn = sqlite3.connect(db_path)
        conn.execute("INSERT INTO collections (name, definition) VALUES ('bad', '{}')")
        conn.commit()
        conn.close()
        with pytest.raises(StorageError, match="Corrupt definition"):
            store.get_collection("bad")


class TestKernelCollectionByName:
    @pytest.mark.asyncio
    async def test_created_collection_survives_reopen(self, db_path, embedder):
        kernel = Kernel(embedder=embedder, memory=SQLiteVectorStore(db_path))
        await kernel.embed_and_upsert("skglossary", records_from_texts(["aaaa"]), lambda r: r.fields["text"])

        reopened = SQLiteVectorStore(db_path)
        assert reopened.list_collection_names() == ["skglossary"]
        collection = reopened.get_collection("skglossary")
        assert collection.definition == CollectionDefinition(dimensions=4, fields=("text",), key_type="int")
        assert collection.get(0).fields == {"text": "aaaa"}
