"""Vector-indexed memory: records, collections and stores."""

from fnkernel.memory.base import VectorStore, VectorStoreCollection
from fnkernel.memory.embeddings import HASH_EMBEDDING_DIM, HashEmbedder, pack_embedding, unpack_embedding
from fnkernel.memory.in_memory import InMemoryCollection, InMemoryVectorStore
from fnkernel.memory.ingest import embed_and_upsert, generate_embeddings, records_from_texts
from fnkernel.memory.records import (
    CollectionDefinition,
    DistanceFunction,
    MemoryRecord,
    ScoredRecord,
    cosine_similarity,
    dot_product,
)
from fnkernel.memory.sqlite_store import SQLiteCollection, SQLiteVectorStore

__all__ = [
    "CollectionDefinition",
    "DistanceFunction",
    "HASH_EMBEDDING_DIM",
    "HashEmbedder",
    "InMemoryCollection",
    "InMemoryVectorStore",
    "MemoryRecord",
    "SQLiteCollection",
    "SQLiteVectorStore",
    "ScoredRecord",
    "VectorStore",
    "VectorStoreCollection",
    "cosine_similarity",
    "dot_product",
    "embed_and_upsert",
    "generate_embeddings",
    "pack_embedding",
    "records_from_texts",
    "unpack_embedding",
]
