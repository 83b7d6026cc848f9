"""Concurrent embedding generation and batch ingestion."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence

from fnkernel.memory.base import VectorStoreCollection
from fnkernel.memory.records import Key, MemoryRecord
from fnkernel.protocols import EmbeddingProtocol
from fnkernel.types import CancellationToken

logger = logging.getLogger(__name__)


async def generate_embeddings(
    embedder: EmbeddingProtocol,
    texts: Sequence[str],
    *,
    cancellation: Optional[CancellationToken] = None,
) -> list[list[float]]:
    """Embed every text concurrently, one worker-thread call per text.

    Results keep input order. The first failure fails the batch; the
    remaining calls are cancelled (already-running threads finish and
    are discarded).

    Raises:
        ValueError: An embedding has the wrong length.
        CancelledError: ``cancellation`` fired before or after the fan-out.
    """
    if cancellation is not None:
        cancellation.raise_if_cancelled("embedding")
    if not texts:
        return []

    tasks = [asyncio.ensure_future(asyncio.to_thread(embedder.embed, text)) for text in texts]
    try:
        vectors = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        raise

    if cancellation is not None:
        cancellation.raise_if_cancelled("embedding")

    expected = embedder.embedding_dimension
    for index, vector in enumerate(vectors):
        if len(vector) != expected:
            raise ValueError(
                f"Embedding {index} has {len(vector)} dimensions, embedder declares {expected}"
            )
    logger.debug("Generated %d embeddings", len(vectors))
    return [list(v) for v in vectors]


async def embed_and_upsert(
    collection: VectorStoreCollection,
    records: Sequence[MemoryRecord],
    text_of: Callable[[MemoryRecord], str],
    embedder: EmbeddingProtocol,
    *,
    cancellation: Optional[CancellationToken] = None,
) -> list[Key]:
    """Embed ``text_of(record)`` for each record, then upsert them as one batch.

    Any existing vector on the input records is replaced. Nothing is
    written unless every embedding succeeds.
    """
    records = list(records)
    vectors = await generate_embeddings(
        embedder, [text_of(r) for r in records], cancellation=cancellation
    )
    embedded = [
        MemoryRecord(key=r.key, fields=dict(r.fields), vector=tuple(v))
        for r, v in zip(records, vectors)
    ]
    return await asyncio.to_thread(collection.upsert_batch, embedded)


def records_from_texts(
    texts: Sequence[str],
    *,
    field: str = "text",
    start_key: int = 0,
    extra_fields: Optional[dict[str, Any]] = None,
) -> list[MemoryRecord]:
    """Build int-keyed records holding each text in ``field`` (vector left empty)."""
    return [
        MemoryRecord(key=start_key + i, fields={field: text, **(extra_fields or {})})
        for i, text in enumerate(texts)
    ]
