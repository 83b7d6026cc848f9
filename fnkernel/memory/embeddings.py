"""Local, provider-free text embedder and vector (de)serialization."""

from __future__ import annotations

import hashlib
import math
import re
import struct

HASH_EMBEDDING_DIM = 384

_WS_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\w+")


def pack_embedding(vector) -> bytes:
    """Serialize a vector as little-endian float64."""
    return struct.pack(f"<{len(vector)}d", *vector)


def unpack_embedding(blob: bytes) -> tuple[float, ...]:
    return struct.unpack(f"<{len(blob) // 8}d", blob)


class HashEmbedder:
    """Feature-hashes character n-grams and words into an L2-normalized vector.

    Deterministic, fast and offline. Texts sharing many n-grams land close
    together under cosine similarity; there are no semantics beyond surface
    overlap.
    """

    provider_id = "ngram-v1"

    def __init__(self, dim: int = HASH_EMBEDDING_DIM, ngram_range: tuple[int, int] = (2, 4)) -> None:
        low, high = ngram_range
        if dim < 1:
            raise ValueError("dim must be >= 1")
        if low < 1 or high < low:
            raise ValueError(f"Invalid ngram_range: {ngram_range}")
        self.dimension = dim
        self.ngram_range = (low, high)

    @property
    def embedding_dimension(self) -> int:
        return self.dimension

    def _get_ngrams(self, text: str) -> list[str]:
        normalized = _WS_RE.sub(" ", text.lower()).strip()
        if not normalized:
            return []
        low, high = self.ngram_range
        grams = []
        for n in range(low, high + 1):
            grams.extend(normalized[i : i + n] for i in range(len(normalized) - n + 1))
        # word features keep very short texts non-empty
        grams.extend(_WORD_RE.findall(normalized))
        return grams

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for gram in self._get_ngrams(text):
            digest = hashlib.md5(gram.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            vector[bucket] += 1.0 if digest[4] & 1 else -1.0
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0.0:
            return vector
        return [x / norm for x in vector]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]
