"""Memory records, collection definitions and similarity scoring."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Union

Key = Union[int, str]
RecordFilter = Union[Mapping[str, Any], Callable[["MemoryRecord"], bool]]

_KEY_TYPES = {"int": int, "str": str}
_FIELD_TYPES = (str, int, float, bool)


class DistanceFunction(str, Enum):
    """Similarity metric, fixed per collection. Higher scores are closer."""

    COSINE = "cosine"
    DOT_PRODUCT = "dot_product"


@dataclass
class MemoryRecord:
    """A keyed record: scalar/text fields plus one embedding vector."""

    key: Key
    fields: dict[str, Any] = field(default_factory=dict)
    vector: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        self.vector = tuple(float(x) for x in self.vector)
        self.fields = dict(self.fields)


@dataclass(frozen=True)
class ScoredRecord:
    record: MemoryRecord
    score: float


@dataclass(frozen=True)
class CollectionDefinition:
    """Schema of a collection: key type, field names, vector size, metric."""

    dimensions: int
    fields: tuple[str, ...] = ()
    key_type: str = "str"
    distance: DistanceFunction = DistanceFunction.COSINE

    def __post_init__(self) -> None:
        if self.key_type not in _KEY_TYPES:
            raise ValueError(f"key_type must be 'int' or 'str', got {self.key_type!r}")
        if not isinstance(self.dimensions, int) or self.dimensions < 1:
            raise ValueError("dimensions must be a positive integer")
        if len(set(self.fields)) != len(self.fields):
            raise ValueError("field names must be unique")
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "distance", DistanceFunction(self.distance))

    def validate(self, record: MemoryRecord) -> None:
        """Raise ValueError if ``record`` does not fit this definition."""
        expected = _KEY_TYPES[self.key_type]
        if not isinstance(record.key, expected) or isinstance(record.key, bool):
            raise ValueError(
                f"Record key {record.key!r} is not of type {self.key_type}"
            )
        if len(record.vector) != self.dimensions:
            raise ValueError(
                f"Record {record.key!r} has a {len(record.vector)}-dimensional vector, "
                f"collection expects {self.dimensions}"
            )
        undeclared = [name for name in record.fields if name not in self.fields]
        if undeclared:
            raise ValueError(
                f"Record {record.key!r} has undeclared fields: {', '.join(undeclared)}"
            )
        for name, value in record.fields.items():
            if value is not None and not isinstance(value, _FIELD_TYPES):
                raise ValueError(
                    f"Record {record.key!r} field '{name}' must be text or a scalar, "
                    f"got {type(value).__name__}"
                )

    def validate_query(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Query vector has {len(vector)} dimensions, collection expects {self.dimensions}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_type": self.key_type,
            "fields": list(self.fields),
            "dimensions": self.dimensions,
            "distance": self.distance.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CollectionDefinition:
        return cls(
            dimensions=int(data["dimensions"]),
            fields=tuple(data.get("fields", ())),
            key_type=data.get("key_type", "str"),
            distance=DistanceFunction(data.get("distance", "cosine")),
        )


# =============================================================================
# SCORING
# =============================================================================


def dot_product(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is all zeros."""
    norm_a = math.sqrt(dot_product(a, a))
    norm_b = math.sqrt(dot_product(b, b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot_product(a, b) / (norm_a * norm_b)


def score(distance: DistanceFunction, a: Sequence[float], b: Sequence[float]) -> float:
    if distance == DistanceFunction.DOT_PRODUCT:
        return dot_product(a, b)
    return cosine_similarity(a, b)


def matches(record: MemoryRecord, filter: Optional[RecordFilter]) -> bool:
    """Field-equality mapping or predicate; None matches everything."""
    if filter is None:
        return True
    if callable(filter):
        return bool(filter(record))
    return all(record.fields.get(name) == value for name, value in filter.items())


def rank(
    records: Sequence[MemoryRecord],
    query: Sequence[float],
    distance: DistanceFunction,
    top_k: int,
    filter: Optional[RecordFilter] = None,
) -> list[ScoredRecord]:
    """Score ``records`` (given in insertion order) against ``query``.

    Sorted by descending score; equal scores keep insertion order.
    """
    scored = [
        ScoredRecord(record=r, score=score(distance, query, r.vector))
        for r in records
        if matches(r, filter)
    ]
    # sort is stable, so ties keep insertion order
    scored.sort(key=lambda s: s.score, reverse=True)
    return scored[:top_k]
