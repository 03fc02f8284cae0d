from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Optional

from ctxpipe.memory.embedder import vector_norm
from ctxpipe.memory.types import KnowledgeItem, ScoredItem


class VectorStore(ABC):
    """Abstract similarity backend behind the knowledge index."""

    @abstractmethod
    def upsert(self, item: KnowledgeItem) -> None:
        """Insert an embedded item or replace the one with the same id."""

    @abstractmethod
    def remove(self, item_ids: Iterable[str]) -> int:
        """Drop items by id and return how many were present."""

    @abstractmethod
    def get(self, item_id: str) -> Optional[KnowledgeItem]:
        """Return the stored item for an id."""

    @abstractmethod
    def search(
        self,
        query_embedding: Sequence[float],
        limit: int,
        predicate: Optional[Callable[[KnowledgeItem], bool]] = None,
    ) -> list[ScoredItem]:
        """Return up to `limit` items by cosine similarity, best first."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of stored items."""


@dataclass(frozen=True)
class _StoredVector:
    item: KnowledgeItem
    vector: tuple[float, ...]
    norm: float
    position: int


class InMemoryVectorStore(VectorStore):
    """Exact linear-scan store with precomputed norms.

    Adequate for knowledge bases of a few thousand items. Ties are broken by
    first-insertion order; replacing an item keeps its original position.
    """

    def __init__(self) -> None:
        self._rows: dict[str, _StoredVector] = {}
        self._next_position = 0

    def upsert(self, item: KnowledgeItem) -> None:
        if item.embedding is None:
            raise ValueError(f"Knowledge item {item.id} has no embedding")
        vector = tuple(float(value) for value in item.embedding)
        existing = self._rows.get(item.id)
        if existing is not None:
            position = existing.position
        else:
            position = self._next_position
            self._next_position += 1
        self._rows[item.id] = _StoredVector(
            item=item, vector=vector, norm=vector_norm(vector), position=position
        )

    def remove(self, item_ids: Iterable[str]) -> int:
        count = 0
        for item_id in item_ids:
            if self._rows.pop(item_id, None) is not None:
                count += 1
        return count

    def get(self, item_id: str) -> Optional[KnowledgeItem]:
        row = self._rows.get(item_id)
        return row.item if row else None

    def search(
        self,
        query_embedding: Sequence[float],
        limit: int,
        predicate: Optional[Callable[[KnowledgeItem], bool]] = None,
    ) -> list[ScoredItem]:
        if limit <= 0:
            return []

        query = [float(value) for value in query_embedding]
        query_norm = vector_norm(query)
        if query_norm <= 0:
            return []

        scored: list[tuple[float, int, KnowledgeItem]] = []
        for row in self._rows.values():
            # Zero-magnitude vectors have no defined cosine; they never rank.
            if row.norm <= 0 or len(row.vector) != len(query):
                continue
            if predicate is not None and not predicate(row.item):
                continue
            score = cosine_similarity(query, query_norm, row.vector, row.norm)
            scored.append((score, row.position, row.item))

        scored.sort(key=lambda entry: (-entry[0], entry[1]))
        return [ScoredItem(item=item, score=score) for score, _, item in scored[:limit]]

    def __len__(self) -> int:
        return len(self._rows)


def cosine_similarity(
    left: Sequence[float], left_norm: float, right: Sequence[float], right_norm: float
) -> float:
    if left_norm <= 0 or right_norm <= 0 or len(left) != len(right):
        return 0.0
    dot = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
    return dot / (left_norm * right_norm)
