from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ctxpipe.memory.embedder import Embedder, EmbeddingUnavailable
from ctxpipe.memory.types import (
    KnowledgeFilter,
    KnowledgeItem,
    KnowledgeKind,
    RetrievalResult,
)
from ctxpipe.memory.vector_store import InMemoryVectorStore, VectorStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexReport:
    """Outcome of one knowledge-feed indexing pass."""

    indexed: int
    embedded: int
    reused: int
    skipped: int


class KnowledgeIndex:
    """Knowledge-base items plus embeddings, searchable by cosine similarity."""

    def __init__(self, embedder: Embedder, vector_store: Optional[VectorStore] = None) -> None:
        self._embedder = embedder
        self._vector_store = vector_store or InMemoryVectorStore()

    def index(self, items: Iterable[KnowledgeItem]) -> int:
        """Register embedded items; an existing id is replaced."""

        count = 0
        for item in items:
            self._vector_store.upsert(item)
            count += 1
        return count

    async def index_feed(self, items: Iterable[KnowledgeItem]) -> IndexReport:
        """Embed and index a knowledge-base feed.

        Items arriving without an embedding reuse the stored vector when their
        content is unchanged; everything else is embedded in one batch. If the
        embedder fails, the unembedded items are skipped and the rest indexed.
        """

        ready: list[KnowledgeItem] = []
        pending: list[KnowledgeItem] = []
        reused = 0
        for item in items:
            if item.embedding is not None:
                ready.append(item)
                continue
            existing = self._vector_store.get(item.id)
            if (
                existing is not None
                and existing.embedding is not None
                and existing.content_hash == item.content_hash
            ):
                ready.append(item.with_embedding(existing.embedding))
                reused += 1
                continue
            pending.append(item)

        embedded = 0
        skipped = 0
        if pending:
            try:
                vectors = await self._embedder.embed_texts([item.content for item in pending])
            except EmbeddingUnavailable as exc:
                logger.warning("Knowledge indexing skipped %d items: %s", len(pending), exc)
                vectors = []
            except Exception:  # noqa: BLE001
                logger.exception("Knowledge indexing failed while embedding items")
                vectors = []

            if vectors and len(vectors) != len(pending):
                logger.warning("Knowledge indexing skipped due to embedding count mismatch")
                vectors = []
            if vectors:
                ready.extend(item.with_embedding(vector) for item, vector in zip(pending, vectors))
                embedded = len(pending)
            else:
                skipped = len(pending)

        indexed = self.index(ready)
        logger.info(
            "Knowledge feed indexed=%d embedded=%d reused=%d skipped=%d",
            indexed,
            embedded,
            reused,
            skipped,
        )
        return IndexReport(indexed=indexed, embedded=embedded, reused=reused, skipped=skipped)

    def remove(self, item_ids: Iterable[str]) -> int:
        return self._vector_store.remove(item_ids)

    def get(self, item_id: str) -> Optional[KnowledgeItem]:
        return self._vector_store.get(item_id)

    def __len__(self) -> int:
        return len(self._vector_store)

    def search(
        self,
        query_embedding: Sequence[float],
        k: int,
        item_filter: Optional[KnowledgeFilter] = None,
    ) -> RetrievalResult:
        """Top-k items by cosine similarity, descending, stable on ties."""

        predicate = item_filter.matches if item_filter is not None else None
        hits = self._vector_store.search(query_embedding, k, predicate)
        return RetrievalResult(hits=tuple(hits))

    async def retrieve(
        self,
        query_text: str,
        k: int,
        item_filter: Optional[KnowledgeFilter] = None,
    ) -> RetrievalResult:
        """Embed `query_text` and search; raises EmbeddingUnavailable on failure."""

        cleaned = query_text.strip()
        if not cleaned or k <= 0:
            return RetrievalResult()
        try:
            query_embedding = await self._embedder.embed_text(cleaned)
        except EmbeddingUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingUnavailable("Query embedding failed") from exc
        return self.search(query_embedding, k, item_filter)


def load_knowledge_feed(path: str | Path) -> list[KnowledgeItem]:
    """Read a JSON array of knowledge items (without embeddings)."""

    raw: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError("Knowledge feed must be a JSON array")
    return [parse_knowledge_item(row) for row in raw]


def parse_knowledge_item(row: Any) -> KnowledgeItem:
    if not isinstance(row, dict):
        raise ValueError("Knowledge feed rows must be objects")
    item_id = str(row.get("id") or "").strip()
    content = str(row.get("content") or "").strip()
    if not item_id or not content:
        raise ValueError("Knowledge items require id and content")
    tags = row.get("tags") or []
    embedding = row.get("embedding")
    return KnowledgeItem(
        id=item_id,
        kind=KnowledgeKind(row.get("kind", KnowledgeKind.GUIDE.value)),
        content=content,
        tags=frozenset(str(tag).strip().lower() for tag in tags if str(tag).strip()),
        embedding=tuple(float(value) for value in embedding) if embedding else None,
    )
