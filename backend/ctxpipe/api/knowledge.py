from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ctxpipe.memory.embedder import EmbeddingUnavailable
from ctxpipe.memory.types import KnowledgeFilter, KnowledgeItem
from ctxpipe.schemas.context import RetrievalHitOut
from ctxpipe.schemas.knowledge import (
    KnowledgeIndexRequest,
    KnowledgeIndexResponse,
    KnowledgeSearchRequest,
    KnowledgeSearchResponse,
)
from ctxpipe.services.context_assembler import ContextAssembler, get_context_assembler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/knowledge", tags=["knowledge"])


@router.post("/index", response_model=KnowledgeIndexResponse)
async def index_knowledge(
    payload: KnowledgeIndexRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> KnowledgeIndexResponse:
    """Embed (where needed) and index knowledge-base items."""

    items = [
        KnowledgeItem(
            id=row.id.strip(),
            kind=row.kind,
            content=row.content.strip(),
            tags=frozenset(tag.strip().lower() for tag in row.tags if tag.strip()),
            embedding=tuple(row.embedding) if row.embedding else None,
        )
        for row in payload.items
    ]
    index = assembler.knowledge_index
    report = await index.index_feed(items)
    return KnowledgeIndexResponse(
        indexed=report.indexed,
        embedded=report.embedded,
        reused=report.reused,
        skipped=report.skipped,
        total=len(index),
    )


@router.post("/search", response_model=KnowledgeSearchResponse)
async def search_knowledge(
    payload: KnowledgeSearchRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> KnowledgeSearchResponse:
    """Similarity search over the knowledge index."""

    item_filter = KnowledgeFilter(
        kinds=frozenset(payload.kinds),
        tags=frozenset(tag.strip().lower() for tag in payload.tags if tag.strip()),
    )
    try:
        result = await assembler.knowledge_index.retrieve(payload.query, payload.k, item_filter)
    except EmbeddingUnavailable as exc:
        logger.warning("Knowledge search degraded: %s", exc)
        return KnowledgeSearchResponse(hits=[], degraded=True)
    return KnowledgeSearchResponse(hits=[RetrievalHitOut.from_hit(hit) for hit in result])
