from __future__ import annotations

from typing import Any, List, Optional

from pydantic import Field

from ctxpipe.memory.types import KnowledgeKind
from ctxpipe.schemas.common import APIModel
from ctxpipe.schemas.context import RetrievalHitOut


class KnowledgeItemIn(APIModel):
    id: str = Field(min_length=1)
    kind: KnowledgeKind
    content: str = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None


class KnowledgeIndexRequest(APIModel):
    items: List[KnowledgeItemIn]


class KnowledgeIndexResponse(APIModel):
    indexed: int
    embedded: int
    reused: int
    skipped: int
    total: int


class KnowledgeSearchRequest(APIModel):
    query: str
    k: int = Field(default=5, ge=1, le=100)
    kinds: List[KnowledgeKind] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class KnowledgeSearchResponse(APIModel):
    hits: List[RetrievalHitOut]
    degraded: bool = False


class CatalogEntryIn(APIModel):
    id: str = Field(min_length=1)
    name: str
    category: str = "general"
    description: str = ""


class CatalogReplaceRequest(APIModel):
    entries: List[CatalogEntryIn]


class WorkspaceItemIn(APIModel):
    id: str = Field(min_length=1)
    type: str
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class WorkspaceReplaceRequest(APIModel):
    items: List[WorkspaceItemIn]


class EventResponse(APIModel):
    scope: str
    invalidated: bool = True
