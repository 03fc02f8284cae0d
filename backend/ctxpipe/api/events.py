from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ctxpipe.schemas.knowledge import (
    CatalogReplaceRequest,
    EventResponse,
    WorkspaceReplaceRequest,
)
from ctxpipe.services.context_assembler import ContextAssembler, get_context_assembler
from ctxpipe.services.fragment_cache import CATALOG_SCOPE, WORKSPACE_SCOPE
from ctxpipe.services.fragments import CatalogEntry, WorkspaceItem

events_router = APIRouter(prefix="/api/events", tags=["events"])
workspace_router = APIRouter(prefix="/api/workspace", tags=["events"])
catalog_router = APIRouter(prefix="/api/catalog", tags=["events"])


@events_router.post("/catalog-changed", response_model=EventResponse)
async def catalog_changed(
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> EventResponse:
    """Invalidate cached catalog fragments."""

    assembler.catalog_changed()
    return EventResponse(scope=CATALOG_SCOPE)


@events_router.post("/workspace-changed", response_model=EventResponse)
async def workspace_changed(
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> EventResponse:
    """Invalidate cached workspace fragments."""

    assembler.workspace_changed()
    return EventResponse(scope=WORKSPACE_SCOPE)


@workspace_router.put("", response_model=EventResponse)
async def replace_workspace(
    payload: WorkspaceReplaceRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> EventResponse:
    """Replace the workspace items and fire the workspace-changed event."""

    source = assembler.workspace_source
    if not hasattr(source, "replace"):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Workspace source is read-only"
        )
    source.replace(
        WorkspaceItem(id=row.id, type=row.type, name=row.name, parameters=row.parameters)
        for row in payload.items
    )
    assembler.workspace_changed()
    return EventResponse(scope=WORKSPACE_SCOPE)


@catalog_router.put("", response_model=EventResponse)
async def replace_catalog(
    payload: CatalogReplaceRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> EventResponse:
    """Replace the catalog entries and fire the catalog-changed event."""

    source = assembler.catalog_source
    if not hasattr(source, "replace"):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Catalog source is read-only"
        )
    source.replace(
        CatalogEntry(
            id=row.id,
            name=row.name,
            category=row.category,
            description=" ".join(row.description.split()),
        )
        for row in payload.entries
    )
    assembler.catalog_changed()
    return EventResponse(scope=CATALOG_SCOPE)
