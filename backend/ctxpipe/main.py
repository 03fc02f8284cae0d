from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ctxpipe.api import context as context_api
from ctxpipe.api import events as events_api
from ctxpipe.api import history as history_api
from ctxpipe.api import knowledge as knowledge_api
from ctxpipe.core.config import Settings, get_settings
from ctxpipe.core.logging import setup_logging
from ctxpipe.db.base import create_engine, create_sessionmaker, init_db
from ctxpipe.services.context_assembler import ContextAssembler, create_context_assembler
from ctxpipe.services.fragments import StaticCatalogSource
from ctxpipe.services.knowledge_index import load_knowledge_feed

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)
    assembler = create_context_assembler(
        settings=settings,
        sessionmaker=sessionmaker,
        catalog_source=_load_catalog(settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        await load_knowledge_base(app.state.assembler, settings)
        yield
        await app.state.assembler.history_store.flush_all()
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.assembler = assembler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(context_api.router)
    app.include_router(history_api.router)
    app.include_router(knowledge_api.router)
    app.include_router(events_api.events_router)
    app.include_router(events_api.workspace_router)
    app.include_router(events_api.catalog_router)

    return app


async def load_knowledge_base(assembler: ContextAssembler, settings: Settings) -> None:
    """Index the configured knowledge feed; failures leave the index empty."""

    path = settings.knowledge_base_path.strip()
    if not path:
        return
    try:
        items = load_knowledge_feed(path)
    except (OSError, ValueError) as exc:
        logger.warning("Knowledge feed %s could not be loaded: %s", path, exc)
        return
    await assembler.knowledge_index.index_feed(items)


def _load_catalog(settings: Settings) -> StaticCatalogSource:
    path = settings.catalog_path.strip()
    if not path:
        return StaticCatalogSource()
    try:
        return StaticCatalogSource.from_file(path)
    except (OSError, ValueError, KeyError) as exc:
        logger.warning("Catalog feed %s could not be loaded: %s", path, exc)
        return StaticCatalogSource()


def run() -> None:
    """Serve the pipeline API with uvicorn using APP_HOST/APP_PORT."""

    settings = get_settings()
    uvicorn.run("ctxpipe.main:app", host=settings.app_host, port=settings.app_port)


app = create_app()
