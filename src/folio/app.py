"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import AppConfig, ensure_data_dir, load_config
from .db import init_db
from .services.backend import BackendClient
from .services.event_bus import EventBus
from .services.library import LibraryDatabase, LibraryStore
from .services.references import ExternalReferenceResolver
from .services.stream_client import StreamCompletionClient
from .services.thread import ThreadController
from .services.viewer import DocumentViewer, HeadlessViewer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: AppConfig = app.state.config
    overrides = app.state.overrides

    db = None
    backend: BackendClient = overrides.get("backend") or BackendClient(config.backend)
    library: LibraryStore | None = overrides.get("library")
    if library is None:
        data_dir = ensure_data_dir(config.app)
        db = init_db(data_dir / "library.db")
        library = LibraryDatabase(db, library_id=config.library.library_id, indexer=backend.index_records)
    viewer: DocumentViewer = overrides.get("viewer") or HeadlessViewer(library)
    client: StreamCompletionClient = overrides.get("client") or StreamCompletionClient(config.backend)

    event_bus = EventBus()
    resolver = ExternalReferenceResolver(library)
    controller = ThreadController(
        client,
        library,
        viewer,
        resolver,
        backend=backend,
        config=config.reconciler,
        event_bus=event_bus,
    )

    app.state.event_bus = event_bus
    app.state.library = library
    app.state.backend = backend
    app.state.client = client
    app.state.controller = controller
    logger.info("Folio companion API ready (library %d)", config.library.library_id)

    yield

    await controller.aclose()
    await client.aclose()
    await backend.aclose()
    if db is not None:
        db.close()


def create_app(
    config: AppConfig | None = None,
    *,
    library: LibraryStore | None = None,
    viewer: DocumentViewer | None = None,
    backend: BackendClient | None = None,
    client: StreamCompletionClient | None = None,
) -> FastAPI:
    if config is None:
        config = load_config()

    app = FastAPI(title="Folio", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.overrides = {"library": library, "viewer": viewer, "backend": backend, "client": client}

    origin = f"http://{config.app.host}:{config.app.port}"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin, "http://127.0.0.1:" + str(config.app.port), "http://localhost:" + str(config.app.port)],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from .routers import actions, chat, events

    app.include_router(chat.router, prefix="/api")
    app.include_router(actions.router, prefix="/api")
    app.include_router(events.router, prefix="/api")

    return app
