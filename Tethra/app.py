import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from Tethra.config import AUTO_TITLE
from Tethra.database import SessionLocal, init_db
from Tethra.services.catalog import ModelCatalog
from Tethra.services.chat_stream import ChatOrchestrator
from Tethra.services.events import EventBus
from Tethra.services.model_router import ModelRouter
from Tethra.services.providers.base import default_timeout
from Tethra.services.storage import ChatStorage
from Tethra.settings import Settings
from Tethra.subapps.chat_routes import router as chat_router
from Tethra.subapps.conversation_routes import router as conversations_router

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


# Wires storage, routing, events and the orchestrator onto app.state; tests pass their own pieces
def create_app(
    session_factory: Optional[sessionmaker] = None,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    auto_title: bool = AUTO_TITLE,
) -> FastAPI:
    session_factory = session_factory or SessionLocal
    init_db(bind=session_factory.kw.get("bind"))
    settings = settings or Settings.load()
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=default_timeout())

    storage = ChatStorage(session_factory)
    router = ModelRouter(settings)
    events = EventBus()
    orchestrator = ChatOrchestrator(storage, router, events, http_client=client, auto_title=auto_title)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("app.startup: default_model=%s", router.default_model())
        yield
        await orchestrator.aclose()
        if owns_client:
            await client.aclose()
        logger.info("app.shutdown")

    app = FastAPI(title="Tethra", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.settings = settings
    app.state.storage = storage
    app.state.router = router
    app.state.events = events
    app.state.catalog = ModelCatalog(settings, client)
    app.state.orchestrator = orchestrator

    app.include_router(chat_router)
    app.include_router(conversations_router)
    return app


_configure_logging()

app = create_app()
