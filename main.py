"""
Song Request Store Host - Main Entry Point

Serves a shared store (REST + change feed) that request/vote clients
sync against, plus staff/attendee action endpoints and a dashboard
WebSocket.

Usage:
    python main.py

Or with uvicorn directly:
    uvicorn main:app --host 127.0.0.1 --port 5175 --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
import uvicorn

# Configure logging first
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("song-requests")

# Import our modules
from config.settings import Settings, get_settings
from services.audit_log import AuditLog
from services.errors import EngineError
from services.http_store import HttpStore
from services.memory_store import MemoryStore
from services.queue_service import QueueService
from services.setlist_service import SetListService
from services.store import TABLES, Store, Subscription
from services.vote_service import VoteService
from api.websocket_manager import WebSocketManager
from api.routes import create_router


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Holds all application services and state."""

    def __init__(self, store: Optional[Store] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store or build_store(self.settings)
        self.ws_manager = WebSocketManager(TABLES)
        self.audit = AuditLog(self.settings.audit_log_dir)
        self.queue = QueueService(self.store, self.settings, self.audit)
        self.votes = VoteService(self.store, self.settings)
        self.set_lists = SetListService(self.store, self.settings, self.audit)
        self.relays: List[Subscription] = []


def build_store(settings: Settings) -> Store:
    """Remote store when configured, otherwise an in-process one."""
    if settings.store_url:
        logger.info(f"Using remote store at {settings.store_url}")
        return HttpStore(
            settings.store_url,
            settings.store_api_key,
            feed_read_timeout=settings.feed_read_timeout,
        )
    logger.info("Using in-memory store")
    return MemoryStore()


async def start_relays(state: AppState) -> None:
    """Forward every committed change to dashboard WebSockets."""
    for table in TABLES:
        handler = state.ws_manager.broadcast_change
        state.relays.append(await state.store.subscribe(table, handler, handler, handler))


async def stop_relays(state: AppState) -> None:
    for relay in state.relays:
        await relay.unsubscribe()
    state.relays.clear()


# =============================================================================
# Application Factory
# =============================================================================

def create_app(store: Optional[Store] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app around a store.

    Args:
        store: Store to expose (defaults to build_store(settings))
        settings: Settings (defaults to get_settings())
    """
    state = AppState(store, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("=" * 60)
        logger.info("Starting Song Request Store Host...")
        logger.info("=" * 60)

        try:
            await state.store.connect()
            await start_relays(state)
        except EngineError as e:
            logger.error(f"Store unavailable at startup: {e}")

        logger.info(f"Server running at http://{state.settings.server_host}:{state.settings.server_port}")
        logger.info(f"Routines: {', '.join(state.store.available_routines()) or 'none'}")

        yield

        # Cleanup
        logger.info("Shutting down...")
        await stop_relays(state)
        await state.store.close()

    app = FastAPI(
        title="Song Request Store Host",
        description="Shared request/vote store with a realtime change feed",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.app_state = state

    api_router = create_router(
        ws_manager=state.ws_manager,
        store=state.store,
        queue=state.queue,
        votes=state.votes,
        set_lists=state.set_lists,
        heartbeat_interval=state.settings.feed_heartbeat_interval,
        api_key=state.settings.host_api_key,
    )
    app.include_router(api_router)
    return app


app = create_app()


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """Main entry point."""
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
    )


if __name__ == "__main__":
    main()
