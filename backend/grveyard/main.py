"""grveyard Backend Application.

This is the main entry point for the grveyard messaging service.

Modules:
    - chat: WebSocket direct messaging, presence and conversation history
    - messages: DuckDB-based message persistence
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from grveyard import __version__
from grveyard.chat.handler import get_chat_handler, set_chat_handler
from grveyard.chat.router import router as chat_router
from grveyard.config import AppConfig, get_config
from grveyard.messages.store import DuckDBMessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn logs every websocket handshake at INFO
for _noisy in ("uvicorn.access", "websockets", "websockets.protocol"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Reuses a handler installed beforehand (tests), otherwise builds one
    handler = get_chat_handler()
    logger.info(
        "Chat handler ready: store=%s queue_size=%d",
        type(handler.store).__name__ if handler.store else "none",
        config.chat.outbound_queue_size,
    )

    yield  # Application runs here

    # Shutdown
    handler.shutdown()
    set_chat_handler(None)
    DuckDBMessageStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="grveyard API",
    description="Real-time direct messaging for the grveyard marketplace",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Run the API with uvicorn using the configured host and port."""
    config = get_config()
    uvicorn.run("grveyard.main:app", **uvicorn_options(config))


def uvicorn_options(config: AppConfig) -> dict:
    """Server options, including protocol-level WebSocket ping/pong."""
    return {
        "host": config.server.host,
        "port": config.server.port,
        "log_level": config.logging.level.lower(),
        "ws_ping_interval": config.chat.ping_interval_seconds,
        "ws_ping_timeout": config.chat.ping_timeout_seconds,
    }


if __name__ == "__main__":
    run()
