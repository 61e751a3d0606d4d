"""SafeLease Chat Backend Application.

This is the main entry point for the SafeLease real-time chat service, the
part of the SafeLease leasing marketplace that lets tenants and landlords
message each other.

Modules:
    - chat: WebSocket-based two-party conversation rooms
    - auth: JWT bearer-token verification
    - users: Sender identity lookup

Run with:
    uvicorn safelease.main:app --port 4000
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from safelease.chat.manager import manager
from safelease.chat.router import router as chat_router
from safelease.chat.store import MessageStore
from safelease.config import get_config
from safelease.users.service import UserDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request transport chatter.
for _noisy in ("uvicorn.access", "websockets", "httpx", "httpcore"):
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

    MessageStore.get_instance(db_path=config.chat.db_path)
    UserDirectory.get_instance(db_path=config.chat.db_path)
    logger.info("Chat store ready: %s", config.chat.db_path)

    yield  # Application runs here

    # Shutdown
    manager.clear()
    MessageStore.reset_instance()
    UserDirectory.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="SafeLease Chat API",
    description="Real-time tenant/landlord messaging for SafeLease",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
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
