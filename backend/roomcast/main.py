"""Roomcast backend application.

Real-time delivery core for room-based chat: a durable message log with
read watermarks, typing presence, unread accounting and an SSE bridge that
pushes committed changes to connected clients.

Modules:
    - chat: messages, read watermarks, typing, unread counts, rooms
    - realtime: change feed and the SSE bridge (/chat/events)
    - files: attachment upload and blob serving
    - auth: session resolution and profiles
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomcast.auth.router import router as auth_router
from roomcast.auth.service import ProfileService
from roomcast.chat.rooms_router import router as rooms_router
from roomcast.chat.router import router as chat_router
from roomcast.chat.presence import TypingTracker, typing_cleanup_loop
from roomcast.config import get_config
from roomcast.dependencies import get_blob_storage, get_change_feed, get_database
from roomcast.errors import install_error_handlers
from roomcast.files.router import router as files_router
from roomcast.realtime.router import router as events_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every TCP connection made by the client library.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to the root logger so that
    # `logging.level: "debug"` in roomcast.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    db = get_database()
    get_change_feed()
    get_blob_storage()

    cleanup_task = asyncio.create_task(
        typing_cleanup_loop(
            lambda: TypingTracker(db, ProfileService(db), ttl_seconds=config.chat.typing_ttl_seconds),
            config.chat.typing_cleanup_interval_seconds,
        )
    )
    logger.info(
        f"Roomcast ready on http://{config.server.host}:{config.server.port} "
        f"(environment={config.logging.environment})"
    )

    yield  # Application runs here

    # Shutdown
    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Roomcast API",
    description="Real-time chat delivery: messages, presence, unread counts and SSE",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)

# Register all routers
app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(rooms_router)
app.include_router(events_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
