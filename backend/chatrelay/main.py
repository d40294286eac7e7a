"""chatrelay Backend Application.

This is the main entry point for the chatrelay messaging service: durable
direct and group conversations with real-time delivery over WebSocket rooms.

Modules:
    - auth: Bearer token verification (identity & connection gate)
    - realtime: WebSocket gateway, room registry, typing presence
    - conversations: Direct/group conversation resolution
    - messages: Send pipeline, read receipts, reactions, edit/delete/forward
    - storage: DuckDB-backed conversation and message store
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatrelay.config import get_config
from chatrelay.conversations.router import router as conversations_router
from chatrelay.errors import MessagingError, Unauthenticated
from chatrelay.messages.router import router as messages_router
from chatrelay.realtime.router import router as realtime_router
from chatrelay.services import get_services, set_services
from chatrelay.storage.service import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatrelay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    services = get_services()
    logger.info(
        f"chatrelay ready on http://{config.server.host}:{config.server.port} "
        f"(messaging limit {services.config.messaging.max_content_length} chars)"
    )

    yield  # Application runs here

    # Shutdown
    set_services(None)
    ChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="chatrelay API",
    description="Real-time messaging core: conversations, messages, receipts and typing",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Render domain errors as ``{"error": ..., "code": ...}``."""
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema violations use the same error shape as domain errors."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse({"error": message, "code": "invalid_request"}, status_code=400)


# Register all routers
app.include_router(realtime_router)
app.include_router(conversations_router)
app.include_router(messages_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def serve() -> None:
    """Run the API with uvicorn using the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run("chatrelay.main:app", host=config.server.host, port=config.server.port)
