from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from app.core.config import get_settings
from app.core.redis_client import RedisClient
from app.db.session import AsyncSessionLocal, init_db, verify_database_connection
from app.middleware import (
    error_handler_middleware,
    app_error_handler,
    validation_error_handler,
    AppError
)
from app.realtime.dispatcher import DeliveryDispatcher
from app.realtime.presence import PresenceRegistry
from app.services.offer_events import OfferEventHandler
from app.services.push_provider import ExpoPushProvider
from app.services.push_receipts import PushReceiptChecker, PushTicketQueue
from app.services.user_directory import HttpUserDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()


async def connect_redis() -> RedisClient | None:
    """Redis is optional: without it push receipts and task updates are skipped."""
    if not settings.REDIS_URL:
        logger.warning("REDIS_URL not configured. Push receipt checks and task-update publishing disabled.")
        return None

    redis_client = RedisClient(settings.REDIS_URL)
    try:
        await redis_client.connect()
    except Exception as e:
        logger.warning(f"Redis unavailable ({e}). Continuing without receipt checks and task updates.")
        return None
    return redis_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Messaging Service...")

    try:
        await init_db()
    except Exception as db_error:
        logger.warning(
            f"Database initialization failed: {db_error}. "
            "Messages and notifications cannot be stored until DATABASE_URL is reachable."
        )
    await verify_database_connection()

    presence = PresenceRegistry()
    push_provider = ExpoPushProvider(
        access_token=settings.EXPO_ACCESS_TOKEN,
        timeout=settings.PUSH_TIMEOUT_SECONDS,
    )
    user_directory = HttpUserDirectory(
        settings.USER_SERVICE_URL,
        api_key=settings.INTERNAL_API_KEY,
        cache_ttl=settings.USER_CACHE_TTL_SECONDS,
        cache_size=settings.USER_CACHE_MAX_SIZE,
    )

    redis_client = await connect_redis()
    ticket_queue = None
    receipt_checker = None
    if redis_client:
        ticket_queue = PushTicketQueue(redis_client)
        receipt_checker = PushReceiptChecker(push_provider)
        receipt_checker.start(ticket_queue, settings.PUSH_RECEIPT_INTERVAL_SECONDS)

    dispatcher = DeliveryDispatcher(
        AsyncSessionLocal,
        presence,
        push_provider,
        user_directory,
        ticket_queue=ticket_queue,
        push_body_max_length=settings.PUSH_BODY_MAX_LENGTH,
    )

    app.state.session_factory = AsyncSessionLocal
    app.state.presence = presence
    app.state.redis = redis_client
    app.state.user_directory = user_directory
    app.state.dispatcher = dispatcher
    app.state.offer_handler = OfferEventHandler(AsyncSessionLocal, dispatcher, redis_client)

    logger.info("Messaging service ready")

    yield

    # Shutdown
    logger.info("Shutting down Messaging Service...")

    await dispatcher.drain()

    if receipt_checker:
        await receipt_checker.stop()

    presence.clear()
    await push_provider.close()
    await user_directory.close()

    if redis_client:
        await redis_client.disconnect()


# Create FastAPI app
app = FastAPI(
    title="Messaging Service",
    description="Direct messages, notifications and push delivery for the task marketplace",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware (production-safe)
cors_origins = settings.get_cors_origins() or [
    "http://localhost:3000",  # Development only
    "http://localhost:8081",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.middleware("http")(error_handler_middleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

# Include routers
from app.api.v1 import health, internal, messages, notifications, realtime
app.include_router(health.router, tags=["Health"])
app.include_router(messages.router, prefix="/api/v1", tags=["Messages"])
app.include_router(notifications.router, prefix="/api/v1", tags=["Notifications"])
app.include_router(internal.router, tags=["Internal"])
app.include_router(realtime.router, tags=["Realtime"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Messaging Service",
        "status": "operational",
        "version": "1.0.0"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8004)
