import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_chat,  # noqa: F401
)
from .config import ChatSettings, FRONTEND_URL, get_chat_settings
from .database import Base, SessionLocal, engine
from .domain.chat.broadcaster import RealtimeBroadcaster, RedisBroadcaster
from .domain.chat.cleanup import ArqCleanupQueue, CleanupWorker, LocalCleanupQueue
from .domain.chat.exceptions import ChatError
from .domain.chat.media import MediaAccessBroker
from .domain.chat.router import router as chat_router
from .security_headers import SecurityHeadersMiddleware
from .utils.object_storage import R2ObjectStorage

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("botocore").setLevel(logging.WARNING)

SECURITY_HEADERS_ENABLED = os.getenv("SECURITY_HEADERS_ENABLED", "true").lower() == "true"


def build_broadcaster(settings: ChatSettings) -> RealtimeBroadcaster:
    if settings.broadcast_backend == "redis":
        from .redis_client import create_async_redis_client

        broadcaster = RedisBroadcaster(create_async_redis_client())
        broadcaster.start()
        logger.info("📡 Chat broadcasts fan out through Redis")
        return broadcaster

    logger.info("📡 Chat broadcasts are in-process only")
    return RealtimeBroadcaster()


def build_cleanup_queue(settings: ChatSettings, storage: R2ObjectStorage):
    if settings.cleanup_backend == "local":
        worker = CleanupWorker(
            SessionLocal,
            MediaAccessBroker(storage, settings),
            redact_on_close=settings.redact_on_close,
        )
        logger.info("🧹 Chat cleanup runs in-process")
        return LocalCleanupQueue(worker)

    logger.info("🧹 Chat cleanup is dispatched to the ARQ worker")
    return ArqCleanupQueue()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    settings = get_chat_settings()
    app.state.object_storage = R2ObjectStorage()
    app.state.chat_broadcaster = build_broadcaster(settings)
    app.state.chat_cleanup_queue = build_cleanup_queue(settings, app.state.object_storage)
    logger.info(f"💬 Chat feature {'enabled' if settings.enabled else 'disabled'}")

    yield

    logger.info("Application shutting down...")
    await app.state.chat_cleanup_queue.close()
    await app.state.chat_broadcaster.close()


app = FastAPI(title="CareChat API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    """Map chat domain errors to their HTTP status and a stable error code"""
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} - {exc.code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


if SECURITY_HEADERS_ENABLED:
    app.add_middleware(
        SecurityHeadersMiddleware, exclude_paths=["/health", "/docs", "/openapi.json"]
    )
    logger.info("Security headers enabled")
else:
    logger.warning("Security headers DISABLED - only use in development!")


# CORS Configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat_router)


@app.get("/")
def root():
    return {"message": "CareChat API"}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/health/redis")
async def redis_health_check():
    """Check Redis connectivity for monitoring"""
    try:
        from .redis_client import get_redis_client

        redis_client = get_redis_client()

        start_time = time.time()
        redis_client.ping()
        response_time = (time.time() - start_time) * 1000  # Convert to milliseconds

        info = redis_client.info()

        return {
            "status": "healthy",
            "redis": {
                "connected": True,
                "response_time_ms": round(response_time, 2),
                "version": info.get("redis_version", "unknown"),
                "connected_clients": info.get("connected_clients", 0),
            },
        }
    except Exception as e:
        return {"status": "unhealthy", "redis": {"connected": False, "error": str(e)}}
