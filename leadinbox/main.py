# leadinbox/main.py
"""
Lead inbox API application with record store and cache lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from leadinbox.config import settings
from leadinbox.infrastructure.observability.logging import get_logger, setup_logging
from leadinbox.middleware.request_context import RequestContextMiddleware
from leadinbox.routes import conversations, health
from leadinbox.services.conversation_cache import ConversationCache
from leadinbox.services.conversations.repository import ConversationRepository
from leadinbox.services.conversations.service import ConversationService
from leadinbox.services.record_store_client import RecordStoreClient
from leadinbox.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    record_store = RecordStoreClient()
    cache = ConversationCache(fast_redis)

    try:
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
    except RuntimeError as e:
        # The cache is an optimization; run uncached rather than refuse to start
        logger.error("Redis unavailable, conversation cache disabled", error=str(e))
        cache_for_service = None
    else:
        cache_for_service = cache

    service = ConversationService(ConversationRepository(record_store), cache_for_service)

    app.state.record_store = record_store
    app.state.conversation_cache = cache
    app.state.conversation_service = service
    logger.info("All services initialized", cache_enabled=cache_for_service is not None)

    yield

    logger.info("Application shutting down")
    shutdown_errors = []

    try:
        await service.close()
    except Exception as e:
        logger.error("Error draining in-flight mutations", error=str(e))
        shutdown_errors.append(f"Mutations: {e}")

    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    try:
        logger.info("Closing record store client")
        await record_store.close()
    except Exception as e:
        logger.error("Error closing record store client", error=str(e))
        shutdown_errors.append(f"Record store: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Lead Inbox",
    description="Conversation inbox for real-estate leads",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(conversations.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
