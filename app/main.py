from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.auth.routes import users as users_routes
from app.core import redis as redis_module
from app.core.config import settings
from app.core.exceptions import register_exception_handlers
from app.core.log_config import RequestLoggingMiddleware, setup_logging
from app.db.session import SessionLocal
from app.messaging.routes import messages as messages_routes

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("connecting_to_redis")
    redis_module.redis_client = Redis.from_url(
        settings.REDIS_URL, decode_responses=True, encoding="utf-8"
    )

    try:
        await redis_module.redis_client.ping()
        logger.info("redis_connected")
    except RedisError as e:
        # Polling still converges without pub/sub; only the event stream is lost
        logger.error("redis_connection_failed", error=str(e))

    yield

    logger.info("closing_redis")
    if redis_module.redis_client:
        await redis_module.redis_client.aclose()
        redis_module.redis_client = None
    logger.info("redis_closed")


app = FastAPI(
    title=settings.PROJECT_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Direct and group messaging API with read receipts and unread badges",
    version="1.0.0",
)

register_exception_handlers(app, debug=settings.DEBUG)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(users_routes.router, prefix=f"{settings.API_V1_PREFIX}/users", tags=["users"])
app.include_router(
    messages_routes.router,
    prefix=f"{settings.API_V1_PREFIX}/messages",
    tags=["messages"],
)


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": settings.PROJECT_NAME, "version": "1.0.0", "status": "running"}


@app.get("/health")
async def health_check() -> dict[str, str]:
    redis_status = "unknown"
    db_status = "unknown"

    try:
        if redis_module.redis_client:
            await redis_module.redis_client.ping()
            redis_status = "healthy"
    except RedisError:
        redis_status = "unhealthy"

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            db_status = "healthy"
        finally:
            db.close()
    except SQLAlchemyError:
        db_status = "unhealthy"

    all_healthy = redis_status == "healthy" and db_status == "healthy"
    overall = "healthy" if all_healthy else "degraded"

    return {"status": overall, "redis": redis_status, "database": db_status}
