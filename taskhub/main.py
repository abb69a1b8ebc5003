from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from taskhub.cache.layer import CacheLayer
from taskhub.core.config import Settings, get_settings
from taskhub.core.exceptions import TaskDomainError
from taskhub.core.logging import setup_logging
from taskhub.database import create_engine, create_session_factory
from taskhub.events.broadcaster import EventBroadcaster
from taskhub.repositories.task_store import TaskStore
from taskhub.routers import tasks
from taskhub.services.task_service import TaskOrchestrator

logger = structlog.get_logger(__name__)


def build_orchestrator(session_factory, redis: Redis | None, settings: Settings):
    """Wire the components; every collaborator is passed in explicitly."""
    cache = CacheLayer(redis, settings)
    broadcaster = EventBroadcaster(redis, settings)
    store = TaskStore(session_factory, settings)
    return TaskOrchestrator(store, cache, broadcaster, settings), cache, broadcaster


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        engine = create_engine(settings)
        redis = Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )
        orchestrator, cache, broadcaster = build_orchestrator(
            create_session_factory(engine), redis, settings
        )
        app.state.orchestrator = orchestrator
        app.state.cache = cache
        app.state.broadcaster = broadcaster

        if not await cache.health_check():
            # Reads fall through to the database until Redis comes back.
            logger.warning("cache_degraded_at_startup", redis_dsn=settings.redis_dsn)
        logger.info("task_service_started")
        yield
        await cache.close()
        await engine.dispose()

    app = FastAPI(
        title="Task Management API",
        description="Hierarchical multilingual tasks with cached reads and live events",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(TaskDomainError)
    async def task_domain_error_handler(request: Request, exc: TaskDomainError):
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    app.include_router(tasks.router)

    @app.get("/health")
    async def health_check(request: Request):
        broadcaster = request.app.state.broadcaster
        cache_ok = await request.app.state.cache.health_check()
        bus_ok = await broadcaster.health_check()
        return {
            "status": "healthy" if cache_ok and bus_ok else "degraded",
            "cache": cache_ok,
            "pubsub": bus_ok,
            "global_subscribers": await broadcaster.channel_subscribers(),
            "cache_metrics": request.app.state.cache.get_metrics(),
            "broadcast_metrics": dict(broadcaster.metrics),
        }

    return app
