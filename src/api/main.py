"""FastAPI application entry point for Atelier.

Process-wide collaborators (engine, session factory, permission cache,
attachment store, email sender) are built in the lifespan and kept on
``app.state``. Startup also reconciles the permission catalog and every
workspace's system roles.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.api.auth import router as auth_router
from src.api.clients import router as clients_router
from src.api.files import router as files_router
from src.api.invites import router as invites_router
from src.api.portal import router as portal_router
from src.api.requirements import router as requirements_router
from src.api.roles import router as roles_router
from src.api.tasks import router as tasks_router
from src.auth.cookies import clear_auth_cookies
from src.cache.redis_cache import RedisCache, create_redis_client
from src.config.settings import get_settings
from src.db.session import build_session_factory, create_engine_from_settings
from src.models.errors import AtelierError, Unauthenticated
from src.notifications.email import LoggingEmailSender
from src.rbac.catalog import seed_permissions, sync_system_roles
from src.rbac.resolver import invalidate_all
from src.storage.attachments import LocalAttachmentStore

APP_VERSION = "0.1.0"

settings = get_settings()

_LOG_NAME_TO_LEVEL: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# --- Structured logging ---
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer() if settings.ENVIRONMENT == "dev"
        else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _LOG_NAME_TO_LEVEL[settings.LOG_LEVEL.value],
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger()


async def reconcile_permissions(session_factory, cache: RedisCache) -> tuple[int, int]:
    """Sync the catalog and system roles, then drop every cached permission set."""
    async with session_factory() as session:
        seeded = await seed_permissions(session)
        synced = await sync_system_roles(session)
        await session.commit()
    await invalidate_all(cache)
    return seeded, synced


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    engine = create_engine_from_settings(settings)
    session_factory = build_session_factory(engine)
    cache = RedisCache(create_redis_client(settings))

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.cache = cache
    app.state.attachment_store = LocalAttachmentStore(
        settings.ATTACHMENT_STORAGE_PATH,
        secret=settings.ATTACHMENT_URL_SECRET,
        base_url=settings.PUBLIC_BASE_URL,
        default_ttl_seconds=settings.ATTACHMENT_URL_TTL_SECONDS,
        max_bytes=settings.MAX_ATTACHMENT_BYTES,
    )
    app.state.email_sender = LoggingEmailSender()

    seeded, synced = await reconcile_permissions(session_factory, cache)
    logger.info(
        "startup_complete",
        permissions=seeded, workspaces_synced=synced, cache_enabled=cache.enabled,
    )
    try:
        yield
    finally:
        await cache.close()
        await engine.dispose()


# --- FastAPI app ---
app = FastAPI(
    title="Atelier API",
    description="Multi-tenant workspace backend: teams, clients, tasks and requirements.",
    version=APP_VERSION,
    lifespan=lifespan,
)

# --- CORS middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL] if settings.ENVIRONMENT == "dev" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error rendering ---


@app.exception_handler(AtelierError)
async def atelier_error_handler(request: Request, exc: AtelierError) -> JSONResponse:
    response = JSONResponse(status_code=exc.status_code, content={"message": exc.message})
    if isinstance(exc, Unauthenticated):
        clear_auth_cookies(response, secure=not request.app.state.settings.is_development)
    return response


# --- Routers ---
app.include_router(auth_router)
app.include_router(roles_router)
app.include_router(invites_router)
app.include_router(clients_router)
app.include_router(tasks_router)
app.include_router(requirements_router)
app.include_router(portal_router)
app.include_router(files_router)


# --- Infrastructure Endpoints (global) ---


@app.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe with component health checks.

    Returns 200 always (degraded status if components are down). A disabled
    cache is reported but does not degrade the service.
    """
    checks: dict[str, bool] = {"api": True}

    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except (SQLAlchemyError, OSError):
        logger.warning("health_database_unreachable", exc_info=True)
        checks["database"] = False

    cache: RedisCache = request.app.state.cache
    if cache.enabled:
        checks["cache"] = await cache.ping()

    all_ok = all(checks.values())

    return {
        "status": "ok" if all_ok else "degraded",
        "version": APP_VERSION,
        "environment": settings.ENVIRONMENT.value,
        "checks": checks,
    }


@app.get("/api/version")
async def get_version() -> dict[str, str]:
    """Return application name, version, and environment."""
    return {
        "name": "Atelier",
        "version": APP_VERSION,
        "environment": settings.ENVIRONMENT.value,
    }
