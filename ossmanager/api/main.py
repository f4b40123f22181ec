"""
OSS Manager API - Main Application Entry Point

FastAPI backend for the object storage console's access-control core.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ossmanager.api.access.ratelimit import close_redis
from ossmanager.api.access.routes import RouteAccessMiddleware
from ossmanager.api.auth.jwt import TokenService, get_token_service
from ossmanager.api.config import settings
from ossmanager.api.db.session import close_db, get_session_maker, init_db
from ossmanager.api.exceptions import register_exception_handlers


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def bootstrap_admin() -> None:
    """Seed the first manager when configured and the user table is empty."""
    if not (settings.BOOTSTRAP_ADMIN_USERNAME and settings.BOOTSTRAP_ADMIN_PASSWORD):
        return

    from ossmanager.api.admin.service import ensure_bootstrap_admin

    async with get_session_maker()() as session:
        await ensure_bootstrap_admin(
            session,
            settings.BOOTSTRAP_ADMIN_USERNAME,
            settings.BOOTSTRAP_ADMIN_PASSWORD,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting %s v%s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    await init_db()
    await bootstrap_admin()
    yield
    # Shutdown
    await close_redis()
    await close_db()


def create_app(token_service: Optional[TokenService] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="OSS Manager - access control and session API",
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url="/api/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.token_service = token_service or get_token_service()

    register_exception_handlers(app)

    # Route gating runs inside CORS so preflight responses keep their headers
    app.add_middleware(RouteAccessMiddleware, api_prefix=settings.API_PREFIX)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    from ossmanager.api.auth.routes import router as auth_router
    from ossmanager.api.users.routes import router as users_router
    from ossmanager.api.admin.routes import router as admin_router
    from ossmanager.api.audit.routes import router as audit_router

    prefix = settings.API_PREFIX
    app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["Authentication"])
    app.include_router(users_router, prefix=f"{prefix}/user", tags=["Current User"])
    app.include_router(admin_router, prefix=prefix, tags=["Administration"])
    app.include_router(audit_router, prefix=f"{prefix}/audit", tags=["Audit"])

    # Health check endpoint
    @app.get(f"{prefix}/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME,
        }

    return app


setup_logging(settings.LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ossmanager.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
