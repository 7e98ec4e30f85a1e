"""
Keepsake API

Personal data-management backend. Everything it stores lives under one data
root, which can be exported and restored as a single archive.

Usage:
    uvicorn keepsake.main:app --port 9696

API Docs:
    http://localhost:9696/docs
"""
import asyncio
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse as StarletteJSONResponse

from keepsake.config import get_settings
from keepsake.api.v1.router import api_router
from keepsake.core.errors import ConfigError
from keepsake.core.local_config import ConfigState, config_state
from keepsake.core.tokens import verify_token
from keepsake.db.database import db_handle, ensure_data_root, init_db
from keepsake.services.archive import cleanup_staging_dir
from keepsake.services.restore import restore_executor

logger = logging.getLogger("keepsake")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    settings = get_settings()
    ensure_data_root(settings.data_path)
    await asyncio.to_thread(cleanup_staging_dir, settings.staging_path)
    try:
        await init_db()
    except Exception as e:
        # Keep serving so a broken database can still be replaced by an import
        logger.error(f"Database init failed: {e}")
    try:
        config_state.load()
    except ConfigError as e:
        logger.error(f"Local config could not be loaded: {e}")

    yield

    await db_handle.close()
    restore_executor.shutdown(wait=False, cancel_futures=True)


class AuthMiddleware(BaseHTTPMiddleware):
    """Bearer-token check; transparent while config.yml has no password."""

    PUBLIC_PREFIXES = (
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
        "/api/v1/auth/",
    )

    def __init__(self, app, config: ConfigState):
        super().__init__(app)
        self.config = config

    async def dispatch(self, request, call_next):
        path = request.url.path

        if path in ("/", "/health"):
            return await call_next(request)

        for prefix in self.PUBLIC_PREFIXES:
            if path.startswith(prefix):
                return await call_next(request)

        if not self.config.auth_enabled:
            return await call_next(request)

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return StarletteJSONResponse(
                status_code=401,
                content={"detail": "Not authenticated"},
            )

        try:
            verify_token(auth_header[7:], self.config.get_jwt_secret())
        except (ValueError, ConfigError):
            return StarletteJSONResponse(
                status_code=401,
                content={"detail": "Invalid or expired token"},
            )

        return await call_next(request)


def create_app(config: ConfigState = config_state, lifespan=lifespan) -> FastAPI:
    app = FastAPI(
        title="Keepsake API",
        description="Personal data backend with full data-root backup and restore",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(AuthMiddleware, config=config)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}:\n{traceback.format_exc()}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # Routes
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "database": "connected" if db_handle.is_connected else "closed"}

    @app.get("/")
    async def root():
        return {
            "name": "Keepsake API",
            "version": "1.0.0",
            "docs": "/docs",
            "endpoints": {
                "backup": "/api/v1/backup",
                "auth": "/api/v1/auth",
                "system": "/api/v1/system",
            },
        }

    return app


app = create_app()
