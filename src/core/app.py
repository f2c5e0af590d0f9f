"""
AnthonChat - Core Application

Builds the FastAPI application: lifespan, middleware, error rendering and
the API routes.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .database import close_db, get_session_maker, init_db
from .exceptions import BaseAPIException

logger = logging.getLogger(__name__)


class AnthonChatApp:
    """Application builder."""

    def __init__(self, settings: Settings = None):
        self.settings = settings or get_settings()
        self.app = None
        self._create_app()

    def _create_app(self):
        """Create the FastAPI application instance."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            logger.info(f"Starting {self.settings.PROJECT_NAME} v{self.settings.VERSION} ({self.settings.ENVIRONMENT})")

            await init_db()
            logger.info("Database initialized")

            # Expired nonces can never be consumed; clear the backlog
            try:
                from services.nonce_store import NonceStore

                async with get_session_maker()() as db:
                    await NonceStore(db).purge_expired()
            except Exception as e:
                logger.warning(f"Could not purge expired link nonces: {e}")

            yield

            await close_db()
            logger.info("Database connections closed")

        self.app = FastAPI(
            title=self.settings.PROJECT_NAME,
            description="Channel linking, signup and billing reconciliation API",
            version=self.settings.VERSION,
            openapi_url=f"{self.settings.API_PREFIX}/openapi.json",
            docs_url=f"{self.settings.API_PREFIX}/docs",
            redoc_url=f"{self.settings.API_PREFIX}/redoc",
            lifespan=lifespan,
        )

        self._add_middleware()
        self._add_exception_handlers()
        self._add_routes()

    def _add_middleware(self):
        """Add middleware to the application."""
        # CORS: include FRONTEND_URL so non-localhost deployments work
        cors_origins = list(self.settings.BACKEND_CORS_ORIGINS)
        frontend = self.settings.FRONTEND_URL.rstrip("/")
        if frontend and frontend not in cors_origins:
            cors_origins.append(frontend)

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_process_time_header(request, call_next):
            start_time = time.time()
            response = await call_next(request)
            response.headers["X-Process-Time"] = str(time.time() - start_time)
            return response

    def _add_exception_handlers(self):
        @self.app.exception_handler(BaseAPIException)
        async def api_exception_handler(request: Request, exc: BaseAPIException):
            if exc.status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": exc.message, **exc.details},
            )

    def _add_routes(self):
        """Add routes to the application."""

        @self.app.get("/")
        async def root():
            return {
                "name": self.settings.PROJECT_NAME,
                "version": self.settings.VERSION,
                "docs": f"{self.settings.API_PREFIX}/docs",
            }

        @self.app.get("/health")
        async def health():
            return {
                "status": "ok",
                "version": self.settings.VERSION,
            }

        from api import api_router
        self.app.include_router(api_router, prefix=self.settings.API_PREFIX)

    def get_app(self) -> FastAPI:
        """Get the FastAPI application instance."""
        return self.app


def create_app(settings: Settings = None) -> FastAPI:
    """Create and return the FastAPI application."""
    return AnthonChatApp(settings).get_app()
