"""
kbrag - FastAPI Application Entry Point.

Feature-based modular architecture:
  Each feature in kbrag/features/ has its own router, services and schemas.
  The queue worker runs inside the same process (APScheduler polling) and
  behind /api/rag/worker/run for external wake signals.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kbrag.background.scheduler import init_scheduler, shutdown_scheduler
from kbrag.config import get_settings
from kbrag.core.exceptions import AppBaseError, app_error_to_http
from kbrag.features.rag.normalizer import close_http_client

# ── Feature Routers ──────────────────────────────────────
from kbrag.features.rag.router import router as rag_router

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup & shutdown."""
    settings = get_settings()
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} starting...")
    logger.info(f"LLM Provider: {settings.LLM_PROVIDER} ({settings.RAG_MODEL})")
    logger.info(f"Serverless limits: {'on' if settings.SERVERLESS else 'off'}")
    init_scheduler()
    yield
    shutdown_scheduler()
    close_http_client()
    logger.info("Shutting down...")


async def app_error_handler(request: Request, exc: AppBaseError) -> JSONResponse:
    """Render domain errors with the consistent {error, detail, type} body."""
    http_error = app_error_to_http(exc)
    if http_error.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.detail})")
    return JSONResponse(status_code=http_error.status_code, content={"detail": http_error.detail})


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()
    configure_logging(settings.DEBUG)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Knowledge-base ingestion and grounded question answering",
        lifespan=lifespan,
    )

    # ── CORS ─────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Background-Queued"],
    )

    app.add_exception_handler(AppBaseError, app_error_handler)

    # ── Register Feature Routers ─────────────────────────
    app.include_router(rag_router, prefix="/api/rag", tags=["RAG"])

    # ── Health Check ─────────────────────────────────────
    @app.get("/health", tags=["System"])
    async def health_check():
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
        }

    return app


app = create_app()
