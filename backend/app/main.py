"""
Study Ingest - FastAPI Application Entry Point.

Feature-based modular architecture:
  Each feature in app/features/ has its own router, service, and schemas.
  The LLM key pool is built once at startup and shared by every request.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, get_settings
from app.core.database import get_supabase_admin_client
from app.core.key_pool import KeyPool, PooledProxy
from app.core.key_pool_store import InMemoryPoolStateStore, PoolStateStore, SupabasePoolStateStore
from app.core.llm_provider import create_embeddings, create_llm

# ── Feature Routers ──────────────────────────────────────
from app.features.ingestion.router import router as ingestion_router

logger = logging.getLogger(__name__)


def build_pool_store(settings: Settings) -> PoolStateStore:
    if settings.KEY_POOL_STATE_BACKEND == "memory":
        return InMemoryPoolStateStore()
    return SupabasePoolStateStore(get_supabase_admin_client(), settings.KEY_POOL_NAME)


def init_llm_clients(app: FastAPI, settings: Settings) -> None:
    """Attach the key pool and pooled LLM/embedding clients to app.state."""
    app.state.key_pool = None
    app.state.chat = None
    app.state.embeddings = None
    if not settings.api_keys:
        logger.warning("⚠️ LLM_API_KEYS is empty: document parsing is disabled")
        return

    pool = KeyPool.from_settings(settings, build_pool_store(settings))
    app.state.key_pool = pool
    app.state.chat = PooledProxy(pool, create_llm, model_name=settings.LLM_MODEL)
    app.state.embeddings = PooledProxy(pool, create_embeddings, model_name=settings.EMBEDDING_MODEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup & shutdown."""
    settings = get_settings()
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
    logger.info(f"🚀 {settings.APP_NAME} v{settings.APP_VERSION} starting...")
    init_llm_clients(app, settings)
    if app.state.key_pool is not None:
        logger.info(f"🤖 LLM Provider: {settings.LLM_PROVIDER} ({settings.LLM_MODEL}), {app.state.key_pool.size} key(s)")
    yield
    logger.info("👋 Shutting down...")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="PDF ingestion pipeline for lecture notes, exam papers and assignments",
        lifespan=lifespan,
    )

    # ── CORS ─────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Register Feature Routers ─────────────────────────
    app.include_router(ingestion_router, prefix="/api/documents", tags=["Documents"])

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
