"""
Application configuration using Pydantic Settings.
All config is loaded from environment variables / .env file.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # ── App ──────────────────────────────────────────────
    APP_NAME: str = "study-ingest"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"  # comma-separated

    # ── Supabase ─────────────────────────────────────────
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""  # anon/public key
    SUPABASE_SERVICE_KEY: str = ""  # service_role key (for admin ops)

    # ── Security ─────────────────────────────────────────
    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"

    # ── LLM (Provider-Agnostic) ──────────────────────────
    LLM_PROVIDER: str = "gemini"  # gemini | openai | groq
    LLM_MODEL: str = "gemini-2.0-flash"
    LLM_API_KEYS: str = ""  # comma-separated, one pool entry per key
    LLM_TEMPERATURE: float = 0.0

    # ── Embedding ────────────────────────────────────────
    EMBEDDING_PROVIDER: str = "gemini"
    EMBEDDING_MODEL: str = "text-embedding-004"
    EMBEDDING_DIMENSIONS: int = 768
    EMBEDDING_CONCURRENCY: int = 10  # embedding calls in flight per pipeline

    # ── Key Pool ─────────────────────────────────────────
    KEY_POOL_NAME: str = "gemini"
    KEY_POOL_STATE_BACKEND: str = "supabase"  # supabase | memory
    KEY_POOL_FIRST_COOLDOWN_SECONDS: int = 30
    KEY_POOL_ESCALATED_COOLDOWN_SECONDS: int = 24 * 60 * 60

    # ── Ingestion ────────────────────────────────────────
    MAX_FILE_SIZE_MB: int = 10
    QUESTION_BATCH_PAGES: int = 10
    SAVE_BATCH_SIZE: int = 20
    OUTLINE_EMBED_CHARS: int = 2000
    DEDUP_SIMILARITY_THRESHOLD: float = 0.92  # cosine, against stored child embeddings

    # ── Quota ────────────────────────────────────────────
    QUOTA_ENFORCED: bool = True
    LLM_DAILY_LIMIT_FREE: int = 3
    LLM_DAILY_LIMIT_PRO: int = 30

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }

    @property
    def api_keys(self) -> list[str]:
        return [k.strip() for k in self.LLM_API_KEYS.split(",") if k.strip()]

    @property
    def max_file_size_bytes(self) -> int:
        return self.MAX_FILE_SIZE_MB * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance (singleton)."""
    return Settings()
