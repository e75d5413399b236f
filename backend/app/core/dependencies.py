"""
FastAPI dependency injection functions.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from supabase import Client

from app.core.database import get_supabase_client
from app.core.key_pool import KeyPool

# Bearer token scheme for Swagger UI. Missing tokens are reported on the stream, not as 403.
bearer_scheme = HTTPBearer(auto_error=False)


def get_db() -> Client:
    """Dependency: get Supabase client."""
    return get_supabase_client()


def get_access_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str | None:
    """Dependency: raw bearer token, or None when the header is absent."""
    return credentials.credentials if credentials else None


def get_key_pool(request: Request) -> KeyPool:
    """Dependency: the process-wide key pool built at startup.

    Raises:
        HTTPException 503: If no LLM API keys are configured.
    """
    pool = getattr(request.app.state, "key_pool", None)
    if pool is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="LLM API keys are not configured",
        )
    return pool
