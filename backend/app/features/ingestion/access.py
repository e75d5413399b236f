"""
Ingestion feature: authorization and quota collaborators.

Only admins ingest documents. Plain admins are scoped to the courses they
manage; super admins may upload anywhere.
"""

import logging
from dataclasses import dataclass

from cachetools import TTLCache
from supabase import Client

from app.config import Settings
from app.core.exceptions import ForbiddenError, QuotaExceededError
from app.core.security import decode_access_token

logger = logging.getLogger(__name__)

ADMIN_ROLES = {"admin", "super_admin"}

# user_id -> profile row, short-lived to spare a query per upload
_profile_cache: TTLCache = TTLCache(maxsize=1024, ttl=60)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    is_pro: bool = False


class AccessControl:
    """Resolves the caller from a bearer token and checks course permissions."""

    def __init__(self, db: Client):
        self.db = db

    def _profile(self, user_id: str) -> dict:
        if user_id in _profile_cache:
            return _profile_cache[user_id]
        result = (
            self.db.table("profiles")
            .select("role, subscription_status")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        profile = result.data[0] if result.data else {}
        _profile_cache[user_id] = profile
        return profile

    def require_any_admin(self, access_token: str | None) -> AuthContext:
        """Return `{user_id, role}` for an admin caller or raise ForbiddenError."""
        payload = decode_access_token(access_token) if access_token else None
        user_id = payload.get("sub") if payload else None
        if not user_id:
            raise ForbiddenError()

        profile = self._profile(user_id)
        role = profile.get("role") or "user"
        if role not in ADMIN_ROLES:
            raise ForbiddenError()
        return AuthContext(
            user_id=user_id,
            role=role,
            is_pro=profile.get("subscription_status") == "active",
        )

    def require_course_admin(self, auth: AuthContext, course_id: str) -> None:
        if auth.role == "super_admin":
            return
        result = (
            self.db.table("course_admins")
            .select("course_id")
            .eq("user_id", auth.user_id)
            .eq("course_id", course_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise ForbiddenError("No access to this course")


class QuotaService:
    """Daily LLM usage quota, counted atomically by a database function."""

    def __init__(self, db: Client, settings: Settings):
        self.db = db
        self.settings = settings

    def daily_limit(self, is_pro: bool) -> int:
        return self.settings.LLM_DAILY_LIMIT_PRO if is_pro else self.settings.LLM_DAILY_LIMIT_FREE

    def enforce(self, auth: AuthContext) -> None:
        """Consume one unit of today's quota.

        Raises:
            QuotaExceededError: If the user already reached the daily limit.
        """
        if not self.settings.QUOTA_ENFORCED:
            return

        limit = self.daily_limit(auth.is_pro)
        result = self.db.rpc(
            "check_and_increment_llm_usage",
            {"p_user_id": auth.user_id, "p_limit": limit},
        ).execute()
        row = result.data[0] if isinstance(result.data, list) and result.data else result.data or {}
        if not row.get("allowed"):
            logger.info(f"Quota exceeded for user {auth.user_id}: {row.get('count')}/{limit}")
            raise QuotaExceededError(usage=row.get("count"), limit=limit)
