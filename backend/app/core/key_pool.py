"""
Multi-key resilience layer for LLM provider calls.

Each configured API key is a pool entry. `KeyPool.with_retry()` runs a unit of
work against the first eligible key and rotates past keys that are cooling down
or disabled:

  429        -> first offense 30s cooldown, repeat offense 24h cooldown, next key
  401 / 403  -> key disabled permanently, next key
  5xx        -> no penalty, next key (any 500-599)
  other      -> propagate immediately (bad request, safety block, ...)

Cooldown/disabled flags and daily usage live in a shared PoolState that is
loaded once and saved once per call, so workers sharing a store cooperate.
The load/compute/save sequence is not atomic; concurrent callers may overwrite
each other's penalties.
"""

import hashlib
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from app.config import Settings
from app.core.exceptions import AllKeysUnavailableError, extract_status_code
from app.core.key_pool_store import PoolState, PoolStateStore

logger = logging.getLogger(__name__)

RATE_LIMITED = 429
DISABLING_STATUSES = {401, 403}


def mask_key(key: str) -> str:
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}****{key[-2:]}"


def fingerprint_key(key: str) -> str:
    """Stable id for a key in shared state; the raw key is never persisted."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class PoolEntry:
    index: int
    api_key: str
    fingerprint: str
    masked_key: str


class KeyPool:
    """Ordered set of provider credentials with shared cooldown state.

    Build one per process (see `app.main.lifespan`) and hand it to every
    pipeline run.
    """

    def __init__(
        self,
        api_keys: list[str],
        store: PoolStateStore,
        first_cooldown_seconds: int = 30,
        escalated_cooldown_seconds: int = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        if not api_keys:
            raise ValueError("Missing LLM_API_KEYS: at least one API key is required")
        self.entries = [
            PoolEntry(i, key, fingerprint_key(key), mask_key(key))
            for i, key in enumerate(api_keys)
        ]
        self.store = store
        self.first_cooldown_seconds = first_cooldown_seconds
        self.escalated_cooldown_seconds = escalated_cooldown_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, store: PoolStateStore) -> "KeyPool":
        return cls(
            settings.api_keys,
            store,
            first_cooldown_seconds=settings.KEY_POOL_FIRST_COOLDOWN_SECONDS,
            escalated_cooldown_seconds=settings.KEY_POOL_ESCALATED_COOLDOWN_SECONDS,
        )

    @property
    def size(self) -> int:
        return len(self.entries)

    def _today(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).date().isoformat()

    async def with_retry(
        self,
        work: Callable[[str], Awaitable[Any] | Any],
        model_name: str | None = None,
    ) -> Any:
        """Run `work(api_key)` on the first usable key, rotating on failure.

        Raises the last provider error when every eligible key failed, or
        AllKeysUnavailableError when no key was eligible to begin with.
        """
        state = self.store.load()
        last_error: BaseException | None = None
        try:
            for entry in self.entries:
                entry_state = state.entry(entry.fingerprint)
                if entry_state.disabled or entry_state.cooldown_until > self._clock():
                    continue

                try:
                    result = work(entry.api_key)
                    if inspect.isawaitable(result):
                        result = await result
                except Exception as e:
                    status = extract_status_code(e)
                    if not self._penalize(entry, state, status):
                        raise
                    last_error = e
                    continue

                entry_state.cooldown_until = 0.0
                if model_name:
                    state.record_usage(model_name, self._today())
                return result

            if last_error is None:
                raise AllKeysUnavailableError(self.size)
            raise last_error
        finally:
            self._save(state)

    def _penalize(self, entry: PoolEntry, state: PoolState, status: int | None) -> bool:
        """Apply the state change for a failed call. Returns False if the error must propagate."""
        entry_state = state.entry(entry.fingerprint)
        now = self._clock()

        if status == RATE_LIMITED:
            if entry_state.cooldown_until == 0:
                entry_state.cooldown_until = now + self.first_cooldown_seconds
                logger.warning(f"⏳ Key {entry.masked_key} COOLDOWN {self.first_cooldown_seconds}s (HTTP 429)")
            else:
                entry_state.cooldown_until = now + self.escalated_cooldown_seconds
                logger.warning(f"⛔ Key {entry.masked_key} COOLDOWN 24h (HTTP 429, repeat offense)")
            return True

        if status in DISABLING_STATUSES:
            entry_state.disabled = True
            logger.error(f"❌ Key {entry.masked_key} DISABLED (HTTP {status})")
            return True

        if status is not None and 500 <= status < 600:
            logger.warning(f"⚠️ Key {entry.masked_key} upstream unavailable (HTTP {status}), rotating")
            return True

        return False

    def _save(self, state: PoolState) -> None:
        try:
            self.store.save(state)
        except Exception as e:
            logger.warning(f"⚠️ Could not persist key pool state: {e}")

    def status(self) -> list[dict]:
        """Masked snapshot of every key for monitoring."""
        state = self.store.load()
        now = self._clock()
        today = self._today()
        usage_today = {
            key.rsplit(":", 1)[0]: count
            for key, count in state.usage.items()
            if key.endswith(f":{today}")
        }
        snapshot = []
        for entry in self.entries:
            entry_state = state.entry(entry.fingerprint)
            if entry_state.disabled:
                label = "disabled"
            elif entry_state.cooldown_until > now:
                label = "cooldown"
            else:
                label = "healthy"
            snapshot.append({
                "id": entry.index,
                "masked_key": entry.masked_key,
                "status": label,
                "cooldown_until": entry_state.cooldown_until,
            })
        return [{**s, "usage_today": usage_today} for s in snapshot]


class PooledProxy:
    """Client-shaped wrapper that sends every method call through the pool.

    `factory(api_key)` builds the real client for one key; clients are cached
    per key. The stats model name comes from a `model=` keyword when the call
    has one, otherwise from `model_name`.

        chat = PooledProxy(pool, create_llm, model_name="gemini-2.0-flash")
        reply = await chat.ainvoke(prompt)
    """

    def __init__(self, pool: KeyPool, factory: Callable[[str], Any], model_name: str | None = None):
        self._pool = pool
        self._factory = factory
        self._model_name = model_name
        self._clients: dict[str, Any] = {}

    def _client_for(self, api_key: str) -> Any:
        if api_key not in self._clients:
            self._clients[api_key] = self._factory(api_key)
        return self._clients[api_key]

    def __getattr__(self, name: str) -> Callable[..., Awaitable[Any]]:
        if name.startswith("_"):
            raise AttributeError(name)

        async def call(*args, **kwargs):
            model = kwargs.get("model")
            model_name = model if isinstance(model, str) else self._model_name
            return await self._pool.with_retry(
                lambda api_key: getattr(self._client_for(api_key), name)(*args, **kwargs),
                model_name=model_name,
            )

        return call
