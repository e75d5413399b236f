"""
Shared persistence for key pool state.

One JSON document per pool holds every credential's cooldown/disabled flags plus
daily usage counters, so several workers rotating the same keys see each other's
penalties. Reads and writes are plain load/save: last writer wins.
"""

import logging
from dataclasses import dataclass, field
from typing import Protocol

from supabase import Client

logger = logging.getLogger(__name__)

POOL_STATE_TABLE = "llm_key_pool_state"


@dataclass
class EntryState:
    """Persisted view of one credential, keyed by its fingerprint."""
    cooldown_until: float = 0.0
    disabled: bool = False

    def to_dict(self) -> dict:
        return {"cooldown_until": self.cooldown_until, "disabled": self.disabled}

    @classmethod
    def from_dict(cls, data: dict) -> "EntryState":
        return cls(
            cooldown_until=float(data.get("cooldown_until") or 0),
            disabled=bool(data.get("disabled", False)),
        )


@dataclass
class PoolState:
    entries: dict[str, EntryState] = field(default_factory=dict)
    # "<model>:<YYYY-MM-DD>" -> successful calls
    usage: dict[str, int] = field(default_factory=dict)

    def entry(self, fingerprint: str) -> EntryState:
        if fingerprint not in self.entries:
            self.entries[fingerprint] = EntryState()
        return self.entries[fingerprint]

    def record_usage(self, model_name: str, day: str) -> None:
        key = f"{model_name}:{day}"
        self.usage[key] = self.usage.get(key, 0) + 1

    def to_dict(self) -> dict:
        return {
            "entries": {fp: e.to_dict() for fp, e in self.entries.items()},
            "usage": dict(self.usage),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "PoolState":
        data = data or {}
        return cls(
            entries={fp: EntryState.from_dict(e) for fp, e in (data.get("entries") or {}).items()},
            usage={k: int(v) for k, v in (data.get("usage") or {}).items()},
        )


class PoolStateStore(Protocol):
    def load(self) -> PoolState: ...

    def save(self, state: PoolState) -> None: ...


class InMemoryPoolStateStore:
    """Process-local store. Suitable for a single worker and for tests."""

    def __init__(self, initial: PoolState | None = None):
        self._data = (initial or PoolState()).to_dict()
        self.loads = 0
        self.saves = 0

    def load(self) -> PoolState:
        self.loads += 1
        return PoolState.from_dict(self._data)

    def save(self, state: PoolState) -> None:
        self.saves += 1
        self._data = state.to_dict()


class SupabasePoolStateStore:
    """Stores the pool document in a single row of `llm_key_pool_state`."""

    def __init__(self, db: Client, pool_name: str):
        self.db = db
        self.pool_name = pool_name

    def load(self) -> PoolState:
        result = (
            self.db.table(POOL_STATE_TABLE)
            .select("state")
            .eq("name", self.pool_name)
            .limit(1)
            .execute()
        )
        if not result.data:
            return PoolState()
        return PoolState.from_dict(result.data[0].get("state"))

    def save(self, state: PoolState) -> None:
        self.db.table(POOL_STATE_TABLE).upsert(
            {"name": self.pool_name, "state": state.to_dict()},
            on_conflict="name",
        ).execute()
