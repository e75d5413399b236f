"""
Ingestion feature: dedup.

Pass 1 matches keys: lecture items by title, exam/assignment items by full
question content, both trimmed and lower-cased.
Pass 2 (embedded types only) drops items whose vector is within cosine
threshold of a stored child's vector.
"""

import json
from typing import Iterable, TypeVar

import numpy as np

from app.features.ingestion.schemas import DocType, KnowledgePoint, ParsedQuestion

T = TypeVar("T", KnowledgePoint, ParsedQuestion)


def normalize_key(value: str | None) -> str:
    return (value or "").strip().lower()


def item_key(item: KnowledgePoint | ParsedQuestion) -> str:
    if isinstance(item, KnowledgePoint):
        return normalize_key(item.title)
    return normalize_key(item.content)


def existing_row_key(doc_type: DocType, row: dict) -> str:
    """Dedup key of an already-persisted child row."""
    if doc_type == DocType.LECTURE:
        return normalize_key((row.get("metadata") or {}).get("title"))
    return normalize_key(row.get("content"))


def unique_items(items: Iterable[T]) -> list[T]:
    """Collapse duplicates inside one extraction, first occurrence wins."""
    seen: set[str] = set()
    result = []
    for item in items:
        key = item_key(item)
        if key in seen:
            continue
        seen.add(key)
        result.append(item)
    return result


def filter_new_items(items: Iterable[T], existing_keys: set[str]) -> list[T]:
    return [item for item in items if item_key(item) not in existing_keys]


# ── Embedding similarity ─────────────────────────────────

def parse_stored_vector(value) -> list[float] | None:
    """pgvector columns come back from PostgREST as a JSON string."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if isinstance(value, list) and value:
        return value
    return None


def _unit_rows(vectors: list[list[float]]) -> np.ndarray:
    matrix = np.asarray(vectors, dtype=float)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def similar_to_existing(
    vectors: list[list[float] | None],
    existing: list[list[float]],
    threshold: float,
) -> list[bool]:
    """Flag each candidate whose best cosine similarity to a stored vector is >= threshold.

    Stored vectors of a different dimension than the candidate are ignored.
    """
    by_dims: dict[int, np.ndarray | None] = {}
    flags = []
    for vector in vectors:
        if not vector:
            flags.append(False)
            continue
        dims = len(vector)
        if dims not in by_dims:
            same_dims = [v for v in existing if len(v) == dims]
            by_dims[dims] = _unit_rows(same_dims) if same_dims else None
        stored = by_dims[dims]
        candidate = np.asarray(vector, dtype=float)
        norm = np.linalg.norm(candidate)
        if stored is None or norm == 0:
            flags.append(False)
            continue
        flags.append(bool((stored @ (candidate / norm)).max() >= threshold))
    return flags
