"""
Ingestion feature: batch embedding.
Runs one embedding call per text with a bounded number in flight.
"""

import asyncio
import logging
from typing import Any

from app.config import get_settings

logger = logging.getLogger(__name__)


async def embed_text(embeddings: Any, text: str) -> list[float]:
    """Generate embedding vector for a single text string.

    Args:
        embeddings: Embeddings client (normally a PooledProxy over LangChain embeddings).
        text: The text to embed.

    Returns:
        Vector truncated to EMBEDDING_DIMENSIONS.
    """
    vector = await embeddings.aembed_query(text)
    return list(vector)[:get_settings().EMBEDDING_DIMENSIONS]


async def embed_texts(embeddings: Any, texts: list[str], concurrency: int | None = None) -> list[list[float]]:
    """Generate embedding vectors for many texts, preserving input order.

    The first failing call cancels the calls still pending and is re-raised
    as-is, so callers can classify it like any single provider error.
    """
    limit = concurrency or get_settings().EMBEDDING_CONCURRENCY
    semaphore = asyncio.Semaphore(max(1, limit))

    async def one(text: str) -> list[float]:
        async with semaphore:
            return await embed_text(embeddings, text)

    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(one(t)) for t in texts]
    except ExceptionGroup as eg:
        raise eg.exceptions[0]

    vectors = [task.result() for task in tasks]
    logger.info(f"✅ Embedded {len(vectors)} texts (concurrency {limit})")
    return vectors
