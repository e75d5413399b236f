"""
Server-Sent Events transport.

`EventStream` is the sink the ingestion pipeline writes to while a
StreamingResponse drains it. Frames use named events:

    event: status
    data: {"stage": "parsing_pdf", "message": "Parsing PDF..."}

"""

import asyncio
import json
import logging
from typing import AsyncIterator

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_CLOSED = object()


def format_sse(event: str, data: dict | BaseModel) -> str:
    """Serialize one named SSE frame."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class EventStream:
    """FIFO queue of SSE frames with an idempotent close.

    `send()` after `close()` drops the frame and returns False, so a pipeline
    whose client went away can still run to completion.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: str, data: dict | BaseModel) -> bool:
        if self._closed:
            logger.debug(f"Dropped '{event}' frame: stream already closed")
            return False
        self._queue.put_nowait(format_sse(event, data))
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSED:
                return
            yield frame
