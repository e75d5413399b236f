"""
Ingestion feature: document parse API routes.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import StreamingResponse
from supabase import Client

from app.config import get_settings
from app.core.dependencies import get_access_token, get_db, get_key_pool
from app.core.exceptions import ForbiddenError, app_error_to_http
from app.core.key_pool import KeyPool
from app.core.sse import EventStream
from app.features.ingestion.access import AccessControl, QuotaService
from app.features.ingestion.pipeline import IngestionPipeline, PipelineDependencies
from app.features.ingestion.repositories import get_repository
from app.features.ingestion.schemas import CancellationToken, DocType, PipelineRequest

logger = logging.getLogger(__name__)

router = APIRouter()

# Strong refs so background runs are not garbage-collected mid-flight
_running_pipelines: set[asyncio.Task] = set()


def get_ingestion_pipeline(
    request: Request,
    db: Client = Depends(get_db),
    pool: KeyPool = Depends(get_key_pool),
) -> IngestionPipeline:
    """Dependency: a pipeline wired to Supabase and the shared key pool."""
    settings = get_settings()
    return IngestionPipeline(PipelineDependencies(
        access=AccessControl(db),
        quota=QuotaService(db, settings),
        repositories={doc_type: get_repository(db, doc_type) for doc_type in DocType},
        chat=request.app.state.chat,
        embeddings=request.app.state.embeddings,
        settings=settings,
    ))


@router.post("/parse")
async def parse_document(
    file: UploadFile = File(...),
    doc_type: str = Form(...),
    document_id: str | None = Form(None, alias="documentId"),
    course_id: str | None = Form(None, alias="courseId"),
    has_answers: bool = Form(False),
    access_token: str | None = Depends(get_access_token),
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
):
    """
    Upload a PDF and ingest it as lecture notes, exam paper or assignment.

    Responds immediately with an SSE stream; the pipeline keeps running in the
    background and pushes `status`, `item`, `progress`, `batch_saved` and
    finally `complete` or `error` frames. Closing the connection cancels it.
    """
    file_bytes = await file.read()
    cancel_token = CancellationToken()
    pipeline_request = PipelineRequest(
        record_id=document_id,
        doc_type=doc_type,
        file_bytes=file_bytes,
        content_type=file.content_type,
        filename=file.filename,
        has_answers=has_answers,
        course_id=course_id,
        access_token=access_token,
        cancel_token=cancel_token,
    )
    sink = EventStream()

    task = asyncio.create_task(pipeline.run(pipeline_request, sink))
    _running_pipelines.add(task)
    task.add_done_callback(_running_pipelines.discard)

    async def generate_parse_stream():
        try:
            async for frame in sink:
                yield frame
        finally:
            if not sink.closed:
                logger.info(f"Client disconnected from parse stream ({file.filename}), cancelling")
                cancel_token.cancel()
                sink.close()

    return StreamingResponse(
        generate_parse_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/key-pool/status")
async def key_pool_status(
    access_token: str | None = Depends(get_access_token),
    db: Client = Depends(get_db),
    pool: KeyPool = Depends(get_key_pool),
):
    """Masked health snapshot of every LLM API key (admins only)."""
    try:
        AccessControl(db).require_any_admin(access_token)
    except ForbiddenError as e:
        raise app_error_to_http(e, status_code=403)
    return {"data": pool.status()}
