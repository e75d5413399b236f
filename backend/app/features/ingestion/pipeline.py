"""
Ingestion feature: pipeline orchestrator.

One run per upload, streaming progress to an EventStream:

  AUTHENTICATE -> VALIDATE_INPUT -> RESOLVE_PERMISSION -> ENFORCE_QUOTA
  -> PARSE_PDF -> EXTRACT -> DEDUP -> EMBED/PERSIST -> COMPLETE

Failures before EXTRACT leave the record untouched. From EXTRACT on, a
failure marks the record `error` (best effort) before the error event.
Cancellation is polled between stages and batches; the stream then ends with
neither `complete` nor `error`, and batches already written stay written.
"""

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from app.config import Settings
from app.core.exceptions import (
    AppBaseError,
    EmptyPdfError,
    ExtractionError,
    FileTooLargeError,
    ForbiddenError,
    InvalidFileError,
    LLMQuotaExceededError,
    NotFoundError,
    ValidationError,
    is_llm_quota_error,
)
from app.core.sse import EventStream
from app.features.ingestion.access import AuthContext
from app.features.ingestion.pdf import PdfPage, looks_like_pdf, parse_pdf, total_text_length
from app.features.ingestion.persistence import BatchPersistence, PersistOutcome
from app.features.ingestion.repositories import RecordRepository
from app.features.ingestion.schemas import (
    DocType,
    DocumentOutline,
    ErrorEvent,
    ExtractedItem,
    ItemEvent,
    LogEvent,
    PipelineRequest,
    RecordStatus,
    StatusEvent,
)
from app.features.ingestion.strategies import LectureStrategy, QuestionStrategy

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Internal server error"


class Stage(str, Enum):
    AUTHENTICATE = "authenticate"
    VALIDATE_INPUT = "validate_input"
    RESOLVE_PERMISSION = "resolve_permission"
    ENFORCE_QUOTA = "enforce_quota"
    PARSE_PDF = "parse_pdf"
    EXTRACT = "extract"
    DEDUP = "dedup"
    EMBED = "embed"
    PERSIST = "persist"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


# Stages whose failure flips the record to `error`
_CLEANUP_STAGES = {Stage.EXTRACT, Stage.DEDUP, Stage.EMBED, Stage.PERSIST, Stage.COMPLETE}


@dataclass
class PipelineResult:
    stage: Stage
    record_id: str | None = None
    error_code: str | None = None
    saved_items: int = 0
    cleanup_ok: bool | None = None  # None when no cleanup was attempted


@dataclass
class _RunState:
    stage: Stage = Stage.AUTHENTICATE
    record_id: str | None = None
    repository: RecordRepository | None = None
    saved_items: int = 0


@dataclass
class PipelineDependencies:
    access: Any
    quota: Any
    repositories: dict[DocType, RecordRepository]
    chat: Any
    embeddings: Any
    settings: Settings
    pdf_parser: Callable[[bytes], list[PdfPage]] = field(default=parse_pdf)


class IngestionPipeline:
    """Runs ingestion for one request, streaming to one sink."""

    def __init__(self, deps: PipelineDependencies):
        self.deps = deps
        self.settings = deps.settings

    async def run(self, request: PipelineRequest, sink: EventStream) -> PipelineResult:
        state = _RunState()
        try:
            stage = await self._run(request, sink, state)
            return PipelineResult(stage=stage, record_id=state.record_id, saved_items=state.saved_items)
        except AppBaseError as e:
            logger.warning(f"⚠️ Ingestion failed at {state.stage.value}: [{e.code}] {e.message}")
            cleanup_ok = self._cleanup(state, e.message)
            message = GENERIC_ERROR_MESSAGE if e.code == "INTERNAL_ERROR" else e.message
            sink.send("error", ErrorEvent(message=message, code=e.code))
            return PipelineResult(Stage.ERROR, state.record_id, e.code, state.saved_items, cleanup_ok)
        except Exception:
            logger.error(f"❌ Ingestion pipeline error at {state.stage.value}", exc_info=True)
            cleanup_ok = self._cleanup(state, "Processing failed")
            sink.send("error", ErrorEvent(message=GENERIC_ERROR_MESSAGE, code="INTERNAL_ERROR"))
            return PipelineResult(Stage.ERROR, state.record_id, "INTERNAL_ERROR", state.saved_items, cleanup_ok)
        finally:
            sink.close()

    def _cleanup(self, state: _RunState, message: str) -> bool | None:
        """Best-effort `status = error`. Returns None if not applicable, else whether it stuck."""
        if state.stage not in _CLEANUP_STAGES or not state.record_id or state.repository is None:
            return None
        try:
            state.repository.update_status(state.record_id, RecordStatus.ERROR, message)
            return True
        except Exception as e:
            logger.warning(f"⚠️ Could not mark {state.record_id} as error: {e}")
            return False

    # ── Stages ───────────────────────────────────────────

    def _validate(self, request: PipelineRequest) -> DocType:
        if request.content_type != "application/pdf":
            raise InvalidFileError()
        if len(request.file_bytes) > self.settings.max_file_size_bytes:
            raise FileTooLargeError(self.settings.MAX_FILE_SIZE_MB)
        try:
            doc_type = DocType(request.doc_type)
        except ValueError:
            raise ValidationError(detail=f"Unknown doc_type '{request.doc_type}'")
        if request.record_id is not None:
            try:
                uuid.UUID(request.record_id)
            except ValueError:
                raise ValidationError(detail="documentId must be a UUID")
        return doc_type

    def _resolve_permission(
        self, request: PipelineRequest, auth: AuthContext, repository: RecordRepository
    ) -> tuple[dict | None, str | None]:
        record = None
        course_id = request.course_id
        if request.record_id is not None:
            record = repository.find_by_id(request.record_id)
            if record is None:
                raise NotFoundError()
            course_id = record.get("course_id")

        if auth.role == "admin" and not course_id:
            raise ForbiddenError("Admin must select a course for uploads")
        if course_id:
            self.deps.access.require_course_admin(auth, course_id)
        return record, course_id

    async def _parse_pdf(self, request: PipelineRequest) -> list[PdfPage]:
        if not looks_like_pdf(request.file_bytes):
            raise InvalidFileError("File is not a valid PDF")
        pages = await asyncio.to_thread(self.deps.pdf_parser, request.file_bytes)
        if total_text_length(pages) == 0:
            raise EmptyPdfError()
        return pages

    async def _extract(
        self, doc_type: DocType, request: PipelineRequest, record_id: str,
        pages: list[PdfPage], sink: EventStream,
    ) -> tuple[list[ExtractedItem], DocumentOutline | None]:
        try:
            if doc_type == DocType.LECTURE:
                result = await LectureStrategy(self.deps.chat).extract(
                    pages,
                    document_id=record_id,
                    cancel_token=request.cancel_token,
                    on_progress=lambda progress: sink.send("pipeline_progress", progress),
                )
                return result.knowledge_points, result.outline

            def batch_done(current: int, total: int) -> None:
                sink.send("progress", {"current": current, "total": total})
                sink.send("log", LogEvent(message=f"Processed batch {current}/{total}"))

            questions = await QuestionStrategy(self.deps.chat, self.settings.QUESTION_BATCH_PAGES).extract(
                pages,
                has_answers=request.has_answers,
                cancel_token=request.cancel_token,
                on_progress=batch_done,
            )
            return questions, None
        except Exception as e:
            logger.error(f"❌ LLM extraction error: {e}", exc_info=True)
            if is_llm_quota_error(e):
                raise LLMQuotaExceededError() from e
            raise ExtractionError() from e

    def _store_file_hash(self, state: _RunState, file_bytes: bytes) -> bool:
        try:
            state.repository.update_metadata(state.record_id, {
                "file_hash": hashlib.sha256(file_bytes).hexdigest(),
            })
            return True
        except Exception as e:
            logger.warning(f"⚠️ Failed to store file hash (non-fatal): {e}")
            return False

    def _complete(self, state: _RunState, sink: EventStream, message: str) -> Stage:
        state.stage = Stage.COMPLETE
        state.repository.update_status(state.record_id, RecordStatus.READY)
        sink.send("status", StatusEvent(stage="complete", message=message))
        logger.info(f"🎉 Ingestion finished for {state.record_id}: {message}")
        return Stage.COMPLETE

    async def _run(self, request: PipelineRequest, sink: EventStream, state: _RunState) -> Stage:
        cancel = request.cancel_token

        auth = self.deps.access.require_any_admin(request.access_token)

        state.stage = Stage.VALIDATE_INPUT
        doc_type = self._validate(request)
        repository = self.deps.repositories[doc_type]

        state.stage = Stage.RESOLVE_PERMISSION
        record, course_id = self._resolve_permission(request, auth, repository)

        state.stage = Stage.ENFORCE_QUOTA
        self.deps.quota.enforce(auth)

        if record is None:
            record = repository.create(auth.user_id, request.filename or "Untitled document", course_id)
        state.record_id = record["id"]
        state.repository = repository
        sink.send("document_created", {"documentId": state.record_id})
        logger.info(f"🚀 Ingesting {doc_type.value} {state.record_id} for user {auth.user_id}")

        state.stage = Stage.PARSE_PDF
        sink.send("status", StatusEvent(stage="parsing_pdf", message="Parsing PDF..."))
        pages = await self._parse_pdf(request)
        logger.info(f"✅ Parsed {len(pages)} pages")

        if cancel.cancelled:
            return Stage.CANCELLED

        state.stage = Stage.EXTRACT
        sink.send("status", StatusEvent(stage="extracting", message="AI extracting content..."))
        items, outline = await self._extract(doc_type, request, state.record_id, pages, sink)
        if items:
            sink.send("log", LogEvent(message=f"Extracted {len(items)} items", level="success"))
        else:
            sink.send("log", LogEvent(message="No structured content extracted", level="warning"))

        if cancel.cancelled:
            return Stage.CANCELLED

        if not items:
            sink.send("progress", {"current": 0, "total": 0})
            return self._complete(state, sink, "No content extracted")

        state.stage = Stage.DEDUP
        persistence = BatchPersistence(
            doc_type,
            repository,
            state.record_id,
            send=sink.send,
            cancel_token=cancel,
            embeddings=self.deps.embeddings,
            save_batch_size=self.settings.SAVE_BATCH_SIZE,
            embed_concurrency=self.settings.EMBEDDING_CONCURRENCY,
            document_name=record.get("name") or record.get("title"),
            outline_embed_chars=self.settings.OUTLINE_EMBED_CHARS,
            similarity_threshold=self.settings.DEDUP_SIMILARITY_THRESHOLD,
        )
        new_items = persistence.filter_new(items)
        if not new_items:
            return self._complete(state, sink, "No new items to add (all duplicates).")

        for index, item in enumerate(new_items):
            sink.send("item", ItemEvent(
                index=index,
                type=item.kind,
                data=item.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"kind"}),
            ))
            sink.send("progress", {"current": index + 1, "total": len(new_items)})

        if cancel.cancelled:
            return Stage.CANCELLED

        state.stage = Stage.EMBED
        try:
            outcome = await persistence.persist(new_items, outline)
        except AppBaseError:
            raise
        except Exception as e:
            if is_llm_quota_error(e):
                raise LLMQuotaExceededError() from e
            raise
        state.stage = Stage.PERSIST
        if outcome == PersistOutcome.CANCELLED:
            return Stage.CANCELLED
        state.saved_items = persistence.saved_count

        if doc_type == DocType.LECTURE:
            self._store_file_hash(state, request.file_bytes)

        if outcome == PersistOutcome.DUPLICATES:
            return self._complete(state, sink, "No new items to add (all duplicates).")
        return self._complete(state, sink, f"Done! {state.saved_items} items saved.")
