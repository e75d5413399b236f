"""
Ingestion feature: request, extracted item and stream payload schemas.

Extracted items are validated strictly; field names on the wire (LLM JSON and
SSE payloads) are camelCase.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class DocType(str, Enum):
    LECTURE = "lecture"
    EXAM = "exam"
    ASSIGNMENT = "assignment"


class RecordStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class CancellationToken:
    """Cooperative cancel flag set when the client disconnects."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class PipelineRequest:
    """Input of one ingestion run. Built by the router, never mutated."""
    record_id: str | None
    doc_type: str
    file_bytes: bytes
    content_type: str | None = None
    filename: str | None = None
    has_answers: bool = False
    course_id: str | None = None
    access_token: str | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


# ── Extracted items ──────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KnowledgePoint(_CamelModel):
    kind: Literal["knowledge_point"] = "knowledge_point"
    title: str = Field(min_length=1)
    definition: str = Field(min_length=1)
    key_concepts: list[str] | None = None
    key_formulas: list[str] | None = None
    examples: list[str] | None = None
    source_pages: list[int] = Field(default_factory=list)


class ParsedQuestion(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, coerce_numbers_to_str=True)

    kind: Literal["question"] = "question"
    question_number: str | None = None
    content: str = Field(min_length=1)
    options: list[str] | None = None
    reference_answer: str | None = None
    score: float | None = Field(default=None, ge=0)
    source_page: int | None = None

    @field_validator("source_page", mode="before")
    @classmethod
    def _page_or_none(cls, value):
        """A page the model got wrong is dropped, not the whole question."""
        if isinstance(value, bool):
            return None
        try:
            page = int(value)
        except (TypeError, ValueError, OverflowError):
            return None
        return page if page >= 1 else None


ExtractedItem = Annotated[Union[KnowledgePoint, ParsedQuestion], Field(discriminator="kind")]


# ── Outline ──────────────────────────────────────────────

class OutlineSection(_CamelModel):
    title: str
    knowledge_points: list[str]
    brief_description: str
    source_pages: list[int] = Field(default_factory=list)


class DocumentOutline(_CamelModel):
    document_id: str
    title: str
    subject: str = ""
    total_knowledge_points: int
    sections: list[OutlineSection]
    summary: str


class LectureExtraction(BaseModel):
    knowledge_points: list[KnowledgePoint] = Field(default_factory=list)
    outline: DocumentOutline | None = None


# ── Stream payloads ──────────────────────────────────────

class PipelineProgress(_CamelModel):
    phase: Literal["extraction"] = "extraction"
    phase_progress: int
    total_progress: int
    detail: str
    total_pages: int | None = None
    knowledge_point_count: int | None = None


class StatusEvent(BaseModel):
    stage: Literal["parsing_pdf", "extracting", "embedding", "complete", "error"]
    message: str


class ItemEvent(BaseModel):
    index: int
    type: Literal["knowledge_point", "question"]
    data: dict


class ErrorEvent(BaseModel):
    message: str
    code: str


class LogEvent(BaseModel):
    message: str
    level: Literal["info", "success", "warning", "error"] = "info"
