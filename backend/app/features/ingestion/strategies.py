"""
Ingestion feature: LLM extraction strategies.

LectureStrategy  - one provider call per document -> knowledge points + local outline.
QuestionStrategy - one provider call per page batch -> exam/assignment questions.

Every provider call goes through the chat client handed in by the caller
(normally a PooledProxy, so key rotation applies). Items failing schema
validation are dropped one by one; the rest of the batch is kept.
"""

import json
import logging
import re
from typing import Any, Callable, Type, TypeVar

from pydantic import BaseModel, ValidationError

from app.features.ingestion.dedup import unique_items
from app.features.ingestion.outline import build_outline
from app.features.ingestion.pdf import PdfPage
from app.features.ingestion.prompts import build_lecture_prompt, build_question_prompt
from app.features.ingestion.schemas import (
    CancellationToken,
    KnowledgePoint,
    LectureExtraction,
    ParsedQuestion,
    PipelineProgress,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def response_text(content: Any) -> str:
    """Flatten LangChain message content (str or list of content blocks)."""
    if hasattr(content, "content"):
        content = content.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text" and "text" in part:
                parts.append(part["text"])
        return "".join(parts)
    return str(content or "")


def parse_json_array(text: str) -> list:
    """Read a JSON array from a model reply. Anything else counts as no items."""
    cleaned = _FENCE.sub("", text.strip())
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"⚠️ Model reply is not valid JSON ({e}); treating as empty")
        return []
    return raw if isinstance(raw, list) else []


def validate_items(raw_items: list, model: Type[M]) -> list[M]:
    valid = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        try:
            valid.append(model.model_validate(raw))
        except ValidationError:
            continue
    dropped = len(raw_items) - len(valid)
    if dropped:
        logger.info(f"Dropped {dropped}/{len(raw_items)} invalid {model.__name__} item(s)")
    return valid


class LectureStrategy:
    """Knowledge point extraction for lecture notes."""

    def __init__(self, chat: Any):
        self.chat = chat

    async def extract(
        self,
        pages: list[PdfPage],
        document_id: str,
        cancel_token: CancellationToken,
        on_progress: Callable[[PipelineProgress], None] | None = None,
    ) -> LectureExtraction:
        def report(phase_progress: int, detail: str, count: int | None = None) -> None:
            if on_progress:
                on_progress(PipelineProgress(
                    phase_progress=phase_progress,
                    total_progress=phase_progress,
                    detail=detail,
                    total_pages=len(pages),
                    knowledge_point_count=count,
                ))

        if cancel_token.cancelled:
            return LectureExtraction()

        report(0, f"Analyzing {len(pages)} pages...")
        reply = await self.chat.ainvoke(build_lecture_prompt(pages))
        points = unique_items(validate_items(parse_json_array(response_text(reply)), KnowledgePoint))
        report(80, f"Extracted {len(points)} knowledge points", len(points))

        outline = build_outline(document_id, points) if points else None
        report(100, "Outline ready" if outline else "No knowledge points found", len(points))
        return LectureExtraction(knowledge_points=points, outline=outline)


class QuestionStrategy:
    """Question extraction for exam papers and assignments, batched by pages."""

    def __init__(self, chat: Any, batch_pages: int = 10):
        self.chat = chat
        self.batch_pages = max(1, batch_pages)

    def batches(self, pages: list[PdfPage]) -> list[list[PdfPage]]:
        return [pages[i:i + self.batch_pages] for i in range(0, len(pages), self.batch_pages)]

    async def extract(
        self,
        pages: list[PdfPage],
        has_answers: bool,
        cancel_token: CancellationToken,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[ParsedQuestion]:
        batches = self.batches(pages)
        total = len(batches)
        questions: list[ParsedQuestion] = []

        for index, batch in enumerate(batches):
            if cancel_token.cancelled:
                logger.info(f"Question extraction cancelled after {index}/{total} batches")
                break
            reply = await self.chat.ainvoke(build_question_prompt(batch, has_answers))
            questions.extend(validate_items(parse_json_array(response_text(reply)), ParsedQuestion))
            if on_progress:
                on_progress(index + 1, total)

        return unique_items(questions)
