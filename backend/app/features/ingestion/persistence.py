"""
Ingestion feature: dedup against stored children, embed, and batch-write.

    lecture     title dedup -> embed (bounded fan-out) -> similarity dedup -> write in groups of 20
    exam        content dedup -> number from max(order)+1 -> single write
    assignment  content dedup -> embed (failure tolerated) -> similarity dedup -> write in groups of 20

The similarity pass reuses the vectors computed for the write, so it adds no
provider calls. Writes already committed stay committed if the run is
cancelled midway.
"""

import logging
from enum import Enum
from typing import Any, Callable

from app.features.ingestion.dedup import (
    existing_row_key,
    filter_new_items,
    parse_stored_vector,
    similar_to_existing,
)
from app.features.ingestion.embedding import embed_text, embed_texts
from app.features.ingestion.repositories import RecordRepository
from app.features.ingestion.schemas import (
    CancellationToken,
    DocType,
    DocumentOutline,
    KnowledgePoint,
    LogEvent,
    ParsedQuestion,
    StatusEvent,
)

logger = logging.getLogger(__name__)

SendFn = Callable[[str, Any], Any]


class PersistOutcome(str, Enum):
    SAVED = "saved"
    CANCELLED = "cancelled"
    DUPLICATES = "duplicates"  # every item matched a stored child by similarity


def build_knowledge_point_content(point: KnowledgePoint) -> str:
    """Chunk text stored and embedded for one knowledge point."""
    parts = [f"## {point.title}", point.definition]
    if point.key_concepts:
        parts.append(f"Key concepts: {', '.join(point.key_concepts)}")
    if point.key_formulas:
        parts.append(f"Formulas: {'; '.join(point.key_formulas)}")
    if point.examples:
        parts.append(f"Examples: {'; '.join(point.examples)}")
    return "\n".join(parts)


def build_assignment_item_content(order_num: int, question: ParsedQuestion) -> str:
    return f"Question {order_num}: {question.content}"


def options_to_letters(options: list[str] | None) -> dict | None:
    if not options:
        return None
    return {chr(65 + i): option for i, option in enumerate(options)}


class BatchPersistence:
    """Per-run writer for one DomainRecord's children."""

    def __init__(
        self,
        doc_type: DocType,
        repository: RecordRepository,
        record_id: str,
        send: SendFn,
        cancel_token: CancellationToken,
        embeddings: Any,
        save_batch_size: int = 20,
        embed_concurrency: int | None = None,
        document_name: str | None = None,
        outline_embed_chars: int = 2000,
        similarity_threshold: float = 0.92,
    ):
        self.doc_type = doc_type
        self.repository = repository
        self.record_id = record_id
        self.send = send
        self.cancel_token = cancel_token
        self.embeddings = embeddings
        self.save_batch_size = max(1, save_batch_size)
        self.embed_concurrency = embed_concurrency
        self.document_name = document_name
        self.outline_embed_chars = outline_embed_chars
        self.similarity_threshold = similarity_threshold
        self.saved_count = 0
        self._existing_rows: list[dict] = []

    def _log(self, message: str, level: str = "info") -> None:
        self.send("log", LogEvent(message=message, level=level))

    # ── Dedup ────────────────────────────────────────────

    def filter_new(self, items: list) -> list:
        """Drop items whose dedup key already exists among the record's children."""
        self._log("Checking for duplicate items...")
        self._existing_rows = self.repository.find_children_by_parent(self.record_id)
        keys = {existing_row_key(self.doc_type, row) for row in self._existing_rows}
        keys.discard("")
        new_items = filter_new_items(items, keys)
        skipped = len(items) - len(new_items)
        if skipped:
            logger.info(f"Skipped {skipped} duplicate item(s) for {self.doc_type.value} {self.record_id}")
            match_on = "title" if self.doc_type == DocType.LECTURE else "content"
            self._log(f"{skipped} duplicate item(s) skipped ({match_on} match)", "warning")
        return new_items

    def drop_similar(self, items: list, vectors: list) -> tuple[list, list]:
        """Second pass: drop items whose vector is close to a stored child's vector."""
        existing = [parse_stored_vector(row.get("embedding")) for row in self._existing_rows]
        existing = [v for v in existing if v]
        if not existing or not items:
            return items, vectors

        flags = similar_to_existing(vectors, existing, self.similarity_threshold)
        kept = [(item, vector) for item, vector, similar in zip(items, vectors, flags) if not similar]
        skipped = len(items) - len(kept)
        if skipped:
            logger.info(f"Similarity dedup dropped {skipped} item(s) for {self.record_id}")
            self._log(f"{skipped} items skipped (embedding similarity >= {self.similarity_threshold})", "warning")
        return [item for item, _ in kept], [vector for _, vector in kept]

    def _next_order_num(self) -> int:
        orders = [row.get("order_num") or 0 for row in self._existing_rows]
        return max(orders, default=0) + 1

    # ── Persist ──────────────────────────────────────────

    async def persist(self, items: list, outline: DocumentOutline | None = None) -> PersistOutcome:
        match self.doc_type:
            case DocType.LECTURE:
                return await self._persist_lecture(items, outline)
            case DocType.EXAM:
                return self._persist_exam(items)
            case DocType.ASSIGNMENT:
                return await self._persist_assignment(items)

    def _write_in_groups(self, rows: list[dict]) -> PersistOutcome:
        for batch_index, start in enumerate(range(0, len(rows), self.save_batch_size)):
            if self.cancel_token.cancelled:
                logger.info(f"Cancelled after {batch_index} saved batch(es) for {self.record_id}")
                return PersistOutcome.CANCELLED
            saved = self.repository.insert_many(rows[start:start + self.save_batch_size])
            self.saved_count += len(saved)
            self.send("batch_saved", {
                "chunkIds": [row["id"] for row in saved],
                "batchIndex": batch_index,
            })
        return PersistOutcome.SAVED

    async def _persist_lecture(
        self, points: list[KnowledgePoint], outline: DocumentOutline | None
    ) -> PersistOutcome:
        self.send("status", StatusEvent(stage="embedding", message="Generating embeddings & saving..."))
        if self.cancel_token.cancelled:
            return PersistOutcome.CANCELLED

        self._log(f"Generating embeddings for {len(points)} items...")
        contents = [build_knowledge_point_content(p) for p in points]
        vectors = await embed_texts(self.embeddings, contents, self.embed_concurrency)
        self._log("Embeddings generated", "success")

        pairs, vectors = self.drop_similar(list(zip(points, contents)), vectors)
        if points and not pairs:
            self._log("All items are duplicates", "warning")
            return PersistOutcome.DUPLICATES

        rows = []
        for (point, content), vector in zip(pairs, vectors):
            metadata = {"type": "knowledge_point", **point.model_dump(by_alias=True, exclude_none=True, exclude={"kind"})}
            if self.document_name:
                metadata["documentName"] = self.document_name
            rows.append({
                "lecture_document_id": self.record_id,
                "content": content,
                "embedding": vector,
                "metadata": metadata,
            })

        outcome = self._write_in_groups(rows)
        if outcome != PersistOutcome.SAVED:
            return outcome
        self._log(f"Saved {self.saved_count} items", "success")
        if outline is not None:
            await self._save_outline(outline)
        return outcome

    async def _save_outline(self, outline: DocumentOutline) -> bool:
        """Store the outline and its embedding. Failures are logged, never raised."""
        if not hasattr(self.repository, "save_outline"):
            return False
        self._log("Saving document outline...")
        outline_json = outline.model_dump(mode="json", by_alias=True)
        try:
            text = outline.model_dump_json(by_alias=True)[: self.outline_embed_chars]
            vector = await embed_text(self.embeddings, text)
            self.repository.save_outline(self.record_id, outline_json, vector)
        except Exception as e:
            logger.warning(f"⚠️ Failed to save document outline (non-fatal): {e}")
            self._log("Outline save failed (non-fatal)", "warning")
            return False
        self._log("Document outline saved", "success")
        return True

    def _persist_exam(self, questions: list[ParsedQuestion]) -> PersistOutcome:
        self.send("status", StatusEvent(stage="embedding", message="Saving questions..."))
        if self.cancel_token.cancelled:
            return PersistOutcome.CANCELLED

        first = self._next_order_num()
        rows = [{
            "paper_id": self.record_id,
            "order_num": first + i,
            "type": "",
            "content": q.content,
            "options": options_to_letters(q.options),
            "answer": q.reference_answer or "",
            "explanation": "",
            "points": q.score or 0,
            "metadata": {"sourcePage": q.source_page, "questionNumber": q.question_number},
        } for i, q in enumerate(questions)]

        saved = self.repository.insert_many(rows)
        self.saved_count += len(saved)
        self.send("batch_saved", {"chunkIds": [row["id"] for row in saved], "batchIndex": 0})
        self._log(f"Saved {self.saved_count} questions", "success")
        return PersistOutcome.SAVED

    async def _persist_assignment(self, questions: list[ParsedQuestion]) -> PersistOutcome:
        self.send("status", StatusEvent(stage="embedding", message="Generating embeddings..."))
        if self.cancel_token.cancelled:
            return PersistOutcome.CANCELLED

        self._log(f"Generating embeddings for {len(questions)} items...")
        first = self._next_order_num()
        texts = [build_assignment_item_content(first + i, q) for i, q in enumerate(questions)]

        vectors: list[list[float] | None]
        try:
            vectors = await embed_texts(self.embeddings, texts, self.embed_concurrency)
        except Exception as e:
            logger.warning(f"⚠️ Assignment embedding failed, saving without vectors: {e}")
            self._log("Embedding failed, saving without vectors", "warning")
            vectors = [None] * len(questions)
        else:
            self._log("Embeddings generated", "success")
            questions, vectors = self.drop_similar(questions, vectors)
            if texts and not questions:
                self._log("All items are duplicates", "warning")
                return PersistOutcome.DUPLICATES

        rows = [{
            "assignment_id": self.record_id,
            "order_num": first + i,
            "type": "",
            "content": q.content,
            "reference_answer": q.reference_answer or "",
            "explanation": "",
            "points": q.score or 0,
            "difficulty": "",
            "metadata": {"sourcePage": q.source_page, "questionNumber": q.question_number},
            "embedding": vector,
        } for i, (q, vector) in enumerate(zip(questions, vectors))]

        outcome = self._write_in_groups(rows)
        if outcome == PersistOutcome.SAVED:
            self._log(f"Saved {self.saved_count} items", "success")
        return outcome
