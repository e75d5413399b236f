"""
Ingestion feature: Supabase repositories for the three document types.

Each repository owns one parent table (the record carrying `status`) and one
child table (chunks / questions / items). The shape is identical; only table
and column names differ.
"""

import logging

from supabase import Client

from app.core.exceptions import DatabaseError
from app.features.ingestion.schemas import DocType, RecordStatus

logger = logging.getLogger(__name__)


class RecordRepository:
    """CRUD for one document type's parent record and its children."""

    parent_table: str = ""
    child_table: str = ""
    parent_fk: str = ""
    name_column: str = "title"
    order_column: str | None = "order_num"

    def __init__(self, db: Client):
        self.db = db

    def create(self, user_id: str, name: str, course_id: str | None = None) -> dict:
        insert_data = {
            "user_id": user_id,
            self.name_column: name,
            "course_id": course_id,
            "status": RecordStatus.PROCESSING.value,
        }
        result = self.db.table(self.parent_table).insert(insert_data).execute()
        if not result.data:
            raise DatabaseError(f"Failed to create {self.parent_table} record")
        return result.data[0]

    def find_by_id(self, record_id: str) -> dict | None:
        result = (
            self.db.table(self.parent_table)
            .select("*")
            .eq("id", record_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def find_children_by_parent(self, record_id: str) -> list[dict]:
        query = self.db.table(self.child_table).select("*").eq(self.parent_fk, record_id)
        if self.order_column:
            query = query.order(self.order_column)
        return query.execute().data or []

    def insert_many(self, rows: list[dict]) -> list[dict]:
        """Insert child rows and return them with their generated ids."""
        if not rows:
            return []
        result = self.db.table(self.child_table).insert(rows).execute()
        if result.data is None or len(result.data) != len(rows):
            raise DatabaseError(f"Failed to insert into {self.child_table}")
        return result.data

    def update_status(self, record_id: str, status: RecordStatus, message: str | None = None) -> None:
        self.db.table(self.parent_table).update({
            "status": status.value,
            "status_message": message,
        }).eq("id", record_id).execute()

    def update_metadata(self, record_id: str, metadata: dict) -> None:
        """Merge keys into the record's JSON metadata column."""
        current = self.find_by_id(record_id) or {}
        merged = {**(current.get("metadata") or {}), **metadata}
        self.db.table(self.parent_table).update({"metadata": merged}).eq("id", record_id).execute()


class LectureDocumentRepository(RecordRepository):
    parent_table = "lecture_documents"
    child_table = "lecture_chunks"
    parent_fk = "lecture_document_id"
    name_column = "name"
    order_column = None

    def save_outline(self, record_id: str, outline: dict, embedding: list[float] | None) -> None:
        self.db.table(self.parent_table).update({
            "outline": outline,
            "outline_embedding": embedding,
        }).eq("id", record_id).execute()


class ExamPaperRepository(RecordRepository):
    parent_table = "exam_papers"
    child_table = "exam_questions"
    parent_fk = "paper_id"


class AssignmentRepository(RecordRepository):
    parent_table = "assignments"
    child_table = "assignment_items"
    parent_fk = "assignment_id"


def get_repository(db: Client, doc_type: DocType) -> RecordRepository:
    match doc_type:
        case DocType.LECTURE:
            return LectureDocumentRepository(db)
        case DocType.EXAM:
            return ExamPaperRepository(db)
        case DocType.ASSIGNMENT:
            return AssignmentRepository(db)
