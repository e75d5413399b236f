"""
Shared fixtures: in-memory fakes for Supabase-backed collaborators.
"""

import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LLM_API_KEYS", "")
os.environ.setdefault("KEY_POOL_STATE_BACKEND", "memory")

import pytest

from app.config import get_settings
from app.features.ingestion.access import AuthContext
from app.features.ingestion.pdf import PdfPage
from app.features.ingestion.schemas import RecordStatus


class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Chainable subset of the supabase-py query builder."""

    def __init__(self, db: "FakeDb", table: str):
        self.db = db
        self.table = table
        self.rows = list(db.tables.get(table, []))
        self.pending_upsert: dict | None = None

    def select(self, *args, **kwargs):
        return self

    def eq(self, column, value):
        self.rows = [r for r in self.rows if r.get(column) == value]
        return self

    def limit(self, n):
        self.rows = self.rows[:n]
        return self

    def upsert(self, row, on_conflict=None):
        self.pending_upsert = row
        self.db.upsert_conflicts.append(on_conflict)
        return self

    def execute(self):
        if self.pending_upsert is not None:
            key = self.db.upsert_conflicts[-1]
            table = self.db.tables.setdefault(self.table, [])
            table[:] = [r for r in table if r.get(key) != self.pending_upsert.get(key)]
            table.append(self.pending_upsert)
            return FakeResult([self.pending_upsert])
        return FakeResult(self.rows)


class FakeRpc:
    def __init__(self, data):
        self.data = data

    def execute(self):
        return FakeResult(self.data)


class FakeDb:
    """In-memory stand-in for a supabase Client."""

    def __init__(self, tables: dict[str, list[dict]] | None = None, rpc_data=None):
        self.tables = tables or {}
        self.rpc_data = rpc_data
        self.rpc_calls: list[tuple[str, dict]] = []
        self.upsert_conflicts: list[str | None] = []

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        self.rpc_calls.append((name, params))
        return FakeRpc(self.rpc_data)


class FakeRepository:
    """Stands in for a RecordRepository, keeping rows in lists."""

    name_column = "name"

    def __init__(self, children: list[dict] | None = None, record: dict | None = None):
        self.records: dict[str, dict] = {}
        if record:
            self.records[record["id"]] = record
        self.children = list(children or [])
        self.inserted_batches: list[list[dict]] = []
        self.status_updates: list[tuple[str, RecordStatus, str | None]] = []
        self.outlines: list[tuple[str, dict, list | None]] = []
        self.metadata: dict[str, dict] = {}
        self.fail_status_update = False
        self._next_id = 0

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def create(self, user_id, name, course_id=None):
        record = {
            "id": "00000000-0000-4000-8000-000000000001",
            "user_id": user_id,
            "name": name,
            "course_id": course_id,
            "status": "processing",
        }
        self.records[record["id"]] = record
        return record

    def find_by_id(self, record_id):
        return self.records.get(record_id)

    def find_children_by_parent(self, record_id):
        return list(self.children)

    def insert_many(self, rows):
        saved = [{**row, "id": self._new_id("row")} for row in rows]
        self.inserted_batches.append(saved)
        self.children.extend(saved)
        return saved

    def update_status(self, record_id, status, message=None):
        if self.fail_status_update:
            raise RuntimeError("database unreachable")
        self.status_updates.append((record_id, status, message))

    def update_metadata(self, record_id, metadata):
        self.metadata.setdefault(record_id, {}).update(metadata)

    def save_outline(self, record_id, outline, embedding):
        self.outlines.append((record_id, outline, embedding))


class FakeEmbeddings:
    def __init__(self, fail: Exception | None = None, dims: int = 3):
        self.fail = fail
        self.dims = dims
        self.calls: list[str] = []

    async def aembed_query(self, text):
        self.calls.append(text)
        if self.fail:
            raise self.fail
        return [float(len(text))] * self.dims


class FakeChat:
    """Returns canned replies in order; an Exception reply is raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def ainvoke(self, prompt):
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else "[]"
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeAccess:
    def __init__(self, auth: AuthContext | None = None, error: Exception | None = None,
                 course_error: Exception | None = None):
        self.auth = auth or AuthContext(user_id="user-1", role="super_admin")
        self.error = error
        self.course_error = course_error
        self.course_checks: list[str] = []

    def require_any_admin(self, access_token):
        if self.error:
            raise self.error
        return self.auth

    def require_course_admin(self, auth, course_id):
        self.course_checks.append(course_id)
        if self.course_error:
            raise self.course_error


class FakeQuota:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    def enforce(self, auth):
        self.calls += 1
        if self.error:
            raise self.error


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def pages():
    return [PdfPage(page=1, text="Intro to sets"), PdfPage(page=2, text="Unions and intersections")]
