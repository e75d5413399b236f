"""
Unit tests for batch persistence: dedup against stored rows, embedding and grouped writes.
"""

import asyncio

from app.features.ingestion.persistence import (
    BatchPersistence,
    PersistOutcome,
    build_assignment_item_content,
    build_knowledge_point_content,
    options_to_letters,
)
from app.features.ingestion.schemas import (
    CancellationToken,
    DocType,
    KnowledgePoint,
    ParsedQuestion,
)
from app.features.ingestion.outline import build_outline
from conftest import FakeEmbeddings, FakeRepository


class Recorder:
    def __init__(self):
        self.events: list[tuple[str, object]] = []

    def __call__(self, event, data):
        self.events.append((event, data))
        return True

    def named(self, event: str) -> list:
        return [data for name, data in self.events if name == event]


def make_persistence(doc_type, repository, embeddings=None, token=None, batch_size=20):
    send = Recorder()
    persistence = BatchPersistence(
        doc_type,
        repository,
        "record-1",
        send=send,
        cancel_token=token or CancellationToken(),
        embeddings=embeddings or FakeEmbeddings(),
        save_batch_size=batch_size,
        embed_concurrency=4,
        document_name="week1.pdf",
    )
    return persistence, send


def points(n: int) -> list[KnowledgePoint]:
    return [KnowledgePoint(title=f"Point {i}", definition=f"Definition {i}", source_pages=[i + 1]) for i in range(n)]


class TestContentBuilders:
    def test_knowledge_point_content(self):
        content = build_knowledge_point_content(KnowledgePoint(
            title="Sets", definition="A collection", key_concepts=["element"], key_formulas=["|A|"],
        ))
        assert content == "## Sets\nA collection\nKey concepts: element\nFormulas: |A|"

    def test_assignment_item_content(self):
        assert build_assignment_item_content(3, ParsedQuestion(content="Prove it")) == "Question 3: Prove it"

    def test_options_to_letters(self):
        assert options_to_letters(["yes", "no"]) == {"A": "yes", "B": "no"}
        assert options_to_letters(None) is None


class TestFilterNew:
    def test_lecture_titles_already_stored_are_skipped(self):
        repo = FakeRepository(children=[{"id": "c1", "metadata": {"title": "point 0"}}])
        persistence, _ = make_persistence(DocType.LECTURE, repo)

        new_items = persistence.filter_new(points(2))

        assert [p.title for p in new_items] == ["Point 1"]

    def test_exam_content_already_stored_is_skipped(self):
        repo = FakeRepository(children=[{"id": "q1", "content": "What is X?", "order_num": 1}])
        persistence, _ = make_persistence(DocType.EXAM, repo)

        new_items = persistence.filter_new([ParsedQuestion(content="what is x? "), ParsedQuestion(content="Y?")])

        assert [q.content for q in new_items] == ["Y?"]


class TestLecturePersistence:
    def test_writes_in_groups_of_twenty_and_saves_outline(self):
        repo = FakeRepository()
        persistence, send = make_persistence(DocType.LECTURE, repo)
        items = points(45)
        persistence.filter_new(items)

        outcome = asyncio.run(persistence.persist(items, build_outline("record-1", items)))

        assert outcome == PersistOutcome.SAVED
        assert [len(b) for b in repo.inserted_batches] == [20, 20, 5]
        assert [b["batchIndex"] for b in send.named("batch_saved")] == [0, 1, 2]
        assert send.named("status")[0].stage == "embedding"
        first = repo.inserted_batches[0][0]
        assert first["lecture_document_id"] == "record-1"
        assert first["metadata"]["type"] == "knowledge_point"
        assert first["metadata"]["sourcePages"] == [1]
        assert first["metadata"]["documentName"] == "week1.pdf"
        assert first["embedding"] == [float(len(first["content"]))] * 3
        assert len(repo.outlines) == 1

    def test_outline_failure_is_not_fatal(self):
        class BrokenOutlineRepo(FakeRepository):
            def save_outline(self, record_id, outline, embedding):
                raise RuntimeError("column missing")

        repo = BrokenOutlineRepo()
        persistence, _ = make_persistence(DocType.LECTURE, repo)
        items = points(1)
        persistence.filter_new(items)

        outcome = asyncio.run(persistence.persist(items, build_outline("record-1", items)))

        assert outcome == PersistOutcome.SAVED

    def test_cancel_between_groups_keeps_committed_batches(self):
        token = CancellationToken()
        repo = FakeRepository()
        persistence, send = make_persistence(DocType.LECTURE, repo, token=token, batch_size=2)

        def cancel_after_first(event, data):
            send.events.append((event, data))
            if event == "batch_saved":
                token.cancel()

        persistence.send = cancel_after_first
        items = points(5)
        persistence.filter_new(items)

        outcome = asyncio.run(persistence.persist(items))

        assert outcome == PersistOutcome.CANCELLED
        assert len(repo.inserted_batches) == 1
        assert repo.outlines == []


class TestExamPersistence:
    def test_single_write_numbered_after_existing(self):
        repo = FakeRepository(children=[{"id": "q1", "content": "Old", "order_num": 4}])
        persistence, send = make_persistence(DocType.EXAM, repo)
        questions = [
            ParsedQuestion(content="New 1", options=["a", "b"], reference_answer="A", score=2, source_page=1),
            ParsedQuestion(content="New 2"),
        ]
        persistence.filter_new(questions)

        outcome = asyncio.run(persistence.persist(questions))

        assert outcome == PersistOutcome.SAVED
        assert len(repo.inserted_batches) == 1
        rows = repo.inserted_batches[0]
        assert [r["order_num"] for r in rows] == [5, 6]
        assert rows[0]["options"] == {"A": "a", "B": "b"}
        assert rows[0]["answer"] == "A"
        assert rows[0]["points"] == 2
        assert rows[1]["answer"] == ""
        assert send.named("batch_saved") == [{"chunkIds": [r["id"] for r in rows], "batchIndex": 0}]


class TestAssignmentPersistence:
    def test_embeds_numbered_content(self):
        embeddings = FakeEmbeddings()
        repo = FakeRepository()
        persistence, _ = make_persistence(DocType.ASSIGNMENT, repo, embeddings=embeddings)
        questions = [ParsedQuestion(content="Prove A"), ParsedQuestion(content="Prove B")]
        persistence.filter_new(questions)

        asyncio.run(persistence.persist(questions))

        assert sorted(embeddings.calls) == ["Question 1: Prove A", "Question 2: Prove B"]
        assert all(r["embedding"] is not None for r in repo.inserted_batches[0])

    def test_embedding_failure_saves_without_vectors(self):
        repo = FakeRepository()
        persistence, send = make_persistence(
            DocType.ASSIGNMENT, repo, embeddings=FakeEmbeddings(fail=RuntimeError("embedding down")),
        )
        questions = [ParsedQuestion(content="Prove A")]
        persistence.filter_new(questions)

        outcome = asyncio.run(persistence.persist(questions))

        assert outcome == PersistOutcome.SAVED
        assert repo.inserted_batches[0][0]["embedding"] is None
        assert len(send.named("batch_saved")) == 1


class KeyedEmbeddings:
    """Returns the vector of the first listed fragment found in the text, else [1, 0, 0]."""

    def __init__(self, by_fragment: dict[str, list[float]] | None = None):
        self.by_fragment = by_fragment or {}

    async def aembed_query(self, text):
        for fragment, vector in self.by_fragment.items():
            if fragment in text:
                return vector
        return [1.0, 0.0, 0.0]


class TestSimilarityDedup:
    def test_lecture_item_close_to_stored_vector_is_dropped(self):
        repo = FakeRepository(children=[
            {"id": "c1", "metadata": {"title": "Sets intro"}, "embedding": "[0.99, 0.05, 0.0]"},
        ])
        embeddings = KeyedEmbeddings({"Point 0": [1.0, 0.0, 0.0], "Point 1": [0.0, 1.0, 0.0]})
        persistence, send = make_persistence(DocType.LECTURE, repo, embeddings=embeddings)
        items = persistence.filter_new(points(2))

        outcome = asyncio.run(persistence.persist(items))

        assert outcome == PersistOutcome.SAVED
        assert [r["metadata"]["title"] for r in repo.inserted_batches[0]] == ["Point 1"]
        assert persistence.saved_count == 1
        assert "1 items skipped (embedding similarity >= 0.92)" in [e.message for e in send.named("log")]

    def test_every_item_similar_writes_nothing(self):
        repo = FakeRepository(children=[
            {"id": "c1", "metadata": {"title": "Old"}, "embedding": [2.0, 0.0, 0.0]},
        ])
        persistence, send = make_persistence(DocType.LECTURE, repo, embeddings=KeyedEmbeddings())
        items = persistence.filter_new(points(3))

        outcome = asyncio.run(persistence.persist(items, build_outline("record-1", items)))

        assert outcome == PersistOutcome.DUPLICATES
        assert repo.inserted_batches == []
        assert repo.outlines == []
        assert send.named("batch_saved") == []
        assert send.named("log")[-1].message == "All items are duplicates"

    def test_stored_rows_without_vectors_do_not_filter(self):
        repo = FakeRepository(children=[{"id": "c1", "metadata": {"title": "Old"}, "embedding": None}])
        persistence, _ = make_persistence(DocType.LECTURE, repo, embeddings=KeyedEmbeddings())
        items = persistence.filter_new(points(2))

        asyncio.run(persistence.persist(items))

        assert persistence.saved_count == 2

    def test_assignment_similar_items_dropped_and_renumbered(self):
        repo = FakeRepository(children=[
            {"id": "a1", "content": "Old question", "order_num": 3, "embedding": "[0.0, 0.0, 1.0]"},
        ])
        embeddings = KeyedEmbeddings({
            "Prove A": [1.0, 0.0, 0.0],
            "Prove B": [0.0, 0.1, 1.0],
            "Prove C": [0.0, 1.0, 0.0],
        })
        persistence, _ = make_persistence(DocType.ASSIGNMENT, repo, embeddings=embeddings)
        questions = persistence.filter_new([
            ParsedQuestion(content="Prove A"), ParsedQuestion(content="Prove B"), ParsedQuestion(content="Prove C"),
        ])

        outcome = asyncio.run(persistence.persist(questions))

        assert outcome == PersistOutcome.SAVED
        rows = repo.inserted_batches[0]
        assert [r["content"] for r in rows] == ["Prove A", "Prove C"]
        assert [r["order_num"] for r in rows] == [4, 5]

    def test_assignment_without_vectors_skips_similarity(self):
        repo = FakeRepository(children=[
            {"id": "a1", "content": "Old question", "order_num": 1, "embedding": "[1.0, 1.0, 1.0]"},
        ])
        persistence, send = make_persistence(
            DocType.ASSIGNMENT, repo, embeddings=FakeEmbeddings(fail=RuntimeError("embedding down")),
        )
        questions = persistence.filter_new([ParsedQuestion(content="Prove A")])

        outcome = asyncio.run(persistence.persist(questions))

        assert outcome == PersistOutcome.SAVED
        assert persistence.saved_count == 1
        assert ("Embedding failed, saving without vectors", "warning") in [
            (e.message, e.level) for e in send.named("log")
        ]

    def test_exam_has_no_similarity_pass(self):
        repo = FakeRepository(children=[
            {"id": "q1", "content": "Old", "order_num": 1, "embedding": "[1.0, 1.0, 1.0]"},
        ])
        persistence, _ = make_persistence(DocType.EXAM, repo)
        questions = persistence.filter_new([ParsedQuestion(content="New")])

        assert asyncio.run(persistence.persist(questions)) == PersistOutcome.SAVED
        assert persistence.saved_count == 1


class TestLogEvents:
    def test_key_duplicates_reported(self):
        repo = FakeRepository(children=[{"id": "c1", "metadata": {"title": "point 0"}}])
        persistence, send = make_persistence(DocType.LECTURE, repo)

        persistence.filter_new(points(2))

        logs = send.named("log")
        assert logs[0].message == "Checking for duplicate items..."
        assert (logs[1].message, logs[1].level) == ("1 duplicate item(s) skipped (title match)", "warning")

    def test_lecture_run_log_sequence(self):
        repo = FakeRepository()
        persistence, send = make_persistence(DocType.LECTURE, repo)
        items = persistence.filter_new(points(2))

        asyncio.run(persistence.persist(items, build_outline("record-1", items)))

        assert [(e.message, e.level) for e in send.named("log")] == [
            ("Checking for duplicate items...", "info"),
            ("Generating embeddings for 2 items...", "info"),
            ("Embeddings generated", "success"),
            ("Saved 2 items", "success"),
            ("Saving document outline...", "info"),
            ("Document outline saved", "success"),
        ]
