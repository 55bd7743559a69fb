"""
Knowledge base: paired writes of rows and vectors, and semantic search.
"""

import asyncio
import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from knowledge_store.core.errors import ConstraintViolation, ProviderError, StoreError
from knowledge_store.core.knowledge_base import KnowledgeBase, chunk_text
from knowledge_store.core.schema import Document, Message

from conftest import VECTORS, StaticEmbedding, run


class SlowEmbedding(StaticEmbedding):
    """Takes longer than any timeout used in these tests."""

    async def embed_text(self, text: str):
        await asyncio.sleep(5)
        return await super().embed_text(text)


def vector_count(kb, store):
    return run(kb.db.call(store.index.count))


@pytest.fixture
def open_kb(tmp_path):
    """Factory for knowledge bases with a custom provider or settings."""
    opened = []

    def factory(provider, **kwargs):
        kwargs.setdefault("embed_timeout", None)
        knowledge_base = run(KnowledgeBase.open(str(tmp_path / f"kb-{len(opened)}.db"), provider, **kwargs))
        opened.append(knowledge_base)
        return knowledge_base

    yield factory
    for knowledge_base in opened:
        run(knowledge_base.close())


# =============================================================================
# Documents
# =============================================================================

def test_search_reflects_document_replacement(kb):
    """Replacing a document swaps its vectors; the row keeps its identity."""
    run(kb.add_document("doc1", "hello world"))
    hits = run(kb.search_documents("hello", 1))
    assert [hit.id for hit in hits] == ["doc1"]

    run(kb.add_document("doc2", "hello there"))
    run(kb.add_document("doc1", "goodbye world"))

    hits = run(kb.search_documents("hello", 1))
    assert [hit.id for hit in hits] == ["doc2"], "Replaced content should no longer match"
    assert hits[0].distance == pytest.approx(0.5657, abs=1e-3)

    assert run(kb.count("documents")) == 2
    assert vector_count(kb, kb.documents) == 2, "Old vectors should be gone after replacement"
    assert run(kb.get_document("doc1")).content == "goodbye world"


def test_replacing_a_document_keeps_its_row_id(kb):
    first = run(kb.add_document("doc1", "hello world"))
    second = run(kb.add_document("doc1", "goodbye world"))
    assert second == first


def test_search_orders_by_distance(open_kb):
    """Distances 0.1, 0.5 and 0.9 from the query, inserted out of order."""
    provider = StaticEmbedding({
        "query": [1.0, 0.0, 0.0],
        "far": [1.9, 0.0, 0.0],
        "near": [1.1, 0.0, 0.0],
        "middle": [1.5, 0.0, 0.0],
    })
    kb = open_kb(provider)
    for name in ["far", "near", "middle"]:
        run(kb.add_document(name, name))

    hits = run(kb.search_documents("query", 2))

    assert [hit.id for hit in hits] == ["near", "middle"]
    assert [hit.distance for hit in hits] == [
        pytest.approx(0.1, abs=1e-6),
        pytest.approx(0.5, abs=1e-6),
    ]


def test_search_edge_cases(kb):
    assert run(kb.search_documents("hello", 3)) == [], "Empty index should return no hits"

    run(kb.add_document("doc1", "hello world"))
    assert run(kb.search_documents("hello", 0)) == []
    assert len(run(kb.search_documents("hello", 10))) == 1


def test_structured_document_content(kb, provider):
    content = {"title": "weather", "tags": ["sun"]}
    text = Document(doc_id="w", content=content).serialized()
    provider.vectors[text] = [0.0, 0.0, 1.0]

    run(kb.add_document("w", content))

    assert run(kb.get_document("w")).content == content
    hit = run(kb.find_document("what is the weather"))
    assert hit.id == "w"
    assert hit.record.content == content


def test_top_document_ids_and_find(kb):
    assert run(kb.find_document("hello")) is None

    run(kb.add_document("doc1", "hello world"))
    run(kb.add_document("doc2", "goodbye world"))

    top = run(kb.top_document_ids("hello", 2))
    assert [doc_id for _, doc_id in top] == ["doc1", "doc2"]
    assert top[0][0] < top[1][0]


def test_get_document_embeddings(kb):
    run(kb.add_document("doc1", "hello world"))

    document, embeddings = run(kb.get_document_embeddings("doc1"))

    assert document.doc_id == "doc1"
    assert [e.vector for e in embeddings] == [[1.0, 0.0, 0.0]]
    assert embeddings[0].span is None
    assert run(kb.get_document_embeddings("missing")) is None


def test_add_documents_in_one_transaction(kb):
    ids = run(kb.add_documents([
        Document(doc_id="doc1", content="hello world"),
        Document(doc_id="doc2", content="goodbye world"),
    ]))
    assert len(set(ids)) == 2
    assert vector_count(kb, kb.documents) == 2


def test_add_documents_is_all_or_nothing(kb):
    with pytest.raises(ProviderError):
        run(kb.add_documents([
            Document(doc_id="doc1", content="hello world"),
            Document(doc_id="doc2", content="no vector for this"),
        ]))
    assert run(kb.count("documents")) == 0
    assert vector_count(kb, kb.documents) == 0


def test_delete_document(kb):
    run(kb.add_document("doc1", "hello world"))

    assert run(kb.delete_document("doc1")) is True
    assert run(kb.get_document("doc1")) is None
    assert vector_count(kb, kb.documents) == 0
    assert run(kb.delete_document("doc1")) is False


def test_reindex_documents(kb, provider):
    run(kb.add_document("doc1", "hello world"))
    run(kb.add_document("doc2", "goodbye world"))
    provider.calls.clear()
    provider.vectors["hello world"] = [0.0, 0.0, 1.0]

    assert run(kb.reindex_documents()) == 2

    assert sorted(provider.calls) == ["goodbye world", "hello world"]
    assert vector_count(kb, kb.documents) == 2
    assert run(kb.find_document("what is the weather")).id == "doc1"


# =============================================================================
# Chunking
# =============================================================================

def test_chunk_text():
    assert chunk_text("hello world", 0) == ["hello world"]
    assert chunk_text("hello world", 50) == ["hello world"]
    assert chunk_text("hello world see you later", 13) == ["hello world", "see you later"]
    assert chunk_text("abcdefghij", 4) == ["abcd", "efgh", "ij"]


def test_chunked_document_matches_on_any_chunk(open_kb):
    kb = open_kb(StaticEmbedding(VECTORS), chunk_size=13)
    run(kb.add_document("long", "hello world see you later"))
    run(kb.add_document("short", "hello there"))

    _, embeddings = run(kb.get_document_embeddings("long"))
    assert [e.span for e in embeddings] == ["hello world", "see you later"]

    hits = run(kb.search_documents("goodbye world", 5))
    assert [hit.id for hit in hits] == ["long", "short"], "A document should appear once, at its best chunk"
    assert hits[0].distance == pytest.approx(0.1414, abs=1e-3)


# =============================================================================
# Messages
# =============================================================================

def test_add_and_search_messages(kb, conversation):
    channel, alice, bot = conversation["channel"], conversation["alice"], conversation["bot"]
    question = run(kb.add_message(channel, alice, "user", "what is the weather"))
    run(kb.add_message(channel, bot, "assistant", "it is sunny today", reply_to_id=question))
    run(kb.add_message(channel, alice, "user", "see you later"))

    hits = run(kb.search_messages("what is the weather", 2))

    assert [hit.record.content for hit in hits] == ["what is the weather", "it is sunny today"]
    assert hits[0].id == question
    assert isinstance(hits[0].record, Message)
    assert hits[1].record.reply_to_id == question


def test_concurrent_message_writes(kb, conversation):
    texts = list(VECTORS)

    async def write_all():
        return await asyncio.gather(*[
            kb.add_message(conversation["channel"], conversation["alice"], "user", text)
            for text in texts
        ])

    ids = run(write_all())

    assert len(set(ids)) == len(texts)
    assert run(kb.count("messages")) == len(texts)
    assert vector_count(kb, kb.messages) == len(texts)


def test_message_with_unknown_channel_writes_nothing(kb, conversation):
    with pytest.raises(ConstraintViolation):
        run(kb.add_message(999, conversation["alice"], "user", "hello"))

    assert run(kb.count("messages")) == 0
    assert vector_count(kb, kb.messages) == 0


def test_stale_vectors_are_skipped(kb):
    """A vector whose row was removed out of band is filtered from results."""
    run(kb.add_document("doc1", "hello world"))
    run(kb.add_document("doc2", "hello there"))
    run(kb.db.call(lambda conn: conn.execute("DELETE FROM documents WHERE doc_id = 'doc1'")))

    hits = run(kb.search_documents("hello", 2))

    assert [hit.id for hit in hits] == ["doc2"]


# =============================================================================
# Failure handling
# =============================================================================

def test_provider_failure_writes_nothing(kb, provider):
    with patch.object(provider, "embed_texts", AsyncMock(side_effect=ConnectionError("provider down"))):
        with pytest.raises(ProviderError) as excinfo:
            run(kb.add_document("doc1", "hello world"))

    assert excinfo.value.provider == "static"
    assert run(kb.count("documents")) == 0
    assert vector_count(kb, kb.documents) == 0


def test_unknown_text_is_a_provider_error(kb):
    with pytest.raises(ProviderError):
        run(kb.search_documents("never embedded", 1))


def test_wrong_dimension_is_a_provider_error(open_kb):
    kb = open_kb(StaticEmbedding({"hello world": [1.0, 0.0]}, dimension=3))

    with pytest.raises(ProviderError):
        run(kb.add_document("doc1", "hello world"))
    assert run(kb.count("documents")) == 0


def test_index_failure_rolls_back_row(kb, monkeypatch):
    """If the vector write fails the relational row is not kept."""
    def broken_insert(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(kb.documents.index, "insert", broken_insert)

    with pytest.raises(StoreError):
        run(kb.add_document("doc1", "hello world"))

    monkeypatch.undo()
    assert run(kb.count("documents")) == 0
    assert vector_count(kb, kb.documents) == 0


def test_failed_replacement_keeps_previous_version(kb, monkeypatch):
    run(kb.add_document("doc1", "hello world"))

    def broken_insert(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(kb.documents.index, "insert", broken_insert)
    with pytest.raises(StoreError):
        run(kb.add_document("doc1", "goodbye world"))
    monkeypatch.undo()

    assert run(kb.get_document("doc1")).content == "hello world"
    assert vector_count(kb, kb.documents) == 1
    assert run(kb.find_document("hello")).id == "doc1"


def test_provider_timeout(open_kb):
    kb = open_kb(SlowEmbedding(VECTORS), embed_timeout=0.05)

    with pytest.raises(ProviderError):
        run(kb.add_document("doc1", "hello world"))
    assert run(kb.count("documents")) == 0


def test_cancelled_write_leaves_no_partial_state(open_kb):
    kb = open_kb(SlowEmbedding(VECTORS))

    async def cancel_midway():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(kb.add_document("doc1", "hello world"), timeout=0.05)

    run(cancel_midway())

    assert run(kb.count("documents")) == 0
    assert vector_count(kb, kb.documents) == 0


def test_dimension_is_checked_on_reopen(tmp_path):
    path = str(tmp_path / "kb.db")
    kb = run(KnowledgeBase.open(path, StaticEmbedding(dimension=3), embed_timeout=None))
    run(kb.close())

    with pytest.raises(StoreError):
        run(KnowledgeBase.open(path, StaticEmbedding(dimension=4), embed_timeout=None))


def test_closed_knowledge_base_rejects_calls(kb):
    run(kb.close())
    with pytest.raises(StoreError):
        run(kb.count("documents"))


def test_health(kb):
    assert run(kb.health()) is True
