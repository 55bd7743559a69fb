"""
Shared fixtures: a static embedding provider and a temporary knowledge base.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from knowledge_store.core.knowledge_base import KnowledgeBase
from knowledge_store.vector.embeddings import IEmbeddingProvider


class StaticEmbedding(IEmbeddingProvider):
    """Returns hand-picked vectors; unknown text is a provider failure."""

    name = "static"

    def __init__(self, vectors=None, dimension: int = 3):
        self.vectors = dict(vectors or {})
        self.dimension = dimension
        self.calls = []

    async def embed_text(self, text: str):
        self.calls.append(text)
        return list(self.vectors[text])

    def get_dimension(self) -> int:
        return self.dimension


class FakeClock:
    """Advances one second per reading."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        value = self.current
        self.current = self.current + timedelta(seconds=1)
        return value


VECTORS = {
    "hello world": [1.0, 0.0, 0.0],
    "hello": [0.9, 0.1, 0.0],
    "goodbye world": [0.0, 1.0, 0.0],
    "hello there": [0.5, 0.5, 0.0],
    "what is the weather": [0.0, 0.0, 1.0],
    "it is sunny today": [0.1, 0.0, 0.9],
    "see you later": [0.0, 0.9, 0.1],
}


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def provider():
    return StaticEmbedding(VECTORS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kb(tmp_path, provider, clock):
    knowledge_base = run(KnowledgeBase.open(str(tmp_path / "kb.db"), provider, embed_timeout=None, clock=clock))
    yield knowledge_base
    run(knowledge_base.close())


@pytest.fixture
def conversation(kb):
    """A channel with two participants."""
    async def setup():
        alice = await kb.records.upsert_account("alice", "discord", "u-1")
        bot = await kb.records.upsert_account("bot", "discord", "u-2")
        channel = await kb.records.upsert_channel("c-1", "discord", "general")
        return {"alice": alice, "bot": bot, "channel": channel}
    return run(setup())
