"""
Embedding providers: text -> fixed-dimension vector.

Providers are awaited by the knowledge base before any transaction opens,
so slow or failing providers never hold a write lock.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import List

import numpy as np
import ollama


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    name = "provider"

    @abstractmethod
    async def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts, in order."""
        return [await self.embed_text(text) for text in texts]


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for offline use and testing.

    Identical text always maps to the identical unit vector; there is no
    semantic similarity between different texts.
    """

    name = "hash"

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def _vector(self, text: str) -> List[float]:
        words = []
        block = 0
        while len(words) * 16 < self.dimension:
            digest = hashlib.blake2b(f"{block}:{text}".encode("utf-8"), digest_size=64).digest()
            words.append(np.frombuffer(digest, dtype="<u4"))
            block += 1

        values = np.concatenate(words)[:self.dimension].astype(np.float64)
        # Map to [-1, 1] then normalize
        vector = values / 2**32 * 2 - 1
        return (vector / np.linalg.norm(vector)).tolist()

    async def embed_text(self, text: str) -> List[float]:
        return self._vector(text)

    def get_dimension(self) -> int:
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using a local pre-trained model.

    Encoding is CPU bound, so it runs in a worker thread.
    """

    name = "sentence_transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    async def embed_text(self, text: str) -> List[float]:
        embedding = await asyncio.to_thread(self.model.encode, text, convert_to_tensor=False)
        return embedding.tolist()

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        embeddings = await asyncio.to_thread(self.model.encode, texts, convert_to_tensor=False)
        return [embedding.tolist() for embedding in embeddings]

    def get_dimension(self) -> int:
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension


class OllamaEmbedding(IEmbeddingProvider):
    """Embedding provider backed by an Ollama server's embed endpoint."""

    name = "ollama"

    def __init__(self, model_name: str, host: str = "http://localhost:11434", dimension: int = 768):
        self.model_name = model_name
        self.dimension = dimension
        self._client = ollama.AsyncClient(host=host)

    async def embed_text(self, text: str) -> List[float]:
        response = await self._client.embed(model=self.model_name, input=text)
        return list(response["embeddings"][0])

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        response = await self._client.embed(model=self.model_name, input=texts)
        return [list(embedding) for embedding in response["embeddings"]]

    def get_dimension(self) -> int:
        return self.dimension
