"""
Vector layer: binary codec, embedding providers and the SQLite-resident index.
"""

from .codec import encode, decode
from .types import EmbeddingRecord, Neighbor
from .index import IVectorIndex, SqliteVectorIndex
from .embeddings import IEmbeddingProvider, DeterministicHashEmbedding, SentenceTransformerEmbedding, OllamaEmbedding

__all__ = [
    'encode',
    'decode',
    'EmbeddingRecord',
    'Neighbor',
    'IVectorIndex',
    'SqliteVectorIndex',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'OllamaEmbedding'
]
