"""
SQLite-resident vector index.

Embeddings live in a companion table keyed by the owning row's id, so they
are written in the same transaction as that row. Nearest-neighbor queries are
an exact brute-force scan over the stored float32 blobs.
"""

import sqlite3
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np

from ..core.errors import StoreError
from . import codec
from .types import EmbeddingRecord, Neighbor

METRICS = ("l2", "cosine")


class IVectorIndex(ABC):
    """Abstract interface for vector index operations.

    Every method takes the caller's connection and never commits: the index
    always participates in a transaction opened by its owner.
    """

    @abstractmethod
    def ensure_schema(self, conn: sqlite3.Connection) -> None:
        """Create backing tables and register the index dimension."""
        pass

    @abstractmethod
    def insert(self, conn: sqlite3.Connection, row_id: int, vectors: Sequence[bytes], spans: Optional[Sequence[str]] = None) -> None:
        """Store one or more encoded embeddings for row_id."""
        pass

    @abstractmethod
    def delete(self, conn: sqlite3.Connection, row_id: int) -> int:
        """Delete every embedding owned by row_id."""
        pass

    @abstractmethod
    def knn(self, conn: sqlite3.Connection, query: bytes, k: int) -> List[Neighbor]:
        """Return up to k distinct rows by ascending distance."""
        pass

    def replace(self, conn: sqlite3.Connection, row_id: int, vectors: Sequence[bytes], spans: Optional[Sequence[str]] = None) -> None:
        """Swap the embeddings of row_id for a new set."""
        self.delete(conn, row_id)
        self.insert(conn, row_id, vectors, spans)


class SqliteVectorIndex(IVectorIndex):
    """Vector index stored in a plain SQLite table of float32 blobs."""

    def __init__(self, table: str, dimension: int, metric: str = "l2"):
        if not table.isidentifier():
            raise ValueError(f"Invalid index table name: {table}")
        if dimension < 1:
            raise ValueError("Index dimension must be >= 1")
        if metric not in METRICS:
            raise ValueError(f"metric must be one of: {list(METRICS)}")

        self.table = table
        self.dimension = dimension
        self.metric = metric

    def ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(f'''
            CREATE TABLE IF NOT EXISTS {self.table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                row_id INTEGER NOT NULL,
                embedding BLOB NOT NULL,
                span TEXT
            )
        ''')
        conn.execute(f'CREATE INDEX IF NOT EXISTS idx_{self.table}_row_id ON {self.table}(row_id)')

        # The dimension is fixed the first time the index is created
        conn.execute('''
            CREATE TABLE IF NOT EXISTS vector_spaces (
                name TEXT PRIMARY KEY,
                dimension INTEGER NOT NULL
            )
        ''')
        conn.execute(
            "INSERT INTO vector_spaces (name, dimension) VALUES (?, ?) ON CONFLICT(name) DO NOTHING",
            (self.table, self.dimension)
        )
        stored = conn.execute("SELECT dimension FROM vector_spaces WHERE name = ?", (self.table,)).fetchone()[0]
        if stored != self.dimension:
            raise StoreError(
                f"Index '{self.table}' was created with dimension {stored}, opened with {self.dimension}"
            )

    def insert(self, conn: sqlite3.Connection, row_id: int, vectors: Sequence[bytes], spans: Optional[Sequence[str]] = None) -> None:
        if spans is None:
            spans = [None] * len(vectors)
        if len(spans) != len(vectors):
            raise ValueError("spans must match vectors one to one")

        for blob in vectors:
            # Validates length and dimension before anything is written
            codec.decode_array(blob, self.dimension)

        conn.executemany(
            f"INSERT INTO {self.table} (row_id, embedding, span) VALUES (?, ?, ?)",
            [(row_id, blob, span) for blob, span in zip(vectors, spans)]
        )

    def delete(self, conn: sqlite3.Connection, row_id: int) -> int:
        cursor = conn.execute(f"DELETE FROM {self.table} WHERE row_id = ?", (row_id,))
        return cursor.rowcount

    def get(self, conn: sqlite3.Connection, row_id: int) -> List[EmbeddingRecord]:
        """Return the decoded embeddings of a row in insertion order."""
        rows = conn.execute(
            f"SELECT row_id, embedding, span FROM {self.table} WHERE row_id = ? ORDER BY id",
            (row_id,)
        ).fetchall()
        return [EmbeddingRecord(row_id=r[0], vector=codec.decode(r[1]), span=r[2]) for r in rows]

    def count(self, conn: sqlite3.Connection) -> int:
        return conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]

    def _distances(self, matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        if self.metric == "cosine":
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
            dots = matrix @ query
            with np.errstate(divide="ignore", invalid="ignore"):
                similarity = np.where(norms > 0, dots / norms, 0.0)
            return 1.0 - similarity
        return np.linalg.norm(matrix - query, axis=1)

    def knn(self, conn: sqlite3.Connection, query: bytes, k: int) -> List[Neighbor]:
        query_vector = codec.decode_array(query, self.dimension).astype(np.float64)
        if k <= 0:
            return []

        # Insertion order, which is also the tie-break order
        rows = conn.execute(f"SELECT row_id, embedding FROM {self.table} ORDER BY id").fetchall()
        if not rows:
            return []

        row_ids = [r[0] for r in rows]
        matrix = np.vstack([codec.decode_array(r[1], self.dimension) for r in rows]).astype(np.float64)

        distances = self._distances(matrix, query_vector)
        order = np.argsort(distances, kind="stable")

        # A chunked row owns several vectors; keep each row's best distance
        neighbors = []
        seen = set()
        for i in order:
            row_id = row_ids[i]
            if row_id in seen:
                continue
            seen.add(row_id)
            neighbors.append(Neighbor(row_id=row_id, distance=float(distances[i])))
            if len(neighbors) == k:
                break

        return neighbors
