"""
Knowledge base: relational records paired with vector indexes.

Ingestion embeds first, then writes the row and its vectors in one
transaction. Search embeds the query, asks the index for the nearest rows and
joins them back to their records.
"""

import asyncio
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Tuple

from .config import DOCUMENT_CHUNK_SIZE, VECTOR_METRIC, get_embed_timeout, get_embedding_provider
from .dao import INSERT_MESSAGE_SQL, MESSAGE_COLUMNS, UPSERT_DOCUMENT_SQL, RecordStore
from .db import Database, DualWrite, count_rows, health_check, init_db
from .errors import ProviderError
from .schema import Document, Message, SearchHit, utcnow
from ..util.logging import logger
from ..vector import codec
from ..vector.embeddings import IEmbeddingProvider
from ..vector.index import SqliteVectorIndex
from ..vector.types import EmbeddingRecord


def chunk_text(text: str, chunk_size: int) -> List[str]:
    """Split text into consecutive chunks of at most chunk_size characters, on word boundaries where possible."""
    if chunk_size <= 0 or len(text) <= chunk_size:
        return [text]

    chunks = []
    current = ""
    for word in text.split():
        while len(word) > chunk_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:chunk_size])
            word = word[chunk_size:]
        candidate = f"{current} {word}" if current else word
        if len(candidate) > chunk_size:
            chunks.append(current)
            current = word
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks or [text]


@dataclass
class MessageDraft:
    """A message not yet written; created_at is the stored timestamp string."""
    channel_id: int
    account_id: int
    role: str
    content: str
    reply_to_id: Optional[int]
    created_at: str


class PairedStore:
    """One relational table paired with its vector index."""

    kind = "records"
    keep_spans = False

    def __init__(self, index: SqliteVectorIndex):
        self.index = index

    def embedding_texts(self, entity) -> List[str]:
        raise NotImplementedError

    def write_row(self, txn: DualWrite, entity) -> int:
        raise NotImplementedError

    def fetch(self, conn: sqlite3.Connection, row_id: int) -> Optional[Tuple[Any, Any]]:
        """Return (identifier, record) for a row id, or None if the row is gone."""
        raise NotImplementedError


class DocumentStore(PairedStore):
    """Documents: keyed by caller-supplied doc_id, the whole payload is embedded."""

    kind = "documents"

    def __init__(self, index: SqliteVectorIndex, chunk_size: int = 0):
        super().__init__(index)
        self.chunk_size = chunk_size
        self.keep_spans = chunk_size > 0

    def embedding_texts(self, document: Document) -> List[str]:
        return chunk_text(document.text(), self.chunk_size)

    def write_row(self, txn: DualWrite, document: Document) -> int:
        return txn.write_relational(UPSERT_DOCUMENT_SQL, (document.doc_id, document.serialized()))

    def fetch(self, conn, row_id):
        row = conn.execute("SELECT doc_id, content FROM documents WHERE id = ?", (row_id,)).fetchone()
        if row is None:
            return None
        document = Document.from_row(row)
        return document.doc_id, document


class MessageStore(PairedStore):
    """Messages: keyed by row id, only the text content is embedded."""

    kind = "messages"

    def embedding_texts(self, draft: MessageDraft) -> List[str]:
        return [draft.content]

    def write_row(self, txn: DualWrite, draft: MessageDraft) -> int:
        return txn.write_relational(
            INSERT_MESSAGE_SQL,
            (draft.channel_id, draft.account_id, draft.role, draft.content, draft.reply_to_id, draft.created_at)
        )

    def fetch(self, conn, row_id):
        row = conn.execute(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", (row_id,)).fetchone()
        if row is None:
            return None
        return row["id"], Message.from_row(row)


_DEFAULT = object()


class KnowledgeBase:
    """
    Orchestrates embedding, dual writes and semantic search.

    Callers never touch the vector indexes directly; every vector write goes
    through a DualWrite together with the row that owns it.
    """

    def __init__(
        self,
        db: Database,
        embedding_provider: IEmbeddingProvider,
        dimension: int = None,
        metric: str = VECTOR_METRIC,
        chunk_size: int = DOCUMENT_CHUNK_SIZE,
        embed_timeout: Optional[float] = _DEFAULT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.provider = embedding_provider
        self.dimension = dimension or embedding_provider.get_dimension()
        self.embed_timeout = get_embed_timeout() if embed_timeout is _DEFAULT else embed_timeout
        self.records = RecordStore(db, clock)
        self.documents = DocumentStore(SqliteVectorIndex("document_embeddings", self.dimension, metric), chunk_size)
        self.messages = MessageStore(SqliteVectorIndex("message_embeddings", self.dimension, metric))

    @classmethod
    async def open(cls, path: str = None, embedding_provider: IEmbeddingProvider = None, **kwargs) -> "KnowledgeBase":
        """Open (and if needed create) a knowledge base at path."""
        provider = embedding_provider or get_embedding_provider()
        kb = cls(Database(path), provider, **kwargs)
        try:
            await kb.initialize()
        except Exception:
            await kb.close()
            raise
        return kb

    async def initialize(self):
        await self.db.call(self._init_schema)
        logger.info(f"Knowledge base ready at {self.db.path} (dimension={self.dimension})")

    def _init_schema(self, conn):
        init_db(conn)
        self.documents.index.ensure_schema(conn)
        self.messages.index.ensure_schema(conn)

    async def close(self):
        await self.db.close()

    async def health(self) -> bool:
        return await self.db.call(health_check)

    async def count(self, table: str) -> int:
        return await self.db.call(count_rows, table)

    # =========================================================================
    # Embedding
    # =========================================================================

    async def _embed(self, texts: List[str]) -> List[bytes]:
        """Embed and encode texts. Runs before any transaction is opened."""
        provider_name = getattr(self.provider, "name", self.provider.__class__.__name__)
        try:
            pending = self.provider.embed_texts(texts)
            if self.embed_timeout:
                vectors = await asyncio.wait_for(pending, self.embed_timeout)
            else:
                vectors = await pending
        except ProviderError:
            raise
        except asyncio.TimeoutError as e:
            logger.log_provider_failure(provider_name, texts[0] if texts else "", e)
            raise ProviderError(f"Embedding timed out after {self.embed_timeout}s", provider_name) from e
        except Exception as e:
            logger.log_provider_failure(provider_name, texts[0] if texts else "", e)
            raise ProviderError(f"Embedding failed: {e}", provider_name) from e

        if len(vectors) != len(texts):
            raise ProviderError(f"Provider returned {len(vectors)} vectors for {len(texts)} texts", provider_name)
        for vector in vectors:
            if len(vector) != self.dimension:
                raise ProviderError(
                    f"Provider returned dimension {len(vector)}, expected {self.dimension}", provider_name
                )

        return [codec.encode(vector) for vector in vectors]

    # =========================================================================
    # Dual writes
    # =========================================================================

    async def _add(self, store: PairedStore, entities: List[Any]) -> List[int]:
        if not entities:
            return []

        texts_per_entity = [store.embedding_texts(entity) for entity in entities]
        encoded = await self._embed([text for texts in texts_per_entity for text in texts])

        batches = []
        position = 0
        for texts in texts_per_entity:
            spans = texts if store.keep_spans else None
            batches.append((encoded[position:position + len(texts)], spans))
            position += len(texts)

        def write(conn):
            row_ids = []
            with DualWrite(conn) as txn:
                for entity, (vectors, spans) in zip(entities, batches):
                    row_id = store.write_row(txn, entity)
                    txn.write_vector(store.index, vectors, spans)
                    row_ids.append(row_id)
            return row_ids

        row_ids = await self.db.call(write)
        for row_id, (vectors, _) in zip(row_ids, batches):
            logger.log_vector_operation("added", store.index.table, row_id, {"vectors": len(vectors)})
        return row_ids

    async def add_document(self, doc_id: str, content: Any) -> int:
        """Create or replace a document and regenerate its embeddings. Returns the row id."""
        [row_id] = await self._add(self.documents, [Document(doc_id=doc_id, content=content)])
        return row_id

    async def add_documents(self, documents: Iterable[Document]) -> List[int]:
        """Add several documents in a single transaction."""
        documents = list(documents)
        logger.info(f"Adding {len(documents)} documents to knowledge base")
        return await self._add(self.documents, documents)

    async def add_message(self, channel_id: int, account_id: int, role: str, content: str,
                          reply_to_id: Optional[int] = None) -> int:
        """Append a message with its embedding. Returns the message id."""
        draft = MessageDraft(*self.records.message_params(channel_id, account_id, role, content, reply_to_id))
        [row_id] = await self._add(self.messages, [draft])
        return row_id

    async def delete_document(self, doc_id: str) -> bool:
        """Remove a document and its vectors together. Returns False if it did not exist."""
        index = self.documents.index

        def delete(conn):
            with DualWrite(conn) as txn:
                row = txn.execute("SELECT id FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
                if row is None:
                    return None
                txn.execute("DELETE FROM documents WHERE id = ?", (row[0],))
                txn.clear_vectors(index, row[0])
                return row[0]

        row_id = await self.db.call(delete)
        if row_id is None:
            return False
        logger.log_vector_operation("deleted", index.table, row_id)
        return True

    async def reindex_documents(self) -> int:
        """Re-embed every stored document, e.g. after a model change."""
        rows = await self.db.call(
            lambda conn: conn.execute("SELECT doc_id, content FROM documents ORDER BY id").fetchall()
        )
        documents = [Document.from_row(row) for row in rows]
        await self._add(self.documents, documents)
        return len(documents)

    # =========================================================================
    # Search
    # =========================================================================

    async def _search(self, store: PairedStore, query: str, k: int) -> List[SearchHit]:
        [encoded] = await self._embed([query])

        def lookup(conn):
            hits = []
            skipped = 0
            for neighbor in store.index.knn(conn, encoded, k):
                found = store.fetch(conn, neighbor.row_id)
                if found is None:
                    # Vector outlived its row: filtered, not raised
                    skipped += 1
                    continue
                identifier, record = found
                hits.append(SearchHit(distance=neighbor.distance, id=identifier, record=record))
            return hits, skipped

        hits, skipped = await self.db.call(lookup)
        logger.log_search(store.kind, query, k, len(hits), skipped)
        return hits

    async def search_documents(self, query: str, k: int) -> List[SearchHit]:
        """Top-k documents nearest to the query, closest first."""
        return await self._search(self.documents, query, k)

    async def search_messages(self, query: str, k: int) -> List[SearchHit]:
        """Top-k messages nearest to the query, closest first."""
        return await self._search(self.messages, query, k)

    async def top_document_ids(self, query: str, k: int) -> List[Tuple[float, str]]:
        hits = await self.search_documents(query, k)
        return [(hit.distance, hit.id) for hit in hits]

    async def find_document(self, query: str) -> Optional[SearchHit]:
        """The single closest document, if any."""
        hits = await self.search_documents(query, 1)
        return hits[0] if hits else None

    async def get_document(self, doc_id: str) -> Optional[Document]:
        return await self.records.get_document(doc_id)

    async def get_document_embeddings(self, doc_id: str) -> Optional[Tuple[Document, List[EmbeddingRecord]]]:
        """A document together with its decoded embeddings."""
        index = self.documents.index

        def load(conn):
            row = conn.execute("SELECT id, doc_id, content FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
            if row is None:
                return None
            return Document.from_row(row), index.get(conn, row["id"])

        return await self.db.call(load)
