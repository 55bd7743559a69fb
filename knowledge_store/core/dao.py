"""
Relational record store: accounts, channels, memberships, messages, documents.

Writes are upserts (or plain inserts for messages) that return the row id.
Read misses come back as None or an empty list, never as errors.
"""

import sqlite3
from datetime import datetime
from typing import Callable, List, Optional

from .db import Database
from .schema import Account, Channel, Document, Message, format_timestamp, utcnow
from ..util.logging import logger

ACCOUNT_COLUMNS = "id, name, source, external_id, created_at, updated_at"
CHANNEL_COLUMNS = "id, external_id, kind, name, created_at, updated_at"
MESSAGE_COLUMNS = "id, channel_id, account_id, role, content, reply_to_id, created_at"

# A repeat sender is the steady state: any uniqueness hit just touches updated_at
UPSERT_ACCOUNT_SQL = '''
    INSERT INTO accounts (name, source, external_id, created_at, updated_at)
    VALUES (?1, ?2, ?3, ?4, ?4)
    ON CONFLICT(name) DO UPDATE SET updated_at = excluded.updated_at
    ON CONFLICT(source, external_id) DO UPDATE SET updated_at = excluded.updated_at
    RETURNING id
'''

UPSERT_CHANNEL_SQL = '''
    INSERT INTO channels (external_id, kind, name, created_at, updated_at)
    VALUES (?1, ?2, ?3, ?4, ?4)
    ON CONFLICT(external_id) DO UPDATE SET
        name = COALESCE(excluded.name, channels.name),
        updated_at = excluded.updated_at
    RETURNING id
'''

# Messages are append-only
INSERT_MESSAGE_SQL = '''
    INSERT INTO messages (channel_id, account_id, role, content, reply_to_id, created_at)
    VALUES (?, ?, ?, ?, ?, ?)
    RETURNING id
'''

# Keeps the row id stable across replaces so its vectors can be swapped in place
UPSERT_DOCUMENT_SQL = '''
    INSERT INTO documents (doc_id, content) VALUES (?1, ?2)
    ON CONFLICT(doc_id) DO UPDATE SET content = excluded.content
    RETURNING id
'''


def _fetch_one(conn: sqlite3.Connection, sql: str, params: tuple):
    return conn.execute(sql, params).fetchone()


class RecordStore:
    """Row-level access to the relational tables through the shared Database."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    def now(self) -> str:
        return format_timestamp(self._clock())

    # =========================================================================
    # Accounts
    # =========================================================================

    async def upsert_account(self, name: str, source: str, external_id: str) -> int:
        """Insert an account, or touch updated_at if it already exists. Returns the id."""
        params = (name, source, external_id, self.now())
        row_id = await self.db.call(lambda conn: _fetch_one(conn, UPSERT_ACCOUNT_SQL, params)[0])
        logger.log_store_operation("upsert", "accounts", row_id, details={"source": source})
        return row_id

    async def get_account(self, account_id: int) -> Optional[Account]:
        row = await self.db.call(_fetch_one, f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = ?", (account_id,))
        return Account.from_row(row) if row else None

    async def get_account_by_source(self, source: str, external_id: str) -> Optional[Account]:
        row = await self.db.call(
            _fetch_one,
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE source = ? AND external_id = ?",
            (source, external_id)
        )
        return Account.from_row(row) if row else None

    async def list_accounts_by_source(self, source: str) -> List[Account]:
        rows = await self.db.call(
            lambda conn: conn.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE source = ? ORDER BY id", (source,)
            ).fetchall()
        )
        return [Account.from_row(row) for row in rows]

    # =========================================================================
    # Channels
    # =========================================================================

    async def upsert_channel(self, external_id: str, kind: str, name: Optional[str] = None) -> int:
        """Insert a channel, or update it keeping the existing name when none is given."""
        params = (external_id, kind, name, self.now())
        row_id = await self.db.call(lambda conn: _fetch_one(conn, UPSERT_CHANNEL_SQL, params)[0])
        logger.log_store_operation("upsert", "channels", row_id, details={"kind": kind})
        return row_id

    async def get_channel(self, channel_id: int) -> Optional[Channel]:
        row = await self.db.call(_fetch_one, f"SELECT {CHANNEL_COLUMNS} FROM channels WHERE id = ?", (channel_id,))
        return Channel.from_row(row) if row else None

    async def get_channel_by_external_id(self, external_id: str) -> Optional[Channel]:
        row = await self.db.call(
            _fetch_one, f"SELECT {CHANNEL_COLUMNS} FROM channels WHERE external_id = ?", (external_id,)
        )
        return Channel.from_row(row) if row else None

    async def list_channels_by_kind(self, kind: str) -> List[Channel]:
        rows = await self.db.call(
            lambda conn: conn.execute(
                f"SELECT {CHANNEL_COLUMNS} FROM channels WHERE kind = ? ORDER BY id", (kind,)
            ).fetchall()
        )
        return [Channel.from_row(row) for row in rows]

    async def add_channel_member(self, channel_id: int, account_id: int) -> None:
        """Record that an account takes part in a channel. Repeats are no-ops."""
        params = (channel_id, account_id, self.now())
        await self.db.call(
            lambda conn: conn.execute(
                "INSERT INTO channel_members (channel_id, account_id, joined_at) VALUES (?, ?, ?) "
                "ON CONFLICT(channel_id, account_id) DO NOTHING",
                params
            )
        )

    async def list_channel_members(self, channel_id: int) -> List[Account]:
        rows = await self.db.call(
            lambda conn: conn.execute(
                '''
                SELECT a.id, a.name, a.source, a.external_id, a.created_at, a.updated_at
                FROM channel_members cm
                JOIN accounts a ON a.id = cm.account_id
                WHERE cm.channel_id = ?
                ORDER BY cm.joined_at ASC, cm.id ASC
                ''',
                (channel_id,)
            ).fetchall()
        )
        return [Account.from_row(row) for row in rows]

    # =========================================================================
    # Messages
    # =========================================================================

    def message_params(self, channel_id: int, account_id: int, role: str, content: str,
                       reply_to_id: Optional[int] = None) -> tuple:
        return (channel_id, account_id, role, content, reply_to_id, self.now())

    async def insert_message(self, channel_id: int, account_id: int, role: str, content: str,
                             reply_to_id: Optional[int] = None) -> int:
        """Append a message without embedding it."""
        params = self.message_params(channel_id, account_id, role, content, reply_to_id)
        row_id = await self.db.call(lambda conn: _fetch_one(conn, INSERT_MESSAGE_SQL, params)[0])
        logger.log_store_operation("insert", "messages", row_id)
        return row_id

    async def get_message(self, message_id: int) -> Optional[Message]:
        row = await self.db.call(_fetch_one, f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,))
        return Message.from_row(row) if row else None

    async def list_recent_messages(self, channel_id: int, limit: int) -> List[Message]:
        """Newest messages in a channel, newest first."""
        rows = await self.db.call(
            lambda conn: conn.execute(
                f'''
                SELECT {MESSAGE_COLUMNS}
                FROM messages
                WHERE channel_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                ''',
                (channel_id, limit)
            ).fetchall()
        )
        return [Message.from_row(row) for row in rows]

    async def list_channel_messages(self, channel_id: int) -> List[Message]:
        """Full channel history, oldest first."""
        rows = await self.db.call(
            lambda conn: conn.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE channel_id = ? ORDER BY created_at ASC, id ASC",
                (channel_id,)
            ).fetchall()
        )
        return [Message.from_row(row) for row in rows]

    async def list_messages_between(self, account_a: int, account_b: int, since: datetime, limit: int) -> List[Message]:
        """
        Conversation between two accounts after `since`, oldest first.

        Messages authored by either account, restricted to channels where both
        have written.
        """
        rows = await self.db.call(
            lambda conn: conn.execute(
                f'''
                SELECT {MESSAGE_COLUMNS}
                FROM messages
                WHERE account_id IN (?1, ?2)
                  AND created_at > ?3
                  AND channel_id IN (
                      SELECT channel_id FROM messages WHERE account_id = ?1
                      INTERSECT
                      SELECT channel_id FROM messages WHERE account_id = ?2
                  )
                ORDER BY created_at ASC, id ASC
                LIMIT ?4
                ''',
                (account_a, account_b, format_timestamp(since), limit)
            ).fetchall()
        )
        return [Message.from_row(row) for row in rows]

    # =========================================================================
    # Documents
    # =========================================================================

    async def get_document(self, doc_id: str) -> Optional[Document]:
        row = await self.db.call(_fetch_one, "SELECT doc_id, content FROM documents WHERE doc_id = ?", (doc_id,))
        return Document.from_row(row) if row else None

