"""
SQLite access: one connection, one thread.

Every operation is a function of the connection submitted to a single worker
thread, so operations from concurrent tasks run one at a time against the
shared connection and each completes atomically relative to the others.
"""

import asyncio
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Sequence

from .config import DB_PATH, ensure_db_directory
from .errors import KnowledgeStoreError, StoreError, translate_sqlite_error
from ..util.logging import logger

REQUIRED_TABLES = ['accounts', 'channels', 'channel_members', 'messages', 'documents']


class Database:
    """Owns the SQLite connection and the single thread that uses it."""

    def __init__(self, path: str = None):
        self.path = path or DB_PATH
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="knowledge-store-db")
        self._conn: Optional[sqlite3.Connection] = None
        self._closed = False

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            ensure_db_directory(self.path)
            # Autocommit mode: transactions are opened explicitly with BEGIN
            conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if self.path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            self._conn = conn
            logger.debug(f"Opened SQLite connection at {self.path}")
        return self._conn

    def _run(self, fn: Callable, args: tuple) -> Any:
        try:
            return fn(self._connection(), *args)
        except sqlite3.Error as e:
            raise translate_sqlite_error(e) from e

    async def call(self, fn: Callable, *args) -> Any:
        """Run fn(conn, *args) on the database thread and await the result."""
        if self._closed:
            raise StoreError("Database is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._run, fn, args)

    def _close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def close(self):
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._close)
        self._closed = True
        self._executor.shutdown(wait=True)


class DualWrite:
    """
    One all-or-nothing write of a relational row and its vectors.

    Used as: begin() -> write_relational() -> write_vector() -> commit().
    The vector write needs the row id produced by the relational write, so it
    is rejected until one has happened. Leaving the context with an exception
    rolls everything back.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self._open = False
        self.row_id: Optional[int] = None

    def begin(self) -> "DualWrite":
        self._conn.execute("BEGIN IMMEDIATE")
        self._open = True
        self.row_id = None
        return self

    def _require_open(self):
        if not self._open:
            raise StoreError("No transaction is open")

    def execute(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        """Run a statement inside the transaction without capturing a row id."""
        self._require_open()
        return self._conn.execute(sql, params)

    def write_relational(self, sql: str, params: Sequence = ()) -> int:
        """Write the owning row; a RETURNING id clause wins over lastrowid."""
        self._require_open()
        cursor = self._conn.execute(sql, params)
        rows = cursor.fetchall()
        self.row_id = rows[0][0] if rows else cursor.lastrowid
        return self.row_id

    def write_vector(self, index, vectors: Sequence[bytes], spans: Optional[Sequence[str]] = None) -> None:
        """Replace the vectors of the row written by write_relational()."""
        self._require_open()
        if self.row_id is None:
            raise StoreError("write_vector called before write_relational")
        index.replace(self._conn, self.row_id, vectors, spans)
        # The next entity in a batch must write its own row first
        self.row_id = None

    def clear_vectors(self, index, row_id: int) -> int:
        """Drop the vectors of a row being deleted in this transaction."""
        self._require_open()
        return index.delete(self._conn, row_id)

    def commit(self):
        self._require_open()
        self._conn.execute("COMMIT")
        self._open = False

    def rollback(self):
        self._open = False
        # SQLite may already have rolled back on some errors
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def __enter__(self) -> "DualWrite":
        return self.begin()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False


def init_db(conn: sqlite3.Connection):
    """Initialize the relational tables."""
    conn.executescript('''
        BEGIN;

        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            source TEXT NOT NULL,
            external_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (source, external_id)
        );

        CREATE TABLE IF NOT EXISTS channels (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id TEXT NOT NULL UNIQUE,
            kind TEXT NOT NULL,  -- 'discord', 'twitter', 'telegram' etc
            name TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_channels_kind ON channels(kind);

        CREATE TABLE IF NOT EXISTS channel_members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            channel_id INTEGER NOT NULL,
            account_id INTEGER NOT NULL,
            joined_at TEXT NOT NULL,
            UNIQUE (channel_id, account_id),
            FOREIGN KEY (channel_id) REFERENCES channels(id),
            FOREIGN KEY (account_id) REFERENCES accounts(id)
        );

        -- reply_to_id is deliberately not a foreign key
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            channel_id INTEGER NOT NULL,
            account_id INTEGER NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            reply_to_id INTEGER,
            created_at TEXT NOT NULL,
            FOREIGN KEY (channel_id) REFERENCES channels(id),
            FOREIGN KEY (account_id) REFERENCES accounts(id)
        );
        CREATE INDEX IF NOT EXISTS idx_messages_channel_created ON messages(channel_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_messages_account ON messages(account_id);

        CREATE TABLE IF NOT EXISTS documents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            doc_id TEXT NOT NULL UNIQUE,
            content TEXT NOT NULL
        );

        COMMIT;
    ''')


def health_check(conn: sqlite3.Connection) -> bool:
    """Check that the required tables exist."""
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    table_names = {row[0] for row in rows}
    return all(table in table_names for table in REQUIRED_TABLES)


def count_rows(conn: sqlite3.Connection, table: str) -> int:
    if not table.isidentifier():
        raise KnowledgeStoreError(f"Invalid table name: {table}")
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
