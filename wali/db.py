"""SQLite durable store for the knowledge base.

Stores:
- Uploaded documents and their text chunks
- Conversations and their messages (with source attributions)
- Settings such as the saved API key
"""
import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import structlog

from wali import config
from wali.errors import StorageError

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    file_type TEXT,
    file_size INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON chunks(document_id);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    sources TEXT,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_id ON messages(conversation_id);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


def now_ts() -> int:
    """Current time as Unix seconds."""
    return int(time.time())


class Database:
    """Thin wrapper around a SQLite file; one connection per operation."""

    def __init__(self, db_path: Path = None):
        """Initialize the database, creating the schema if needed.

        Args:
            db_path: Path to the SQLite file (default: config.DB_PATH)
        """
        self.db_path = Path(db_path or config.DB_PATH)
        self.init_database()

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection with row_factory set to sqlite3.Row and foreign keys on."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_database(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.get_connection()
        try:
            conn.executescript(SCHEMA)
            conn.commit()
            logger.info("database_initialized", db_path=str(self.db_path))
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise StorageError(f"Failed to initialize database: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of writes atomically.

        Commits when the block completes, rolls back on any exception.
        ``sqlite3.Error`` is re-raised as ``StorageError``; other exceptions
        propagate unchanged after the rollback.
        """
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("transaction_failed", error=str(e))
            raise StorageError(f"Database transaction failed: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error("database_read_failed", error=str(e))
            raise StorageError(f"Database read failed: {e}") from e
        finally:
            conn.close()

    # Settings

    def get_setting(self, key: str) -> Optional[str]:
        with self._read() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def put_setting(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, now_ts()),
            )
        logger.info("setting_saved", key=key)

    # Documents and chunks

    @staticmethod
    def insert_document(
        conn: sqlite3.Connection,
        name: str,
        content: str,
        file_type: Optional[str] = None,
        document_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> str:
        """Insert a document row inside the caller's transaction.

        Returns:
            The document ID
        """
        document_id = document_id or str(uuid.uuid4())
        timestamp = timestamp or now_ts()
        conn.execute(
            """
            INSERT INTO documents (id, name, content, file_type, file_size, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document_id,
                name,
                content,
                file_type,
                len(content.encode("utf-8")),
                timestamp,
                timestamp,
            ),
        )
        return document_id

    @staticmethod
    def insert_chunk(
        conn: sqlite3.Connection,
        document_id: str,
        content: str,
        chunk_index: int,
        chunk_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> str:
        """Insert a chunk row inside the caller's transaction.

        Returns:
            The chunk ID
        """
        chunk_id = chunk_id or str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO chunks (id, document_id, content, chunk_index, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (chunk_id, document_id, content, chunk_index, timestamp or now_ts()),
        )
        return chunk_id

    def list_documents(self) -> List[Dict[str, Any]]:
        """All documents, newest first, without their full content."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT d.id, d.name, d.file_type, d.file_size, d.created_at, d.updated_at,
                       (SELECT COUNT(*) FROM chunks c WHERE c.document_id = d.id) AS chunk_count
                FROM documents d
                ORDER BY d.created_at DESC, d.rowid DESC
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return dict(row) if row else None

    def delete_document(self, document_id: str) -> bool:
        """Delete a document and (by cascade) its chunks.

        Returns:
            True if a document was deleted
        """
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("document_deleted", document_id=document_id)
        return deleted

    def list_chunks(self, document_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Chunks ordered by document then chunk_index."""
        query = """
            SELECT c.id, c.document_id, c.content, c.chunk_index, c.created_at,
                   d.name AS document_name
            FROM chunks c JOIN documents d ON d.id = c.document_id
        """
        params: tuple = ()
        if document_id is not None:
            query += " WHERE c.document_id = ?"
            params = (document_id,)
        query += " ORDER BY d.created_at, d.rowid, c.chunk_index"

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_chunks(self, document_id: Optional[str] = None) -> int:
        with self._read() as conn:
            if document_id is None:
                row = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
                ).fetchone()
        return row[0]

    # Conversations and messages

    @staticmethod
    def find_or_create_conversation(
        conn: sqlite3.Connection,
        conversation_id: str,
        title: str,
        timestamp: Optional[int] = None,
    ) -> str:
        """Return *conversation_id*, creating the row with *title* if missing."""
        timestamp = timestamp or now_ts()
        row = conn.execute(
            "SELECT id FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO conversations (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (conversation_id, title, timestamp, timestamp),
            )
            logger.info("conversation_created", conversation_id=conversation_id)
        else:
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (timestamp, conversation_id),
            )
        return conversation_id

    @staticmethod
    def append_message(
        conn: sqlite3.Connection,
        conversation_id: str,
        role: str,
        content: str,
        sources: Optional[List[str]] = None,
        timestamp: Optional[int] = None,
    ) -> str:
        """Insert a message inside the caller's transaction.

        Returns:
            The message ID
        """
        message_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO messages (id, conversation_id, role, content, sources, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                conversation_id,
                role,
                content,
                json.dumps(sources, ensure_ascii=False) if sources is not None else None,
                timestamp or now_ts(),
            ),
        )
        return message_id

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return dict(row) if row else None

    def list_conversations(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recently updated conversations first."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM conversations ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Messages of a conversation in chronological order, sources decoded."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT id, conversation_id, role, content, sources, created_at
                FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()

        messages = []
        for row in rows:
            message = dict(row)
            message["sources"] = json.loads(message["sources"]) if message["sources"] else None
            messages.append(message)
        return messages

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and (by cascade) its messages."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("conversation_deleted", conversation_id=conversation_id)
        return deleted
