"""Application state shared by the command boundary and scripts.

Owns the database, the vector store and the service registry, and exposes
the document and conversation commands on top of the RAG pipelines.
"""
import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

from wali import config, text_reader
from wali.db import Database
from wali.errors import DocumentNotFoundError, StorageError
from wali.memory import ConversationManager
from wali.rag.ingest import IngestPipeline, IngestResult
from wali.rag.retriever import Answer, Retriever
from wali.rag.vector_store import InMemoryVectorStore, VectorRecord
from wali.services import ServiceRegistry, Services

logger = structlog.get_logger()


class AppState:
    """Wires storage, vector index and backend clients together."""

    def __init__(
        self,
        db: Database,
        vector_store: Optional[InMemoryVectorStore] = None,
        registry: Optional[ServiceRegistry] = None,
        snapshot_path: Optional[Path] = None,
    ):
        """Initialize the application state.

        Args:
            db: Durable store
            vector_store: Vector index (a new empty one if omitted)
            registry: Client registry (unconfigured, default config if omitted)
            snapshot_path: Where the vector index is persisted; None disables saving
        """
        self.db = db
        self.vector_store = vector_store or InMemoryVectorStore()
        self.registry = registry or ServiceRegistry()
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        # Serializes index rewrites against ingestion and deletion
        self._index_lock = asyncio.Lock()

        self.conversations = ConversationManager(db)
        self.ingest_pipeline = IngestPipeline(self.registry, db, self.vector_store)
        self.retriever = Retriever(self.registry, self.vector_store, self.conversations)

    @classmethod
    def create(cls, data_dir: Optional[Path] = None) -> "AppState":
        """Open (or create) the on-disk state and restore what was saved.

        Args:
            data_dir: Directory for the database and vector snapshot
                (default: config.DB_PATH / config.VECTOR_SNAPSHOT_PATH)
        """
        if data_dir is not None:
            data_dir = Path(data_dir)
            db_path = data_dir / config.DB_PATH.name
            snapshot_path = data_dir / config.VECTOR_SNAPSHOT_PATH.name
        else:
            db_path = config.DB_PATH
            snapshot_path = config.VECTOR_SNAPSHOT_PATH

        state = cls(Database(db_path), snapshot_path=snapshot_path)
        state.load_vector_index()
        state.load_saved_api_key()
        return state

    # Configuration

    def load_saved_api_key(self) -> bool:
        """Configure the clients from a previously saved API key, if any."""
        api_key = self.db.get_setting(config.API_KEY_SETTING)
        if not api_key:
            return False
        self.registry.configure(api_key)
        logger.info("saved_api_key_loaded")
        return True

    def set_api_key(self, api_key: str) -> None:
        """Configure the clients and remember the key for the next start.

        Raises:
            NotConfiguredError: If the key is empty
            StorageError: If the key cannot be saved
        """
        self.registry.configure(api_key)
        self.db.put_setting(config.API_KEY_SETTING, api_key.strip())

    def has_api_key(self) -> bool:
        return self.db.get_setting(config.API_KEY_SETTING) is not None

    # Vector index persistence

    def load_vector_index(self) -> bool:
        if self.snapshot_path is None:
            return False
        return self.vector_store.load(self.snapshot_path)

    def save_vector_index(self) -> bool:
        """Persist the index snapshot.

        The database stays the source of truth, so a failed save is logged and
        reported as False; the index can be rebuilt from the stored chunks.
        """
        if self.snapshot_path is None:
            return False
        try:
            self.vector_store.save(self.snapshot_path)
        except StorageError as e:
            logger.error("vector_snapshot_save_failed", error=str(e), path=str(self.snapshot_path))
            return False
        return True

    async def rebuild_index(self) -> int:
        """Re-embed every stored chunk and replace the index contents.

        Returns:
            Number of vectors in the rebuilt index

        Raises:
            NotConfiguredError: If no API key is configured
            WaliError: Embedding failures; the current index is left untouched
        """
        services = self.registry.require()

        async with self._index_lock:
            return await self._rebuild(services)

    async def _rebuild(self, services: Services) -> int:
        chunks = self.db.list_chunks()

        logger.warning("rebuilding_index", chunk_count=len(chunks))

        embeddings = await self.ingest_pipeline.generate_embeddings_batch(
            services.embedding, [c["content"] for c in chunks]
        )
        records = [
            VectorRecord(
                id=chunk["id"],
                content=chunk["content"],
                embedding=embedding,
                metadata={
                    "document_id": chunk["document_id"],
                    "chunk_index": chunk["chunk_index"],
                    "document_name": chunk["document_name"],
                },
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

        rebuilt = InMemoryVectorStore()
        rebuilt.insert_many(records)
        self.vector_store.restore(rebuilt.snapshot())
        self.save_vector_index()

        logger.info("index_rebuilt", vector_count=len(records))
        return len(records)

    # Documents

    async def upload_document(
        self, name: str, content: str, file_type: Optional[str] = None
    ) -> IngestResult:
        async with self._index_lock:
            result = await self.ingest_pipeline.ingest_document(name, content, file_type)
            self.save_vector_index()
        return result

    async def upload_document_from_path(self, file_path: Union[str, Path]) -> IngestResult:
        """Read a text or PDF file and ingest it under its file name.

        Raises:
            NotConfiguredError: If no API key is configured (checked before reading)
            DocumentNotFoundError, UnsupportedFileError: If the file cannot be read
        """
        self.registry.require()
        name, _ = text_reader.get_file_info(file_path)
        content = text_reader.read_text(file_path)
        return await self.upload_document(name, content, text_reader.file_type_of(file_path))

    def read_file_content(self, file_path: Union[str, Path]) -> str:
        return text_reader.read_text(file_path)

    def get_file_info(self, file_path: Union[str, Path]) -> Tuple[str, int]:
        """Display name and size in bytes of a file on disk."""
        return text_reader.get_file_info(file_path)

    def list_documents(self) -> List[Dict[str, Any]]:
        return self.db.list_documents()

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document, its chunks and its vectors.

        Raises:
            DocumentNotFoundError: If no such document exists
        """
        async with self._index_lock:
            if not self.db.delete_document(document_id):
                raise DocumentNotFoundError(f"Document not found: {document_id}")
            self.vector_store.remove_by_document(document_id)
            self.save_vector_index()
        return True

    # Questions and conversations

    async def ask(self, question: str, conversation_id: Optional[str] = None) -> Answer:
        return await self.retriever.ask(question, conversation_id)

    def list_conversations(self) -> List[Dict[str, Any]]:
        return self.conversations.list_conversations()

    def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self.conversations.get_messages(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        return self.conversations.delete_conversation(conversation_id)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.vector_store.get_stats()
        stats["configured"] = self.registry.is_configured
        return stats
