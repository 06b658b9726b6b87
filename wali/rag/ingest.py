"""Ingest pipeline for adding documents to the knowledge base.

Orchestrates:
- Text chunking
- Batched embedding with a bounded number of in-flight requests
- One transaction for the document and chunk rows
- Vector store insertion

A document is ingested completely or not at all: any failure leaves both
the database and the vector store as they were before the call.
"""
import asyncio
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog

from wali import config
from wali.db import Database, now_ts
from wali.errors import EmptyResultError, WaliError
from wali.llm_client import EmbeddingClient
from wali.rag.chunker import TextChunker
from wali.rag.vector_store import VectorIndex, VectorRecord
from wali.services import ServiceRegistry

logger = structlog.get_logger()


@dataclass
class IngestResult:
    """Outcome of a successful ingestion."""

    document_id: str
    chunk_count: int


class IngestPipeline:
    """Pipeline for ingesting one document into the RAG system."""

    def __init__(
        self,
        registry: ServiceRegistry,
        db: Database,
        vector_store: VectorIndex,
        batch_size: Optional[int] = None,
        max_in_flight: Optional[int] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            registry: Source of the embedding client and chunking config
            db: Durable store for documents and chunks
            vector_store: Index receiving the chunk vectors
            batch_size: Texts per embedding request (default from config)
            max_in_flight: Maximum concurrent embedding requests (default from config)
        """
        self.registry = registry
        self.db = db
        self.vector_store = vector_store
        self.batch_size = batch_size or config.EMBED_BATCH_SIZE
        self.max_in_flight = max_in_flight or config.EMBED_MAX_IN_FLIGHT

    async def generate_embeddings_batch(
        self, client: EmbeddingClient, texts: Sequence[str]
    ) -> List[List[float]]:
        """Embed *texts* in batches, at most ``max_in_flight`` requests at once.

        Results are reassembled in submission order, so vector ``i`` always
        belongs to ``texts[i]``. The first failing batch cancels the rest.

        Args:
            client: Embedding client
            texts: Chunk texts, in document order

        Returns:
            One embedding per text, in the same order

        Raises:
            WaliError: The first batch failure, annotated with its batch number
        """
        if not texts:
            return []

        batches = [
            list(texts[i : i + self.batch_size])
            for i in range(0, len(texts), self.batch_size)
        ]
        total_batches = len(batches)
        semaphore = asyncio.Semaphore(self.max_in_flight)

        async def run_batch(batch_num: int, batch: List[str]) -> List[List[float]]:
            async with semaphore:
                logger.debug(
                    "embedding_batch_started",
                    batch=batch_num,
                    total_batches=total_batches,
                    batch_size=len(batch),
                )
                try:
                    vectors = await client.embed_batch(batch)
                    if len(vectors) != len(batch):
                        raise EmptyResultError(
                            f"Expected {len(batch)} embeddings, got {len(vectors)}"
                        )
                except WaliError as e:
                    e.add_context(stage="embedding", batch=batch_num, total_batches=total_batches)
                    logger.error(
                        "embedding_batch_failed",
                        batch=batch_num,
                        total_batches=total_batches,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise

            logger.debug("embedding_batch_completed", batch=batch_num, total_batches=total_batches)
            return vectors

        tasks = [
            asyncio.create_task(run_batch(batch_num, batch))
            for batch_num, batch in enumerate(batches, 1)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        embeddings = [vector for batch_vectors in results for vector in batch_vectors]

        logger.info(
            "embeddings_generated",
            count=len(embeddings),
            batches=total_batches,
        )
        return embeddings

    async def ingest_document(
        self,
        name: str,
        content: str,
        file_type: Optional[str] = None,
    ) -> IngestResult:
        """Chunk, embed and store one document.

        Args:
            name: Display name used for source attribution
            content: Full document text
            file_type: Optional type tag (e.g. 'txt', 'pdf')

        Returns:
            IngestResult with the new document ID and chunk count

        Raises:
            NotConfiguredError: If no API key is configured (checked before any work)
            WaliError: Embedding or storage failures, with stage/batch context
        """
        services = self.registry.require()
        rag_config = self.registry.config

        logger.info("ingesting_document", name=name, content_length=len(content))

        chunker = TextChunker(
            chunk_size=rag_config.chunk_size, chunk_overlap=rag_config.chunk_overlap
        )
        chunks = chunker.split_smart(content)

        if not chunks:
            logger.warning("no_chunks_created", name=name)

        embeddings = await self.generate_embeddings_batch(services.embedding, chunks)

        if len(embeddings) != len(chunks):
            raise EmptyResultError(
                f"Got {len(embeddings)} embeddings for {len(chunks)} chunks",
                stage="embedding",
            )

        document_id = self._store(name, content, file_type, chunks, embeddings)

        logger.info(
            "document_ingested",
            document_id=document_id,
            name=name,
            **chunker.get_chunk_stats(chunks),
        )

        return IngestResult(document_id=document_id, chunk_count=len(chunks))

    def _store(
        self,
        name: str,
        content: str,
        file_type: Optional[str],
        chunks: List[str],
        embeddings: List[List[float]],
    ) -> str:
        """Write document + chunk rows in one transaction and index the vectors.

        The vectors are inserted as the last step inside the transaction; if
        the commit itself fails they are removed again.
        """
        document_id = str(uuid.uuid4())
        timestamp = now_ts()
        indexed = False

        try:
            with self.db.transaction() as conn:
                self.db.insert_document(
                    conn, name, content, file_type, document_id=document_id, timestamp=timestamp
                )

                records = []
                for index, (chunk, embedding) in enumerate(zip(chunks, embeddings)):
                    chunk_id = self.db.insert_chunk(
                        conn, document_id, chunk, index, timestamp=timestamp
                    )
                    records.append(
                        VectorRecord(
                            id=chunk_id,
                            content=chunk,
                            embedding=embedding,
                            metadata={
                                "document_id": document_id,
                                "chunk_index": index,
                                "document_name": name,
                            },
                        )
                    )

                self.vector_store.insert_many(records)
                indexed = True
        except BaseException as e:
            if indexed:
                self.vector_store.remove_by_document(document_id)
            if isinstance(e, WaliError):
                e.add_context(stage="storage")
            logger.error(
                "document_store_failed",
                name=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        return document_id
