"""Retriever and question answering over the indexed documents.

Handles:
- Query embedding generation
- Vector search
- Context assembly with source attribution
- Answer generation and conversation persistence
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from wali.errors import WaliError
from wali.memory import ConversationManager
from wali.rag.vector_store import SearchHit, VectorIndex
from wali.services import ServiceRegistry, Services

logger = structlog.get_logger()

CONTEXT_SEPARATOR = "\n\n"


@dataclass
class Answer:
    """Result of one question-answering round."""

    answer: str
    sources: List[str]
    conversation_id: str


def build_context(hits: List[SearchHit]) -> Tuple[str, List[str]]:
    """Join hit contents into a context string and collect their sources.

    Sources keep hit order; hits without a ``document_name`` are skipped.

    Returns:
        Tuple of (context, source document names)
    """
    context = CONTEXT_SEPARATOR.join(hit.record.content for hit in hits)
    sources = [
        hit.record.metadata["document_name"]
        for hit in hits
        if hit.record.metadata.get("document_name") is not None
    ]
    return context, sources


class Retriever:
    """Semantic retriever and answer generator for the RAG pipeline."""

    def __init__(
        self,
        registry: ServiceRegistry,
        vector_store: VectorIndex,
        conversations: ConversationManager,
    ):
        """Initialize the retriever.

        Args:
            registry: Source of the clients and top_k
            vector_store: Index to search
            conversations: Persists each question/answer exchange
        """
        self.registry = registry
        self.vector_store = vector_store
        self.conversations = conversations

    async def retrieve(self, question: str, top_k: Optional[int] = None) -> List[SearchHit]:
        """Embed *question* and return the most similar chunks.

        Raises:
            NotConfiguredError: If no API key is configured
            WaliError: Embedding failures, tagged with stage 'embedding'
        """
        return await self._search(self.registry.require(), question, top_k)

    async def _search(
        self, services: Services, question: str, top_k: Optional[int]
    ) -> List[SearchHit]:
        top_k = top_k or self.registry.config.top_k

        try:
            query_embedding = await services.embedding.embed(question)
        except WaliError as e:
            e.add_context(stage="embedding")
            raise

        hits = self.vector_store.search(query_embedding, top_k)

        logger.info(
            "retrieval_completed",
            query_length=len(question),
            top_k=top_k,
            results_returned=len(hits),
            top_score=hits[0].score if hits else None,
        )
        return hits

    async def ask(self, question: str, conversation_id: Optional[str] = None) -> Answer:
        """Answer *question* from the knowledge base and record the exchange.

        Nothing is persisted unless an answer was generated.

        Args:
            question: User question
            conversation_id: Conversation to append to; a new one is created if
                None or unknown

        Returns:
            Answer with the text, source document names and conversation ID

        Raises:
            NotConfiguredError: If no API key is configured (checked before any call)
            WaliError: Embedding, generation or storage failures, with stage context
        """
        services = self.registry.require()

        hits = await self._search(services, question, None)
        context, sources = build_context(hits)

        logger.debug(
            "context_formatted",
            num_chunks=len(hits),
            total_chars=len(context),
        )

        try:
            answer = await services.generation.answer_with_context(question, context)
        except WaliError as e:
            e.add_context(stage="generation")
            logger.error("generation_failed", error=str(e), error_type=type(e).__name__)
            raise

        try:
            conversation_id = self.conversations.record_exchange(
                conversation_id, question, answer, sources
            )
        except WaliError as e:
            e.add_context(stage="storage")
            raise

        logger.info(
            "question_answered",
            conversation_id=conversation_id,
            answer_length=len(answer),
            sources=len(sources),
        )

        return Answer(answer=answer, sources=sources, conversation_id=conversation_id)
