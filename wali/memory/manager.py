"""Conversation memory manager.

Handles conversation creation, exchange persistence, and listing for the
question-answering flow.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog

from wali.db import Database, now_ts

logger = structlog.get_logger()

TITLE_MAX_CHARS = 20


def make_title(question: str) -> str:
    """Title for a new conversation: the question, cut to 20 characters plus '...'."""
    question = question.strip()
    if len(question) > TITLE_MAX_CHARS:
        return question[:TITLE_MAX_CHARS] + "..."
    return question


class ConversationManager:
    """Manages conversations and their message history."""

    def __init__(self, db: Database):
        self.db = db

    def record_exchange(
        self,
        conversation_id: Optional[str],
        question: str,
        answer: str,
        sources: List[str],
    ) -> str:
        """Persist one question/answer turn atomically.

        Resolves or creates the conversation, then appends the user message
        (no sources) and the assistant message (with sources), both stamped
        with the same timestamp.

        Args:
            conversation_id: Existing conversation, or None to start a new one
            question: The user's question
            answer: The generated answer
            sources: Document names the answer was based on

        Returns:
            The conversation ID
        """
        conversation_id = conversation_id or str(uuid.uuid4())
        timestamp = now_ts()

        with self.db.transaction() as conn:
            self.db.find_or_create_conversation(
                conn, conversation_id, make_title(question), timestamp
            )
            self.db.append_message(conn, conversation_id, "user", question, None, timestamp)
            self.db.append_message(
                conn, conversation_id, "assistant", answer, sources, timestamp
            )

        logger.info(
            "conversation_exchange_recorded",
            conversation_id=conversation_id,
            source_count=len(sources),
        )
        return conversation_id

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self.db.get_conversation(conversation_id)

    def list_conversations(self, limit: int = 50) -> List[Dict[str, Any]]:
        """List conversations, most recently active first."""
        return self.db.list_conversations(limit)

    def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Get all messages for a conversation in chronological order."""
        messages = self.db.list_messages(conversation_id)
        logger.debug(
            "conversation_messages_retrieved",
            conversation_id=conversation_id,
            count=len(messages),
        )
        return messages

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and all its messages.

        Returns:
            True if deleted, False if not found
        """
        return self.db.delete_conversation(conversation_id)
