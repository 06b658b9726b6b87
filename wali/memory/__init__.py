"""Conversation persistence."""
from wali.memory.manager import ConversationManager, make_title

__all__ = ["ConversationManager", "make_title"]
