"""Text chunking with overlap for the RAG pipeline.

Character-based (Unicode code points) so that multi-byte text such as
Chinese is cut on character boundaries, with no tokenizer dependency.
"""
import re
from typing import List, Optional

import structlog

from wali import config
from wali.errors import ConfigError

logger = structlog.get_logger()

# One or more blank lines separate paragraphs
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


class TextChunker:
    """Paragraph-aware chunker with a sliding-window fallback."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum chunk length in characters (default from config)
            chunk_overlap: Characters shared by consecutive windows (default from config)

        Raises:
            ConfigError: If the size is not positive or overlap >= size
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        if self.chunk_size <= 0:
            raise ConfigError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ConfigError(f"Chunk overlap must not be negative, got {self.chunk_overlap}")
        # An overlap >= size would never advance the window
        if self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def split(self, text: str) -> List[str]:
        """Split text into fixed-size overlapping windows.

        Each window holds ``chunk_size`` characters and starts ``chunk_overlap``
        characters before the previous one ended. The last window may be shorter.

        Args:
            text: Text to split

        Returns:
            List of windows, in order
        """
        if not text:
            return []

        text_length = len(text)
        if text_length <= self.chunk_size:
            return [text]

        chunks = []
        start = 0
        while start < text_length:
            end = min(start + self.chunk_size, text_length)
            chunks.append(text[start:end])

            if end >= text_length:
                break

            start = end - self.chunk_overlap

        return chunks

    def split_by_paragraphs(self, text: str) -> List[str]:
        """Split on blank lines, dropping empty or whitespace-only paragraphs."""
        if not text:
            return []
        return [p for p in PARAGRAPH_BREAK.split(text) if p.strip()]

    def split_smart(self, text: str) -> List[str]:
        """Split by paragraph first, then window any paragraph that is too long.

        Args:
            text: Document text

        Returns:
            Ordered list of chunks, each at most ``chunk_size`` characters
        """
        chunks: List[str] = []
        for paragraph in self.split_by_paragraphs(text):
            if len(paragraph) <= self.chunk_size:
                chunks.append(paragraph)
            else:
                chunks.extend(self.split(paragraph))

        if chunks:
            logger.info(
                "text_chunked",
                text_length=len(text),
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c) for c in chunks) // len(chunks),
            )

        return chunks

    def get_chunk_stats(self, chunks: List[str]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: Chunk strings

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
                "overlap": self.chunk_overlap,
            }

        chunk_sizes = [len(c) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }
