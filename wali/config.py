"""Application configuration with sensible defaults."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from wali.errors import ConfigError

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("WALI_DATA_DIR", str(BASE_DIR / "data")))

# DashScope (Qwen) configuration
DASHSCOPE_BASE_URL = os.getenv("DASHSCOPE_BASE_URL", "https://dashscope.aliyuncs.com/api/v1")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-v2")
CHAT_MODEL = os.getenv("CHAT_MODEL", "qwen-turbo")

# Generation is slower than embedding, so it gets the longer budget
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "30.0"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "60.0"))
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.7"))
GENERATION_TOP_P = float(os.getenv("GENERATION_TOP_P", "0.9"))

# RAG parameters (character-based, counted in code points)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "800"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "80"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "3"))

# Embedding API accepts at most 25 texts per call
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "25"))
EMBED_MAX_IN_FLIGHT = int(os.getenv("EMBED_MAX_IN_FLIGHT", "10"))

# Storage
DB_PATH = Path(os.getenv("WALI_DB_PATH", str(DATA_DIR / "wali.db")))
VECTOR_SNAPSHOT_PATH = Path(os.getenv("WALI_VECTOR_PATH", str(DATA_DIR / "vectors.json")))
API_KEY_SETTING = "qwen_api_key"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass
class RAGConfig:
    """Tunable parameters consumed by the ingestion and answer pipelines."""

    embedding_model: str = field(default_factory=lambda: EMBEDDING_MODEL)
    generation_model: str = field(default_factory=lambda: CHAT_MODEL)
    chunk_size: int = field(default_factory=lambda: CHUNK_SIZE)
    chunk_overlap: int = field(default_factory=lambda: CHUNK_OVERLAP)
    top_k: int = field(default_factory=lambda: RETRIEVAL_TOP_K)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Reject chunk/overlap/top_k combinations the pipelines cannot run with.

        Raises:
            ConfigError: If any value is out of range
        """
        if self.chunk_size <= 0:
            raise ConfigError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ConfigError(f"Chunk overlap must not be negative, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )
        if self.top_k <= 0:
            raise ConfigError(f"top_k must be positive, got {self.top_k}")


def configure_logging() -> None:
    """Configure structlog for JSON output at LOG_LEVEL."""
    logging.basicConfig(format="%(message)s", level=LOG_LEVEL.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
